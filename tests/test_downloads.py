"""Test the download orchestrator. HTTP goes through httpx.MockTransport."""

import asyncio
import base64

import httpx
import pytest

from blockflow.downloads import (
    CANCEL_MESSAGE,
    BatchDownloadConfig,
    DownloadConfig,
    DownloadOrchestrator,
    apply_naming,
    decode_data_url,
    generate_filename,
)
from blockflow.events import EventBus
from conftest import wait_until


def make_orchestrator(tmp_path, handler, **kwargs):
    config = DownloadConfig(
        directory=tmp_path,
        max_retries=kwargs.pop("max_retries", 3),
        retry_delay=0,
        max_concurrent=2,
        sequential_mode=kwargs.pop("sequential_mode", False),
        sequential_delay=0,
    )
    return DownloadOrchestrator(config, transport=httpx.MockTransport(handler), **kwargs)


def serve_path(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=request.url.path.encode())


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def test_generate_filename():
    assert generate_filename("https://cdn.example.com/v/clip.mp4") == "clip.mp4"
    assert generate_filename("https://cdn.example.com/v/clip") == "clip.mp4"
    assert generate_filename("https://cdn.example.com/i/cat.PNG?sig=1") == "cat.PNG"
    assert generate_filename("https://cdn.example.com/") == "video.mp4"

    name = generate_filename("data:image/png;base64,AAAA")
    assert name.startswith("image_")
    assert name.endswith(".png")

    text = generate_filename("just some generated text")
    assert text.startswith("text_")
    assert text.endswith(".txt")


def test_apply_naming():
    assert apply_naming("a.mp4", 0, "original") == "a.mp4"
    assert apply_naming("a.mp4", 6, "sequential") == "007_a.mp4"
    stamped = apply_naming("a.mp4", 0, "timestamp")
    assert stamped.endswith("Z_a.mp4")
    assert ":" not in stamped


def test_decode_data_url():
    payload = base64.b64encode(b"\x89PNG").decode()
    assert decode_data_url(f"data:image/png;base64,{payload}") == b"\x89PNG"
    assert decode_data_url("data:text/plain,hello%20world") == b"hello world"
    with pytest.raises(ValueError):
        decode_data_url("data:text/plain")


def test_unknown_naming_pattern(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    with pytest.raises(ValueError):
        orchestrator.enqueue_batch([{"url": "https://x/a.mp4"}], BatchDownloadConfig(naming="random"))


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_process_queue_downloads_everything(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    ids = [orchestrator.enqueue(f"https://cdn.example.com/v/{n}.mp4") for n in ("a", "b", "c")]

    await orchestrator.process_queue()

    for download_id in ids:
        item = orchestrator.get(download_id)
        assert item.status == "completed"
        assert item.progress == 100
    assert (tmp_path / "a.mp4").read_bytes() == b"/v/a.mp4"
    assert not list(tmp_path.glob("*.part"))
    assert orchestrator.progress().completed == 3


@pytest.mark.asyncio
async def test_data_urls_and_inline_text(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    payload = base64.b64encode(b"pixels").decode()
    image_id = orchestrator.enqueue(f"data:image/png;base64,{payload}", filename="img.png")
    text_id = orchestrator.enqueue("A generated poem", filename="poem.txt")

    await orchestrator.process_queue()

    assert orchestrator.get(image_id).status == "completed"
    assert (tmp_path / "img.png").read_bytes() == b"pixels"
    assert orchestrator.get(text_id).status == "completed"
    assert (tmp_path / "poem.txt").read_text() == "A generated poem"


@pytest.mark.asyncio
async def test_failing_download_stops_at_retry_budget(tmp_path):
    calls = 0

    def broken(request):
        nonlocal calls
        calls += 1
        return httpx.Response(500)

    orchestrator = make_orchestrator(tmp_path, broken, max_retries=3)
    download_id = orchestrator.enqueue("https://cdn.example.com/v/a.mp4")
    await orchestrator.process_queue()

    item = orchestrator.get(download_id)
    assert item.status == "failed"
    assert item.retry_count == 3
    assert calls == 3
    assert "500" in item.error


@pytest.mark.asyncio
async def test_transient_failure_recovers(tmp_path):
    calls = 0

    def flaky(request):
        nonlocal calls
        calls += 1
        return httpx.Response(503) if calls == 1 else httpx.Response(200, content=b"ok")

    orchestrator = make_orchestrator(tmp_path, flaky)
    download_id = orchestrator.enqueue("https://cdn.example.com/v/a.mp4")
    await orchestrator.process_queue()

    item = orchestrator.get(download_id)
    assert item.status == "completed"
    assert item.retry_count == 1
    assert item.error is None


# ---------------------------------------------------------------------------
# Batches and executions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_completion_fires_once(tmp_path):
    completed = []
    bus = EventBus()
    orchestrator = make_orchestrator(
        tmp_path, serve_path,
        event_bus=bus,
        on_batch_complete=lambda batch_id, record: completed.append(batch_id),
    )
    ids = orchestrator.enqueue_batch(
        [{"url": "https://cdn.example.com/v/a.mp4"}, {"url": "https://cdn.example.com/v/b.mp4"}],
        BatchDownloadConfig(batch_id="b1", create_subdirectory=True, subdirectory_name="run1", naming="sequential"),
    )

    await orchestrator.process_batch("b1")
    orchestrator.cancel_batch("b1")

    assert completed == ["b1"]
    assert [orchestrator.get(i).filename for i in ids] == ["001_a.mp4", "002_b.mp4"]
    assert (tmp_path / "run1" / "002_b.mp4").exists()
    record = orchestrator.batch_record("b1")
    assert record.progress.completed == 2
    assert record.end_time is not None
    assert len(bus.recent(type_prefix="download.batch_completed")) == 1


@pytest.mark.asyncio
async def test_sequential_mode(tmp_path):
    order = []

    def recording(request):
        order.append(request.url.path)
        return httpx.Response(200, content=b"x")

    orchestrator = make_orchestrator(tmp_path, recording, sequential_mode=True)
    orchestrator.enqueue_batch(
        [{"url": f"https://cdn.example.com/{n}.mp4"} for n in ("a", "b", "c")],
        BatchDownloadConfig(batch_id="seq"),
    )
    await orchestrator.process_batch("seq")
    assert order == ["/a.mp4", "/b.mp4", "/c.mp4"]


@pytest.mark.asyncio
async def test_enqueue_execution(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    ids = orchestrator.enqueue_execution(
        [{"url": "https://cdn.example.com/v/x.mp4", "block_id": "blk1", "block_number": "V01"}],
        "exec_1",
    )
    await orchestrator.process_batch("execution_exec_1")

    item = orchestrator.get(ids[0])
    assert item.filename == "V01_blk1.mp4"
    assert item.execution_id == "exec_1"
    assert item.download_path.startswith("execution_exec_1_")
    assert orchestrator.execution_progress("exec_1").completed == 1
    assert [r.batch_id for r in orchestrator.all_batch_progress()] == ["execution_exec_1"]


# ---------------------------------------------------------------------------
# Cancellation, retry and housekeeping
# ---------------------------------------------------------------------------


def test_cancel_pending_drops_item(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    download_id = orchestrator.enqueue("https://cdn.example.com/v/a.mp4")
    assert orchestrator.cancel(download_id)
    assert orchestrator.items() == []
    assert not orchestrator.cancel(download_id)


@pytest.mark.asyncio
async def test_cancel_in_flight_then_retry(tmp_path):
    release = asyncio.Event()
    hang = True

    async def slow(request):
        if hang:
            await release.wait()
        return httpx.Response(200, content=b"done")

    orchestrator = make_orchestrator(tmp_path, slow)
    download_id = orchestrator.enqueue("https://cdn.example.com/v/a.mp4")
    task = asyncio.create_task(orchestrator.process_queue())
    await wait_until(lambda: orchestrator.get(download_id).status == "downloading")

    assert orchestrator.cancel(download_id)
    await asyncio.wait_for(task, timeout=5)

    item = orchestrator.get(download_id)
    assert item.status == "failed"
    assert item.error == CANCEL_MESSAGE

    hang = False
    assert await orchestrator.retry_failed() == 1
    assert item.status == "completed"


@pytest.mark.asyncio
async def test_clear_completed(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    orchestrator.enqueue("https://cdn.example.com/v/a.mp4")
    await orchestrator.process_queue()
    orchestrator.enqueue("https://cdn.example.com/v/b.mp4")

    orchestrator.clear_completed()
    assert [i.filename for i in orchestrator.items()] == ["b.mp4"]

    orchestrator.clear_all()
    assert orchestrator.items() == []
    assert orchestrator.all_batch_progress() == []


@pytest.mark.asyncio
async def test_process_queue_honors_sequential_mode(tmp_path):
    active = 0
    peak = 0

    async def slow(request):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return httpx.Response(200, content=b"x")

    orchestrator = make_orchestrator(tmp_path, slow, sequential_mode=True)
    for n in ("a", "b", "c"):
        orchestrator.enqueue(f"https://cdn.example.com/{n}.mp4")
    await orchestrator.process_queue()

    assert orchestrator.progress().completed == 3
    assert peak == 1


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("config", [
    BatchDownloadConfig(create_subdirectory=True, subdirectory_name="../escaped"),
    BatchDownloadConfig(base_directory="nested/../../escaped"),
    BatchDownloadConfig(create_subdirectory=True, subdirectory_name="/tmp/elsewhere"),
])
def test_directories_outside_root_are_rejected(tmp_path, config):
    orchestrator = make_orchestrator(tmp_path / "downloads", serve_path)
    with pytest.raises(ValueError, match="outside"):
        orchestrator.enqueue_batch([{"url": "https://cdn.example.com/v.mp4"}], config)
    assert orchestrator.items() == []
    assert orchestrator.all_batch_progress() == []

    with pytest.raises(ValueError, match="outside"):
        orchestrator.enqueue("https://cdn.example.com/v.mp4", download_path="../escaped")


@pytest.mark.asyncio
async def test_nested_subdirectory_stays_inside_root(tmp_path):
    orchestrator = make_orchestrator(tmp_path, serve_path)
    orchestrator.enqueue_batch(
        [{"url": "https://cdn.example.com/v.mp4"}],
        BatchDownloadConfig(batch_id="nested", base_directory="runs", create_subdirectory=True, subdirectory_name="a/b"),
    )
    await orchestrator.process_batch("nested")
    assert (tmp_path / "runs" / "a" / "b" / "v.mp4").read_bytes() == b"/v.mp4"


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(tmp_path):
    seen = []

    async def on_batch_complete(batch_id, record):
        await asyncio.sleep(0)
        seen.append(batch_id)

    orchestrator = make_orchestrator(tmp_path, serve_path, on_batch_complete=on_batch_complete)
    orchestrator.enqueue_batch([{"url": "https://cdn.example.com/v.mp4"}], BatchDownloadConfig(batch_id="cb"))
    await orchestrator.process_batch("cb")
    await wait_until(lambda: seen == ["cb"])
