"""Test the engine end to end with a fake generation callback."""

import asyncio

import httpx
import pytest

from blockflow.batch import BatchConfigError, BatchSource
from blockflow.downloads import DownloadConfig
from blockflow.engine import Engine
from blockflow.models import Block, Connection
from blockflow.schemas import ExecutionStatus
from conftest import fast_batch_config, wait_until


async def echo(payload, settings):
    return f"out:{payload['prompt']}"


def make_engine(tmp_path, generate=echo, state_dir=None, **config):
    return Engine(
        generate=generate,
        state_dir=state_dir,
        batch_config=fast_batch_config(**config),
        download_config=DownloadConfig(directory=tmp_path / "downloads", retry_delay=0),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"video-bytes")),
    )


@pytest.mark.asyncio
async def test_batch_records_execution(tmp_path):
    engine = make_engine(tmp_path)
    blocks = [Block(id="a", number="A01", content="a"), Block(id="b", content=""), Block(id="c", content="c")]
    engine.set_graph(blocks, [])

    run = await engine.start_batch(BatchSource.from_blocks(blocks), template_name="Three blocks")
    await asyncio.wait_for(engine.wait(), timeout=5)

    assert (run.total, run.completed, run.failed, run.pending) == (2, 2, 0, 0)
    record = engine.history.get(run.execution_id)
    assert record.status == ExecutionStatus.COMPLETED
    assert record.template_name == "Three blocks"
    assert record.total_blocks == 2
    assert record.completed_blocks == 2
    assert {r.block_id: r.output for r in record.results} == {"a": "out:a", "c": "out:c"}
    assert record.configuration.block_ids == ["a", "b", "c"]

    assert engine.blocks["a"].content == "out:a"
    assert engine.blocks["a"].status == "idle"
    assert engine.graph.output_of("a").content == "out:a"
    assert [e.type for e in engine.event_bus.recent(type_prefix="execution.")] == [
        "execution.started", "execution.finished",
    ]


@pytest.mark.asyncio
async def test_references_resolve_from_upstream_output(tmp_path):
    prompts = []

    async def record(payload, settings):
        prompts.append(payload["prompt"])
        return f"out:{payload['prompt']}"

    engine = make_engine(tmp_path, record)
    a = Block(id="a", number="A01", content="a cat")
    b = Block(id="b", number="B01", content="Describe [A01] in detail")
    engine.set_graph([a, b], [Connection(id="ab", from_id="a", to_id="b")])

    await engine.start_batch(BatchSource.from_blocks([a]))
    await engine.wait()
    await engine.start_batch(BatchSource.from_blocks([b]))
    await engine.wait()

    assert prompts == ["a cat", "Describe out:a cat in detail"]
    assert engine.graph.connection("ab").data_flow.last_data == "out:a cat"


@pytest.mark.asyncio
async def test_url_artifacts_are_downloaded(tmp_path):
    async def video(payload, settings):
        return f"https://cdn.example.com/v/{payload['source_id']}.mp4"

    engine = make_engine(tmp_path, video)
    blocks = [Block(id="v1", type="video", number="V01", content="https://cdn.example.com/src.mp4")]
    engine.set_graph(blocks, [])

    run = await engine.start_batch(BatchSource.from_blocks(blocks))
    await asyncio.wait_for(engine.wait(), timeout=5)

    record = engine.history.get(run.execution_id)
    assert record.results[0].output_url == "https://cdn.example.com/v/v1.mp4"
    assert record.results[0].output is None
    assert record.metadata["download_batch_id"] == f"execution_{run.execution_id}"

    items = engine.downloads.execution_items(run.execution_id)
    assert [i.status for i in items] == ["completed"]
    assert items[0].filename == "V01_v1.mp4"


@pytest.mark.asyncio
async def test_text_artifacts_are_not_downloaded(tmp_path):
    engine = make_engine(tmp_path)
    await engine.start_batch(BatchSource.from_prompts(["a long enough prompt"]))
    await engine.wait()
    assert engine.downloads.items() == []


@pytest.mark.asyncio
async def test_all_jobs_failing_fails_the_execution(tmp_path):
    async def fails(payload, settings):
        raise RuntimeError("provider down")

    engine = make_engine(tmp_path, fails, max_retries=1)
    blocks = [Block(id="a", content="first"), Block(id="b", content="second")]
    engine.set_graph(blocks, [])

    run = await engine.start_batch(BatchSource.from_blocks(blocks))
    await asyncio.wait_for(engine.wait(), timeout=5)

    record = engine.history.get(run.execution_id)
    assert record.status == ExecutionStatus.FAILED
    assert record.failed_blocks == 2
    assert record.results[0].error == "provider down"
    assert engine.blocks["a"].status == "error"


@pytest.mark.asyncio
async def test_stop_cancels_the_execution(tmp_path):
    async def hangs(payload, settings):
        await asyncio.Event().wait()

    engine = make_engine(tmp_path, hangs, workers=1)
    blocks = [Block(id=i, content=f"prompt {i}") for i in ("a", "b", "c")]
    engine.set_graph(blocks, [])

    run = await engine.start_batch(BatchSource.from_blocks(blocks))
    await wait_until(lambda: run.generating == 1)
    assert await engine.stop()
    await asyncio.wait_for(engine.wait(), timeout=5)

    record = engine.history.get(run.execution_id)
    assert record.status == ExecutionStatus.CANCELLED
    assert record.error == "Stopped by user"
    assert record.failed_blocks == 1
    assert record.skipped_blocks == 2
    assert all(b.status != "processing" for b in engine.blocks.values())


@pytest.mark.asyncio
async def test_invalid_batch_records_nothing(tmp_path):
    engine = make_engine(tmp_path)
    with pytest.raises(BatchConfigError):
        await engine.start_batch(BatchSource.from_blocks([Block(content="")]))
    assert engine.history.list() == []


@pytest.mark.asyncio
async def test_replay_reuses_configuration(tmp_path):
    prompts = []

    async def record(payload, settings):
        prompts.append(payload["prompt"])
        return "ok"

    engine = make_engine(tmp_path, record)
    first = await engine.start_batch(
        BatchSource.from_prompts(["first long prompt", "second long prompt"]), template_name="Replayable"
    )
    await engine.wait()

    second = await engine.replay(first.execution_id)
    await engine.wait()

    assert second.execution_id != first.execution_id
    assert sorted(prompts) == sorted(["first long prompt", "second long prompt"] * 2)
    assert engine.history.get(second.execution_id).template_name == "Replayable"
    with pytest.raises(KeyError):
        await engine.replay("exec_missing")


@pytest.mark.asyncio
async def test_recover_after_restart(tmp_path):
    state_dir = tmp_path / "state"

    async def hangs(payload, settings):
        await asyncio.Event().wait()

    first = make_engine(tmp_path, hangs, state_dir=state_dir, workers=1)
    run = await first.start_batch(BatchSource.from_prompts(["first long prompt", "second long prompt"]))
    await wait_until(lambda: run.generating == 1)
    assert first.pause()

    second = make_engine(tmp_path, echo, state_dir=state_dir)
    assert second.recover()
    assert second.queue.run.pending == 2
    assert await second.resume()
    await asyncio.wait_for(second.wait(), timeout=5)

    record = second.history.get(run.execution_id)
    assert record.status == ExecutionStatus.COMPLETED
    assert record.completed_blocks == 2

    await first.close()


def test_set_graph_tracks_invalid_edges(tmp_path):
    engine = make_engine(tmp_path)
    blocks = [Block(id="a"), Block(id="b")]
    result = engine.set_graph(blocks, [
        Connection(id="ab", from_id="a", to_id="b"),
        Connection(id="ba", from_id="b", to_id="a"),
    ])
    assert not result.is_valid
    assert len(engine.graph.connections()) == 2
    assert engine.validate().to_dict() == result.to_dict()


def test_summary(tmp_path):
    engine = make_engine(tmp_path)
    summary = engine.summary()
    assert summary["id"] == engine.id
    assert summary["blocks"] == 0
    assert summary["batch"]["total"] == 0
    assert summary["running_executions"] == []
