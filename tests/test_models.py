"""Test data models and persisted schemas."""

from blockflow.models import (
    Block,
    Connection,
    DownloadItem,
    DownloadProgress,
    ValidationIssue,
    ValidationResult,
    generate_id,
)
from blockflow.schemas import BatchRun, ExecutionRecord, ExecutionStatus, Job, JobStatus


def test_generate_id():
    id1 = generate_id("task")
    id2 = generate_id("task")
    assert id1.startswith("task_")
    assert id1 != id2
    assert "_" not in generate_id()


def test_block_to_dict():
    block = Block(id="b1", type="image", number="B01", content="https://x/y.png")
    d = block.to_dict()
    assert d["id"] == "b1"
    assert d["type"] == "image"
    assert d["status"] == "idle"


def test_connection_defaults():
    conn = Connection(id="c1", from_id="a", to_id="b")
    assert conn.data_flow.enabled
    assert conn.data_flow.last_data is None
    assert conn.to_dict()["data_flow"]["data_type"] == "text"


def test_validation_result():
    result = ValidationResult()
    assert result.is_valid
    result.errors.append(ValidationIssue(type="missing_block", message="gone", block_id="x"))
    assert not result.is_valid
    assert result.to_dict()["errors"][0]["block_id"] == "x"


def test_download_item_truncates_long_urls():
    item = DownloadItem(url="data:image/png;base64," + "A" * 2000, filename="a.png")
    d = item.to_dict()
    assert len(d["url"]) == 503
    assert d["url"].endswith("...")


def test_download_progress_settled():
    assert DownloadProgress(total=2, completed=1, failed=1).settled
    assert not DownloadProgress(total=2, completed=1, pending=1).settled
    assert not DownloadProgress(total=1, downloading=1).settled


def test_batch_run_counters_follow_jobs():
    run = BatchRun(jobs=[Job(source_id=f"s{i}", prompt="p") for i in range(4)])
    assert (run.total, run.pending, run.completed) == (4, 4, 0)

    run.jobs[0].status = JobStatus.COMPLETED
    run.jobs[1].status = JobStatus.FAILED
    run.jobs[2].status = JobStatus.GENERATING
    assert run.completed == 1
    assert run.failed == 1
    assert run.generating == 1
    assert run.pending == 1
    assert run.completed + run.failed + run.pending + run.generating == run.total
    assert not run.settled

    run.jobs[2].status = JobStatus.COMPLETED
    run.jobs[3].status = JobStatus.COMPLETED
    assert run.settled


def test_batch_run_get():
    job = Job(source_id="s", prompt="p")
    run = BatchRun(jobs=[job])
    assert run.get(job.id) is job
    assert run.get("missing") is None


def test_job_payload():
    job = Job(source_id="b1", block_type="image", prompt="draw", reference="https://ref")
    payload = job.payload()
    assert payload["prompt"] == "draw"
    assert payload["block_type"] == "image"
    assert payload["reference"] == "https://ref"


def test_execution_record_terminal():
    record = ExecutionRecord()
    assert record.status == ExecutionStatus.RUNNING
    assert not record.is_terminal
    record.status = ExecutionStatus.CANCELLED
    assert record.is_terminal


def test_batch_run_round_trips_through_json():
    run = BatchRun(jobs=[Job(source_id="s", prompt="p", status=JobStatus.COMPLETED)])
    restored = BatchRun.model_validate(run.model_dump(mode="json"))
    assert restored.id == run.id
    assert restored.jobs[0].status == JobStatus.COMPLETED
