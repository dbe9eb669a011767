"""FastAPI server — all endpoints for the blockflow API."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from blockflow.batch import BatchConfig, BatchConfigError, BatchSource
from blockflow.config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MODEL,
    DEFAULT_RETRY_DELAY,
    DEFAULT_WORKERS,
    REQUESTS_PER_MINUTE,
    REQUESTS_PER_SECOND,
    SERVER_HOST,
    SERVER_PORT,
    STATE_DIR,
)
from blockflow.downloads import BatchDownloadConfig, DownloadConfig
from blockflow.engine import Engine
from blockflow.models import Block, Connection, DataFlow, generate_id
from blockflow.prompt_parser import ParseOptions, parse_content
from blockflow.scheduling import RateLimitConfig
from blockflow.schemas import ExecutionStatus, HistoryFilter

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Blockflow", version="1.0", description="Block graph batch generation engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Engine registry: all live engines
engine_registry: dict[str, Engine] = {}


# ---------------------------------------------------------------------------
# Request / Response Models
# ---------------------------------------------------------------------------


class CreateEngineRequest(BaseModel):
    model: str = DEFAULT_MODEL
    workers: int = DEFAULT_WORKERS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    requests_per_minute: int = REQUESTS_PER_MINUTE
    requests_per_second: float = REQUESTS_PER_SECOND
    auto_download: bool = True
    download_dir: str | None = None
    persist: bool = True


class BlockIn(BaseModel):
    id: str
    type: str = "text"
    number: str = ""
    content: str = ""
    attachment_content: str | None = None
    original_prompt: str | None = None


class ConnectionIn(BaseModel):
    id: str
    from_id: str
    to_id: str
    instruction: str = ""
    enabled: bool = True


class GraphRequest(BaseModel):
    blocks: list[BlockIn] = Field(default_factory=list)
    connections: list[ConnectionIn] = Field(default_factory=list)


class StartBatchRequest(BaseModel):
    block_ids: list[str] = Field(default_factory=list)
    prompts: list[str] = Field(default_factory=list)
    prompt_overrides: dict[str, str] = Field(default_factory=dict)
    reference_artifact: str | None = None
    template_name: str = "Untitled"
    template_id: str | None = None
    execution_type: str = "batch"


class ParseRequest(BaseModel):
    content: str
    max_prompts: int = 50
    min_prompt_length: int = 5
    max_prompt_length: int = 2000


class DownloadRequest(BaseModel):
    url: str
    filename: str | None = None


class DownloadBatchRequest(BaseModel):
    urls: list[str]
    execution_id: str | None = None
    subdirectory_name: str | None = None
    naming: str | None = None


# ---------------------------------------------------------------------------
# Engine Lifecycle
# ---------------------------------------------------------------------------


@app.post("/engines")
async def create_engine(req: CreateEngineRequest) -> dict:
    """Create an engine bound to one generation model."""
    engine_id = generate_id("engine")
    batch_config = BatchConfig(
        workers=req.workers,
        max_retries=req.max_retries,
        retry_delay=req.retry_delay,
        rate_limit=RateLimitConfig(
            requests_per_minute=req.requests_per_minute,
            requests_per_second=req.requests_per_second,
        ),
    )
    try:
        engine = Engine(
            model=req.model,
            state_dir=STATE_DIR / engine_id if req.persist else None,
            batch_config=batch_config,
            auto_download=req.auto_download,
            download_config=DownloadConfig(directory=Path(req.download_dir)) if req.download_dir else None,
            engine_id=engine_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    engine_registry[engine.id] = engine
    logger.info(f"Engine {engine.id} registered ({req.model})")
    return engine.summary()


@app.get("/engines")
async def list_engines() -> list[dict]:
    return [e.summary() for e in engine_registry.values()]


@app.get("/engines/{engine_id}")
async def get_engine(engine_id: str) -> dict:
    return _get_engine(engine_id).summary()


@app.delete("/engines/{engine_id}")
async def delete_engine(engine_id: str) -> dict:
    """Stop any running batch and remove the engine."""
    engine = _get_engine(engine_id)
    await engine.close()
    engine_registry.pop(engine_id, None)
    return {"status": "deleted", "id": engine_id}


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


@app.put("/engines/{engine_id}/graph")
async def set_graph(engine_id: str, req: GraphRequest) -> dict:
    """Replace the block graph. Invalid graphs are stored and reported, not rejected."""
    engine = _get_engine(engine_id)
    blocks = [Block(**b.model_dump()) for b in req.blocks]
    connections = [
        Connection(
            id=c.id,
            from_id=c.from_id,
            to_id=c.to_id,
            instruction=c.instruction,
            data_flow=DataFlow(enabled=c.enabled),
        )
        for c in req.connections
    ]
    return engine.set_graph(blocks, connections).to_dict()


@app.get("/engines/{engine_id}/graph")
async def get_graph(engine_id: str) -> dict:
    engine = _get_engine(engine_id)
    return {
        "blocks": [b.to_dict() for b in engine.blocks.values()],
        "connections": [c.to_dict() for c in engine.graph.connections()],
    }


@app.get("/engines/{engine_id}/graph/validate")
async def validate_graph(engine_id: str) -> dict:
    return _get_engine(engine_id).validate().to_dict()


@app.get("/engines/{engine_id}/blocks/{block_id}/upstream")
async def get_upstream(engine_id: str, block_id: str) -> dict:
    """What a block would see from its enabled incoming edges."""
    engine = _get_engine(engine_id)
    if block_id not in engine.blocks:
        raise HTTPException(status_code=404, detail=f"Block {block_id} not found")
    graph = engine.graph
    return {
        "block_id": block_id,
        "upstream": [d.to_dict() for d in graph.upstream_of(block_id)],
        "variables": graph.available_variables(block_id),
        "summaries": graph.upstream_summaries(block_id),
        "description": graph.describe_upstream(block_id),
    }


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


@app.post("/engines/{engine_id}/prompts/parse")
async def parse_prompts(engine_id: str, req: ParseRequest) -> dict:
    """Split an uploaded prompt file into batch prompts."""
    _get_engine(engine_id)
    options = ParseOptions(
        max_prompts=req.max_prompts,
        min_prompt_length=req.min_prompt_length,
        max_prompt_length=req.max_prompt_length,
    )
    return parse_content(req.content, options).to_dict()


@app.post("/engines/{engine_id}/batch")
async def start_batch(engine_id: str, req: StartBatchRequest) -> dict:
    """Start a batch from graph blocks or from a list of prompts."""
    engine = _get_engine(engine_id)
    if req.block_ids and req.prompts:
        raise HTTPException(status_code=400, detail="Give either block_ids or prompts, not both")

    if req.block_ids:
        missing = [b for b in req.block_ids if b not in engine.blocks]
        if missing:
            raise HTTPException(status_code=404, detail=f"Blocks not found: {', '.join(missing)}")
        source = BatchSource.from_blocks([engine.blocks[b] for b in req.block_ids])
    else:
        source = BatchSource.from_prompts(req.prompts)

    try:
        run = await engine.start_batch(
            source,
            prompt_overrides=req.prompt_overrides,
            reference_artifact=req.reference_artifact,
            template_name=req.template_name,
            template_id=req.template_id,
            execution_type=req.execution_type,
        )
    except (BatchConfigError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"batch_id": run.id, "execution_id": run.execution_id, "total": run.total}


@app.get("/engines/{engine_id}/batch")
async def get_batch(engine_id: str) -> dict:
    return _get_engine(engine_id).queue.progress().to_dict()


@app.get("/engines/{engine_id}/batch/jobs")
async def get_batch_jobs(engine_id: str) -> list[dict]:
    run = _get_engine(engine_id).queue.run
    if run is None:
        return []
    return [j.model_dump(mode="json") for j in run.jobs]


@app.get("/engines/{engine_id}/batch/analytics")
async def get_batch_analytics(engine_id: str) -> dict:
    return _get_engine(engine_id).queue.analytics()


@app.post("/engines/{engine_id}/batch/pause")
async def pause_batch(engine_id: str) -> dict:
    engine = _get_engine(engine_id)
    if not engine.pause():
        raise HTTPException(status_code=409, detail="No batch is processing")
    return {"status": "paused"}


@app.post("/engines/{engine_id}/batch/resume")
async def resume_batch(engine_id: str) -> dict:
    engine = _get_engine(engine_id)
    if not await engine.resume():
        raise HTTPException(status_code=409, detail="No paused batch")
    return {"status": "processing"}


@app.post("/engines/{engine_id}/batch/stop")
async def stop_batch(engine_id: str) -> dict:
    engine = _get_engine(engine_id)
    if not await engine.stop():
        raise HTTPException(status_code=409, detail="No active batch")
    return {"status": "stopped"}


@app.post("/engines/{engine_id}/batch/recover")
async def recover_batch(engine_id: str) -> dict:
    """Load the saved batch snapshot as a paused run."""
    engine = _get_engine(engine_id)
    if not engine.recover():
        raise HTTPException(status_code=404, detail="No saved batch state")
    return engine.queue.progress().to_dict()


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------


@app.get("/engines/{engine_id}/downloads")
async def list_downloads(engine_id: str, status: str | None = None) -> list[dict]:
    items = _get_engine(engine_id).downloads.items()
    if status:
        items = [i for i in items if i.status == status]
    return [i.to_dict() for i in items]


@app.post("/engines/{engine_id}/downloads")
async def enqueue_download(engine_id: str, req: DownloadRequest) -> dict:
    engine = _get_engine(engine_id)
    download_id = engine.downloads.enqueue(req.url, req.filename)
    _spawn(engine.downloads.process_queue())
    return {"id": download_id}


@app.post("/engines/{engine_id}/downloads/batches")
async def enqueue_download_batch(engine_id: str, req: DownloadBatchRequest) -> dict:
    engine = _get_engine(engine_id)
    batch_id = generate_id("batch")
    try:
        ids = engine.downloads.enqueue_batch(
            [{"url": url} for url in req.urls],
            BatchDownloadConfig(
                execution_id=req.execution_id,
                batch_id=batch_id,
                create_subdirectory=bool(req.subdirectory_name),
                subdirectory_name=req.subdirectory_name,
                naming=req.naming,
            ),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _spawn(engine.downloads.process_batch(batch_id))
    return {"batch_id": batch_id, "ids": ids}


@app.get("/engines/{engine_id}/downloads/progress")
async def get_download_progress(engine_id: str) -> dict:
    downloads = _get_engine(engine_id).downloads
    return {
        "progress": downloads.progress().to_dict(),
        "batches": [b.to_dict() for b in downloads.all_batch_progress()],
    }


@app.get("/engines/{engine_id}/downloads/batches/{batch_id}")
async def get_download_batch(engine_id: str, batch_id: str) -> dict:
    downloads = _get_engine(engine_id).downloads
    record = downloads.batch_record(batch_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Download batch {batch_id} not found")
    return {**record.to_dict(), "items": [i.to_dict() for i in downloads.batch_items(batch_id)]}


@app.post("/engines/{engine_id}/downloads/batches/{batch_id}/cancel")
async def cancel_download_batch(engine_id: str, batch_id: str) -> dict:
    cancelled = _get_engine(engine_id).downloads.cancel_batch(batch_id)
    return {"cancelled": cancelled}


@app.post("/engines/{engine_id}/downloads/batches/{batch_id}/retry")
async def retry_download_batch(engine_id: str, batch_id: str) -> dict:
    downloads = _get_engine(engine_id).downloads
    if downloads.batch_record(batch_id) is None:
        raise HTTPException(status_code=404, detail=f"Download batch {batch_id} not found")
    return {"retried": await downloads.retry_batch(batch_id)}


@app.get("/engines/{engine_id}/downloads/executions/{execution_id}")
async def get_execution_downloads(engine_id: str, execution_id: str) -> dict:
    downloads = _get_engine(engine_id).downloads
    return {
        "progress": downloads.execution_progress(execution_id).to_dict(),
        "items": [i.to_dict() for i in downloads.execution_items(execution_id)],
    }


@app.post("/engines/{engine_id}/downloads/retry")
async def retry_downloads(engine_id: str) -> dict:
    return {"retried": await _get_engine(engine_id).downloads.retry_failed()}


@app.post("/engines/{engine_id}/downloads/clear")
async def clear_downloads(engine_id: str, completed_only: bool = True) -> dict:
    downloads = _get_engine(engine_id).downloads
    if completed_only:
        downloads.clear_completed()
    else:
        downloads.clear_all()
    return downloads.progress().to_dict()


@app.post("/engines/{engine_id}/downloads/{download_id}/cancel")
async def cancel_download(engine_id: str, download_id: str) -> dict:
    downloads = _get_engine(engine_id).downloads
    if downloads.get(download_id) is None:
        raise HTTPException(status_code=404, detail=f"Download {download_id} not found")
    return {"cancelled": downloads.cancel(download_id)}


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@app.get("/engines/{engine_id}/history")
async def list_history(
    engine_id: str,
    template_id: str | None = None,
    template_name: str | None = None,
    execution_type: str | None = None,
    status: ExecutionStatus | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> list[dict]:
    history = _get_engine(engine_id).history
    records = history.list(HistoryFilter(
        template_id=template_id,
        template_name=template_name,
        execution_type=execution_type,
        status=status,
        limit=limit,
        offset=offset,
    ))
    return [r.model_dump(mode="json") for r in records]


@app.get("/engines/{engine_id}/history/stats")
async def history_stats(engine_id: str) -> dict:
    return _get_engine(engine_id).history.statistics().model_dump(mode="json")


@app.get("/engines/{engine_id}/history/export")
async def export_history(engine_id: str) -> dict:
    return json.loads(_get_engine(engine_id).history.export_json())


@app.get("/engines/{engine_id}/history/{execution_id}")
async def get_execution(engine_id: str, execution_id: str) -> dict:
    return _get_record(_get_engine(engine_id), execution_id).model_dump(mode="json")


@app.get("/engines/{engine_id}/history/{execution_id}/config")
async def get_execution_config(engine_id: str, execution_id: str) -> dict:
    engine = _get_engine(engine_id)
    _get_record(engine, execution_id)
    return engine.history.configuration_for(execution_id).model_dump(mode="json")


@app.post("/engines/{engine_id}/history/{execution_id}/replay")
async def replay_execution(engine_id: str, execution_id: str) -> dict:
    """Start a new batch with the configuration of an earlier execution."""
    engine = _get_engine(engine_id)
    _get_record(engine, execution_id)
    try:
        run = await engine.replay(execution_id)
    except (BatchConfigError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"batch_id": run.id, "execution_id": run.execution_id, "total": run.total}


@app.delete("/engines/{engine_id}/history/{execution_id}")
async def delete_execution(engine_id: str, execution_id: str) -> dict:
    engine = _get_engine(engine_id)
    if not engine.history.delete(execution_id):
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return {"status": "deleted", "id": execution_id}


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@app.websocket("/engines/{engine_id}/events")
async def event_stream(websocket: WebSocket, engine_id: str):
    """WebSocket stream of engine events."""
    await websocket.accept()
    engine = _get_engine_safe(engine_id)
    if not engine:
        await websocket.close(code=4004, reason="Engine not found")
        return

    queue = engine.event_bus.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        engine.event_bus.unsubscribe(queue)


@app.get("/engines/{engine_id}/events")
async def get_events(engine_id: str, limit: int = 50, offset: int = 0, type: str | None = None) -> list[dict]:
    """Get recent events (polling fallback)."""
    engine = _get_engine(engine_id)
    events = engine.event_bus.recent(limit=limit, offset=offset, type_prefix=type)
    return [e.to_dict() for e in events]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


_background: set[asyncio.Task] = set()


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


def _get_engine(engine_id: str) -> Engine:
    engine = engine_registry.get(engine_id)
    if not engine:
        raise HTTPException(status_code=404, detail=f"Engine {engine_id} not found")
    return engine


def _get_engine_safe(engine_id: str) -> Engine | None:
    return engine_registry.get(engine_id)


def _get_record(engine: Engine, execution_id: str):
    record = engine.history.get(execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return record


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the blockflow server."""
    print(f"Starting blockflow server on {SERVER_HOST}:{SERVER_PORT}")
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
