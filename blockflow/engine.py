"""Engine — the top-level entity. Owns one graph, queue, downloader and history."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from blockflow.batch import BatchConfig, BatchQueue, BatchSource, GenerateFn
from blockflow.config import DEFAULT_MODEL
from blockflow.downloads import DownloadConfig, DownloadOrchestrator
from blockflow.events import EventBus
from blockflow.graph import DependencyGraph, REFERENCE_PATTERN, resolve_references
from blockflow.history import ExecutionHistory
from blockflow.models import Block, Connection, ValidationResult, generate_id
from blockflow.schemas import (
    BatchRun,
    BatchStatus,
    BlockResult,
    ExecutionConfiguration,
    ExecutionStatus,
    Job,
    JobStatus,
    RetrySettings,
)
from blockflow.store import KeyValueStore

logger = logging.getLogger(__name__)

DOWNLOADABLE_PREFIXES = ("http://", "https://", "data:")


class Engine:
    """Runs block graphs through the batch queue and keeps the books."""

    def __init__(
        self,
        generate: GenerateFn | None = None,
        model: str = DEFAULT_MODEL,
        state_dir: Path | None = None,
        batch_config: BatchConfig | None = None,
        download_config: DownloadConfig | None = None,
        auto_download: bool = True,
        transport=None,
        engine_id: str | None = None,
    ):
        self.id = engine_id or generate_id("engine")
        self.model = model
        if generate is None:
            from blockflow.providers import create_provider
            generate = create_provider(model)

        self.store = KeyValueStore(state_dir)
        self.event_bus = EventBus(log_file=state_dir / "events.jsonl" if state_dir else None)
        self.graph = DependencyGraph()
        self.blocks: dict[str, Block] = {}
        self.history = ExecutionHistory(self.store)
        self.downloads = DownloadOrchestrator(download_config, event_bus=self.event_bus, transport=transport)
        self.queue = BatchQueue(
            generate,
            batch_config,
            store=self.store,
            sink=self._on_artifact,
            on_job_done=self._on_job_done,
            event_bus=self.event_bus,
        )
        self.auto_download = auto_download

        self._artifacts: dict[str, list[dict]] = {}
        self._watcher: asyncio.Task | None = None
        self._download_tasks: set[asyncio.Task] = set()

        logger.info(f"Engine {self.id} created (model {model})")

    # --- Graph ---

    def set_graph(self, blocks: list[Block], connections: list[Connection]) -> ValidationResult:
        """Replace the tracked blocks and edges. Edges are tracked even when invalid."""
        result = self.graph.validate(connections, blocks)
        self.blocks = {b.id: b for b in blocks}
        self.graph.upsert_edges(connections)
        if not result.is_valid:
            logger.warning(f"Graph has {len(result.errors)} validation errors")
        return result

    def validate(self) -> ValidationResult:
        return self.graph.validate(self.graph.connections(), self.blocks.values())

    def resolve_prompts(self, block_ids: list[str]) -> dict[str, str]:
        """Prompts for blocks whose content references upstream blocks, e.g. "[A01]"."""
        resolved = {}
        for block_id in block_ids:
            block = self.blocks.get(block_id)
            if block is None or block.type != "text" or not REFERENCE_PATTERN.search(block.content):
                continue
            resolved[block_id] = resolve_references(block.content.strip(), self.graph.upstream_of(block_id))
        return resolved

    # --- Batches ---

    async def start_batch(
        self,
        source: BatchSource,
        prompt_overrides: dict[str, str] | None = None,
        reference_artifact: str | None = None,
        template_name: str = "Untitled",
        template_id: str | None = None,
        execution_type: str = "batch",
    ) -> BatchRun:
        """Open an execution record and start the queue. Raises BatchConfigError on bad input."""
        overrides = {}
        if source.kind == "blocks":
            overrides = self.resolve_prompts([b.id for b in source.blocks])
        overrides.update(prompt_overrides or {})

        # Validates the input before anything is recorded
        jobs = self.queue.plan(source, overrides, reference_artifact)

        cfg = self.queue.config
        configuration = ExecutionConfiguration(
            template_id=template_id,
            batch_inputs=list(source.prompts),
            block_ids=list(dict.fromkeys(b.id for b in source.blocks)),
            prompt_overrides=dict(prompt_overrides or {}),
            reference_artifact=reference_artifact,
            retry=RetrySettings(max_retries=cfg.max_retries, retry_delay=cfg.retry_delay),
            provider_settings={"model": self.model, **cfg.settings},
        )
        execution_id = self.history.begin(
            configuration,
            total_blocks=len(jobs),
            template_name=template_name,
            execution_type=execution_type,
            template_id=template_id,
        )
        for job in jobs:
            self.history.record_block_result(execution_id, BlockResult(
                block_id=job.source_id,
                block_number=job.metadata.get("block_number", ""),
                block_type=job.block_type,
                status="pending",
                input=job.prompt,
            ))
            block = self.blocks.get(job.source_id)
            if block is not None:
                block.status = "processing"

        run = await self.queue.start(source, overrides, reference_artifact, execution_id=execution_id)
        self._artifacts[execution_id] = []
        self.event_bus.emit_simple("execution.started", execution_id, batch_id=run.id, total=run.total)
        self._watch(run)
        return run

    async def replay(self, execution_id: str) -> BatchRun:
        """Start a new batch with the configuration of an earlier execution."""
        configuration = self.history.configuration_for(execution_id)
        if configuration is None:
            raise KeyError(execution_id)
        original = self.history.get(execution_id)

        if configuration.block_ids:
            blocks = [self.blocks[b] for b in configuration.block_ids if b in self.blocks]
            source = BatchSource.from_blocks(blocks)
        else:
            source = BatchSource.from_prompts(configuration.batch_inputs)
        return await self.start_batch(
            source,
            prompt_overrides=configuration.prompt_overrides,
            reference_artifact=configuration.reference_artifact,
            template_name=original.template_name,
            template_id=configuration.template_id,
            execution_type=original.execution_type,
        )

    def pause(self) -> bool:
        return self.queue.pause()

    async def resume(self) -> bool:
        resumed = await self.queue.resume()
        if resumed and (self._watcher is None or self._watcher.done()):
            self._watch(self.queue.run)
        return resumed

    async def stop(self) -> bool:
        return await self.queue.stop()

    def recover(self) -> bool:
        """Load the last batch snapshot as a paused run."""
        return self.queue.load_state()

    async def wait(self):
        """Wait for the current batch, its execution record and its downloads."""
        if self._watcher is not None:
            await self._watcher
        if self._download_tasks:
            await asyncio.gather(*list(self._download_tasks), return_exceptions=True)

    async def close(self):
        """Stop a processing or paused batch and wait for its record to close."""
        await self.queue.stop()
        await self.wait()

    def summary(self) -> dict:
        return {
            "id": self.id,
            "model": self.model,
            "blocks": len(self.blocks),
            "connections": len(self.graph.connections()),
            "batch": self.queue.progress().to_dict(),
            "downloads": self.downloads.progress().to_dict(),
            "running_executions": [r.id for r in self.history.running()],
        }

    # --- Callbacks ---

    def _watch(self, run: BatchRun | None):
        if run is None or not run.execution_id:
            return
        self._watcher = asyncio.create_task(self._finish_when_settled(run.execution_id))

    async def _on_artifact(self, job_id: str, source_id: str, artifact):
        block = self.blocks.get(source_id)
        if block is not None and isinstance(artifact, str):
            block.content = artifact
            block.status = "idle"
            self.graph.record_output(block.id, artifact, block.type, block.number, block)

        run = self.queue.run
        if (
            self.auto_download
            and run is not None
            and isinstance(artifact, str)
            and artifact.startswith(DOWNLOADABLE_PREFIXES)
        ):
            job = run.get(job_id)
            self._artifacts.setdefault(run.execution_id, []).append({
                "url": artifact,
                "block_id": source_id,
                "block_number": (job.metadata.get("block_number") if job else None) or source_id,
            })

    def _on_job_done(self, job: Job):
        run = self.queue.run
        if run is None or not run.execution_id:
            return
        is_url = bool(job.artifact_url and job.artifact_url.startswith(DOWNLOADABLE_PREFIXES))
        self.history.record_block_result(run.execution_id, BlockResult(
            block_id=job.source_id,
            block_number=job.metadata.get("block_number", ""),
            block_type=job.block_type,
            status=job.status.value,
            start_time=job.started_at,
            end_time=job.completed_at,
            duration=job.processing_time,
            input=job.prompt,
            output=None if is_url else job.artifact_url,
            output_url=job.artifact_url if is_url else None,
            error=job.error if job.status == JobStatus.FAILED else None,
            retry_count=job.retry_count,
        ))
        block = self.blocks.get(job.source_id)
        if block is not None and job.status == JobStatus.FAILED:
            block.status = "error"

    async def _finish_when_settled(self, execution_id: str):
        run = await self.queue.wait()
        if run is None or run.execution_id != execution_id:
            return

        record = self.history.get(execution_id)
        if record is not None:
            jobs = {j.source_id: j for j in run.jobs}
            for result in record.results:
                if result.status not in ("pending", "running"):
                    continue
                job = jobs.get(result.block_id)
                if job is not None and job.status == JobStatus.FAILED:
                    # Cancelled while generating
                    self._on_job_done(job)
                    continue
                self.history.record_block_result(
                    execution_id, BlockResult(block_id=result.block_id, status="skipped")
                )
                block = self.blocks.get(result.block_id)
                if block is not None:
                    block.status = "idle"

        if run.status == BatchStatus.STOPPED:
            status, error = ExecutionStatus.CANCELLED, "Stopped by user"
        elif run.total and run.failed == run.total:
            status, error = ExecutionStatus.FAILED, f"All {run.total} jobs failed"
        else:
            status, error = ExecutionStatus.COMPLETED, None

        artifacts = self._artifacts.pop(execution_id, [])
        if artifacts and status != ExecutionStatus.CANCELLED:
            ids = self.downloads.enqueue_execution(artifacts, execution_id)
            self.history.update_metadata(execution_id, download_batch_id=f"execution_{execution_id}", downloads=len(ids))
            task = asyncio.create_task(self.downloads.process_batch(f"execution_{execution_id}"))
            self._download_tasks.add(task)
            task.add_done_callback(self._download_tasks.discard)

        self.history.finish(execution_id, status, error)
        self.event_bus.emit_simple(
            "execution.finished", execution_id, status=status.value, completed=run.completed, failed=run.failed
        )
        logger.info(f"Execution {execution_id} finished: {status.value}")
