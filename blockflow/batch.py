"""Batch job queue — turns blocks or file prompts into jobs and runs them on a worker pool.

Jobs wait in an asyncio.PriorityQueue. Each worker task pulls the next job id,
passes resource admission and the rate limiter, then runs the generation
callback as a child task so stop() can cancel it. Failed jobs go back on the
queue after an exponential backoff until their retry budget is spent.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import ValidationError

from blockflow import config
from blockflow.models import Block, BatchProgress
from blockflow.scheduling import (
    CompletionTimePredictor,
    PerformanceMetrics,
    RateLimitConfig,
    RateLimiter,
    RemainingItem,
    ResourceMonitor,
    ResourceThresholds,
)
from blockflow.schemas import BatchRun, BatchStatus, Job, JobStatus
from blockflow.store import BATCH_STATE_KEY, KeyValueStore

if TYPE_CHECKING:
    from blockflow.events import EventBus

logger = logging.getLogger(__name__)

GenerateFn = Callable[[dict, dict], Awaitable[Any]]
SinkFn = Callable[[str, str, Any], Any]

CONSISTENCY_PREAMBLE = (
    "Global instruction: every character or product that appears must use the "
    "provided reference image as its only visual source. Keep identity, shape, "
    "proportions, clothing, materials and style exactly as in the reference. Do "
    "not redesign, replace, stylize, beautify or otherwise alter the reference "
    "subject. Faces, bodies, outfits, textures, logos, colors and outlines must "
    "match the reference. When the prompt conflicts with the reference image, "
    "the reference image wins."
)

DEFAULT_PROMPTS = {
    "image": "Generate content based on the image, keeping its visual style consistent",
    "video": "Refine and enhance the existing video content",
}

COMPLEXITY_BY_TYPE = {"text": "low", "image": "medium", "video": "high"}
DURATION_FACTOR_BY_TYPE = {"text": 1.0, "image": 1.2, "video": 1.5}
MEMORY_MB_BY_TYPE = {"text": 50, "image": 100, "video": 200}
BASE_DURATION = 30.0  # seconds per item
VIDEO_PRIORITY_BOOST = 5


class BatchConfigError(ValueError):
    """The batch input is unusable; nothing was created."""


@dataclass
class BatchSource:
    kind: str  # blocks | file
    blocks: list[Block] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)

    @classmethod
    def from_blocks(cls, blocks: list[Block]) -> BatchSource:
        return cls(kind="blocks", blocks=list(blocks))

    @classmethod
    def from_prompts(cls, prompts: list[str]) -> BatchSource:
        return cls(kind="file", prompts=list(prompts))


@dataclass
class BatchConfig:
    workers: int = config.DEFAULT_WORKERS
    max_retries: int = config.DEFAULT_MAX_RETRIES
    retry_delay: float = config.DEFAULT_RETRY_DELAY  # base of the exponential backoff
    max_items: int = config.MAX_BATCH_ITEMS
    min_prompt_length: int = config.MIN_PROMPT_LENGTH
    admission_delay: float = 1.0  # pause between resource checks while constrained
    state_max_age: float = config.BATCH_STATE_MAX_AGE
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    thresholds: ResourceThresholds = field(default_factory=ResourceThresholds)
    settings: dict = field(default_factory=dict)  # handed to the generation callback

    def to_dict(self) -> dict:
        return {
            "workers": self.workers,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "max_items": self.max_items,
            "min_prompt_length": self.min_prompt_length,
        }


def apply_consistency_preamble(prompt: str, reference: str | None) -> str:
    if not reference:
        return prompt
    return f"{CONSISTENCY_PREAMBLE}\n\n{prompt}"


class BatchQueue:
    """One active batch run at a time, dispatched by a pool of worker tasks."""

    def __init__(
        self,
        generate: GenerateFn,
        batch_config: BatchConfig | None = None,
        store: KeyValueStore | None = None,
        sink: SinkFn | None = None,
        on_progress: Callable[[BatchProgress], None] | None = None,
        on_job_done: Callable[[Job], Any] | None = None,
        event_bus: "EventBus | None" = None,
        rate_limiter: RateLimiter | None = None,
        resource_monitor: ResourceMonitor | None = None,
        predictor: CompletionTimePredictor | None = None,
    ):
        self.config = batch_config or BatchConfig()
        self._generate = generate
        self._store = store or KeyValueStore()
        self._sink = sink
        self._on_progress = on_progress
        self._on_job_done = on_job_done
        self._event_bus = event_bus
        self.rate_limiter = rate_limiter or RateLimiter(self.config.rate_limit)
        self.resource_monitor = resource_monitor or ResourceMonitor()
        self.predictor = predictor or CompletionTimePredictor()
        self.metrics = PerformanceMetrics()

        self.run: BatchRun | None = None
        self._queue: asyncio.PriorityQueue | None = None
        self._workers: list[asyncio.Task] = []
        self._inflight: dict[str, asyncio.Task] = {}
        self._retry_tasks: set[asyncio.Task] = set()
        self._dispatch: asyncio.Event | None = None
        self._settled: asyncio.Event | None = None
        self._seq = itertools.count()

    @property
    def is_processing(self) -> bool:
        return self.run is not None and self.run.status == BatchStatus.PROCESSING

    # --- Commands ---

    async def start(
        self,
        source: BatchSource,
        prompt_overrides: dict[str, str] | None = None,
        reference_artifact: str | None = None,
        execution_id: str | None = None,
    ) -> BatchRun:
        """Build the jobs and start dispatching. Returns without waiting for completion."""
        if self.is_processing:
            raise BatchConfigError("A batch is already processing; stop it first")

        jobs = self.plan(source, prompt_overrides, reference_artifact)
        self.run = BatchRun(jobs=jobs, execution_id=execution_id)
        logger.info(f"Batch {self.run.id} started with {len(jobs)} jobs ({self.config.workers} workers)")
        self._emit("batch.started", total=len(jobs), execution_id=execution_id)

        await self._launch()
        self.save_state()
        return self.run

    async def wait(self) -> BatchRun | None:
        """Block until the current run completes or is stopped."""
        if self._settled is not None:
            await self._settled.wait()
        return self.run

    def pause(self) -> bool:
        if not self.is_processing:
            return False
        self.run.status = BatchStatus.PAUSED
        if self._dispatch:
            self._dispatch.clear()
        logger.info(f"Batch {self.run.id} paused")
        self.save_state()
        self._notify()
        return True

    async def resume(self) -> bool:
        if self.run is None or self.run.status != BatchStatus.PAUSED:
            return False
        self.run.status = BatchStatus.PROCESSING
        logger.info(f"Batch {self.run.id} resumed")
        if any(not w.done() for w in self._workers):
            self._dispatch.set()
            self._notify()
            if self.run.settled:
                # The last in-flight jobs finished while paused
                await self._finish()
        else:
            # Restored from a snapshot, nothing is running yet
            await self._launch()
        return True

    async def stop(self) -> bool:
        """Cancel in-flight generation, drop queued jobs and forget the snapshot."""
        run = self.run
        if run is None or run.status in (BatchStatus.COMPLETED, BatchStatus.STOPPED):
            return False

        now = time.time()
        for job_id, task in list(self._inflight.items()):
            job = run.get(job_id)
            if job is not None:
                job.status = JobStatus.FAILED
                job.error = "Cancelled by user"
                job.completed_at = now
            task.cancel()

        dropped = run.pending
        run.jobs = [j for j in run.jobs if j.status != JobStatus.PENDING]
        run.status = BatchStatus.STOPPED
        run.completed_at = now

        await self._cancel_tasks()
        await self.resource_monitor.stop()
        self.clear_saved_state()

        logger.info(f"Batch {run.id} stopped ({dropped} queued jobs dropped)")
        self._emit("batch.stopped", dropped=dropped)
        self._notify()
        if self._settled:
            self._settled.set()
        return True

    # --- Queries ---

    def progress(self) -> BatchProgress:
        run = self.run
        if run is None:
            return BatchProgress()

        finished = [j for j in run.jobs if j.status == JobStatus.COMPLETED and j.processing_time is not None]
        average = sum(j.processing_time for j in finished) / len(finished) if finished else 0.0
        elapsed = (run.completed_at or time.time()) - run.started_at
        throughput = run.completed / (elapsed / 60) if elapsed > 0 else 0.0
        settled = run.completed + run.failed
        error_rate = run.failed / settled if settled else 0.0

        remaining = [
            RemainingItem(complexity=j.complexity, expected_duration=j.expected_duration)
            for j in run.jobs if j.status in (JobStatus.PENDING, JobStatus.GENERATING)
        ]
        current = next((j.source_id for j in run.jobs if j.status == JobStatus.GENERATING), None)

        return BatchProgress(
            batch_id=run.id,
            status=run.status.value,
            total=run.total,
            completed=run.completed,
            failed=run.failed,
            pending=run.pending,
            generating=run.generating,
            is_processing=run.status == BatchStatus.PROCESSING,
            current_item=current,
            estimated_time_remaining=self.predictor.predict(remaining, average, throughput, self.config.workers),
            average_processing_time=average,
            throughput_per_minute=round(throughput, 2),
            error_rate=round(error_rate, 4),
            retry_count=sum(j.retry_count for j in run.jobs),
            resource_usage=self.resource_monitor.metrics(),
        )

    def analytics(self) -> dict:
        progress = self.progress()
        return {
            "progress": progress.to_dict(),
            "trends": self.metrics.trends(),
            "resource_usage": progress.resource_usage.to_dict(),
            "rate_limit": self.rate_limiter.usage(),
            "recommended_workers": self.resource_monitor.recommended_workers(
                self.config.workers, self.config.thresholds
            ),
            "bottlenecks": self._bottlenecks(progress),
        }

    def _bottlenecks(self, progress: BatchProgress) -> list[str]:
        hints = []
        if progress.resource_usage.memory_mb > 500:
            hints.append("High memory usage detected")
        if progress.resource_usage.cpu_percent > 80:
            hints.append("High CPU usage detected")
        if progress.error_rate > 0.1:
            hints.append("High error rate detected")
        return hints

    # --- Persistence ---

    def save_state(self):
        if self.run is None:
            return
        self._store.set(BATCH_STATE_KEY, {
            "run": self.run.model_dump(mode="json"),
            "config": self.config.to_dict(),
        })

    def load_state(self) -> bool:
        """Restore the last snapshot as a paused run. Call resume() to continue."""
        if self.is_processing:
            logger.warning("Refusing to load batch state while a batch is processing")
            return False

        loaded = self._store.load(BATCH_STATE_KEY)
        if loaded is None:
            return False
        data, saved_at = loaded
        if time.time() - saved_at > self.config.state_max_age:
            logger.info("Discarding batch state older than the maximum age")
            self.clear_saved_state()
            return False

        try:
            run = BatchRun.model_validate(data["run"])
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Discarding malformed batch state: {e}")
            self.clear_saved_state()
            return False

        for job in run.jobs:
            if job.status == JobStatus.GENERATING:
                job.status = JobStatus.PENDING
                job.progress = 0
                job.started_at = None
        if run.status == BatchStatus.PROCESSING:
            run.status = BatchStatus.PAUSED

        self.run = run
        self._workers = []
        self._settled = None
        logger.info(f"Restored batch {run.id}: {run.completed}/{run.total} completed, {run.pending} pending")
        return True

    def clear_saved_state(self):
        self._store.delete(BATCH_STATE_KEY)

    # --- Job construction ---

    def plan(
        self,
        source: BatchSource,
        prompt_overrides: dict[str, str] | None = None,
        reference: str | None = None,
    ) -> list[Job]:
        """Build the jobs a batch would run, or raise BatchConfigError. Nothing is started."""
        cfg = self.config
        overrides = prompt_overrides or {}
        jobs: list[Job] = []

        if source.kind == "blocks":
            if not source.blocks:
                raise BatchConfigError("No blocks selected for batch processing")
            # One job per block, so a block never has two generations in flight
            unique: dict[str, Block] = {}
            for block in source.blocks:
                unique.setdefault(block.id, block)
            if len(unique) < len(source.blocks):
                logger.warning(f"Ignoring {len(source.blocks) - len(unique)} duplicate block(s) in batch")
            valid = [b for b in unique.values() if b.content and b.content.strip()]
            if not valid:
                raise BatchConfigError("No valid blocks with content found")
            for index, block in enumerate(valid):
                base = overrides.get(block.id) or _default_prompt(block)
                jobs.append(Job(
                    source_id=block.id,
                    source_type="block",
                    block_type=block.type,
                    prompt=apply_consistency_preamble(base, reference),
                    source_content=block.content,
                    reference=reference,
                    max_retries=cfg.max_retries,
                    priority=index - (VIDEO_PRIORITY_BOOST if block.type == "video" else 0),
                    complexity=COMPLEXITY_BY_TYPE.get(block.type, "medium"),
                    expected_duration=BASE_DURATION * DURATION_FACTOR_BY_TYPE.get(block.type, 1.0),
                    metadata={"block_number": block.number, "memory_mb": MEMORY_MB_BY_TYPE.get(block.type, 50)},
                ))
        elif source.kind == "file":
            if not source.prompts:
                raise BatchConfigError("No prompts found in file")
            valid_prompts = [
                p.strip() for p in source.prompts
                if p and len(p.strip()) >= cfg.min_prompt_length
            ]
            if not valid_prompts:
                raise BatchConfigError("No valid prompts found in file")
            for index, prompt in enumerate(valid_prompts):
                source_id = f"file_prompt_{index}"
                base = overrides.get(source_id) or prompt
                jobs.append(Job(
                    source_id=source_id,
                    source_type="file",
                    block_type="text",
                    prompt=apply_consistency_preamble(base, reference),
                    source_content=prompt,
                    reference=reference,
                    max_retries=cfg.max_retries,
                    priority=index,
                    complexity="medium",
                    expected_duration=BASE_DURATION,
                    metadata={"memory_mb": MEMORY_MB_BY_TYPE["text"]},
                ))
        else:
            raise BatchConfigError(f"Unknown batch source: {source.kind}")

        if len(jobs) > cfg.max_items:
            raise BatchConfigError(f"Batch has {len(jobs)} items; the limit is {cfg.max_items}")
        return jobs

    # --- Dispatch ---

    async def _launch(self):
        self._queue = asyncio.PriorityQueue()
        self._dispatch = asyncio.Event()
        self._dispatch.set()
        self._settled = asyncio.Event()
        self._inflight.clear()

        for job in self.run.jobs:
            if job.status == JobStatus.PENDING:
                self._enqueue(job)

        self.resource_monitor.start()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"batch-worker-{i}")
            for i in range(max(1, self.config.workers))
        ]
        self._notify()
        if self.run.settled:
            await self._finish()

    def _enqueue(self, job: Job):
        self._queue.put_nowait((job.priority, next(self._seq), job.id))

    async def _worker(self, index: int):
        while True:
            _, _, job_id = await self._queue.get()
            if job_id is None:
                return
            await self._dispatch.wait()

            job = self.run.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue

            try:
                await self._process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {index} crashed on job {job.id}: {e}", exc_info=True)
                await self._fail_unexpectedly(job, e)

            if self.run.settled and self.run.status == BatchStatus.PROCESSING:
                try:
                    await self._finish()
                except Exception as e:
                    logger.error(f"Batch {self.run.id} finished with errors: {e}", exc_info=True)

    async def _process(self, job: Job):
        await self._admit(job)
        await self.rate_limiter.acquire()
        if not self._dispatch.is_set():
            # Paused while waiting; hand the job back
            self._enqueue(job)
            return
        await self._execute(job)

    async def _fail_unexpectedly(self, job: Job, error: Exception):
        """Fail a job whose handling raised outside the generation call. No retry."""
        self._inflight.pop(job.id, None)
        if job.status not in (JobStatus.PENDING, JobStatus.GENERATING):
            return
        job.status = JobStatus.FAILED
        job.error = f"Internal error: {error}"
        job.completed_at = time.time()
        self._notify()
        await self._job_done(job)

    async def _admit(self, job: Job):
        """Hold the job while the process is constrained, unless nothing else is running."""
        thresholds = self.config.thresholds
        needed = job.metadata.get("memory_mb", 0)
        while self._inflight:
            monitor = self.resource_monitor
            if not monitor.is_constrained(thresholds) and monitor.memory_mb() + needed < thresholds.memory_mb:
                return
            logger.debug(f"Resources constrained, holding job {job.id}")
            await asyncio.sleep(self.config.admission_delay)

    async def _execute(self, job: Job):
        job.status = JobStatus.GENERATING
        job.started_at = time.time()
        job.progress = 10
        self._notify()

        task = asyncio.create_task(self._generate(job.payload(), dict(self.config.settings)))
        self._inflight[job.id] = task
        try:
            with self.resource_monitor.track():
                artifact = await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._inflight.pop(job.id, None)
            self._handle_failure(job, e)
        else:
            self._inflight.pop(job.id, None)
            await self._handle_success(job, artifact)

        self._record_metrics()
        self._notify()

    async def _handle_success(self, job: Job, artifact: Any):
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.completed_at = time.time()
        job.processing_time = job.completed_at - job.started_at
        job.artifact_url = artifact if isinstance(artifact, str) else None
        job.error = None
        logger.info(f"Job {job.id} ({job.source_id}) completed in {job.processing_time:.1f}s")
        self._emit("batch.job_completed", job_id=job.id, block_id=job.source_id)

        if self._sink:
            try:
                result = self._sink(job.id, job.source_id, artifact)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Artifact sink failed for job {job.id}: {e}", exc_info=True)
        await self._job_done(job)

    def _handle_failure(self, job: Job, error: Exception):
        job.retry_count += 1
        job.error = str(error) or error.__class__.__name__

        if job.retry_count < job.max_retries:
            job.status = JobStatus.PENDING
            job.progress = 0
            delay = self.rate_limiter.backoff(job.retry_count, self.config.retry_delay)
            logger.warning(
                f"Job {job.id} failed (attempt {job.retry_count}/{job.max_retries}), "
                f"retrying in {delay:.1f}s: {job.error}"
            )
            task = asyncio.create_task(self._requeue_later(job, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        job.status = JobStatus.FAILED
        job.completed_at = time.time()
        logger.error(f"Job {job.id} failed permanently after {job.retry_count} attempts: {job.error}")
        self._emit("batch.job_failed", job_id=job.id, block_id=job.source_id, error=job.error)
        task = asyncio.create_task(self._job_done(job))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_later(self, job: Job, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        if job.status == JobStatus.PENDING and self._queue is not None:
            self._enqueue(job)

    async def _job_done(self, job: Job):
        if not self._on_job_done:
            return
        try:
            result = self._on_job_done(job)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Job callback failed for {job.id}: {e}", exc_info=True)

    async def _finish(self):
        run = self.run
        run.status = BatchStatus.COMPLETED
        run.completed_at = time.time()
        elapsed = run.completed_at - run.started_at
        logger.info(f"Batch {run.id} completed: {run.completed} completed, {run.failed} failed in {elapsed:.1f}s")

        for _ in self._workers:
            self._queue.put_nowait((float("inf"), next(self._seq), None))
        try:
            self.predictor.record_completion(run.total, elapsed, self.config.workers, _dominant_complexity(run))
            self.save_state()
            if self._retry_tasks:
                await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)
            await self.resource_monitor.stop()

            self._emit("batch.completed", completed=run.completed, failed=run.failed, total=run.total)
            self._notify()
        finally:
            # Waiters are released even if the bookkeeping above fails
            self._settled.set()

    async def _cancel_tasks(self):
        tasks = [*self._inflight.values(), *self._retry_tasks]
        current = asyncio.current_task()
        tasks += [w for w in self._workers if w is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._retry_tasks.clear()
        self._workers = []

    # --- Notifications ---

    def _record_metrics(self):
        p = self.progress()
        self.metrics.record(p.throughput_per_minute, p.error_rate, p.average_processing_time)

    def _notify(self):
        if self.run is None:
            return
        snapshot = self.progress()
        if self._on_progress:
            try:
                self._on_progress(snapshot)
            except Exception as e:
                logger.error(f"Progress callback failed: {e}", exc_info=True)
        self._emit("batch.progress", **snapshot.to_dict())

    def _emit(self, type: str, /, **data):
        if not self._event_bus or self.run is None:
            return
        try:
            self._event_bus.emit_simple(type, self.run.id, **data)
        except Exception as e:
            logger.error(f"Failed to emit {type} for batch {self.run.id}: {e}", exc_info=True)


def _default_prompt(block: Block) -> str:
    if block.type == "text":
        return block.content.strip()
    return DEFAULT_PROMPTS.get(block.type, block.content.strip())


def _dominant_complexity(run: BatchRun) -> str:
    counts: dict[str, int] = {}
    for job in run.jobs:
        counts[job.complexity] = counts.get(job.complexity, 0) + 1
    if not counts:
        return "medium"
    return max(counts, key=counts.get)
