"""Download orchestrator — fetches job artifacts to disk with grouped progress accounting.

Items are grouped by batch and by execution. Progress at every granularity is
recomputed from the item list on each read; nothing is counted incrementally.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import logging
import mimetypes
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import unquote_to_bytes, urlparse

import httpx

from blockflow import config
from blockflow.models import BatchDownloadProgress, DownloadItem, DownloadProgress, generate_id

if TYPE_CHECKING:
    from blockflow.events import EventBus

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Download cancelled by user"
NAMING_PATTERNS = ("original", "sequential", "timestamp")
MEDIA_EXTENSION = re.compile(r"\.(mp4|avi|mov|wmv|flv|webm|png|jpe?g|gif|webp|txt)$", re.IGNORECASE)


@dataclass
class DownloadConfig:
    directory: Path = field(default_factory=lambda: config.DOWNLOAD_DIR)
    max_retries: int = config.DOWNLOAD_MAX_RETRIES
    retry_delay: float = config.DOWNLOAD_RETRY_DELAY
    max_concurrent: int = config.DOWNLOAD_MAX_CONCURRENT
    timeout: float = config.DOWNLOAD_TIMEOUT
    sequential_mode: bool = config.DOWNLOAD_SEQUENTIAL
    sequential_delay: float = config.DOWNLOAD_SEQUENTIAL_DELAY
    naming: str = config.DOWNLOAD_NAMING
    create_execution_directories: bool = True


@dataclass
class BatchDownloadConfig:
    execution_id: str | None = None
    batch_id: str | None = None
    base_directory: str | None = None  # relative to the download root
    create_subdirectory: bool = False
    subdirectory_name: str | None = None
    naming: str | None = None  # falls back to DownloadConfig.naming


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def generate_filename(url: str) -> str:
    """Derive a file name from an artifact reference."""
    if url.startswith("data:"):
        mime = url[5:].split(",", 1)[0].split(";", 1)[0] or "text/plain"
        ext = mimetypes.guess_extension(mime) or ".bin"
        return f"{mime.split('/')[0]}_{_timestamp_ms()}{ext}"
    if not url.startswith(("http://", "https://")):
        return f"text_{_timestamp_ms()}.txt"
    try:
        name = urlparse(url).path.rsplit("/", 1)[-1] or "video"
    except ValueError:
        return f"video_{_timestamp_ms()}.mp4"
    if not MEDIA_EXTENSION.search(name):
        name = f"{name}.mp4"
    return name


def apply_naming(filename: str, index: int, pattern: str) -> str:
    if pattern == "sequential":
        return f"{index + 1:03d}_{filename}"
    if pattern == "timestamp":
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        stamp = stamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
        return f"{stamp}_{filename}"
    return filename


def decode_data_url(url: str) -> bytes:
    header, sep, payload = url[5:].partition(",")
    if not sep:
        raise ValueError("Malformed data URL")
    if header.endswith(";base64"):
        return base64.b64decode(payload, validate=True)
    return unquote_to_bytes(payload)


def _count(items: list[DownloadItem]) -> DownloadProgress:
    progress = DownloadProgress(total=len(items))
    for item in items:
        if item.status == "completed":
            progress.completed += 1
        elif item.status == "failed":
            progress.failed += 1
        elif item.status == "downloading":
            progress.downloading += 1
        else:
            progress.pending += 1
    return progress


class DownloadOrchestrator:
    """Owns the download item list and every download task."""

    def __init__(
        self,
        download_config: DownloadConfig | None = None,
        event_bus: "EventBus | None" = None,
        on_progress: Callable[[DownloadProgress], None] | None = None,
        on_batch_progress: Callable[[BatchDownloadProgress], None] | None = None,
        on_complete: Callable[[list[DownloadItem]], None] | None = None,
        on_batch_complete: Callable[[str, BatchDownloadProgress], Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = download_config or DownloadConfig()
        self._event_bus = event_bus
        self._on_progress = on_progress
        self._on_batch_progress = on_batch_progress
        self._on_complete = on_complete
        self._on_batch_complete = on_batch_complete
        self._transport = transport

        self._items: list[DownloadItem] = []
        self._active: dict[str, asyncio.Task] = {}
        self._batches: dict[str, BatchDownloadProgress] = {}
        self._callback_tasks: set[asyncio.Task] = set()

    # --- Enqueue ---

    def enqueue(
        self,
        url: str,
        filename: str | None = None,
        download_path: str | None = None,
        execution_id: str | None = None,
        batch_id: str | None = None,
    ) -> str:
        self._check_directory(download_path)
        item = DownloadItem(
            url=url,
            filename=filename or generate_filename(url),
            max_retries=self.config.max_retries,
            download_path=download_path,
            execution_id=execution_id,
            batch_id=batch_id,
        )
        self._items.append(item)
        logger.debug(f"Queued download {item.id}: {item.filename}")
        self._notify(item)
        return item.id

    def enqueue_batch(self, entries: list[dict], batch_config: BatchDownloadConfig | None = None) -> list[str]:
        """Queue several artifacts under one batch. Each entry has `url` and optionally `filename`."""
        cfg = batch_config or BatchDownloadConfig()
        batch_id = cfg.batch_id or generate_id("batch")
        execution_id = cfg.execution_id or f"exec_{_timestamp_ms()}"
        pattern = cfg.naming or self.config.naming
        if pattern not in NAMING_PATTERNS:
            raise ValueError(f"Unknown naming pattern: {pattern}")

        directory = cfg.base_directory
        if cfg.create_subdirectory and cfg.subdirectory_name:
            directory = f"{directory}/{cfg.subdirectory_name}" if directory else cfg.subdirectory_name
        self._check_directory(directory)

        self._batches[batch_id] = BatchDownloadProgress(
            batch_id=batch_id,
            execution_id=execution_id,
            progress=DownloadProgress(total=len(entries), pending=len(entries)),
            directory=directory,
        )

        ids = []
        for index, entry in enumerate(entries):
            filename = entry.get("filename") or apply_naming(generate_filename(entry["url"]), index, pattern)
            ids.append(self.enqueue(entry["url"], filename, directory, execution_id, batch_id))
        logger.info(f"Queued {len(ids)} downloads for batch {batch_id}")
        return ids

    def enqueue_execution(self, results: list[dict], execution_id: str) -> list[str]:
        """Queue one download per block result (`url`, `block_id`, `block_number`)."""
        date = datetime.now().strftime("%Y-%m-%d")
        entries = []
        for result in results:
            ext = Path(generate_filename(result["url"])).suffix or ".mp4"
            entries.append({"url": result["url"], "filename": f"{result['block_number']}_{result['block_id']}{ext}"})
        return self.enqueue_batch(entries, BatchDownloadConfig(
            execution_id=execution_id,
            batch_id=f"execution_{execution_id}",
            create_subdirectory=self.config.create_execution_directories,
            subdirectory_name=f"execution_{execution_id}_{date}",
        ))

    def _check_directory(self, directory: str | None):
        """Raise ValueError unless `directory` stays inside the download root."""
        if not directory:
            return
        root = Path(self.config.directory).resolve()
        if not (root / directory).resolve().is_relative_to(root):
            raise ValueError(f"Download directory {directory!r} is outside {root}")

    # --- Processing ---

    async def process_queue(self):
        """Download everything pending, honoring sequential mode. Returns when all settle."""
        pending = [i for i in self._items if i.status == "pending" and i.id not in self._active]
        await self._run_items(pending)

        self._check_completion()
        for batch_id in list(self._batches):
            self._check_batch_completion(batch_id)

    async def process_batch(self, batch_id: str):
        items = [i for i in self._items if i.batch_id == batch_id and i.status == "pending"]
        if not items:
            return
        logger.info(f"Processing batch {batch_id}: {len(items)} downloads")
        await self._run_items(items)
        logger.info(f"Batch {batch_id} processed")
        self._check_batch_completion(batch_id)

    async def _run_items(self, items: list[DownloadItem]):
        """One at a time with a delay in sequential mode, else chunks of max_concurrent."""
        if self.config.sequential_mode:
            for index, item in enumerate(items):
                await self._run_chunk([item])
                if index < len(items) - 1 and self.config.sequential_delay > 0:
                    await asyncio.sleep(self.config.sequential_delay)
        else:
            size = max(1, self.config.max_concurrent)
            for start in range(0, len(items), size):
                await self._run_chunk(items[start:start + size])

    async def _run_chunk(self, items: list[DownloadItem]):
        tasks = []
        for item in items:
            if item.status != "pending" or item.id in self._active or self.get(item.id) is not item:
                continue
            task = asyncio.create_task(self._download(item))
            self._active[item.id] = task
            task.add_done_callback(lambda t, download_id=item.id: self._active.pop(download_id, None))
            tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _download(self, item: DownloadItem):
        while item.status == "pending":
            item.status = "downloading"
            item.progress = 0
            self._notify(item)
            try:
                path = await self._fetch(item)
            except asyncio.CancelledError:
                item.status = "failed"
                item.error = item.error or CANCEL_MESSAGE
                self._notify(item)
                raise
            except Exception as e:
                item.error = str(e) or e.__class__.__name__
                item.retry_count += 1
                if item.retry_count < item.max_retries:
                    item.status = "pending"
                    item.progress = 0
                    logger.warning(f"Download retry {item.retry_count}/{item.max_retries} for {item.filename}: {item.error}")
                    self._notify(item)
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                item.status = "failed"
                item.progress = 0
                logger.error(f"Download failed permanently for {item.filename}: {item.error}")
                self._notify(item)
                return

            item.status = "completed"
            item.progress = 100
            item.completed_at = time.time()
            item.saved_to = str(path)
            item.error = None
            logger.info(f"Downloaded {item.filename} -> {path}")
            self._notify(item)

    async def _fetch(self, item: DownloadItem) -> Path:
        target = self._target_path(item)
        target.parent.mkdir(parents=True, exist_ok=True)

        if item.url.startswith("data:"):
            target.write_bytes(decode_data_url(item.url))
            return target

        if not item.url.startswith(("http://", "https://")):
            # Generated text rather than a reference
            target.write_text(item.url, encoding="utf-8")
            return target

        partial = target.with_name(target.name + ".part")
        async with httpx.AsyncClient(
            follow_redirects=True, timeout=self.config.timeout, transport=self._transport
        ) as client:
            async with client.stream("GET", item.url) as resp:
                resp.raise_for_status()
                expected = int(resp.headers.get("content-length") or 0)
                received = 0
                with open(partial, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
                        received += len(chunk)
                        if expected:
                            item.progress = min(99, received * 100 // expected)
        partial.replace(target)
        return target

    def _target_path(self, item: DownloadItem) -> Path:
        root = Path(self.config.directory)
        if item.download_path:
            root = root / item.download_path
        return root / Path(item.filename).name

    # --- Cancellation and retry ---

    def cancel(self, download_id: str) -> bool:
        """Abort an in-flight download or drop a queued one."""
        item = self.get(download_id)
        if item is None:
            return False

        task = self._active.get(download_id)
        if task is not None and not task.done():
            item.status = "failed"
            item.error = CANCEL_MESSAGE
            task.cancel()
        elif item.status == "pending":
            self._items.remove(item)
        else:
            return False

        logger.info(f"Cancelled download {download_id}")
        self._notify(item)
        return True

    def cancel_batch(self, batch_id: str) -> int:
        cancelled = sum(1 for item in self.batch_items(batch_id) if self.cancel(item.id))
        self._check_batch_completion(batch_id)
        return cancelled

    def cancel_all(self) -> int:
        cancelled = sum(1 for item in list(self._items) if self.cancel(item.id))
        for batch_id in list(self._batches):
            self._check_batch_completion(batch_id)
        return cancelled

    async def retry_failed(self) -> int:
        """Reset failed items that still have retry budget and download them again."""
        reset = self._reset_failed(self._items)
        if reset:
            await self.process_queue()
        return reset

    async def retry_batch(self, batch_id: str) -> int:
        reset = self._reset_failed(self.batch_items(batch_id))
        if reset:
            await self.process_batch(batch_id)
        return reset

    def _reset_failed(self, items: list[DownloadItem]) -> int:
        reset = 0
        for item in items:
            if item.status == "failed" and item.retry_count < item.max_retries:
                item.status = "pending"
                item.progress = 0
                item.error = None
                reset += 1
        return reset

    # --- Queries ---

    def get(self, download_id: str) -> DownloadItem | None:
        for item in self._items:
            if item.id == download_id:
                return item
        return None

    def items(self) -> list[DownloadItem]:
        return list(self._items)

    def batch_items(self, batch_id: str) -> list[DownloadItem]:
        return [i for i in self._items if i.batch_id == batch_id]

    def execution_items(self, execution_id: str) -> list[DownloadItem]:
        return [i for i in self._items if i.execution_id == execution_id]

    def progress(self) -> DownloadProgress:
        return _count(self._items)

    def batch_progress(self, batch_id: str) -> DownloadProgress:
        return _count(self.batch_items(batch_id))

    def execution_progress(self, execution_id: str) -> DownloadProgress:
        return _count(self.execution_items(execution_id))

    def batch_record(self, batch_id: str) -> BatchDownloadProgress | None:
        record = self._batches.get(batch_id)
        if record is not None:
            record.progress = self.batch_progress(batch_id)
        return record

    def all_batch_progress(self) -> list[BatchDownloadProgress]:
        return [self.batch_record(batch_id) for batch_id in self._batches]

    # --- Housekeeping ---

    def clear_completed(self):
        self._items = [i for i in self._items if i.status != "completed"]
        self._notify()

    def clear_batch_completed(self, batch_id: str):
        self._items = [i for i in self._items if not (i.batch_id == batch_id and i.status == "completed")]
        self._notify()

    def clear_all(self):
        self.cancel_all()
        self._items = []
        self._batches.clear()
        self._notify()

    # --- Notifications ---

    def _notify(self, item: DownloadItem | None = None):
        progress = self.progress()
        if self._on_progress:
            self._safe_call(self._on_progress, progress)
        if self._event_bus:
            self._event_bus.emit_simple(
                "download.progress", item.id if item else "downloads", **progress.to_dict()
            )

        if item is None or not item.batch_id:
            return
        record = self.batch_record(item.batch_id)
        if record is None:
            return
        if self._on_batch_progress:
            self._safe_call(self._on_batch_progress, record)
        if item.status in ("completed", "failed") or self.get(item.id) is None:
            self._check_batch_completion(item.batch_id)

    def _check_batch_completion(self, batch_id: str):
        record = self.batch_record(batch_id)
        if record is None:
            return
        progress = record.progress
        if not progress.settled or progress.total == 0 or record.end_time is not None:
            return

        record.end_time = time.time()
        logger.info(f"Download batch {batch_id} complete: {progress.completed} downloaded, {progress.failed} failed")
        if self._on_batch_complete:
            self._safe_call(self._on_batch_complete, batch_id, record)
        if self._event_bus:
            self._event_bus.emit_simple(
                "download.batch_completed",
                batch_id,
                execution_id=record.execution_id,
                completed=progress.completed,
                failed=progress.failed,
                directory=record.directory,
            )

    def _check_completion(self):
        progress = self.progress()
        if not progress.settled or progress.total == 0:
            return
        completed = [i for i in self._items if i.status == "completed"]
        if self._on_complete:
            self._safe_call(self._on_complete, completed)
        if self._event_bus:
            self._event_bus.emit_simple(
                "download.completed", "downloads", completed=len(completed), failed=progress.failed
            )

    def _safe_call(self, fn: Callable, *args):
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)
        except Exception as e:
            logger.error(f"Download callback failed: {e}", exc_info=True)

    def _callback_done(self, task: asyncio.Task):
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Download callback failed: {task.exception()}", exc_info=task.exception())
