"""Core in-memory data structures for blockflow."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

BLOCK_TYPES = ("text", "image", "video")


def generate_id(prefix: str = "") -> str:
    ident = uuid.uuid4().hex[:12]
    return f"{prefix}_{ident}" if prefix else ident


# ---------------------------------------------------------------------------
# Block Graph
# ---------------------------------------------------------------------------


@dataclass
class Block:
    """A node on the canvas. Only the engine writes `content` and `status`."""

    id: str = field(default_factory=generate_id)
    type: str = "text"  # text | image | video
    number: str = ""  # human-facing label, e.g. "A01"
    content: str = ""
    status: str = "idle"  # idle | processing | error
    attachment_content: str | None = None
    original_prompt: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "number": self.number,
            "content": self.content,
            "status": self.status,
            "attachment_content": self.attachment_content,
            "original_prompt": self.original_prompt,
        }


@dataclass
class DataFlow:
    enabled: bool = True
    last_update: float = field(default_factory=time.time)
    data_type: str = "text"
    last_data: str | None = None


@dataclass
class Connection:
    id: str
    from_id: str
    to_id: str
    instruction: str = ""
    data_flow: DataFlow = field(default_factory=DataFlow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_id": self.from_id,
            "to_id": self.to_id,
            "instruction": self.instruction,
            "data_flow": {
                "enabled": self.data_flow.enabled,
                "last_update": self.data_flow.last_update,
                "data_type": self.data_flow.data_type,
                "last_data": self.data_flow.last_data,
            },
        }


@dataclass
class BlockData:
    """The last content a block produced, as seen by downstream blocks."""

    block_id: str
    block_number: str
    content: str
    type: str
    timestamp: float = field(default_factory=time.time)
    attachment_content: str | None = None
    instruction_content: str | None = None
    generated_content: str | None = None

    def to_dict(self) -> dict:
        return {
            "block_id": self.block_id,
            "block_number": self.block_number,
            "content": self.content,
            "type": self.type,
            "timestamp": self.timestamp,
        }


@dataclass
class ValidationIssue:
    type: str  # missing_block | circular_dependency | performance
    message: str
    block_id: str | None = None
    connection_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "message": self.message,
            "block_id": self.block_id,
            "connection_id": self.connection_id,
        }


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ---------------------------------------------------------------------------
# Batch Progress
# ---------------------------------------------------------------------------


@dataclass
class ResourceMetrics:
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    active_connections: int = 0

    def to_dict(self) -> dict:
        return {
            "memory_mb": round(self.memory_mb, 1),
            "cpu_percent": round(self.cpu_percent, 1),
            "active_connections": self.active_connections,
        }


@dataclass
class BatchProgress:
    """Point-in-time view of a batch run, derived from its jobs."""

    batch_id: str | None = None
    status: str | None = None
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    generating: int = 0
    is_processing: bool = False
    current_item: str | None = None
    estimated_time_remaining: float = 0.0  # seconds
    average_processing_time: float = 0.0  # seconds
    throughput_per_minute: float = 0.0
    error_rate: float = 0.0
    retry_count: int = 0
    resource_usage: ResourceMetrics = field(default_factory=ResourceMetrics)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "generating": self.generating,
            "is_processing": self.is_processing,
            "current_item": self.current_item,
            "estimated_time_remaining": round(self.estimated_time_remaining, 2),
            "average_processing_time": round(self.average_processing_time, 2),
            "throughput_per_minute": self.throughput_per_minute,
            "error_rate": self.error_rate,
            "retry_count": self.retry_count,
            "resource_usage": self.resource_usage.to_dict(),
        }


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------


@dataclass
class DownloadItem:
    url: str  # http(s) URL, data: URL, or inline text
    filename: str
    id: str = field(default_factory=lambda: generate_id("download"))
    status: str = "pending"  # pending | downloading | completed | failed
    progress: int = 0
    retry_count: int = 0
    max_retries: int = 3
    error: str | None = None
    download_path: str | None = None  # subdirectory under the download root
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    execution_id: str | None = None
    batch_id: str | None = None
    saved_to: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            # data: URLs can be megabytes long
            "url": self.url if len(self.url) <= 500 else self.url[:500] + "...",
            "filename": self.filename,
            "status": self.status,
            "progress": self.progress,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error": self.error,
            "download_path": self.download_path,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "execution_id": self.execution_id,
            "batch_id": self.batch_id,
            "saved_to": self.saved_to,
        }


@dataclass
class DownloadProgress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    downloading: int = 0

    @property
    def settled(self) -> bool:
        return self.pending == 0 and self.downloading == 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "downloading": self.downloading,
        }


@dataclass
class BatchDownloadProgress:
    batch_id: str
    execution_id: str | None
    progress: DownloadProgress
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    directory: str | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "execution_id": self.execution_id,
            "progress": self.progress.to_dict(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "directory": self.directory,
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str
    source_id: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "source_id": self.source_id, "ts": self.ts, "data": self.data}
