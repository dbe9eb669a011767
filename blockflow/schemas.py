"""Persisted records: batch runs, jobs, and execution history."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from blockflow.models import generate_id


class JobStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)


# ---------------------------------------------------------------------------
# Batch Runs
# ---------------------------------------------------------------------------


class Job(BaseModel):
    """One scheduled generation attempt for a batch item."""
    id: str = Field(default_factory=lambda: generate_id("task"))
    source_id: str  # block id, or file_prompt_<index>
    source_type: str = "block"  # block | file
    block_type: str = "text"
    prompt: str
    source_content: Optional[str] = None
    reference: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    retry_count: int = 0
    max_retries: int = 3
    priority: int = 0
    complexity: str = "medium"  # low | medium | high
    expected_duration: float = 30.0  # seconds
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    processing_time: Optional[float] = None
    artifact_url: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        """What the generation callback receives."""
        return {
            "prompt": self.prompt,
            "source_id": self.source_id,
            "source_type": self.source_type,
            "block_type": self.block_type,
            "reference": self.reference,
            "source_content": self.source_content,
        }


class BatchRun(BaseModel):
    """The aggregate of jobs started together. Counters are derived from `jobs`."""
    id: str = Field(default_factory=lambda: generate_id("batch"))
    jobs: List[Job] = Field(default_factory=list)
    status: BatchStatus = BatchStatus.PROCESSING
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None
    execution_id: Optional[str] = None

    def count(self, status: JobStatus) -> int:
        return sum(1 for j in self.jobs if j.status == status)

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def completed(self) -> int:
        return self.count(JobStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.count(JobStatus.FAILED)

    @property
    def pending(self) -> int:
        return self.count(JobStatus.PENDING)

    @property
    def generating(self) -> int:
        return self.count(JobStatus.GENERATING)

    @property
    def settled(self) -> bool:
        return self.pending == 0 and self.generating == 0

    def get(self, job_id: str) -> Optional[Job]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None


# ---------------------------------------------------------------------------
# Execution History
# ---------------------------------------------------------------------------


class DownloadSettings(BaseModel):
    enabled: bool = True
    directory: Optional[str] = None
    organization_pattern: Optional[str] = None


class RetrySettings(BaseModel):
    max_retries: int = 3
    retry_delay: float = 5.0


class ExecutionConfiguration(BaseModel):
    """Everything needed to start the same run again."""
    template_id: Optional[str] = None
    batch_inputs: List[str] = Field(default_factory=list)
    block_ids: List[str] = Field(default_factory=list)
    prompt_overrides: Dict[str, str] = Field(default_factory=dict)
    reference_artifact: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    scheduled_time: Optional[float] = None
    download: Optional[DownloadSettings] = None
    retry: Optional[RetrySettings] = None
    provider_settings: Dict[str, Any] = Field(default_factory=dict)


class BlockResult(BaseModel):
    block_id: str
    block_number: str = ""
    block_type: str = "text"
    status: str = "pending"  # pending | running | completed | failed | skipped
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration: Optional[float] = None
    input: Optional[str] = None
    output: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    retry_count: Optional[int] = None


class ExecutionRecord(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("exec"))
    template_id: Optional[str] = None
    template_name: str = "Untitled"
    execution_type: str = "manual"  # manual | scheduled | batch
    start_time: float = Field(default_factory=time.time)
    end_time: Optional[float] = None
    duration: Optional[float] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    total_blocks: int = 0
    completed_blocks: int = 0
    failed_blocks: int = 0
    skipped_blocks: int = 0
    results: List[BlockResult] = Field(default_factory=list)
    configuration: ExecutionConfiguration = Field(default_factory=ExecutionConfiguration)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class TemplateUsage(BaseModel):
    template_name: str
    count: int


class DailyCount(BaseModel):
    date: str
    count: int


class ExecutionStatistics(BaseModel):
    total_executions: int = 0
    completed_executions: int = 0
    failed_executions: int = 0
    cancelled_executions: int = 0
    average_duration: float = 0.0
    total_blocks_processed: int = 0
    success_rate: float = 0.0
    most_used_templates: List[TemplateUsage] = Field(default_factory=list)
    executions_by_type: Dict[str, int] = Field(default_factory=dict)
    executions_by_day: List[DailyCount] = Field(default_factory=list)


class HistoryFilter(BaseModel):
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    execution_type: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    start: Optional[float] = None
    end: Optional[float] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
