"""Execution history — durable log of workflow runs, used for statistics and replay."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import date, datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError

from blockflow import config
from blockflow.schemas import (
    BlockResult,
    DailyCount,
    ExecutionConfiguration,
    ExecutionRecord,
    ExecutionStatistics,
    ExecutionStatus,
    HistoryFilter,
    TemplateUsage,
    TERMINAL_EXECUTION_STATUSES,
)
from blockflow.store import HISTORY_KEY, KeyValueStore

logger = logging.getLogger(__name__)

EXECUTION_TYPES = ("manual", "scheduled", "batch")
HISTOGRAM_DAYS = 30
TOP_TEMPLATES = 10


class ExecutionHistory:
    """Newest-first list of execution records, persisted after every mutation."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        max_records: int = config.MAX_HISTORY_RECORDS,
        on_update: Callable[[list[ExecutionRecord]], None] | None = None,
    ):
        self._store = store or KeyValueStore()
        self._max_records = max_records
        self._lock = threading.Lock()
        self._records: list[ExecutionRecord] = []
        self.on_update = on_update
        self._load()

    # --- Lifecycle ---

    def begin(
        self,
        configuration: ExecutionConfiguration | None = None,
        total_blocks: int = 0,
        template_name: str = "Untitled",
        execution_type: str = "manual",
        template_id: str | None = None,
    ) -> str:
        """Open a running record and return its id."""
        if execution_type not in EXECUTION_TYPES:
            raise ValueError(f"Unknown execution type: {execution_type}")
        record = ExecutionRecord(
            template_id=template_id,
            template_name=template_name,
            execution_type=execution_type,
            total_blocks=total_blocks,
            configuration=configuration or ExecutionConfiguration(template_id=template_id),
        )
        with self._lock:
            self._records.insert(0, record)
            self._trim()
        logger.info(f"Execution {record.id} started: {template_name} ({execution_type}, {total_blocks} blocks)")
        self._changed()
        return record.id

    def record_block_result(self, execution_id: str, result: BlockResult) -> bool:
        """Upsert one block's outcome and recount the record from its results."""
        with self._lock:
            record = self._writable(execution_id)
            if record is None:
                return False
            for index, existing in enumerate(record.results):
                if existing.block_id == result.block_id:
                    merged = existing.model_dump()
                    merged.update(result.model_dump(exclude_unset=True))
                    record.results[index] = BlockResult.model_validate(merged)
                    break
            else:
                record.results.append(result)
            _recount(record)
        self._changed()
        return True

    def update_metadata(self, execution_id: str, **metadata: Any) -> bool:
        with self._lock:
            record = self._writable(execution_id)
            if record is None:
                return False
            record.metadata.update(metadata)
        self._changed()
        return True

    def finish(self, execution_id: str, status: ExecutionStatus | str, error: str | None = None) -> bool:
        """Close a record with a terminal status. Terminal records never change again."""
        status = ExecutionStatus(status)
        if status not in TERMINAL_EXECUTION_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            record = self._writable(execution_id)
            if record is None:
                return False
            record.status = status
            record.end_time = time.time()
            record.duration = record.end_time - record.start_time
            if error:
                record.error = error
            _recount(record)
        logger.info(f"Execution {execution_id} {status.value} in {record.duration:.1f}s")
        self._changed()
        return True

    def _writable(self, execution_id: str) -> ExecutionRecord | None:
        record = self._find(execution_id)
        if record is None:
            logger.warning(f"Unknown execution {execution_id}")
            return None
        if record.is_terminal:
            logger.warning(f"Ignoring update to finished execution {execution_id}")
            return None
        return record

    # --- Queries ---

    def get(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            return self._find(execution_id)

    def list(self, filter: HistoryFilter | None = None) -> list[ExecutionRecord]:
        with self._lock:
            records = list(self._records)
        if filter is None:
            return records

        if filter.template_id:
            records = [r for r in records if r.template_id == filter.template_id]
        if filter.template_name:
            needle = filter.template_name.lower()
            records = [r for r in records if needle in r.template_name.lower()]
        if filter.execution_type:
            records = [r for r in records if r.execution_type == filter.execution_type]
        if filter.status:
            records = [r for r in records if r.status == filter.status]
        if filter.start is not None:
            records = [r for r in records if r.start_time >= filter.start]
        if filter.end is not None:
            records = [r for r in records if r.start_time <= filter.end]
        if filter.offset:
            records = records[filter.offset:]
        if filter.limit:
            records = records[: filter.limit]
        return records

    def statistics(self, filter: HistoryFilter | None = None) -> ExecutionStatistics:
        """Aggregate view, derived from the stored records on every call."""
        records = self.list(filter)
        total = len(records)
        completed = [r for r in records if r.status == ExecutionStatus.COMPLETED]
        timed = [r for r in completed if r.duration]

        usage: dict[str, int] = {}
        by_type = {t: 0 for t in EXECUTION_TYPES}
        for r in records:
            usage[r.template_name] = usage.get(r.template_name, 0) + 1
            by_type[r.execution_type] = by_type.get(r.execution_type, 0) + 1
        top = sorted(usage.items(), key=lambda kv: kv[1], reverse=True)[:TOP_TEMPLATES]

        today = date.today()
        per_day: dict[date, int] = {}
        for r in records:
            day = datetime.fromtimestamp(r.start_time).date()
            per_day[day] = per_day.get(day, 0) + 1
        histogram = [
            DailyCount(date=day.isoformat(), count=per_day.get(day, 0))
            for day in (today - timedelta(days=offset) for offset in range(HISTOGRAM_DAYS - 1, -1, -1))
        ]

        return ExecutionStatistics(
            total_executions=total,
            completed_executions=len(completed),
            failed_executions=sum(1 for r in records if r.status == ExecutionStatus.FAILED),
            cancelled_executions=sum(1 for r in records if r.status == ExecutionStatus.CANCELLED),
            average_duration=sum(r.duration for r in timed) / len(timed) if timed else 0.0,
            total_blocks_processed=sum(r.completed_blocks for r in records),
            success_rate=len(completed) / total * 100 if total else 0.0,
            most_used_templates=[TemplateUsage(template_name=n, count=c) for n, c in top],
            executions_by_type=by_type,
            executions_by_day=histogram,
        )

    def configuration_for(self, execution_id: str) -> ExecutionConfiguration | None:
        """Independent copy of a run's configuration, for starting it again."""
        record = self.get(execution_id)
        return record.configuration.model_copy(deep=True) if record else None

    def recent_for_template(self, template_id: str, limit: int = 10) -> list[ExecutionRecord]:
        return [r for r in self.list() if r.template_id == template_id][:limit]

    def running(self) -> list[ExecutionRecord]:
        return [r for r in self.list() if r.status == ExecutionStatus.RUNNING]

    def is_running(self, execution_id: str) -> bool:
        record = self.get(execution_id)
        return record is not None and record.status == ExecutionStatus.RUNNING

    # --- Maintenance ---

    def delete(self, execution_id: str) -> bool:
        with self._lock:
            record = self._find(execution_id)
            if record is None:
                return False
            self._records.remove(record)
        self._changed()
        return True

    def clear(self):
        with self._lock:
            self._records = []
        self._changed()

    def clear_older_than(self, days: int = 30) -> int:
        cutoff = time.time() - days * 86400
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.start_time >= cutoff]
            removed = before - len(self._records)
        if removed:
            logger.info(f"Removed {removed} execution records older than {days} days")
            self._changed()
        return removed

    def export_json(self, filter: HistoryFilter | None = None) -> str:
        records = self.list(filter)
        return json.dumps({
            "export_date": datetime.now().isoformat(),
            "record_count": len(records),
            "records": [r.model_dump(mode="json") for r in records],
        }, indent=2)

    def import_json(self, data: str, mode: str = "merge") -> int:
        """Load records exported by export_json. Returns how many valid records were read."""
        if mode not in ("merge", "replace"):
            raise ValueError(f"Unknown import mode: {mode}")
        try:
            payload = json.loads(data)
            if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
                raise ValueError("Invalid import data format")
        except ValueError as e:
            raise ValueError(f"Failed to import history: {e}") from e

        imported = []
        for raw in payload["records"]:
            if not _looks_like_record(raw):
                continue
            try:
                imported.append(ExecutionRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed execution record {raw.get('id')}: {e.error_count()} errors")

        with self._lock:
            if mode == "replace":
                self._records = imported
            else:
                known = {r.id for r in self._records}
                self._records.extend(r for r in imported if r.id not in known)
                self._records.sort(key=lambda r: r.start_time, reverse=True)
            self._trim()
        logger.info(f"Imported {len(imported)} execution records ({mode})")
        self._changed()
        return len(imported)

    # --- Internals ---

    def _find(self, execution_id: str) -> ExecutionRecord | None:
        for record in self._records:
            if record.id == execution_id:
                return record
        return None

    def _trim(self):
        if len(self._records) > self._max_records:
            del self._records[self._max_records:]

    def _load(self):
        data = self._store.get(HISTORY_KEY, [])
        records = []
        for raw in data if isinstance(data, list) else []:
            try:
                records.append(ExecutionRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Dropping unreadable execution record: {e.error_count()} errors")
        self._records = records
        self._trim()
        if records:
            logger.info(f"Loaded {len(records)} execution records")

    def _changed(self):
        with self._lock:
            snapshot = list(self._records)
        self._store.set(HISTORY_KEY, [r.model_dump(mode="json") for r in snapshot])
        if self.on_update:
            try:
                self.on_update(snapshot)
            except Exception as e:
                logger.error(f"History update callback failed: {e}", exc_info=True)


def _recount(record: ExecutionRecord):
    record.completed_blocks = sum(1 for r in record.results if r.status == "completed")
    record.failed_blocks = sum(1 for r in record.results if r.status == "failed")
    record.skipped_blocks = sum(1 for r in record.results if r.status == "skipped")


def _looks_like_record(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and bool(raw.get("id"))
        and bool(raw.get("template_name"))
        and bool(raw.get("execution_type"))
        and isinstance(raw.get("start_time"), (int, float))
        and not isinstance(raw.get("start_time"), bool)
    )
