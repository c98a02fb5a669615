"""
agentbridge Audit Logger

Records every intent's lifecycle (parsed → validated → executed) as an
immutable AuditEntry. Entries are buffered in memory and flushed to an
append-only JSONL file when the buffer fills or the flush timer ticks.
A failed flush puts the entries back at the head of the buffer.

Persisted records carry a redacted intent view: no file content, and the
originating chat text only as a truncated excerpt.
"""

from __future__ import annotations

import asyncio
import csv
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentbridge.governance import ValidationResult
from agentbridge.intents import ExecutionResult, Intent, target_path

Outcome = Literal["processed", "rejected", "failed", "pending_approval"]


def derive_outcome(validation: ValidationResult, execution: ExecutionResult | None) -> Outcome:
    if not validation.is_valid:
        return "rejected"
    if validation.requires_approval:
        return "pending_approval"
    if execution is not None and execution.success is False:
        return "failed"
    return "processed"


# ---------------------------------------------------------------------------
# Entries and records
# ---------------------------------------------------------------------------

def _scrub(value):
    """Replace text that cannot be encoded as UTF-8 (lone surrogates) with '?'."""
    if isinstance(value, str):
        return value.encode("utf-8", errors="replace").decode("utf-8")
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


class AuditSource(BaseModel):
    session_id: str = "unknown"
    user_id: str | None = None
    chat_message: str | None = None


class IntentSummary(BaseModel):
    id: str
    type: str
    priority: str
    source: str
    operation: str | None = None
    target: str | None = None
    command: str | None = None
    service: str | None = None


class ValidationSummary(BaseModel):
    is_valid: bool
    applied_rules: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    requires_approval: bool = False


class ExecutionSummary(BaseModel):
    success: bool
    duration_ms: float = 0.0
    affected_files: list[str] = Field(default_factory=list)
    error: str | None = None


class AuditRecord(BaseModel):
    """One persisted line of the audit log."""
    id: str
    timestamp: datetime
    intent: IntentSummary
    validation: ValidationSummary
    execution: ExecutionSummary | None = None
    source: AuditSource
    outcome: Outcome


class AuditEntry(BaseModel):
    """The full in-memory record of one processed intent."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"audit_{uuid.uuid4().hex}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    intent: Intent
    validation: ValidationResult
    execution: ExecutionResult | None = None
    source: AuditSource = Field(default_factory=AuditSource)
    outcome: Outcome

    def to_record(self) -> AuditRecord:
        intent = self.intent
        record = AuditRecord(
            id=self.id,
            timestamp=self.timestamp,
            intent=IntentSummary(
                id=intent.id,
                type=intent.type,
                priority=intent.priority,
                source=intent.source,
                operation=getattr(intent, "operation", None),
                target=target_path(intent),
                command=getattr(intent, "command", None),
                service=getattr(intent, "service", None),
            ),
            validation=ValidationSummary(
                is_valid=self.validation.is_valid,
                applied_rules=list(self.validation.applied_rules),
                errors=list(self.validation.errors),
                warnings=list(self.validation.warnings),
                requires_approval=self.validation.requires_approval,
            ),
            execution=ExecutionSummary(
                success=self.execution.success,
                duration_ms=self.execution.duration_ms,
                affected_files=list(self.execution.affected_files),
                error=self.execution.error,
            ) if self.execution else None,
            source=self.source,
            outcome=self.outcome,
        )
        return AuditRecord.model_validate(_scrub(record.model_dump()))


class AuditStatistics(BaseModel):
    days: int
    total_intents: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    rejected_intents: int = 0
    pending_approvals: int = 0
    not_executed: int = 0
    intent_type_breakdown: dict[str, int] = Field(default_factory=dict)
    rule_violations: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------

class AuditLogger:
    def __init__(
        self,
        log_path: Path | str,
        buffer_size: int = 100,
        flush_interval: float = 30.0,
        retention_days: int = 30,
        excerpt_length: int = 200,
    ):
        self.log_path = Path(log_path)
        self.buffer_size = buffer_size
        self.flush_interval = flush_interval
        self.retention_days = retention_days
        self.excerpt_length = excerpt_length

        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task | None = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the periodic flush timer on the running loop."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._flush_loop())

    async def close(self) -> None:
        """Stop the timer and flush whatever is buffered."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        await self.flush()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.warning(f"[AUDIT] Timed flush failed, retrying next tick: {e}")

    # --- Recording ---

    async def record(
        self,
        intent: Intent,
        validation: ValidationResult,
        execution: ExecutionResult | None = None,
        source: AuditSource | None = None,
    ) -> AuditEntry:
        source = source or AuditSource()
        if source.chat_message and len(source.chat_message) > self.excerpt_length:
            source = source.model_copy(update={"chat_message": source.chat_message[: self.excerpt_length]})

        entry = AuditEntry(
            intent=intent,
            validation=validation,
            execution=execution,
            source=source,
            outcome=derive_outcome(validation, execution),
        )
        self._buffer.append(entry)
        logger.debug(f"[AUDIT] {entry.intent.type} {entry.intent.id[:8]} → {entry.outcome}")

        if len(self._buffer) >= self.buffer_size:
            await self.flush()
        return entry

    async def flush(self) -> int:
        async with self._lock:
            if not self._buffer:
                return 0

            entries, self._buffer = self._buffer, []

            try:
                lines = "".join(self._serialize(e) + "\n" for e in entries)
                await asyncio.to_thread(self._append, lines)
            except Exception as e:
                logger.warning(f"[AUDIT] Flush of {len(entries)} entries failed, will retry: {e}")
                self._buffer[:0] = entries
                return 0

        logger.info(f"[AUDIT] Flushed {len(entries)} entries to {self.log_path}")
        return len(entries)

    # --- Queries ---

    async def query(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        intent_types: list[str] | None = None,
        outcomes: list[str] | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        """Filtered records, newest first. Includes entries still waiting in the buffer."""
        await self.flush()

        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
            records += [e.to_record() for e in self._buffer]

        if start:
            records = [r for r in records if r.timestamp >= start]
        if end:
            records = [r for r in records if r.timestamp <= end]
        if intent_types:
            records = [r for r in records if r.intent.type in intent_types]
        if outcomes:
            records = [r for r in records if r.outcome in outcomes]

        # Equal timestamps keep the most recently appended first.
        records.reverse()
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit] if limit else records

    async def statistics(self, days: int = 7) -> AuditStatistics:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        stats = AuditStatistics(days=days)

        for record in await self.query(start=since):
            stats.total_intents += 1

            if record.outcome == "rejected":
                stats.rejected_intents += 1
            elif record.outcome == "pending_approval":
                stats.pending_approvals += 1
            elif record.outcome == "failed":
                stats.failed_executions += 1
            elif record.execution is not None:
                stats.successful_executions += 1
            else:
                stats.not_executed += 1

            kind = record.intent.type
            stats.intent_type_breakdown[kind] = stats.intent_type_breakdown.get(kind, 0) + 1

            if record.outcome in ("rejected", "pending_approval"):
                for rule_id in record.validation.applied_rules:
                    stats.rule_violations[rule_id] = stats.rule_violations.get(rule_id, 0) + 1

        return stats

    # --- Retention ---

    async def prune(self, retention_days: int | None = None) -> int:
        """Rewrite the log keeping only entries inside the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        async with self._lock:
            removed = await asyncio.to_thread(self._rewrite_since, cutoff)

        if removed:
            logger.info(f"[AUDIT] Pruned {removed} entries older than {days} days")
        return removed

    async def export(
        self,
        output_path: Path | str,
        fmt: Literal["json", "csv"] = "json",
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        records = await self.query(start=start, end=end)
        output_path = Path(output_path)

        if fmt == "csv":
            await asyncio.to_thread(self._write_csv, output_path, records)
        else:
            data = [json.loads(r.model_dump_json()) for r in records]
            await asyncio.to_thread(output_path.write_text, json.dumps(data, indent=2), "utf-8")

        logger.info(f"[AUDIT] Exported {len(records)} entries to {output_path}")
        return len(records)

    @staticmethod
    def _serialize(entry: AuditEntry) -> str:
        return entry.to_record().model_dump_json()

    # --- File helpers (run in worker threads, under the lock) ---

    def _append(self, lines: str) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(lines)

    def _read_lines(self) -> list[str]:
        try:
            with open(self.log_path, "r", encoding="utf-8") as f:
                return [line for line in f if line.strip()]
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"[AUDIT] Cannot read {self.log_path}: {e}")
            return []

    def _read_records(self) -> list[AuditRecord]:
        records = []
        for line in self._read_lines():
            try:
                records.append(AuditRecord.model_validate_json(line))
            except ValidationError:
                logger.debug(f"[AUDIT] Skipping malformed line in {self.log_path}")
        return records

    def _rewrite_since(self, cutoff: datetime) -> int:
        lines = self._read_lines()
        kept = []
        for line in lines:
            try:
                if AuditRecord.model_validate_json(line).timestamp >= cutoff:
                    kept.append(line)
            except ValidationError:
                continue

        removed = len(lines) - len(kept)
        if removed:
            tmp = self.log_path.with_name(self.log_path.name + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.writelines(kept)
            os.replace(tmp, self.log_path)
        return removed

    @staticmethod
    def _write_csv(path: Path, records: list[AuditRecord]) -> None:
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow([
                "Timestamp", "Intent ID", "Intent Type", "Priority", "Source",
                "Validation Valid", "Execution Success", "Outcome", "Errors", "Duration (ms)",
            ])
            for r in records:
                writer.writerow([
                    r.timestamp.isoformat(),
                    r.intent.id,
                    r.intent.type,
                    r.intent.priority,
                    r.intent.source,
                    r.validation.is_valid,
                    r.execution.success if r.execution else "N/A",
                    r.outcome,
                    "; ".join(r.validation.errors),
                    r.execution.duration_ms if r.execution else "N/A",
                ])
