"""
agentbridge Execution Engine — applies approved file intents.

Subscribes to the bus's intent-approved channel and performs the file
mutation through the workspace. Operations are applied one at a time,
in the order they were approved.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from pathlib import PurePosixPath

from loguru import logger
from pydantic import BaseModel, Field

from agentbridge.audit_logger import AuditLogger, AuditSource
from agentbridge.event_bus import INTENT_APPROVED, BridgeEvent, EventBus, IntentApproved
from agentbridge.governance import ValidationResult
from agentbridge.intents import ExecutionResult, FileOperationIntent, FileTarget
from agentbridge.workspace import Workspace, WorkspaceError


class FileOperationResult(BaseModel):
    success: bool
    intent_id: str
    operation: str
    target_path: str | None = None
    duration_ms: float = 0.0
    error: str | None = None
    affected_files: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EngineStats(BaseModel):
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    last_operation_time: datetime | None = None


class ExecutionEngine:
    def __init__(
        self,
        workspace: Workspace,
        allowed_extensions: list[str] | None = None,
        max_file_size: int = 10 * 1024 * 1024,
        auditor: AuditLogger | None = None,
    ):
        self.workspace = workspace
        self.allowed_extensions = list(allowed_extensions or [])
        self.max_file_size = max_file_size
        self.auditor = auditor
        self.stats = EngineStats()
        self._lock = asyncio.Lock()

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self._on_event, INTENT_APPROVED)
        logger.info(f"[ENGINE] Listening for approved intents (workspace {self.workspace.root})")

    async def _on_event(self, event: BridgeEvent) -> None:
        await self.apply(IntentApproved.model_validate(event.payload))

    # --- Apply ---

    async def apply(self, event: IntentApproved) -> FileOperationResult:
        async with self._lock:
            start = time.monotonic()
            try:
                self._check(event)
                affected = await self._perform(event)
                result = FileOperationResult(
                    success=True,
                    intent_id=event.intent_id,
                    operation=event.operation,
                    target_path=event.target_path,
                    affected_files=affected,
                    duration_ms=self._elapsed(start),
                )
                logger.info(f"[ENGINE] {event.operation} {event.target_path} ({result.duration_ms:.1f}ms)")
            except (WorkspaceError, OSError) as e:
                result = FileOperationResult(
                    success=False,
                    intent_id=event.intent_id,
                    operation=event.operation,
                    target_path=event.target_path,
                    error=str(e),
                    duration_ms=self._elapsed(start),
                )
                logger.warning(f"[ENGINE] {event.operation} {event.target_path} failed: {e}")

            self._count(result.success)

        await self._audit(event, result)
        return result

    def _check(self, event: IntentApproved) -> None:
        if not event.target_path:
            raise WorkspaceError("Approved intent has no target path")

        for path in filter(None, (event.target_path, event.new_path)):
            ext = PurePosixPath(path).suffix
            if ext and self.allowed_extensions and ext not in self.allowed_extensions:
                raise WorkspaceError(f"File extension {ext} not allowed")
            if not self.workspace.contains(path):
                raise WorkspaceError(f"Path {path} is outside allowed workspace")

        if event.content and len(event.content.encode("utf-8")) > self.max_file_size:
            raise WorkspaceError(f"File content exceeds maximum size limit ({self.max_file_size} bytes)")

    async def _perform(self, event: IntentApproved) -> list[str]:
        path = event.target_path
        op = event.operation

        if op == "create":
            name = PurePosixPath(path).name
            return [await self.workspace.create_file(name, path, event.content or "")]
        if op == "update":
            return [await self.workspace.update_file(path, {"content": event.content or ""})]
        if op == "delete":
            return [await self.workspace.delete_file(path)]
        if op in ("rename", "move"):
            if not event.new_path:
                raise WorkspaceError(f"{op} of {path} has no new path")
            return [await self.workspace.update_file(path, {"path": event.new_path})]
        raise WorkspaceError(f"Unsupported operation: {op}")

    async def _audit(self, event: IntentApproved, result: FileOperationResult) -> None:
        if self.auditor is None:
            return

        intent = FileOperationIntent(
            id=event.intent_id,
            timestamp=event.timestamp,
            operation=event.operation,
            target=FileTarget(path=event.target_path or "", content=event.content, new_path=event.new_path),
        )
        await self.auditor.record(
            intent,
            ValidationResult(intent=intent),
            ExecutionResult(
                success=result.success,
                intent=intent,
                output=f"{event.operation} applied by execution engine" if result.success else None,
                error=result.error,
                duration_ms=result.duration_ms,
                affected_files=result.affected_files,
            ),
            AuditSource(session_id=event.session_id, user_id=event.user_id),
        )

    def _count(self, success: bool) -> None:
        self.stats.total_operations += 1
        self.stats.last_operation_time = datetime.now(timezone.utc)
        if success:
            self.stats.successful_operations += 1
        else:
            self.stats.failed_operations += 1

    @staticmethod
    def _elapsed(start: float) -> float:
        return round((time.monotonic() - start) * 1000, 3)
