"""
agentbridge Router — validated intent → type-specific handler.

Every route request resolves to an ExecutionResult; handler errors come
back as failed results, never as exceptions. At most `max_concurrent`
executions are in flight: requests queue in arrival order and are
drained in batches, each batch settling fully before the next starts.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel, Field

from agentbridge.fieldpath import with_modifications
from agentbridge.governance import ValidationResult
from agentbridge.intents import (
    CodeGenerationIntent,
    ExecutionResult,
    ExternalServiceIntent,
    FileOperationIntent,
    Intent,
    ProjectScaffoldIntent,
    TerminalCommandIntent,
    intent_from_tree,
    target_path,
)
from agentbridge.terminal import TerminalService
from agentbridge.workspace import FileService


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

class ExecutionEnvironment(BaseModel):
    working_directory: str = "."
    env_name: str = "development"
    restrictions: list[str] = Field(default_factory=list)


class ExecutionUser(BaseModel):
    id: str
    permissions: list[str] = Field(default_factory=lambda: ["read", "write"])


class ExecutionContext(BaseModel):
    intent: Intent
    validation: ValidationResult
    environment: ExecutionEnvironment = Field(default_factory=ExecutionEnvironment)
    user: ExecutionUser | None = None


# An external-service handler receives the (modified) intent and returns output.
ServiceHandler = Callable[[ExternalServiceIntent, ExecutionContext], Awaitable[Any]]


def apply_modifications(intent: Intent, modifications: dict[str, Any]) -> Intent:
    """Return a copy of `intent` with dotted-path modifications applied."""
    if not modifications:
        return intent
    return intent_from_tree(with_modifications(intent.tree(), modifications))


def _parent_of(path: str) -> str | None:
    parent = path.rstrip("/").rsplit("/", 1)[0] if "/" in path.rstrip("/") else ""
    return parent or None


def _name_of(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1] or path


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class ExecutionRouter:
    """
    Dispatches intents by type.

    File operations and code generation are not performed here: the
    router approves them and the AgentBridge publishes them to the
    execution engine. Terminal commands go to the terminal collaborator,
    scaffolds to the file collaborator, external services to whichever
    handler is registered for the service name.
    """

    def __init__(
        self,
        terminal: TerminalService | None = None,
        files: FileService | None = None,
        services: dict[str, ServiceHandler] | None = None,
        max_concurrent: int = 3,
        default_timeout: float = 30.0,
    ):
        self.terminal = terminal
        self.files = files
        self.services: dict[str, ServiceHandler] = dict(services or {})
        self.max_concurrent = max_concurrent
        self.default_timeout = default_timeout

        self._queue: list[tuple[ExecutionContext, asyncio.Future]] = []
        self._drain_task: asyncio.Task | None = None
        self._in_flight = 0

    def register_service(self, service: str, handler: ServiceHandler) -> None:
        self.services[service] = handler

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def route(self, context: ExecutionContext) -> ExecutionResult:
        """Queue `context` for execution and wait for its result."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append((context, future))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        while self._queue:
            batch = self._queue[: self.max_concurrent]
            del self._queue[: self.max_concurrent]
            logger.debug(f"[ROUTER] Batch of {len(batch)} ({len(self._queue)} waiting)")
            await asyncio.gather(*(self._settle(ctx, fut) for ctx, fut in batch))

    async def _settle(self, context: ExecutionContext, future: asyncio.Future) -> None:
        self._in_flight += 1
        try:
            result = await self.execute(context)
        finally:
            self._in_flight -= 1
        if not future.done():
            future.set_result(result)

    # --- Execution ---

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        """Run one intent immediately, bypassing the admission queue."""
        start = time.monotonic()
        intent = context.intent

        if not context.validation.is_valid:
            return self._error(intent, "Intent validation failed", start)

        try:
            intent = apply_modifications(intent, context.validation.modifications)

            if isinstance(intent, (FileOperationIntent, CodeGenerationIntent)):
                result = self._approve_file_intent(intent, start)
            elif isinstance(intent, TerminalCommandIntent):
                result = await self._run_terminal(intent, context, start)
            elif isinstance(intent, ExternalServiceIntent):
                result = await self._call_service(intent, context, start)
            elif isinstance(intent, ProjectScaffoldIntent):
                result = await self._scaffold(intent, start)
            else:
                # Not a member of the Intent union, so the result skips validation.
                result = ExecutionResult.model_construct(
                    success=False,
                    intent=intent,
                    error=f"Unsupported intent type: {getattr(intent, 'type', '?')}",
                    duration_ms=self._elapsed(start),
                )
        except Exception as e:
            logger.error(f"[ROUTER] {context.intent.type} {context.intent.id[:8]} crashed: {e}")
            return self._error(intent, str(e) or type(e).__name__, start)

        logger.debug(
            f"[ROUTER] {intent.type} {intent.id[:8]} → "
            f"{'ok' if result.success else 'failed'} ({result.duration_ms:.1f}ms)"
        )
        return result

    def _approve_file_intent(self, intent: FileOperationIntent | CodeGenerationIntent, start: float) -> ExecutionResult:
        path = target_path(intent)
        return ExecutionResult(
            success=True,
            intent=intent,
            output="File operation approved - will be processed by the execution engine",
            duration_ms=self._elapsed(start),
            affected_files=[path] if path else [],
            side_effects=["Approved for execution engine processing"],
        )

    async def _run_terminal(self, intent: TerminalCommandIntent, context: ExecutionContext, start: float) -> ExecutionResult:
        if self.terminal is None:
            return self._error(intent, "No terminal service configured", start)

        session_id = f"execution_{intent.id}"
        cwd = intent.working_directory or context.environment.working_directory
        timeout = intent.timeout or self.default_timeout

        session = await self.terminal.spawn(session_id, cwd=cwd, env=intent.environment)
        try:
            await self.terminal.send(session_id, intent.command)
            try:
                code, output = await asyncio.wait_for(session.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"[ROUTER] Command timed out after {timeout}s: {intent.command}")
                return self._error(intent, f"Command execution timeout after {timeout}s", start)
        finally:
            await self.terminal.kill(session_id)

        return ExecutionResult(
            success=code == 0,
            intent=intent,
            output=output,
            error=None if code == 0 else f"Command exited with code {code}",
            duration_ms=self._elapsed(start),
            side_effects=[f"Terminal command executed: {intent.command}"],
        )

    async def _call_service(self, intent: ExternalServiceIntent, context: ExecutionContext, start: float) -> ExecutionResult:
        handler = self.services.get(intent.service)
        if handler is None:
            return self._error(intent, f"No handler registered for external service '{intent.service}'", start)

        output = await handler(intent, context)
        return ExecutionResult(
            success=True,
            intent=intent,
            output=output,
            duration_ms=self._elapsed(start),
            side_effects=[f"External service: {intent.service}.{intent.action}"],
        )

    async def _scaffold(self, intent: ProjectScaffoldIntent, start: float) -> ExecutionResult:
        if self.files is None:
            return self._error(intent, "No file service configured", start)

        structure = intent.structure
        affected: list[str] = []
        errors: list[str] = []

        entries = [(d, "directory", "") for d in structure.directories]
        entries += [(f.path, "file", f.content or "") for f in structure.files]

        for path, kind, content in entries:
            try:
                await self.files.create_file(_name_of(path), path, content, kind, _parent_of(path))
                affected.append(path)
            except Exception as e:
                errors.append(f"{path}: {e}")

        output = (
            f"Project scaffold created with {len(structure.directories)} directories "
            f"and {len(structure.files)} files"
        )
        if errors:
            output = f"Project scaffold created {len(affected)} of {len(entries)} entries"

        return ExecutionResult(
            success=not errors,
            intent=intent,
            output=output,
            error="; ".join(errors) or None,
            duration_ms=self._elapsed(start),
            affected_files=affected,
            side_effects=["Project structure created"] if affected else [],
        )

    # --- Helpers ---

    @staticmethod
    def _elapsed(start: float) -> float:
        return round((time.monotonic() - start) * 1000, 3)

    def _error(self, intent: Intent, error: str, start: float) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            intent=intent,
            error=error,
            duration_ms=self._elapsed(start),
        )
