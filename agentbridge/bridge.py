"""
agentbridge Bridge — the coordinator.

Wires parser → validator → router → audit logger into one pipeline per
chat message. It is NOT smart: every decision is made by a stage, the
bridge only sequences them, gates execution, and publishes approved
file intents to whoever listens on the bus.

Each stage can be switched off independently; a disabled stage is
replaced by a neutral passthrough.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from agentbridge.audit_logger import AuditLogger, AuditRecord, AuditSource, AuditStatistics, Outcome, derive_outcome
from agentbridge.composer import ComposerError, ReplyComposer, TextGenerator
from agentbridge.config_loader import BridgeConfig, deep_merge
from agentbridge.event_bus import INTENT_APPROVED, EventBus, IntentApproved
from agentbridge.execution_engine import ExecutionEngine
from agentbridge.governance import GovernanceRule, GovernanceValidator, RuleStore, ValidationResult
from agentbridge.intents import (
    FILE_AFFECTING,
    CodeGenerationIntent,
    ExecutionResult,
    ExternalServiceIntent,
    FileOperationIntent,
    Intent,
    ProjectScaffoldIntent,
    TerminalCommandIntent,
    target_path,
)
from agentbridge.parser import IntentExtractor, ParsedOutput, PatternIntentParser
from agentbridge.router import ExecutionContext, ExecutionEnvironment, ExecutionRouter, ExecutionUser
from agentbridge.terminal import LocalTerminal, TerminalService
from agentbridge.workspace import Workspace


class AgentBridgeError(Exception):
    pass


class BridgeNotInitializedError(AgentBridgeError):
    pass


class IntentNotPendingError(AgentBridgeError):
    pass


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class IntentOutcome(BaseModel):
    intent: Intent
    validation: ValidationResult
    execution: ExecutionResult | None = None
    outcome: Outcome


class MessageSummary(BaseModel):
    total: int = 0
    valid: int = 0
    executed: int = 0
    rejected: int = 0
    pending_approvals: int = 0


class MessageReport(BaseModel):
    session_id: str
    parsed: ParsedOutput
    results: list[IntentOutcome] = Field(default_factory=list)
    summary: MessageSummary = Field(default_factory=MessageSummary)


class PendingApproval(BaseModel):
    intent: Intent
    validation: ValidationResult
    session_id: str
    user_id: str | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def describe(intent: Intent) -> str:
    """Short human label for an intent."""
    if isinstance(intent, FileOperationIntent):
        return f"{intent.operation} {intent.target.path}"
    if isinstance(intent, CodeGenerationIntent):
        return f"generate {intent.target.file}"
    if isinstance(intent, TerminalCommandIntent):
        return f"run `{intent.command}`"
    if isinstance(intent, ExternalServiceIntent):
        return f"call {intent.service}.{intent.action}"
    if isinstance(intent, ProjectScaffoldIntent):
        return f"scaffold {intent.framework} project"
    return intent.type


def summarize(report: MessageReport) -> str:
    """Deterministic plain-text summary of a message report."""
    s = report.summary
    lines = [
        f"Processed {s.total} intent(s): {s.executed} executed, "
        f"{s.rejected} rejected, {s.pending_approvals} awaiting approval."
    ]
    for r in report.results:
        label = describe(r.intent)
        if r.outcome == "rejected":
            lines.append(f"- Rejected {label}: {'; '.join(r.validation.errors)}")
        elif r.outcome == "pending_approval":
            lines.append(f"- Awaiting approval {label} (id {r.intent.id})")
        elif r.outcome == "failed":
            lines.append(f"- Failed {label}: {r.execution.error if r.execution else 'unknown error'}")
        elif r.execution is not None:
            lines.append(f"- Executed {label}")
        else:
            lines.append(f"- Allowed {label} (not executed)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class AgentBridge:
    """
    One pipeline per message, intents strictly in order.

    Construct with explicit collaborators, or use `from_config` for the
    standard local wiring (shell terminal, workspace files, execution
    engine on the bus, optional LLM composer).
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        parser: IntentExtractor | None = None,
        validator: GovernanceValidator | None = None,
        router: ExecutionRouter | None = None,
        auditor: AuditLogger | None = None,
        bus: EventBus | None = None,
        composer: TextGenerator | None = None,
    ):
        self.config = config or BridgeConfig()
        execution = self.config.execution
        audit = self.config.audit

        self.parser = parser or PatternIntentParser(excerpt_length=audit.excerpt_length)
        self.validator = validator or GovernanceValidator(RuleStore(self.config.governance.rules_path))
        self.router = router or ExecutionRouter(
            max_concurrent=execution.max_concurrent,
            default_timeout=execution.intent_timeout,
        )
        self.auditor = auditor or AuditLogger(
            audit.log_path,
            buffer_size=audit.buffer_size,
            flush_interval=audit.flush_interval,
            retention_days=audit.retention_days,
            excerpt_length=audit.excerpt_length,
        )
        self.bus = bus or EventBus()
        self.composer = composer
        self.engine: ExecutionEngine | None = None

        self._pending: dict[str, PendingApproval] = {}
        self._initialized = False

    @classmethod
    def from_config(cls, config: BridgeConfig, terminal: TerminalService | None = None) -> "AgentBridge":
        workspace = Workspace(config.execution.working_directory)
        bridge = cls(
            config,
            router=ExecutionRouter(
                terminal=terminal or LocalTerminal(),
                files=workspace,
                max_concurrent=config.execution.max_concurrent,
                default_timeout=config.execution.intent_timeout,
            ),
            composer=ReplyComposer(config.composer.model, config.composer.max_tokens)
            if config.composer.enabled else None,
        )
        bridge.engine = ExecutionEngine(
            workspace,
            allowed_extensions=config.execution.allowed_extensions,
            max_file_size=config.execution.max_file_size,
            auditor=bridge.auditor,
        )
        bridge.engine.attach(bridge.bus)
        return bridge

    # --- Lifecycle ---

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Materialize the governance document, load rules, start the audit timer."""
        if self._initialized:
            return

        await self.validator.ensure_default_document()
        rules = await self.validator.get_rules()
        if self.config.pipeline.enable_audit:
            self.auditor.start()

        self._initialized = True
        logger.info(f"[BRIDGE] Initialized with {len(rules)} governance rules ({self._toggles()})")

    async def close(self) -> None:
        await self.auditor.close()
        self._initialized = False
        logger.info("[BRIDGE] Closed")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise BridgeNotInitializedError("AgentBridge.initialize() must be awaited first")

    # --- Pipeline ---

    async def process_message(
        self,
        message: str,
        session_id: str,
        user_id: str | None = None,
        auto_execute: bool = False,
    ) -> MessageReport:
        self._require_initialized()

        if self.config.pipeline.enable_intent_parsing:
            parsed = self.parser.parse(message, session_id)
        else:
            parsed = ParsedOutput(
                original_message=message,
                parse_errors=["Intent parsing disabled"],
                metadata={"parser": "none", "intent_count": 0},
            )

        logger.info(f"[BRIDGE] Parsed {len(parsed.intents)} intents from session {session_id}")

        report = MessageReport(session_id=session_id, parsed=parsed)
        source = AuditSource(session_id=session_id, user_id=user_id, chat_message=message)

        for intent in parsed.intents:
            try:
                result = await self._process_intent(intent, source, auto_execute)
            except Exception as e:
                logger.error(f"[BRIDGE] {intent.type} {intent.id[:8]} crashed: {e}")
                validation = ValidationResult(intent=intent, is_valid=False, errors=[f"Internal error: {e}"])
                await self._audit(intent, validation, None, source)
                result = IntentOutcome(intent=intent, validation=validation, outcome="rejected")
            report.results.append(result)

        report.summary = self._summary(report.results)
        return report

    async def _process_intent(self, intent: Intent, source: AuditSource, auto_execute: bool) -> IntentOutcome:
        validation = await self._validate(intent)
        execution: ExecutionResult | None = None

        if validation.is_valid and validation.requires_approval:
            self._park(PendingApproval(
                intent=intent,
                validation=validation,
                session_id=source.session_id,
                user_id=source.user_id,
            ))
            logger.info(f"[BRIDGE] {describe(intent)} awaits approval (id {intent.id})")
        elif validation.is_valid and auto_execute and self.config.pipeline.enable_execution:
            execution = await self.router.route(self._context(intent, validation, source.user_id))
            await self._publish_if_approved(execution, source)

        await self._audit(intent, validation, execution, source)
        return IntentOutcome(
            intent=intent,
            validation=validation,
            execution=execution,
            outcome=derive_outcome(validation, execution),
        )

    async def _validate(self, intent: Intent) -> ValidationResult:
        if not self.config.pipeline.enable_governance:
            return ValidationResult(intent=intent)
        return await self.validator.validate(intent)

    async def _audit(
        self,
        intent: Intent,
        validation: ValidationResult,
        execution: ExecutionResult | None,
        source: AuditSource,
    ) -> None:
        if self.config.pipeline.enable_audit:
            await self.auditor.record(intent, validation, execution, source)

    def _context(self, intent: Intent, validation: ValidationResult, user_id: str | None) -> ExecutionContext:
        return ExecutionContext(
            intent=intent,
            validation=validation,
            environment=ExecutionEnvironment(working_directory=self.config.execution.working_directory),
            user=ExecutionUser(id=user_id) if user_id else None,
        )

    async def _publish_if_approved(self, execution: ExecutionResult, source: AuditSource) -> None:
        """Hand a successful file-affecting execution to the execution engine."""
        intent = execution.intent
        if not execution.success or intent.type not in FILE_AFFECTING:
            return

        event = IntentApproved(
            intent_id=intent.id,
            operation=intent.operation if isinstance(intent, FileOperationIntent) else "create",
            target_path=target_path(intent),
            content=intent.target.content if isinstance(intent, FileOperationIntent) else None,
            new_path=intent.target.new_path if isinstance(intent, FileOperationIntent) else None,
            user_id=source.user_id,
            session_id=source.session_id,
        )
        await self.bus.emit(INTENT_APPROVED, source.session_id, event.model_dump(mode="json"))

    @staticmethod
    def _summary(results: list[IntentOutcome]) -> MessageSummary:
        return MessageSummary(
            total=len(results),
            valid=sum(1 for r in results if r.validation.is_valid),
            executed=sum(1 for r in results if r.execution is not None and r.execution.success),
            rejected=sum(1 for r in results if not r.validation.is_valid),
            pending_approvals=sum(1 for r in results if r.outcome == "pending_approval"),
        )

    # --- Approvals and direct execution ---

    def _park(self, pending: PendingApproval) -> None:
        """Hold an intent for approval, evicting the oldest beyond the configured cap."""
        self._pending[pending.intent.id] = pending
        while len(self._pending) > self.config.execution.max_pending_approvals:
            oldest = min(self._pending.values(), key=lambda p: p.requested_at)
            del self._pending[oldest.intent.id]
            logger.warning(f"[BRIDGE] Approval queue full, dropped {describe(oldest.intent)} (id {oldest.intent.id})")

    def pending_approvals(self, limit: int | None = None) -> list[PendingApproval]:
        """Intents awaiting approval, newest first."""
        pending = sorted(self._pending.values(), key=lambda p: p.requested_at, reverse=True)
        return pending[:limit] if limit else pending

    async def approve_intent(self, intent_id: str, session_id: str, user_id: str | None = None) -> ExecutionResult:
        """
        Execute a pending intent out-of-band, skipping validation.

        A failed execution puts the intent back in the approval queue so
        it can be approved again.
        """
        self._require_initialized()

        pending = self._pending.pop(intent_id, None)
        if pending is None:
            raise IntentNotPendingError(f"Intent {intent_id} is not awaiting approval")

        logger.info(f"[BRIDGE] {describe(pending.intent)} approved by {user_id or session_id}")
        approved = ValidationResult(
            intent=pending.intent,
            applied_rules=list(pending.validation.applied_rules),
            warnings=list(pending.validation.warnings),
            modifications=dict(pending.validation.modifications),
        )
        execution = await self._execute(pending.intent, approved, AuditSource(session_id=session_id, user_id=user_id))
        if not execution.success:
            self._park(pending)
            logger.info(f"[BRIDGE] {describe(pending.intent)} failed, still awaiting approval: {execution.error}")
        return execution

    async def execute_intent(
        self,
        intent: Intent,
        session_id: str,
        user_id: str | None = None,
        skip_validation: bool = False,
    ) -> ExecutionResult:
        """Validate (unless skipped), route, audit and publish one intent."""
        self._require_initialized()

        source = AuditSource(session_id=session_id, user_id=user_id)
        validation = ValidationResult(intent=intent) if skip_validation else await self._validate(intent)

        if not validation.is_valid:
            await self._audit(intent, validation, None, source)
            return ExecutionResult(
                success=False,
                intent=intent,
                error=f"Validation failed: {'; '.join(validation.errors)}",
            )
        if validation.requires_approval:
            self._park(PendingApproval(
                intent=intent, validation=validation, session_id=session_id, user_id=user_id
            ))
            await self._audit(intent, validation, None, source)
            return ExecutionResult(
                success=False,
                intent=intent,
                error=f"Intent requires approval: {'; '.join(validation.warnings)}",
            )

        return await self._execute(intent, validation, source)

    async def _execute(self, intent: Intent, validation: ValidationResult, source: AuditSource) -> ExecutionResult:
        if self.config.pipeline.enable_execution:
            execution = await self.router.route(self._context(intent, validation, source.user_id))
            await self._publish_if_approved(execution, source)
        else:
            execution = ExecutionResult(success=False, intent=intent, error="Execution is disabled")

        await self._audit(intent, validation, execution, source)
        return execution

    # --- Audit and rules ---

    async def audit_statistics(self, days: int = 7) -> AuditStatistics:
        return await self.auditor.statistics(days)

    async def query_audit(self, **filters: Any) -> list[AuditRecord]:
        return await self.auditor.query(**filters)

    async def get_rules(self) -> tuple[GovernanceRule, ...]:
        return await self.validator.get_rules()

    async def update_rules(self, rules: list[GovernanceRule]) -> None:
        await self.validator.update_rules(rules)

    # --- Configuration ---

    def get_config(self) -> BridgeConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> BridgeConfig:
        """
        Deep-merge section updates, e.g. ``update_config(pipeline={"enable_audit": False})``.

        Settings are pushed to the running stages. The rule document, audit
        log and working directory are bound when the bridge is built, so a
        change to any of those paths is refused and nothing is applied.
        """
        merged = deep_merge(self.config.model_dump(), changes)
        updated = BridgeConfig.model_validate(merged)

        fixed = {
            "governance.rules_path": (self.config.governance.rules_path, updated.governance.rules_path),
            "audit.log_path": (self.config.audit.log_path, updated.audit.log_path),
            "execution.working_directory": (
                self.config.execution.working_directory,
                updated.execution.working_directory,
            ),
        }
        changed = [name for name, (old, new) in fixed.items() if old != new]
        if changed:
            raise AgentBridgeError(f"Cannot change {', '.join(changed)} at runtime; build a new bridge instead")

        self.config = updated
        self._apply_settings()
        logger.info(f"[BRIDGE] Configuration updated ({self._toggles()})")
        return self.get_config()

    def _apply_settings(self) -> None:
        execution, audit = self.config.execution, self.config.audit

        self.router.max_concurrent = execution.max_concurrent
        self.router.default_timeout = execution.intent_timeout

        self.auditor.buffer_size = audit.buffer_size
        self.auditor.flush_interval = audit.flush_interval
        self.auditor.retention_days = audit.retention_days
        self.auditor.excerpt_length = audit.excerpt_length

        if self.engine is not None:
            self.engine.allowed_extensions = list(execution.allowed_extensions)
            self.engine.max_file_size = execution.max_file_size

        # Audit switched on after initialize(); start() is a no-op if already running
        if self._initialized and self.config.pipeline.enable_audit:
            self.auditor.start()

    def enable_components(
        self,
        parsing: bool | None = None,
        governance: bool | None = None,
        execution: bool | None = None,
        audit: bool | None = None,
    ) -> BridgeConfig:
        toggles = {
            "enable_intent_parsing": parsing,
            "enable_governance": governance,
            "enable_execution": execution,
            "enable_audit": audit,
        }
        return self.update_config(pipeline={k: v for k, v in toggles.items() if v is not None})

    def disable_all(self) -> BridgeConfig:
        return self.enable_components(parsing=False, governance=False, execution=False, audit=False)

    def _toggles(self) -> str:
        p = self.config.pipeline
        return (
            f"parsing={p.enable_intent_parsing} governance={p.enable_governance} "
            f"execution={p.enable_execution} audit={p.enable_audit}"
        )

    # --- Health ---

    async def health(self) -> dict[str, Any]:
        rules = await self.validator.get_rules()
        return {
            "initialized": self._initialized,
            "config": self.config.model_dump(mode="json"),
            "components": self.config.pipeline.model_dump(),
            "rules": len(rules),
            "audit_buffered": self.auditor.buffered,
            "router_queue": self.router.queue_depth,
            "router_in_flight": self.router.in_flight,
            "pending_approvals": len(self._pending),
            "engine": self.engine.stats.model_dump(mode="json") if self.engine else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # --- Replies ---

    async def compose_reply(self, report: MessageReport) -> str:
        """
        User-facing summary of a processed message.

        With a composer the model rephrases the deterministic summary;
        any composer failure falls back to the summary itself.
        """
        summary = summarize(report)
        if self.composer is None:
            return summary

        prompt = f"Chat message:\n{report.parsed.original_message[:self.config.audit.excerpt_length]}\n\nReport:\n{summary}"
        try:
            return await self.composer.generate_text(prompt)
        except ComposerError as e:
            logger.warning(f"[BRIDGE] Reply composition failed, using plain summary: {e}")
            return summary
