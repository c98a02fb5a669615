"""
agentbridge Governance — rules, the rule store, and the validator.

A rule applies to an intent when the intent's type is listed in the rule
and every condition holds against the intent's JSON view. Every applying
rule contributes to the verdict, in stored order; a deny does not stop
later rules from adding warnings or modifications.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from agentbridge.fieldpath import MISSING, get_path, stringify
from agentbridge.intents import Intent


Operator = Literal["equals", "contains", "matches", "in", "greater_than", "less_than"]
RuleAction = Literal["allow", "deny", "require_approval", "modify"]


class RuleLoadError(Exception):
    """The governance document could not be read or parsed."""


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class RuleCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator
    value: Any = None


class GovernanceRule(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: f"rule_{uuid.uuid4().hex[:12]}")
    name: str = "Unnamed Rule"
    description: str = ""
    intent_types: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("intent_types", "intentTypes"),
    )
    conditions: list[RuleCondition] = Field(default_factory=list)
    action: RuleAction = "allow"
    modifications: dict[str, Any] | None = None


class ValidationResult(BaseModel):
    is_valid: bool = True
    intent: Intent
    applied_rules: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    modifications: dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False

    def absorb(self, effect: "RuleEffect") -> None:
        """Fold one rule's effect in. Validity only goes down, approval only up."""
        self.applied_rules.extend(effect.applied_rules)
        self.errors.extend(effect.errors)
        self.warnings.extend(effect.warnings)
        self.modifications.update(effect.modifications)
        if effect.denied:
            self.is_valid = False
        if effect.requires_approval:
            self.requires_approval = True


@dataclass
class RuleEffect:
    """The partial verdict of a single applying rule."""
    applied_rules: list[str] = field(default_factory=list)
    denied: bool = False
    requires_approval: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    modifications: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _same(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def evaluate_condition(condition: RuleCondition, tree: dict[str, Any]) -> bool:
    value = get_path(tree, condition.field)
    expected = condition.value
    op = condition.operator

    if op == "equals":
        return value is not MISSING and _same(value, expected)

    if op == "contains":
        if isinstance(value, str) and isinstance(expected, (str, int, float)):
            return str(expected) in value
        if isinstance(value, list):
            return expected in value
        return False

    if op == "matches":
        try:
            return re.search(str(expected), stringify(value)) is not None
        except re.error as e:
            logger.warning(f"[GOVERNANCE] Invalid pattern {expected!r} on '{condition.field}': {e}")
            return False

    if op == "in":
        return value is not MISSING and isinstance(expected, list) and value in expected

    left, right = _number(value), _number(expected)
    if left is None or right is None:
        return False
    if op == "greater_than":
        return left > right
    if op == "less_than":
        return left < right
    return False


def rule_applies(rule: GovernanceRule, intent: Intent, tree: dict[str, Any] | None = None) -> bool:
    if intent.type not in rule.intent_types:
        return False
    tree = intent.tree() if tree is None else tree
    return all(evaluate_condition(c, tree) for c in rule.conditions)


def rule_effect(rule: GovernanceRule) -> RuleEffect:
    effect = RuleEffect(applied_rules=[rule.id])

    if rule.action == "deny":
        effect.denied = True
        effect.errors.append(f"Action denied by rule: {rule.name}")
    elif rule.action == "require_approval":
        effect.requires_approval = True
        effect.warnings.append(f"Action requires approval: {rule.description or rule.name}")
    elif rule.action == "modify" and rule.modifications:
        effect.modifications = dict(rule.modifications)
        effect.warnings.append(f"Action modified by rule: {rule.name}")

    return effect


def evaluate(intent: Intent, rules: tuple[GovernanceRule, ...] | list[GovernanceRule]) -> ValidationResult:
    """Validate `intent` against `rules`. Pure: same inputs, same result."""
    result = ValidationResult(intent=intent)
    tree = intent.tree()

    for rule in rules:
        if rule_applies(rule, intent, tree):
            result.absorb(rule_effect(rule))

    return result


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

_CODE_EXTENSIONS = r"\.(js|jsx|ts|tsx|py|css|html|json|md)$"


def default_rules() -> list[GovernanceRule]:
    return [
        GovernanceRule(
            id="default_file_size_limit",
            name="File Size Limit",
            description="Prevent creation of files larger than 5MB",
            intent_types=["file_operation"],
            conditions=[RuleCondition(field="target.content.length", operator="greater_than", value=5 * 1024 * 1024)],
            action="deny",
        ),
        GovernanceRule(
            id="default_system_file_protection",
            name="System File Protection",
            description="Prevent modification of system configuration files",
            intent_types=["file_operation", "code_generation"],
            conditions=[RuleCondition(field="target.path", operator="matches", value=r"^/(etc|usr|var|bin|sbin|boot|proc|sys)(/|$)")],
            action="deny",
        ),
        GovernanceRule(
            id="default_dangerous_commands",
            name="Dangerous Command Protection",
            description="Require approval for potentially dangerous terminal commands",
            intent_types=["terminal_command"],
            conditions=[RuleCondition(field="command", operator="matches", value=r"\b(rm|delete|format|shutdown|reboot|dd|mkfs)\b")],
            action="require_approval",
        ),
        GovernanceRule(
            id="default_package_installation",
            name="Package Installation Approval",
            description="Require approval for package installations",
            intent_types=["terminal_command"],
            conditions=[RuleCondition(field="command", operator="matches", value=r"\b(npm|yarn|pnpm|pip)\s+(install|add)\b")],
            action="require_approval",
        ),
        GovernanceRule(
            id="default_external_service_approval",
            name="External Service Approval",
            description="Require approval for external service calls",
            intent_types=["external_service"],
            conditions=[],
            action="require_approval",
        ),
        GovernanceRule(
            id="default_working_directory",
            name="Working Directory Restriction",
            description="Restrict terminal commands to project directories",
            intent_types=["terminal_command"],
            conditions=[RuleCondition(field="working_directory", operator="matches", value=r"^/projects/")],
            action="allow",
        ),
        GovernanceRule(
            id="default_file_extension_validation",
            name="File Extension Validation",
            description="Ensure proper file extensions for code files",
            intent_types=["file_operation"],
            conditions=[RuleCondition(field="target.path", operator="matches", value=_CODE_EXTENSIONS)],
            action="allow",
        ),
        GovernanceRule(
            id="default_codegen_extension_validation",
            name="Generated File Extension Validation",
            description="Ensure proper file extensions for generated code",
            intent_types=["code_generation"],
            conditions=[RuleCondition(field="target.file", operator="matches", value=_CODE_EXTENSIONS)],
            action="allow",
        ),
    ]


def default_document(rules: list[GovernanceRule] | None = None) -> dict[str, Any]:
    """The build-protocol document written on first run."""
    return {
        "version": "2.0",
        "governance": {
            "enabled": True,
            "rules": [r.model_dump(mode="json") for r in (rules or default_rules())],
            "settings": {
                "require_approval_threshold": "medium",
                "audit_level": "full",
                "auto_approve": ["low"],
            },
        },
        "middleware": {
            "intent_parser": {"enabled": True, "confidence_threshold": 0.7},
            "execution_router": {"enabled": True, "timeout": 30},
            "audit_logger": {"enabled": True, "retention_days": 30},
        },
    }


# ---------------------------------------------------------------------------
# Rule Store
# ---------------------------------------------------------------------------

_UNLOADED = object()


class RuleStore:
    """
    Loads and caches the rule set from a governance document (YAML or JSON).

    The document is re-read only when its modification time changes. On
    any read or parse failure the built-in defaults are used, and the
    failing state is cached so the store does not retry on every call.
    The rule tuple is swapped wholesale, never mutated.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._rules: tuple[GovernanceRule, ...] = tuple(default_rules())
        self._stamp: object = _UNLOADED

    @property
    def rules(self) -> tuple[GovernanceRule, ...]:
        return self._rules

    async def load(self) -> tuple[GovernanceRule, ...]:
        stamp = await asyncio.to_thread(self._current_stamp)
        if stamp == self._stamp:
            return self._rules

        try:
            rules = await asyncio.to_thread(self._read_rules)
            logger.info(f"[GOVERNANCE] Loaded {len(rules)} rules from {self.path}")
        except RuleLoadError as e:
            logger.warning(f"[GOVERNANCE] {e} - using built-in default rules")
            rules = tuple(default_rules())

        self._rules = rules
        self._stamp = stamp
        return rules

    async def ensure_default_document(self) -> bool:
        """Write the default document unless one already exists. Returns True if written."""
        if self.path.exists():
            return False
        try:
            await asyncio.to_thread(self._write_document, default_document())
        except OSError as e:
            logger.warning(f"[GOVERNANCE] Could not create {self.path}: {e}")
            return False
        logger.info(f"[GOVERNANCE] Created default governance document at {self.path}")
        return True

    async def update_rules(self, rules: list[GovernanceRule]) -> None:
        """Persist `rules` into the document, keeping its other sections."""
        try:
            document = await asyncio.to_thread(self._read_document)
        except RuleLoadError:
            document = default_document()

        governance = document.setdefault("governance", {})
        governance["rules"] = [r.model_dump(mode="json") for r in rules]

        await asyncio.to_thread(self._write_document, document)
        self._rules = tuple(rules)
        self._stamp = await asyncio.to_thread(self._current_stamp)
        logger.info(f"[GOVERNANCE] Stored {len(rules)} rules in {self.path}")

    # --- File helpers ---

    def _current_stamp(self) -> int | None:
        try:
            return self.path.stat().st_mtime_ns
        except OSError:
            return None

    def _read_document(self) -> dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise RuleLoadError(f"Cannot read governance document {self.path}: {e}") from e
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise RuleLoadError(f"Malformed governance document {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise RuleLoadError(f"Governance document {self.path} is not a mapping")
        return data

    def _read_rules(self) -> tuple[GovernanceRule, ...]:
        data = self._read_document()
        raw_rules = (data.get("governance") or {}).get("rules")
        if not isinstance(raw_rules, list):
            raise RuleLoadError(f"No governance.rules list in {self.path}")
        try:
            return tuple(GovernanceRule.model_validate(r) for r in raw_rules)
        except ValidationError as e:
            raise RuleLoadError(f"Invalid rule in {self.path}: {e}") from e

    def _write_document(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.suffix == ".json":
            text = json.dumps(document, indent=2)
        else:
            text = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, self.path)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class GovernanceValidator:
    """Validates intents against the store's current rule snapshot."""

    def __init__(self, store: RuleStore):
        self.store = store

    async def validate(self, intent: Intent) -> ValidationResult:
        rules = await self.store.load()
        result = evaluate(intent, rules)

        logger.debug(
            f"[GOVERNANCE] {intent.type} {intent.id[:8]} — "
            f"valid={result.is_valid} approval={result.requires_approval} "
            f"rules={result.applied_rules}"
        )
        return result

    async def get_rules(self) -> tuple[GovernanceRule, ...]:
        return await self.store.load()

    async def update_rules(self, rules: list[GovernanceRule]) -> None:
        await self.store.update_rules(rules)

    async def ensure_default_document(self) -> bool:
        return await self.store.ensure_default_document()
