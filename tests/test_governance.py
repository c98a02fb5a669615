import json
import os

import pytest
import yaml

from agentbridge.governance import (
    GovernanceRule,
    GovernanceValidator,
    RuleCondition,
    RuleStore,
    default_rules,
    evaluate,
    evaluate_condition,
)
from agentbridge.intents import (
    CodeGenerationIntent,
    CodeTarget,
    ExternalServiceIntent,
    FileOperationIntent,
    FileTarget,
    TerminalCommandIntent,
)


def _file(path: str, content: str | None = None, operation: str = "create") -> FileOperationIntent:
    return FileOperationIntent(operation=operation, target=FileTarget(path=path, content=content))


def _rule(rule_id: str, action: str, conditions=(), **kwargs) -> GovernanceRule:
    return GovernanceRule(
        id=rule_id,
        name=rule_id.title(),
        intent_types=["file_operation"],
        conditions=list(conditions),
        action=action,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

TREE = {
    "command": "npm install lodash",
    "priority": "high",
    "flag": True,
    "count": 3,
    "tags": ["x", "y"],
}


@pytest.mark.parametrize("operator,field,value,expected", [
    ("equals", "priority", "high", True),
    ("equals", "priority", "low", False),
    ("equals", "flag", 1, False),
    ("equals", "missing", None, False),
    ("contains", "command", "install", True),
    ("contains", "tags", "y", True),
    ("contains", "count", 3, False),
    ("matches", "command", r"^npm\s", True),
    ("matches", "missing", "^undefined$", True),
    ("in", "priority", ["high", "critical"], True),
    ("in", "missing", ["high"], False),
    ("greater_than", "count", 2, True),
    ("greater_than", "command.length", 100, False),
    ("less_than", "count", "10", True),
    ("less_than", "missing", 10, False),
])
def test_condition_operators(operator, field, value, expected):
    condition = RuleCondition(field=field, operator=operator, value=value)
    assert evaluate_condition(condition, TREE) is expected


def test_invalid_regex_is_false_not_error():
    condition = RuleCondition(field="command", operator="matches", value="([unclosed")
    assert evaluate_condition(condition, TREE) is False


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def test_safe_file_is_allowed():
    result = evaluate(_file("src/App.jsx", "console.log(1)"), default_rules())
    assert result.is_valid
    assert not result.requires_approval
    assert result.applied_rules == ["default_file_extension_validation"]
    assert result.errors == []


def test_system_file_denied_with_rule_name():
    result = evaluate(_file("/etc/passwd"), default_rules())
    assert not result.is_valid
    assert "default_system_file_protection" in result.applied_rules
    assert result.errors == ["Action denied by rule: System File Protection"]


def test_oversized_content_denied():
    result = evaluate(_file("big.txt", "x" * (5 * 1024 * 1024 + 1)), default_rules())
    assert not result.is_valid
    assert "default_file_size_limit" in result.applied_rules


def test_dangerous_command_requires_approval():
    result = evaluate(TerminalCommandIntent(command="rm -rf build"), default_rules())
    assert result.is_valid
    assert result.requires_approval
    assert result.applied_rules == ["default_dangerous_commands"]
    assert result.warnings


def test_word_boundaries_avoid_false_positives():
    result = evaluate(TerminalCommandIntent(command="sudo rm notes.txt"), default_rules())
    assert result.requires_approval is True

    # "dd" in address, "rm" in firmware
    clean = evaluate(TerminalCommandIntent(command="echo address && ls firmware"), default_rules())
    assert clean.requires_approval is False


def test_external_service_always_requires_approval():
    intent = ExternalServiceIntent(service="github", action="create_issue")
    result = evaluate(intent, default_rules())
    assert result.requires_approval


def test_codegen_extension_rule_uses_target_file():
    intent = CodeGenerationIntent(target=CodeTarget(file="src/components/Card.jsx", component="Card"))
    result = evaluate(intent, default_rules())
    assert result.applied_rules == ["default_codegen_extension_validation"]


def test_deny_is_permanent_and_later_rules_still_contribute():
    rules = [
        _rule("deny_all", "deny"),
        _rule("allow_all", "allow"),
        _rule("flag", "require_approval"),
        _rule("rewrite", "modify", modifications={"target.path": "safe.js"}),
    ]
    result = evaluate(_file("a.js"), rules)

    assert result.is_valid is False
    assert result.requires_approval is True
    assert result.applied_rules == ["deny_all", "allow_all", "flag", "rewrite"]
    assert result.modifications == {"target.path": "safe.js"}
    assert len(result.warnings) == 2


def test_later_modification_wins_on_collision():
    rules = [
        _rule("first", "modify", modifications={"target.path": "one.js", "priority": "low"}),
        _rule("second", "modify", modifications={"target.path": "two.js"}),
    ]
    result = evaluate(_file("a.js"), rules)
    assert result.modifications == {"target.path": "two.js", "priority": "low"}


def test_rule_type_filter_and_and_semantics():
    rules = [
        GovernanceRule(
            id="both",
            intent_types=["file_operation"],
            conditions=[
                RuleCondition(field="target.path", operator="matches", value=r"\.js$"),
                RuleCondition(field="operation", operator="equals", value="delete"),
            ],
            action="deny",
        ),
    ]
    assert evaluate(_file("a.js", operation="create"), rules).is_valid
    assert not evaluate(_file("a.js", operation="delete"), rules).is_valid
    assert evaluate(TerminalCommandIntent(command="a.js"), rules).applied_rules == []


def test_validation_is_pure():
    intent = _file("/etc/hosts", "x")
    rules = default_rules()
    first = evaluate(intent, rules)
    second = evaluate(intent, rules)
    assert first.model_dump() == second.model_dump()


def test_rules_accept_camel_case_intent_types():
    rule = GovernanceRule.model_validate({"id": "r", "intentTypes": ["terminal_command"], "action": "deny"})
    assert rule.intent_types == ["terminal_command"]


# ---------------------------------------------------------------------------
# Rule store
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_missing_document_falls_back_to_defaults(tmp_path):
    store = RuleStore(tmp_path / "nope.yaml")
    rules = await store.load()
    assert [r.id for r in rules] == [r.id for r in default_rules()]


@pytest.mark.asyncio
async def test_malformed_document_falls_back_to_defaults(tmp_path):
    path = tmp_path / "protocol.yaml"
    path.write_text("governance: [this is: not: valid")
    store = RuleStore(path)

    rules = await store.load()
    assert len(rules) == len(default_rules())


@pytest.mark.asyncio
async def test_ensure_default_document_is_idempotent(tmp_path):
    path = tmp_path / ".agentbridge" / "build-protocol.yaml"
    store = RuleStore(path)

    assert await store.ensure_default_document() is True
    document = yaml.safe_load(path.read_text())
    assert document["governance"]["enabled"] is True
    assert "middleware" in document

    # A user edit must survive a second ensure
    document["governance"]["rules"] = document["governance"]["rules"][:1]
    path.write_text(yaml.safe_dump(document))
    assert await store.ensure_default_document() is False
    assert len(yaml.safe_load(path.read_text())["governance"]["rules"]) == 1


@pytest.mark.asyncio
async def test_reload_on_modification_time_change(tmp_path):
    path = tmp_path / "protocol.json"
    path.write_text(json.dumps({"governance": {"rules": [{"id": "one", "intent_types": ["file_operation"]}]}}))
    store = RuleStore(path)

    first = await store.load()
    assert [r.id for r in first] == ["one"]

    path.write_text(json.dumps({"governance": {"rules": [{"id": "two"}, {"id": "three"}]}}))
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

    second = await store.load()
    assert [r.id for r in second] == ["two", "three"]
    # Old snapshot is untouched
    assert [r.id for r in first] == ["one"]


@pytest.mark.asyncio
async def test_update_rules_keeps_other_sections(tmp_path):
    path = tmp_path / "protocol.yaml"
    store = RuleStore(path)
    await store.ensure_default_document()

    await store.update_rules([_rule("only", "deny")])

    document = yaml.safe_load(path.read_text())
    assert [r["id"] for r in document["governance"]["rules"]] == ["only"]
    assert "middleware" in document
    assert [r.id for r in await store.load()] == ["only"]


@pytest.mark.asyncio
async def test_validator_uses_store_rules(tmp_path):
    path = tmp_path / "protocol.yaml"
    store = RuleStore(path)
    await store.update_rules([_rule("no_js", "deny", [RuleCondition(field="target.path", operator="matches", value=r"\.js$")])])

    validator = GovernanceValidator(store)
    result = await validator.validate(_file("a.js"))
    assert not result.is_valid
    assert result.errors == ["Action denied by rule: No_Js"]
