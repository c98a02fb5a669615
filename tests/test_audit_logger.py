import asyncio
import csv
import json
from datetime import datetime, timedelta, timezone

import pytest

from agentbridge.audit_logger import AuditEntry, AuditLogger, AuditSource, derive_outcome
from agentbridge.governance import ValidationResult
from agentbridge.intents import ExecutionResult, FileOperationIntent, FileTarget, TerminalCommandIntent


def _intent(path: str = "src/a.js", content: str | None = None) -> FileOperationIntent:
    return FileOperationIntent(operation="create", target=FileTarget(path=path, content=content))


def _validation(intent, is_valid=True, requires_approval=False, rules=()) -> ValidationResult:
    return ValidationResult(
        intent=intent,
        is_valid=is_valid,
        requires_approval=requires_approval,
        applied_rules=list(rules),
    )


def _execution(intent, success: bool) -> ExecutionResult:
    return ExecutionResult(success=success, intent=intent, error=None if success else "boom")


# ---------------------------------------------------------------------------
# Outcome derivation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("is_valid,requires_approval,execution,expected", [
    (False, False, None, "rejected"),
    (False, False, True, "rejected"),
    (False, False, False, "rejected"),
    (False, True, None, "rejected"),
    (False, True, True, "rejected"),
    (False, True, False, "rejected"),
    (True, True, None, "pending_approval"),
    (True, True, True, "pending_approval"),
    (True, True, False, "pending_approval"),
    (True, False, None, "processed"),
    (True, False, True, "processed"),
    (True, False, False, "failed"),
])
def test_outcome_table(is_valid, requires_approval, execution, expected):
    intent = _intent()
    validation = _validation(intent, is_valid, requires_approval)
    result = None if execution is None else _execution(intent, execution)
    assert derive_outcome(validation, result) == expected


def test_entries_are_frozen():
    intent = _intent()
    entry = AuditEntry(intent=intent, validation=_validation(intent), outcome="processed")
    with pytest.raises(Exception):
        entry.outcome = "failed"


# ---------------------------------------------------------------------------
# Buffering
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_flushes_when_buffer_fills(tmp_path):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log, buffer_size=2)

    intent = _intent()
    await auditor.record(intent, _validation(intent))
    assert auditor.buffered == 1
    assert not log.exists()

    await auditor.record(intent, _validation(intent))
    assert auditor.buffered == 0
    assert len(log.read_text().splitlines()) == 2


@pytest.mark.asyncio
async def test_records_are_redacted(tmp_path):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log, excerpt_length=50)
    intent = _intent("src/secret.js", content="API_KEY=hunter2")

    await auditor.record(intent, _validation(intent), source=AuditSource(session_id="s1", chat_message="x" * 500))
    await auditor.flush()

    line = log.read_text().strip()
    record = json.loads(line)
    assert "hunter2" not in line
    assert record["intent"]["target"] == "src/secret.js"
    assert record["source"]["chat_message"] == "x" * 50
    assert record["outcome"] == "processed"


@pytest.mark.asyncio
async def test_failed_flush_requeues_entries(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    auditor = AuditLogger(blocker / "audit.jsonl")

    first, second = _intent("one.js"), _intent("two.js")
    await auditor.record(first, _validation(first))
    await auditor.record(second, _validation(second))

    assert await auditor.flush() == 0
    assert auditor.buffered == 2

    # Entries are still visible to queries while unflushed
    assert len(await auditor.query()) == 2

    auditor.log_path = tmp_path / "audit.jsonl"
    assert await auditor.flush() == 2
    targets = [json.loads(line)["intent"]["target"] for line in auditor.log_path.read_text().splitlines()]
    assert targets == ["one.js", "two.js"]


@pytest.mark.asyncio
async def test_unencodable_text_is_replaced_not_lost(tmp_path):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log)

    good, odd = _intent("good.js"), _intent("odd.js")
    await auditor.record(good, _validation(good), source=AuditSource(session_id="s1", chat_message="hello"))
    await auditor.record(odd, _validation(odd), source=AuditSource(session_id="s2", chat_message="hi \ud800"))

    assert await auditor.flush() == 2
    assert auditor.buffered == 0

    records = [json.loads(line) for line in log.read_text().splitlines()]
    assert [r["intent"]["target"] for r in records] == ["good.js", "odd.js"]
    assert records[1]["source"]["chat_message"] == "hi ?"


@pytest.mark.asyncio
async def test_serialization_failure_keeps_every_entry(tmp_path, monkeypatch):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log)

    first, second = _intent("one.js"), _intent("two.js")
    await auditor.record(first, _validation(first))
    await auditor.record(second, _validation(second))

    def broken(entry):
        raise ValueError("cannot serialize")

    monkeypatch.setattr(auditor, "_serialize", broken)
    assert await auditor.flush() == 0
    assert auditor.buffered == 2
    assert not log.exists()

    monkeypatch.undo()
    assert await auditor.flush() == 2
    assert len(log.read_text().splitlines()) == 2


@pytest.mark.asyncio
async def test_timer_survives_a_failed_tick(tmp_path, monkeypatch):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log, flush_interval=0.01)
    real_flush = auditor.flush
    ticks = 0

    async def flaky_flush():
        nonlocal ticks
        ticks += 1
        if ticks == 1:
            raise RuntimeError("disk hiccup")
        return await real_flush()

    monkeypatch.setattr(auditor, "flush", flaky_flush)
    auditor.start()

    intent = _intent()
    await auditor.record(intent, _validation(intent))
    await asyncio.sleep(0.2)

    assert ticks >= 2
    assert auditor.buffered == 0
    assert log.exists()
    await auditor.close()


@pytest.mark.asyncio
async def test_timer_flushes_periodically(tmp_path):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log, flush_interval=0.01)
    auditor.start()

    intent = _intent()
    await auditor.record(intent, _validation(intent))
    await asyncio.sleep(0.1)

    assert log.exists()
    assert auditor.buffered == 0
    await auditor.close()


@pytest.mark.asyncio
async def test_close_flushes_remaining(tmp_path):
    log = tmp_path / "audit.jsonl"
    auditor = AuditLogger(log, flush_interval=3600)
    auditor.start()

    intent = _intent()
    await auditor.record(intent, _validation(intent))
    await auditor.close()

    assert len(log.read_text().splitlines()) == 1


# ---------------------------------------------------------------------------
# Queries and statistics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_query_filters_and_orders_newest_first(tmp_path):
    auditor = AuditLogger(tmp_path / "audit.jsonl")

    ok = _intent("ok.js")
    denied = _intent("/etc/passwd")
    command = TerminalCommandIntent(command="rm -rf build")

    await auditor.record(ok, _validation(ok), _execution(ok, True))
    await auditor.record(denied, _validation(denied, is_valid=False, rules=["default_system_file_protection"]))
    await auditor.record(command, _validation(command, requires_approval=True, rules=["default_dangerous_commands"]))

    everything = await auditor.query()
    assert [r.intent.id for r in everything] == [command.id, denied.id, ok.id]

    pending = await auditor.query(outcomes=["pending_approval"])
    assert [r.intent.id for r in pending] == [command.id]

    files = await auditor.query(intent_types=["file_operation"], limit=1)
    assert [r.intent.id for r in files] == [denied.id]

    future = datetime.now(timezone.utc) + timedelta(hours=1)
    assert await auditor.query(start=future) == []


@pytest.mark.asyncio
async def test_statistics(tmp_path):
    auditor = AuditLogger(tmp_path / "audit.jsonl")

    a, b, c, d, e = (_intent(f"{n}.js") for n in "abcde")
    await auditor.record(a, _validation(a), _execution(a, True))
    await auditor.record(b, _validation(b), _execution(b, False))
    await auditor.record(c, _validation(c, is_valid=False, rules=["deny_rule", "allow_rule"]))
    await auditor.record(d, _validation(d, requires_approval=True, rules=["deny_rule"]))
    await auditor.record(e, _validation(e))

    stats = await auditor.statistics(days=7)

    assert stats.total_intents == 5
    assert stats.successful_executions == 1
    assert stats.failed_executions == 1
    assert stats.rejected_intents == 1
    assert stats.pending_approvals == 1
    assert stats.not_executed == 1
    assert stats.intent_type_breakdown == {"file_operation": 5}
    assert stats.rule_violations == {"deny_rule": 2, "allow_rule": 1}


# ---------------------------------------------------------------------------
# Retention and export
# ---------------------------------------------------------------------------

def _old_line(days_ago: int) -> str:
    intent = _intent(f"old-{days_ago}.js")
    entry = AuditEntry(
        timestamp=datetime.now(timezone.utc) - timedelta(days=days_ago),
        intent=intent,
        validation=_validation(intent),
        outcome="processed",
    )
    return entry.to_record().model_dump_json() + "\n"


@pytest.mark.asyncio
async def test_prune_rewrites_log(tmp_path):
    log = tmp_path / "audit.jsonl"
    log.write_text(_old_line(90) + _old_line(45) + _old_line(1))
    auditor = AuditLogger(log, retention_days=30)

    assert await auditor.prune() == 2
    remaining = [json.loads(line)["intent"]["target"] for line in log.read_text().splitlines()]
    assert remaining == ["old-1.js"]


@pytest.mark.asyncio
async def test_prune_concurrent_with_flush_loses_nothing(tmp_path):
    log = tmp_path / "audit.jsonl"
    log.write_text(_old_line(90))
    auditor = AuditLogger(log)

    fresh = [_intent(f"new-{i}.js") for i in range(5)]
    for intent in fresh:
        await auditor.record(intent, _validation(intent))

    await asyncio.gather(auditor.prune(), auditor.flush(), auditor.prune())

    targets = {json.loads(line)["intent"]["target"] for line in log.read_text().splitlines()}
    assert targets == {f"new-{i}.js" for i in range(5)}


@pytest.mark.asyncio
async def test_export_json_and_csv(tmp_path):
    auditor = AuditLogger(tmp_path / "audit.jsonl")
    intent = _intent()
    await auditor.record(intent, _validation(intent), _execution(intent, True))

    json_path = tmp_path / "out.json"
    assert await auditor.export(json_path, fmt="json") == 1
    assert json.loads(json_path.read_text())[0]["intent"]["id"] == intent.id

    csv_path = tmp_path / "out.csv"
    assert await auditor.export(csv_path, fmt="csv") == 1
    rows = list(csv.reader(csv_path.open()))
    assert rows[0][0] == "Timestamp"
    assert rows[1][1] == intent.id
    assert rows[1][7] == "processed"
