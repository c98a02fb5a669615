import json

from typer.testing import CliRunner

from agentbridge import __version__
from agentbridge.cli import app

runner = CliRunner()


def _audit_lines(root):
    path = root / ".agentbridge" / "audit.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"AGENTBRIDGE v{__version__}" in result.stdout


def test_init_creates_config_and_rules(tmp_path):
    result = runner.invoke(app, ["init", str(tmp_path)])

    assert result.exit_code == 0
    config = tmp_path / ".agentbridge" / "config.yaml"
    assert config.exists()
    assert (tmp_path / ".agentbridge" / "build-protocol.yaml").exists()

    # Re-running keeps the existing files
    config.write_text("pipeline:\n  enable_execution: false\n")
    assert runner.invoke(app, ["init", str(tmp_path)]).exit_code == 0
    assert config.read_text() == "pipeline:\n  enable_execution: false\n"


def test_process_then_inspect_audit(tmp_path):
    runner.invoke(app, ["init", str(tmp_path)])

    result = runner.invoke(app, [
        "process", 'Create file "notes.md" with content "hello"',
        "--root", str(tmp_path), "--auto-execute", "--json",
    ])
    assert result.exit_code == 0
    assert '"executed": 1' in result.stdout
    assert (tmp_path / "notes.md").read_text() == "hello"

    denied = runner.invoke(app, ["process", 'Create file "/etc/passwd"', "--root", str(tmp_path)])
    assert denied.exit_code == 0

    outcomes = [line["outcome"] for line in _audit_lines(tmp_path)]
    assert outcomes.count("rejected") == 1
    assert "processed" in outcomes

    audit = runner.invoke(app, ["audit", "--root", str(tmp_path), "--outcome", "rejected"])
    assert audit.exit_code == 0

    stats = runner.invoke(app, ["stats", "--root", str(tmp_path)])
    assert stats.exit_code == 0
    assert "Rejected:          1" in stats.stdout

    out = tmp_path / "audit.csv"
    export = runner.invoke(app, ["export", str(out), "--root", str(tmp_path), "--format", "csv"])
    assert export.exit_code == 0
    assert out.read_text().startswith("Timestamp,")


def test_rules_and_status(tmp_path):
    assert runner.invoke(app, ["rules", "--root", str(tmp_path)]).exit_code == 0

    status = runner.invoke(app, ["status", "--root", str(tmp_path)])
    assert status.exit_code == 0
    assert "Rules:    8" in status.stdout


def test_export_rejects_unknown_format(tmp_path):
    result = runner.invoke(app, ["export", str(tmp_path / "out.xml"), "--root", str(tmp_path), "--format", "xml"])
    assert result.exit_code == 1


def test_missing_root_exits(tmp_path):
    result = runner.invoke(app, ["stats", "--root", str(tmp_path / "nope")])
    assert result.exit_code == 1
