from pathlib import Path

from agentbridge.config_loader import deep_merge, load_config


def test_defaults_are_anchored_at_root(tmp_path):
    config = load_config(tmp_path, environ={})

    assert config.pipeline.enable_execution is True
    assert config.execution.max_concurrent == 3
    assert ".md" in config.execution.allowed_extensions
    assert Path(config.governance.rules_path) == tmp_path.resolve() / ".agentbridge" / "build-protocol.yaml"
    assert Path(config.audit.log_path) == tmp_path.resolve() / ".agentbridge" / "audit.jsonl"
    assert Path(config.execution.working_directory) == tmp_path.resolve()


def test_project_overrides_merge_with_defaults(tmp_path):
    (tmp_path / ".agentbridge").mkdir()
    (tmp_path / ".agentbridge" / "config.yaml").write_text(
        "pipeline:\n"
        "  enable_execution: false\n"
        "execution:\n"
        "  working_directory: workspace\n"
        "audit:\n"
        "  log_path: /var/log/agentbridge.jsonl\n"
    )
    config = load_config(tmp_path, environ={})

    assert config.pipeline.enable_execution is False
    assert config.pipeline.enable_governance is True
    assert config.execution.max_concurrent == 3
    assert Path(config.execution.working_directory) == tmp_path.resolve() / "workspace"
    assert config.audit.log_path == "/var/log/agentbridge.jsonl"


def test_environment_overrides(tmp_path):
    config = load_config(tmp_path, environ={
        "AGENTBRIDGE_ENABLE_AUDIT": "off",
        "AGENTBRIDGE_ENABLE_PARSING": "yes",
        "AGENTBRIDGE_MAX_CONCURRENT": "7",
        "AGENTBRIDGE_INTENT_TIMEOUT": "1.5",
        "AGENTBRIDGE_RULES_PATH": "rules.json",
    })

    assert config.pipeline.enable_audit is False
    assert config.pipeline.enable_intent_parsing is True
    assert config.execution.max_concurrent == 7
    assert config.execution.intent_timeout == 1.5
    assert Path(config.governance.rules_path) == tmp_path.resolve() / "rules.json"


def test_deep_merge_leaves_inputs_alone():
    base = {"a": {"b": 1, "c": 2}, "d": [1]}
    merged = deep_merge(base, {"a": {"b": 9}, "d": [2]})

    assert merged == {"a": {"b": 9, "c": 2}, "d": [2]}
    assert base == {"a": {"b": 1, "c": 2}, "d": [1]}
