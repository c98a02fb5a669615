"""
Configuration loader for agentbridge.
Merges defaults with per-project .agentbridge/config.yaml overrides,
then applies environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class PipelineConfig(BaseModel):
    enable_intent_parsing: bool = True
    enable_governance: bool = True
    enable_execution: bool = True
    enable_audit: bool = True


class GovernanceConfig(BaseModel):
    rules_path: str = ".agentbridge/build-protocol.yaml"


class ExecutionConfig(BaseModel):
    max_concurrent: int = Field(default=3, ge=1)
    intent_timeout: float = 30.0
    working_directory: str = "."
    max_file_size: int = 10 * 1024 * 1024
    allowed_extensions: list[str] = Field(default_factory=list)
    max_pending_approvals: int = Field(default=1000, ge=1)


class AuditConfig(BaseModel):
    log_path: str = ".agentbridge/audit.jsonl"
    buffer_size: int = Field(default=100, ge=1)
    flush_interval: float = 30.0
    retention_days: int = 30
    excerpt_length: int = 200


class ComposerConfig(BaseModel):
    enabled: bool = False
    model: str = "anthropic/claude-sonnet-4-20250514"
    max_tokens: int = 512


class BridgeConfig(BaseModel):
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    composer: ComposerConfig = Field(default_factory=ComposerConfig)

    def anchored(self, root: Path) -> "BridgeConfig":
        """Return a copy whose relative paths are resolved against `root`."""
        def _anchor(value: str) -> str:
            p = Path(value).expanduser()
            return str(p if p.is_absolute() else (root / p).resolve())

        return self.model_copy(update={
            "governance": self.governance.model_copy(
                update={"rules_path": _anchor(self.governance.rules_path)}
            ),
            "audit": self.audit.model_copy(
                update={"log_path": _anchor(self.audit.log_path)}
            ),
            "execution": self.execution.model_copy(
                update={"working_directory": _anchor(self.execution.working_directory)}
            ),
        })


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_FALSE_VALUES = {"0", "false", "no", "off"}

_ENV_TOGGLES = {
    "AGENTBRIDGE_ENABLE_PARSING": "enable_intent_parsing",
    "AGENTBRIDGE_ENABLE_GOVERNANCE": "enable_governance",
    "AGENTBRIDGE_ENABLE_EXECUTION": "enable_execution",
    "AGENTBRIDGE_ENABLE_AUDIT": "enable_audit",
}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    for var, key in _ENV_TOGGLES.items():
        if var in environ:
            overrides.setdefault("pipeline", {})[key] = (
                environ[var].strip().lower() not in _FALSE_VALUES
            )

    if environ.get("AGENTBRIDGE_RULES_PATH"):
        overrides.setdefault("governance", {})["rules_path"] = environ["AGENTBRIDGE_RULES_PATH"]
    if environ.get("AGENTBRIDGE_AUDIT_PATH"):
        overrides.setdefault("audit", {})["log_path"] = environ["AGENTBRIDGE_AUDIT_PATH"]
    if environ.get("AGENTBRIDGE_MAX_CONCURRENT"):
        overrides.setdefault("execution", {})["max_concurrent"] = int(environ["AGENTBRIDGE_MAX_CONCURRENT"])
    if environ.get("AGENTBRIDGE_INTENT_TIMEOUT"):
        overrides.setdefault("execution", {})["intent_timeout"] = float(environ["AGENTBRIDGE_INTENT_TIMEOUT"])

    return overrides


def load_config(root: Path | None = None, environ: dict[str, str] | None = None) -> BridgeConfig:
    """
    Load config by merging:
      1. Built-in defaults (agentbridge/config.yaml)
      2. Project overrides (<root>/.agentbridge/config.yaml)
      3. Environment variable overrides (AGENTBRIDGE_*)

    Relative paths are anchored at `root` (or the current directory).
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Project overrides
    if root:
        project_config = root / ".agentbridge" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = deep_merge(base, overrides)

    # 3. Environment
    base = deep_merge(base, _env_overrides(dict(os.environ) if environ is None else environ))

    config = BridgeConfig(**base)
    return config.anchored((root or Path.cwd()).resolve())


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available for the reply composer."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
