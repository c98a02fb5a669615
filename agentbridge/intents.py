"""
agentbridge Intents — the typed records extracted from chat output.

Every intent shares an id, a timestamp, an origin and a priority.
The `type` tag selects the variant and with it the populated fields.
Intents are frozen: rule modifications produce a new copy via the
JSON tree view (see `fieldpath`).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


IntentSource = Literal["ai_chat", "user_input", "system"]
Priority = Literal["low", "medium", "high", "critical"]
FileOperationKind = Literal["create", "update", "delete", "rename", "move"]

INTENT_TYPES = (
    "file_operation",
    "terminal_command",
    "code_generation",
    "external_service",
    "project_scaffold",
)

# Intent types whose execution is handed to the external execution engine.
FILE_AFFECTING = ("file_operation", "code_generation")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Part(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)


class IntentBase(_Part):
    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_utcnow)
    source: IntentSource = "ai_chat"
    priority: Priority = "medium"
    metadata: dict[str, Any] = Field(default_factory=dict)

    def tree(self) -> dict[str, Any]:
        """Plain JSON view used for rule evaluation and modification."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------

class FileTarget(_Part):
    path: str
    content: str | None = None
    new_path: str | None = None
    backup: bool | None = None


class FileValidation(_Part):
    file_type: str = "text"
    size_limit: int | None = None
    permissions: list[str] = Field(default_factory=list)


class FileOperationIntent(IntentBase):
    type: Literal["file_operation"] = "file_operation"
    operation: FileOperationKind
    target: FileTarget
    validation: FileValidation = Field(default_factory=FileValidation)


# ---------------------------------------------------------------------------
# Terminal commands
# ---------------------------------------------------------------------------

class CommandValidation(_Part):
    allowed_commands: list[str] | None = None
    restricted_paths: list[str] | None = None
    require_confirmation: bool = False


class TerminalCommandIntent(IntentBase):
    type: Literal["terminal_command"] = "terminal_command"
    command: str
    working_directory: str | None = None
    environment: dict[str, str] | None = None
    timeout: float | None = None  # seconds
    validation: CommandValidation = Field(default_factory=CommandValidation)


# ---------------------------------------------------------------------------
# Code generation
# ---------------------------------------------------------------------------

class CodeTarget(_Part):
    file: str
    function: str | None = None
    component: str | None = None
    class_: str | None = Field(default=None, alias="class")


class CodeRequirements(_Part):
    language: str = "javascript"
    framework: str | None = None
    patterns: list[str] = Field(default_factory=list)
    tests: bool = False


class CodeContext(_Part):
    existing_code: str | None = None
    imports: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class CodeGenerationIntent(IntentBase):
    type: Literal["code_generation"] = "code_generation"
    target: CodeTarget
    requirements: CodeRequirements = Field(default_factory=CodeRequirements)
    context: CodeContext = Field(default_factory=CodeContext)


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class ServiceAuth(_Part):
    type: Literal["api_key", "oauth", "token"]
    secret_key: str | None = None


class ExternalServiceIntent(IntentBase):
    type: Literal["external_service"] = "external_service"
    service: str
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    authentication: ServiceAuth | None = None


# ---------------------------------------------------------------------------
# Project scaffolds
# ---------------------------------------------------------------------------

class ScaffoldFile(_Part):
    path: str
    template: str | None = None
    content: str | None = None


class ScaffoldStructure(_Part):
    directories: list[str] = Field(default_factory=list)
    files: list[ScaffoldFile] = Field(default_factory=list)


class ProjectScaffoldIntent(IntentBase):
    type: Literal["project_scaffold"] = "project_scaffold"
    framework: str = "custom"
    structure: ScaffoldStructure = Field(default_factory=ScaffoldStructure)
    dependencies: list[str] = Field(default_factory=list)


Intent = Annotated[
    Union[
        FileOperationIntent,
        TerminalCommandIntent,
        CodeGenerationIntent,
        ExternalServiceIntent,
        ProjectScaffoldIntent,
    ],
    Field(discriminator="type"),
]

_INTENT_ADAPTER: TypeAdapter[Intent] = TypeAdapter(Intent)


def intent_from_tree(tree: dict[str, Any]) -> Intent:
    """Rebuild a typed intent from its JSON tree view."""
    return _INTENT_ADAPTER.validate_python(tree)


def target_path(intent: Intent) -> str | None:
    """The file a file-affecting intent points at, if any."""
    if isinstance(intent, FileOperationIntent):
        return intent.target.path
    if isinstance(intent, CodeGenerationIntent):
        return intent.target.file
    return None


# ---------------------------------------------------------------------------
# Execution result
# ---------------------------------------------------------------------------

class ExecutionResult(BaseModel):
    success: bool
    intent: Intent
    output: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    affected_files: list[str] = Field(default_factory=list)
    side_effects: list[str] = Field(default_factory=list)
