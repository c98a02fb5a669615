"""
agentbridge Intent Parser

Heuristic extraction of typed intents from free chat text.
This is pattern matching, not language understanding: each pattern
family runs independently over the raw message and every hit becomes
an intent. Hits from different families on the same text are kept.

The parser is a strategy. Anything with a matching `parse()` can be
handed to the AgentBridge instead (e.g. a model-backed extractor).
"""

from __future__ import annotations

import re
import time
from typing import Any, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from agentbridge.intents import (
    CodeContext,
    CodeGenerationIntent,
    CodeRequirements,
    CodeTarget,
    CommandValidation,
    FileOperationIntent,
    FileTarget,
    FileValidation,
    Intent,
    Priority,
    TerminalCommandIntent,
)


class ParsedOutput(BaseModel):
    original_message: str
    intents: list[Intent] = Field(default_factory=list)
    confidence: float = 0.0  # normalized to [0, 1]
    parse_errors: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class IntentExtractor(Protocol):
    """Text in, intents out."""

    def parse(self, message: str, session_id: str) -> ParsedOutput:
        ...


# ---------------------------------------------------------------------------
# Pattern families
# ---------------------------------------------------------------------------

_Q = r"""(?P<q>["`'])"""

FILE_CREATE = re.compile(
    r"create\s+(?:a\s+)?(?:new\s+)?file\s+(?:called\s+|named\s+)?" + _Q
    + r"""(?P<path>[^"`'\n]+)(?P=q)"""
    + r"""(?:\s+with\s+(?:the\s+)?content\s+(?P<cq>["`'])(?P<content>.*?)(?P=cq))?""",
    re.IGNORECASE | re.DOTALL,
)
FILE_UPDATE = re.compile(
    r"update\s+(?:the\s+)?file\s+" + _Q
    + r"""(?P<path>[^"`'\n]+)(?P=q)"""
    + r"""(?:\s+with\s+(?:the\s+)?content\s+(?P<cq>["`'])(?P<content>.*?)(?P=cq))?""",
    re.IGNORECASE | re.DOTALL,
)
FILE_DELETE = re.compile(
    r"delete\s+(?:the\s+)?file\s+" + _Q + r"""(?P<path>[^"`'\n]+)(?P=q)""",
    re.IGNORECASE,
)
FILE_RENAME = re.compile(
    r"rename\s+(?:the\s+)?(?:file\s+)?" + _Q + r"""(?P<path>[^"`'\n]+)(?P=q)"""
    + r"""\s+to\s+(?P<q2>["`'])(?P<new_path>[^"`'\n]+)(?P=q2)""",
    re.IGNORECASE,
)

RUN_COMMAND = re.compile(
    r"run\s+(?:the\s+)?command\s+" + _Q + r"""(?P<cmd>[^"`'\n]+)(?P=q)""",
    re.IGNORECASE,
)
EXECUTE_COMMAND = re.compile(
    r"execute\s+" + _Q + r"""(?P<cmd>[^"`'\n]+)(?P=q)""",
    re.IGNORECASE,
)
# Package-manager invocations are recognized even when unquoted.
PACKAGE_MANAGER = re.compile(
    r"""\b(?:npm|yarn|pnpm|pip)[ \t]+(?:install|run|start|build|test|add)\b(?:[ \t]+[^\s"`']+)?""",
    re.IGNORECASE,
)

COMPONENT = re.compile(
    r"""create\s+(?:a\s+)?(?:new\s+)?(?:react\s+)?component\s+(?:called\s+|named\s+)?["`']?(?P<name>[A-Za-z_][\w-]*)""",
    re.IGNORECASE,
)
FUNCTION = re.compile(
    r"""generate\s+(?:a\s+)?(?:new\s+)?(?:function|method)\s+(?:called\s+|named\s+)?["`']?(?P<name>[A-Za-z_]\w*)""",
    re.IGNORECASE,
)
CLASS = re.compile(
    r"""(?:add|create|generate)\s+(?:a\s+)?(?:new\s+)?(?:class|interface)\s+(?:called\s+|named\s+)?["`']?(?P<name>[A-Za-z_]\w*)""",
    re.IGNORECASE,
)

CODE_BLOCK = re.compile(r"```(?P<lang>[\w+#.-]*)[^\n]*\n(?P<body>.*?)```", re.DOTALL)

_EXTENSIONS = (
    "jsx|js|mjs|cjs|tsx|ts|py|css|scss|html|htm|json|md|yaml|yml|toml|txt|sh|"
    "sql|go|rs|java|rb|php|vue|svelte|cfg|ini|env|xml|lock"
)
FILE_PATH = re.compile(
    r"(?<![\w./-])(?:\.{1,2}/|/)?(?:[\w.-]+/)*[\w.-]*\w\.(?:" + _EXTENSIONS + r")\b",
    re.IGNORECASE,
)

ACTION_KEYWORDS = (
    "create", "update", "delete", "rename", "generate",
    "build", "run", "execute", "install",
)

DANGEROUS_COMMAND = re.compile(
    r"\b(?:rm|delete|format|kill|sudo|chmod|chown|shutdown|reboot|mkfs|dd)\b",
    re.IGNORECASE,
)

FILE_TYPES = {
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "jsx": "javascript-react",
    "ts": "typescript",
    "tsx": "typescript-react",
    "py": "python",
    "css": "stylesheet",
    "scss": "stylesheet",
    "html": "markup",
    "htm": "markup",
    "json": "data",
    "yaml": "data",
    "yml": "data",
    "toml": "data",
    "md": "markdown",
    "txt": "text",
    "sh": "shell",
}

DEFAULT_SIZE_LIMIT = 1024 * 1024


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def file_type(path: str) -> str:
    """Best-effort type sniffing from the file extension."""
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return "unknown"
    return FILE_TYPES.get(name.rsplit(".", 1)[-1].lower(), "unknown")


def command_priority(command: str) -> Priority:
    lowered = command.lower()
    if re.search(r"\brm\b|\bdelete\b|\bformat\b", lowered):
        return "critical"
    if any(word in lowered for word in ("install", "update", "build")):
        return "high"
    if any(word in lowered for word in ("run", "start", "test")):
        return "medium"
    return "low"


def requires_confirmation(command: str) -> bool:
    return DANGEROUS_COMMAND.search(command) is not None


def confidence_score(message: str, intents: list[Intent]) -> float:
    """
    Heuristic confidence in [0, 1].

    Points on a 0-100 scale: 20 per intent (max 60), 5 per distinct action
    keyword present, 10 per file-path-shaped substring (max 30); minus 20
    for messages under 3 words and 10 for messages over 100 words.
    """
    if not intents:
        return 0.0

    lowered = message.lower()
    words = len(message.split())

    score = min(len(intents) * 20, 60)
    score += sum(5 for keyword in ACTION_KEYWORDS if keyword in lowered)
    score += min(len(FILE_PATH.findall(message)) * 10, 30)

    if words < 3:
        score -= 20
    if words > 100:
        score -= 10

    return round(max(0, min(100, score)) / 100, 2)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class PatternIntentParser:
    """Regex pattern-family intent extractor."""

    name = "pattern-parser-v2"

    def __init__(self, min_code_block_length: int = 20, source_root: str = "src", excerpt_length: int = 200):
        self.min_code_block_length = min_code_block_length
        self.source_root = source_root.rstrip("/")
        self.excerpt_length = excerpt_length

    def parse(self, message: str, session_id: str) -> ParsedOutput:
        start = time.monotonic()
        parse_errors: list[str] = []

        try:
            meta = {"session_id": session_id, "excerpt": message[: self.excerpt_length]}
            found: list[Intent] = [
                *self._file_operations(message, meta),
                *self._terminal_commands(message, meta),
                *self._code_generation(message, meta),
                *self._code_blocks(message, meta),
            ]

            # Ids are unique by construction; the output contract still promises it.
            seen: set[str] = set()
            intents = []
            for intent in found:
                if intent.id not in seen:
                    seen.add(intent.id)
                    intents.append(intent)

            confidence = confidence_score(message, intents)
        except Exception as e:
            logger.warning(f"[PARSER] Extraction failed: {e}")
            parse_errors.append(f"Parse error: {e}")
            intents = []
            confidence = 0.0

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug(f"[PARSER] {len(intents)} intents from {len(message)} chars ({elapsed_ms:.1f}ms)")

        return ParsedOutput(
            original_message=message,
            intents=intents,
            confidence=confidence,
            parse_errors=parse_errors,
            metadata={
                "parser": self.name,
                "parse_time_ms": round(elapsed_ms, 3),
                "intent_count": len(intents),
                "session_id": session_id,
            },
        )

    # --- Pattern families ---

    def _file_operations(self, message: str, meta: dict) -> list[Intent]:
        intents: list[Intent] = []

        for m in FILE_CREATE.finditer(message):
            intents.append(self._file_intent("create", m.group("path"), m.group("content"), meta, "file_create"))
        for m in FILE_UPDATE.finditer(message):
            intents.append(self._file_intent("update", m.group("path"), m.group("content"), meta, "file_update"))
        for m in FILE_DELETE.finditer(message):
            intents.append(self._file_intent("delete", m.group("path"), None, meta, "file_delete"))
        for m in FILE_RENAME.finditer(message):
            intents.append(self._file_intent(
                "rename", m.group("path"), None, meta, "file_rename", new_path=m.group("new_path").strip(),
            ))

        return intents

    def _terminal_commands(self, message: str, meta: dict) -> list[Intent]:
        intents: list[Intent] = []
        quoted_spans: list[tuple[int, int]] = []

        for pattern, label in ((RUN_COMMAND, "run_command"), (EXECUTE_COMMAND, "execute_command")):
            for m in pattern.finditer(message):
                quoted_spans.append(m.span())
                intents.append(self._command_intent(m.group("cmd").strip(), meta, label))

        for m in PACKAGE_MANAGER.finditer(message):
            # Already captured as part of a quoted command.
            if any(lo <= m.start() < hi for lo, hi in quoted_spans):
                continue
            intents.append(self._command_intent(m.group(0).strip(), meta, "package_manager"))

        return intents

    def _code_generation(self, message: str, meta: dict) -> list[Intent]:
        intents: list[Intent] = []
        for pattern, kind in ((COMPONENT, "component"), (FUNCTION, "function"), (CLASS, "class")):
            for m in pattern.finditer(message):
                intents.append(self._codegen_intent(kind, m.group("name"), message, meta))
        return intents

    def _code_blocks(self, message: str, meta: dict) -> list[Intent]:
        intents: list[Intent] = []

        for m in CODE_BLOCK.finditer(message):
            language = m.group("lang") or "javascript"
            body = m.group("body")
            if len(body.strip()) <= self.min_code_block_length:
                continue

            preceding = FILE_PATH.findall(message[: m.start()])
            if not preceding:
                continue

            intents.append(self._file_intent(
                "create", preceding[-1], body, {**meta, "language": language}, "code_block",
            ))

        return intents

    # --- Builders ---

    def _file_intent(
        self,
        operation: str,
        path: str,
        content: str | None,
        meta: dict,
        pattern: str,
        new_path: str | None = None,
    ) -> FileOperationIntent:
        path = path.strip()
        return FileOperationIntent(
            operation=operation,
            priority="high" if operation == "delete" else "medium",
            target=FileTarget(
                path=path,
                content=content,
                new_path=new_path,
                backup=operation == "update" or None,
            ),
            validation=FileValidation(
                file_type=file_type(path),
                size_limit=DEFAULT_SIZE_LIMIT,
                permissions=["read", "write"],
            ),
            metadata={**meta, "pattern": pattern},
        )

    def _command_intent(self, command: str, meta: dict, pattern: str) -> TerminalCommandIntent:
        return TerminalCommandIntent(
            command=command,
            priority=command_priority(command),
            validation=CommandValidation(
                allowed_commands=["npm", "yarn", "pnpm", "pip", "node", "python", "ls", "cd", "mkdir", "touch"],
                restricted_paths=["/", "/etc", "/usr", "/var"],
                require_confirmation=requires_confirmation(command),
            ),
            metadata={**meta, "pattern": pattern},
        )

    def _codegen_intent(self, kind: str, name: str, message: str, meta: dict) -> CodeGenerationIntent:
        lowered = message.lower()
        if "typescript" in lowered:
            language, ext = "typescript", "ts"
        elif "python" in lowered:
            language, ext = "python", "py"
        else:
            language, ext = "javascript", "js"

        is_react = kind == "component" and language != "python"
        if is_react:
            ext += "x"

        folder = {"component": "components", "function": "utils", "class": "services"}[kind]
        return CodeGenerationIntent(
            priority="medium",
            target=CodeTarget(
                file=f"{self.source_root}/{folder}/{name}.{ext}",
                **{kind: name},
            ),
            requirements=CodeRequirements(
                language=language,
                framework="react" if is_react or "react" in lowered else None,
                patterns=["functional", "hooks"] if is_react else ["modular"],
                tests="test" in lowered,
            ),
            context=CodeContext(imports=["react"] if is_react else []),
            metadata={**meta, "pattern": kind},
        )
