"""
agentbridge Workspace — the file-system collaborator.

Every path is resolved inside a single workspace root; anything that
would land outside it is refused. Blocking file I/O runs in a worker
thread so the event loop keeps moving.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any, Literal, Protocol

from loguru import logger


class WorkspaceError(Exception):
    pass


class FileService(Protocol):
    async def create_file(
        self,
        name: str,
        path: str,
        content: str = "",
        kind: Literal["file", "directory"] = "file",
        parent: str | None = None,
    ) -> str:
        ...

    async def update_file(self, path: str, patch: dict[str, Any]) -> str:
        ...

    async def delete_file(self, path: str) -> str:
        ...


class Workspace:
    """
    Local file service rooted at `root`.

    Absolute intent paths are treated as relative to the root
    (``/src/app.js`` → ``<root>/src/app.js``).
    """

    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def resolve(self, path: str) -> Path:
        if not path or not path.strip():
            raise WorkspaceError("Empty path")
        candidate = (self.root / path.strip().lstrip("/")).resolve()
        if candidate != self.root and not candidate.is_relative_to(self.root):
            raise WorkspaceError(f"Path {path} is outside workspace {self.root}")
        return candidate

    def contains(self, path: str) -> bool:
        try:
            self.resolve(path)
        except WorkspaceError:
            return False
        return True

    async def create_file(
        self,
        name: str,
        path: str,
        content: str = "",
        kind: Literal["file", "directory"] = "file",
        parent: str | None = None,
    ) -> str:
        target = self.resolve(path)
        await asyncio.to_thread(self._create, target, content, kind)
        logger.debug(f"[WORKSPACE] Created {kind} {target}")
        return str(target)

    async def update_file(self, path: str, patch: dict[str, Any]) -> str:
        target = self.resolve(path)
        new_path = patch.get("path")
        destination = self.resolve(new_path) if new_path else target
        await asyncio.to_thread(self._update, target, destination, patch.get("content"))
        logger.debug(f"[WORKSPACE] Updated {target}" + (f" → {destination}" if destination != target else ""))
        return str(destination)

    async def delete_file(self, path: str) -> str:
        target = self.resolve(path)
        await asyncio.to_thread(self._delete, target)
        logger.debug(f"[WORKSPACE] Deleted {target}")
        return str(target)

    # --- Blocking helpers ---

    @staticmethod
    def _create(target: Path, content: str, kind: str) -> None:
        if kind == "directory":
            target.mkdir(parents=True, exist_ok=True)
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content or "", encoding="utf-8")

    @staticmethod
    def _update(target: Path, destination: Path, content: str | None) -> None:
        if not target.exists():
            raise WorkspaceError(f"File {target} does not exist")
        if destination != target:
            destination.parent.mkdir(parents=True, exist_ok=True)
            target.rename(destination)
        if content is not None:
            destination.write_text(content, encoding="utf-8")

    @staticmethod
    def _delete(target: Path) -> None:
        if not target.exists():
            raise WorkspaceError(f"File {target} does not exist")
        if target.is_dir():
            shutil.rmtree(target)
        else:
            target.unlink()
