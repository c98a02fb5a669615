"""
Terminal collaborator.

The router talks to terminals through `TerminalService`: spawn a
session, send it text, wait for its exit, kill it. `LocalTerminal`
backs that with a local shell per session.
"""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Protocol

from loguru import logger


class TerminalError(Exception):
    pass


class TerminalSession(Protocol):
    id: str

    async def wait(self) -> tuple[int, str]:
        """Wait for exit. Returns (exit code, combined stdout/stderr)."""
        ...


class TerminalService(Protocol):
    async def spawn(self, session_id: str, cwd: str | None = None, env: dict[str, str] | None = None) -> TerminalSession:
        ...

    async def send(self, session_id: str, text: str) -> None:
        ...

    async def kill(self, session_id: str) -> None:
        ...


class ShellSession:
    def __init__(self, session_id: str, process: asyncio.subprocess.Process):
        self.id = session_id
        self.process = process

    async def wait(self) -> tuple[int, str]:
        output = await self.process.stdout.read() if self.process.stdout else b""
        code = await self.process.wait()
        return code, output.decode(errors="replace")


class LocalTerminal:
    """
    One shell process per session.

    `send` writes the text followed by a newline and closes the shell's
    input, so the shell exits with the status of the last command sent.
    Each shell leads its own process group; `kill` signals the whole group,
    so commands the shell started die with it.
    """

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell
        self._sessions: dict[str, ShellSession] = {}

    async def spawn(self, session_id: str, cwd: str | None = None, env: dict[str, str] | None = None) -> ShellSession:
        if session_id in self._sessions:
            raise TerminalError(f"Session already exists: {session_id}")

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                cwd=cwd,
                env=full_env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                # Own process group, so kill() reaches everything the shell started
                start_new_session=True,
            )
        except OSError as e:
            raise TerminalError(f"Failed to spawn shell in {cwd or os.getcwd()}: {e}") from e

        session = ShellSession(session_id, process)
        self._sessions[session_id] = session
        logger.debug(f"[TERMINAL] Spawned {session_id} (pid {process.pid})")
        return session

    async def send(self, session_id: str, text: str) -> None:
        session = self._get(session_id)
        stdin = session.process.stdin
        if stdin is None or stdin.is_closing():
            raise TerminalError(f"Session {session_id} no longer accepts input")
        stdin.write((text + "\n").encode())
        await stdin.drain()
        stdin.close()

    async def kill(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if session.process.returncode is None:
            try:
                os.killpg(session.process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await session.process.wait()
            logger.debug(f"[TERMINAL] Killed {session_id} and its process group")

    @property
    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def _get(self, session_id: str) -> ShellSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise TerminalError(f"Unknown session: {session_id}") from None
