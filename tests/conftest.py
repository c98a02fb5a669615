import asyncio

import pytest

from agentbridge.config_loader import load_config


class FakeSession:
    def __init__(self, terminal: "FakeTerminal", session_id: str):
        self.id = session_id
        self.terminal = terminal

    async def wait(self):
        await asyncio.sleep(self.terminal.delay)
        return self.terminal.exit_code, self.terminal.output


class FakeTerminal:
    """Terminal collaborator that records calls instead of spawning shells."""

    def __init__(self, exit_code: int = 0, output: str = "ok\n", delay: float = 0.0):
        self.exit_code = exit_code
        self.output = output
        self.delay = delay
        self.spawned: list[tuple[str, str | None]] = []
        self.sent: list[str] = []
        self.killed: list[str] = []

    async def spawn(self, session_id, cwd=None, env=None):
        self.spawned.append((session_id, cwd))
        return FakeSession(self, session_id)

    async def send(self, session_id, text):
        self.sent.append(text)

    async def kill(self, session_id):
        self.killed.append(session_id)


@pytest.fixture
def fake_terminal():
    return FakeTerminal()


@pytest.fixture
def config(tmp_path):
    """Built-in config anchored at a scratch project root, environment ignored."""
    return load_config(tmp_path, environ={})
