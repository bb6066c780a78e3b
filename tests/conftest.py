"""Shared fixtures: fake shell processes, a controllable clock, and a registry."""

import asyncio
from datetime import datetime, timedelta

import pytest

from termgate.gateway import Connection
from termgate.sessions import SessionRegistry


class FakeProcess:
    """Stands in for PtyProcess where tests need to drive output and exit."""

    _next_pid = 40000

    def __init__(self, shell, cwd, cols, rows):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.shell = shell
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.alive = True
        self.killed = False
        self.written: list[bytes] = []
        self._on_data = None
        self._on_exit = None

    def on_data(self, callback):
        self._on_data = callback

    def on_exit(self, callback):
        self._on_exit = callback

    async def write(self, data: bytes) -> None:
        if not self.alive:
            raise OSError(f"Process {self.pid} is not running")
        self.written.append(data)

    def resize(self, cols, rows):
        self.cols = cols
        self.rows = rows

    async def kill(self):
        if not self.alive:
            return
        self.alive = False
        self.killed = True
        if self._on_exit:
            self._on_exit(None, 9)

    # Test drivers
    def emit(self, data: bytes):
        self._on_data(data)

    def exit(self, code=0):
        self.alive = False
        self._on_exit(code, None)


class FakeSpawner:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.fail: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def __call__(self, shell, cwd, cols=80, rows=24):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        process = FakeProcess(shell, cwd, cols, rows)
        self.processes.append(process)
        return process


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def drain(connection: Connection) -> list[dict]:
    """Everything queued for a connection so far."""
    messages = []
    while not connection.outbox.empty():
        messages.append(connection.outbox.get_nowait())
    return messages


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(tmp_path, spawner, clock):
    return SessionRegistry(
        shell="/bin/sh",
        allowed_path=str(tmp_path),
        session_timeout=timedelta(minutes=30),
        max_sessions=3,
        spawner=spawner,
        clock=clock,
    )
