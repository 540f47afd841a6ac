"""Pytest fixtures shared across the grbl server tests."""
from __future__ import annotations

import asyncio
import json

import pytest

import grbl
from config import ServerConfig
from grbl_server import GrblServer
from sessions import Session


class FakeConnection:
    """Stands in for a websockets ServerConnection."""

    def __init__(self, remote: str = "127.0.0.1", fail: bool = False) -> None:
        self.remote_address = (remote, 50000)
        self.fail = fail
        self.messages: list[dict] = []

    async def send(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.messages.append(json.loads(data))

    def results(self) -> list[dict]:
        return [m["result"] for m in self.messages if m.get("result") is not None]

    def types(self) -> list[str]:
        return [r.get("type") for r in self.results() if isinstance(r, dict)]


class FakeGrbl(grbl.Grbl):
    """Grbl without a serial port; commands are answered by the test."""

    def __init__(self, fail_open: bool = False) -> None:
        super().__init__("/dev/null")
        self.fail_open = fail_open
        self.auto_ack = True
        self.responses: dict[str, list[str]] = {}
        self.rejects: dict[str, str] = {}
        self.commands: list[str] = []
        self.realtime: list[str] = []
        self.waiting: list[tuple[str, asyncio.Future]] = []
        self.opened = 0
        self.closed = 0

    async def open(self) -> None:
        self.opened += 1
        if self.fail_open:
            self._fail("Cannot open /dev/null")
            return
        self.connected = True

    async def close(self) -> None:
        self.closed += 1
        self.connected = False
        for _, future in self.waiting:
            if not future.done():
                future.set_exception(grbl.GrblError("link closed"))

    async def command(self, line: str) -> list[str]:
        if not self.connected:
            raise grbl.GrblError("not connected")
        self.commands.append(line)
        if line in self.rejects:
            await asyncio.sleep(0)
            raise grbl.GrblError(self.rejects[line])
        if self.auto_ack:
            await asyncio.sleep(0)
            return list(self.responses.get(line, []))
        future = asyncio.get_running_loop().create_future()
        self.waiting.append((line, future))
        return await future

    def ack(self, index: int = -1, lines: list[str] | None = None) -> None:
        self.waiting[index][1].set_result(lines or [])

    def realtime_command(self, char: str) -> None:
        self.realtime.append(char)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def links() -> list[FakeGrbl]:
    return []


@pytest.fixture
def server(links):
    def factory() -> FakeGrbl:
        link = FakeGrbl()
        links.append(link)
        return link

    return GrblServer(ServerConfig(reopen_delay=0.01), link_factory=factory)


@pytest.fixture
def connect(server):
    """Admit a fake client; returns (session, connection)."""

    def _connect(remote: str = "127.0.0.1", fail: bool = False):
        connection = FakeConnection(remote, fail=fail)
        session = Session(connection, remote)
        server.sessions.admit(session)
        return session, connection

    return _connect
