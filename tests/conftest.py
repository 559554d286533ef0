"""Shared test fixtures: GitHub payloads and an in-memory chat transport."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from typing import Any

import pytest

from psrelay.chat.protocol import ChatCredentials, ChatEvent, ChatEventKind
from psrelay.errors import ChatConnectionLost, LoginFailed, RoomJoinFailed

_REPOSITORY: dict[str, Any] = {
    "id": 1,
    "name": "pokemon-showdown",
    "full_name": "smogon/pokemon-showdown",
    "html_url": "https://github.com/smogon/pokemon-showdown",
    "private": False,
}
_SENDER: dict[str, Any] = {"login": "Zarel", "id": 2, "type": "User"}

_PUSH: dict[str, Any] = {
    "ref": "refs/heads/master",
    "before": "0" * 40,
    "after": "a" * 40,
    "compare": "https://github.com/smogon/pokemon-showdown/compare/000000...aaaaaa",
    "forced": False,
    "commits": [
        {
            "id": "abcdef1234567890",
            "message": "Fix Sleep Clause\n\nLonger description",
            "url": "https://github.com/smogon/pokemon-showdown/commit/abcdef1234567890",
            "author": {"name": "Guangcong Luo", "email": "z@example.com", "username": "Zarel"},
        }
    ],
    "repository": _REPOSITORY,
    "pusher": {"name": "Zarel"},
    "sender": _SENDER,
}

_PULL_REQUEST: dict[str, Any] = {
    "action": "opened",
    "number": 42,
    "pull_request": {
        "title": "Add Gen 9 formats",
        "html_url": "https://github.com/smogon/pokemon-showdown/pull/42",
        "merged": False,
        "base": {"ref": "master", "sha": "b" * 40},
        "head": {"ref": "gen9", "sha": "c" * 40},
    },
    "repository": _REPOSITORY,
    "sender": _SENDER,
}

_ISSUE: dict[str, Any] = {
    "action": "opened",
    "issue": {
        "number": 7,
        "title": "Crash on team import",
        "html_url": "https://github.com/smogon/pokemon-showdown/issues/7",
        "state": "open",
    },
    "repository": _REPOSITORY,
    "sender": _SENDER,
}

_ISSUE_COMMENT: dict[str, Any] = {
    "action": "created",
    "issue": {
        "number": 7,
        "title": "Crash on team import",
        "html_url": "https://github.com/smogon/pokemon-showdown/issues/7",
    },
    "comment": {
        "id": 99,
        "body": "Can reproduce",
        "html_url": "https://github.com/smogon/pokemon-showdown/issues/7#issuecomment-99",
    },
    "repository": _REPOSITORY,
    "sender": _SENDER,
}


@pytest.fixture
def push_payload() -> dict[str, Any]:
    return copy.deepcopy(_PUSH)


@pytest.fixture
def pull_request_payload() -> dict[str, Any]:
    return copy.deepcopy(_PULL_REQUEST)


@pytest.fixture
def issue_payload() -> dict[str, Any]:
    return copy.deepcopy(_ISSUE)


@pytest.fixture
def issue_comment_payload() -> dict[str, Any]:
    return copy.deepcopy(_ISSUE_COMMENT)


# ---------------------------------------------------------------------------
# In-memory chat transport
# ---------------------------------------------------------------------------


class FakeConnection:
    """Records joins and sends; ``drop()`` simulates a server-side disconnect."""

    def __init__(
        self,
        *,
        fail_rooms: frozenset[str] = frozenset(),
        unanswered_rooms: frozenset[str] = frozenset(),
    ) -> None:
        self.fail_rooms = fail_rooms
        self.unanswered_rooms = unanswered_rooms
        self.joined: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.closed = False
        self.broken = False
        self._events: asyncio.Queue[ChatEvent] = asyncio.Queue()

    async def join(self, room: str) -> None:
        if self.broken:
            msg = "socket closed"
            raise ChatConnectionLost(msg)
        if room in self.fail_rooms:
            raise RoomJoinFailed(room, "nonexistent")
        if room in self.unanswered_rooms:
            msg = f"no reply to join room={room}"
            raise ChatConnectionLost(msg)
        self.joined.append(room)

    async def send(self, room: str, text: str) -> None:
        if self.broken:
            msg = "socket closed"
            raise ChatConnectionLost(msg)
        self.sent.append((room, text))

    async def events(self) -> AsyncIterator[ChatEvent]:
        while True:
            event = await self._events.get()
            yield event
            if event.kind is ChatEventKind.DISCONNECTED:
                return

    async def close(self) -> None:
        self.closed = True

    def emit_message(self, room: str, text: str) -> None:
        self._events.put_nowait(ChatEvent(ChatEventKind.MESSAGE, room=room, text=text))

    def drop(self) -> None:
        self.broken = True
        self._events.put_nowait(ChatEvent(ChatEventKind.DISCONNECTED))


class FakeTransport:
    """Hands out `FakeConnection` objects, failing the first *fail_times* logins.

    Failed logins raise *failure*, `LoginFailed` by default.  Joins of *unanswered_rooms* get no reply on
    the first connection only.
    """

    def __init__(
        self,
        *,
        fail_times: int = 0,
        fail_rooms: frozenset[str] = frozenset(),
        failure: Exception | None = None,
        unanswered_rooms: frozenset[str] = frozenset(),
    ) -> None:
        self.fail_times = fail_times
        self.fail_rooms = fail_rooms
        self.failure = failure
        self.unanswered_rooms = unanswered_rooms
        self.attempts = 0
        self.credentials: list[ChatCredentials] = []
        self.connections: list[FakeConnection] = []

    async def connect(self, credentials: ChatCredentials) -> FakeConnection:
        self.attempts += 1
        self.credentials.append(credentials)
        if self.attempts <= self.fail_times:
            if self.failure is not None:
                raise self.failure
            msg = "login server unavailable"
            raise LoginFailed(msg)
        connection = FakeConnection(
            fail_rooms=self.fail_rooms,
            unanswered_rooms=frozenset() if self.connections else self.unanswered_rooms,
        )
        self.connections.append(connection)
        return connection

    @property
    def sent(self) -> list[tuple[str, str]]:
        """Everything sent, across reconnects, in order."""
        return [item for connection in self.connections for item in connection.sent]


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that records delays.

    While ``hold`` is set every call blocks until ``release()``.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.hold = False
        self._gate = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.hold:
            await self._gate.wait()
            self._gate.clear()
        await asyncio.sleep(0)

    def release(self) -> None:
        self.hold = False
        self._gate.set()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def credentials() -> ChatCredentials:
    return ChatCredentials("relaybot", "hunter2")


@pytest.fixture
def make_transport() -> type[FakeTransport]:
    return FakeTransport
