"""Chat capability surface used by the session manager.

The session manager only needs to connect, join, send and notice drops; the
Showdown websocket details live in `psrelay.chat.showdown`.
"""

from __future__ import annotations

import enum
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ChatCredentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"ChatCredentials(username={self.username!r}, password='***')"


class ChatEventKind(enum.Enum):
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


@dataclass(frozen=True)
class ChatEvent:
    kind: ChatEventKind
    room: str = ""
    text: str = ""


class ChatConnection(Protocol):
    """One authenticated connection to the chat service."""

    async def join(self, room: str) -> None:
        """Join *room*; raise `RoomJoinFailed` if the server refuses."""

    async def send(self, room: str, text: str) -> None:
        """Send *text* to *room*; raise `ChatConnectionLost` if the socket is gone."""

    def events(self) -> AsyncIterator[ChatEvent]:
        """Stream of incoming events; ends after a ``DISCONNECTED`` event."""

    async def close(self) -> None: ...


class ChatTransport(Protocol):
    async def connect(self, credentials: ChatCredentials) -> ChatConnection:
        """Open a connection and log in; raise `LoginFailed` or `ChatConnectionLost`."""
