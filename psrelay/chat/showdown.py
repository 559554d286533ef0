"""Pokémon Showdown chat transport over the aiohttp websocket client.

Protocol summary (server -> client frames are newline separated; a frame that
starts with ``>room`` applies to that room):

- ``|challstr|<id>|<challenge>`` -- login challenge, sent right after connect
- ``|updateuser|<name>|<named>|...`` -- ``named == "1"`` once logged in
- ``|init|chat`` / ``|noinit|<reason>|<message>`` -- room join result
- ``|c|<user>|<text>`` / ``|c:|<ts>|<user>|<text>`` -- chat lines (ignored)

Client -> server messages are ``<room>|<text>``; commands use an empty room.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

import aiohttp

from psrelay.chat.protocol import ChatCredentials, ChatEvent, ChatEventKind
from psrelay.errors import ChatConnectionLost, LoginFailed, RoomJoinFailed

logger = logging.getLogger(__name__)

_NON_ID_RE = re.compile(r"[^a-z0-9]")
_NON_ROOM_ID_RE = re.compile(r"[^a-z0-9-]")
_CHAT_KINDS = frozenset({"c", "chat", "c:"})
_HEARTBEAT_S = 30.0


def to_id(name: str) -> str:
    """Showdown user id: lowercase alphanumerics only."""
    return _NON_ID_RE.sub("", name.lower())


def to_room_id(room: str) -> str:
    """Showdown room id: lowercase alphanumerics and dashes."""
    return _NON_ROOM_ID_RE.sub("", room.lower())


@dataclass(frozen=True, slots=True)
class ShowdownMessage:
    room: str
    kind: str
    args: tuple[str, ...]


def parse_frame(data: str) -> list[ShowdownMessage]:
    """Split one websocket frame into protocol messages."""
    lines = data.split("\n")
    room = ""
    if lines and lines[0].startswith(">"):
        room = lines[0][1:].strip()
        lines = lines[1:]

    messages: list[ShowdownMessage] = []
    for line in lines:
        if not line:
            continue
        if not line.startswith("|"):
            messages.append(ShowdownMessage(room, "", (line,)))
            continue
        kind, *args = line[1:].split("|")
        # Chat text may itself contain "|".
        if kind in ("c", "chat") and len(args) > 2:
            args = [args[0], "|".join(args[1:])]
        elif kind == "c:" and len(args) > 3:
            args = [args[0], args[1], "|".join(args[2:])]
        messages.append(ShowdownMessage(room, kind, tuple(args)))
    return messages


def parse_login_response(text: str) -> str:
    """Extract the login assertion from a login server reply.

    Replies are JSON prefixed with ``]``.  Raises `LoginFailed` when the
    reply is unreadable or carries no usable assertion.
    """
    body = text.removeprefix("]")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        msg = "login server returned invalid JSON"
        raise LoginFailed(msg) from exc
    if not isinstance(data, dict):
        msg = "login server returned an unexpected reply"
        raise LoginFailed(msg)
    assertion = data.get("assertion")
    if not isinstance(assertion, str) or not assertion or assertion.startswith(";"):
        reason = assertion.lstrip(";") if isinstance(assertion, str) and assertion else "rejected"
        msg = f"login failed: {reason}"
        raise LoginFailed(msg)
    return assertion


class ShowdownConnection:
    """One websocket connection; a reader task routes frames to waiters and events."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        *,
        username: str,
        join_timeout: float = 10.0,
        send_interval: float = 0.6,
    ) -> None:
        self._session = session
        self._ws = ws
        self._user_id = to_id(username)
        self._join_timeout = join_timeout
        self._send_interval = send_interval
        self._loop = asyncio.get_running_loop()

        self._challstr: asyncio.Future[str] = self._loop.create_future()
        self._named: asyncio.Future[None] = self._loop.create_future()
        self._join_waiters: dict[str, asyncio.Future[None]] = {}
        self._events: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._last_send = 0.0
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

    # -- Reader --

    async def _read_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type is aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type is aiohttp.WSMsgType.ERROR:
                    logger.warning("Showdown websocket error: %s", self._ws.exception())
                    break
        finally:
            self._mark_closed("websocket closed")

    def _mark_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        for future in (self._challstr, self._named, *self._join_waiters.values()):
            if not future.done():
                future.set_exception(ChatConnectionLost(reason))
                # Nobody may be awaiting it any more.
                future.exception()
        self._events.put_nowait(ChatEvent(ChatEventKind.DISCONNECTED))
        logger.info("Showdown connection closed: %s", reason)

    def _dispatch(self, data: str) -> None:
        for message in parse_frame(data):
            handler = _HANDLERS.get(message.kind)
            if handler is not None:
                handler(self, message)

    def _on_challstr(self, message: ShowdownMessage) -> None:
        if not self._challstr.done():
            self._challstr.set_result("|".join(message.args))

    def _on_updateuser(self, message: ShowdownMessage) -> None:
        if len(message.args) < 2 or self._named.done():
            return
        name, named = message.args[0], message.args[1]
        if named == "1" and to_id(name) == self._user_id:
            self._named.set_result(None)

    def _on_nametaken(self, message: ShowdownMessage) -> None:
        if not self._named.done():
            reason = message.args[-1] if message.args else "name taken"
            self._named.set_exception(LoginFailed(reason))

    def _on_init(self, message: ShowdownMessage) -> None:
        waiter = self._join_waiters.get(to_room_id(message.room))
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    def _on_noinit(self, message: ShowdownMessage) -> None:
        room = to_room_id(message.room)
        waiter = self._join_waiters.get(room)
        if waiter is not None and not waiter.done():
            reason = message.args[-1] if message.args else "join refused"
            waiter.set_exception(RoomJoinFailed(room, reason))

    def _on_deinit(self, message: ShowdownMessage) -> None:
        # Removed from a room: treat like a drop so the session rejoins everything.
        logger.warning("Removed from room=%s", message.room)
        self._events.put_nowait(ChatEvent(ChatEventKind.DISCONNECTED, room=message.room))

    def _on_chat(self, message: ShowdownMessage) -> None:
        text = message.args[-1] if message.args else ""
        self._events.put_nowait(ChatEvent(ChatEventKind.MESSAGE, room=message.room, text=text))

    # -- Login --

    async def challstr(self) -> str:
        return await self._challstr

    async def rename(self, username: str, assertion: str) -> None:
        """Claim *username* with a login-server assertion and wait until named."""
        await self._send_raw(f"|/trn {username},0,{assertion}")
        await self._named

    # -- ChatConnection --

    async def join(self, room: str) -> None:
        room_id = to_room_id(room)
        waiter: asyncio.Future[None] = self._loop.create_future()
        self._join_waiters[room_id] = waiter
        try:
            await self._send_raw(f"|/join {room_id}")
            async with asyncio.timeout(self._join_timeout):
                await waiter
        except TimeoutError as exc:
            # No answer is not a refusal; only |noinit| excludes a room.
            msg = f"no reply to join room={room_id}"
            raise ChatConnectionLost(msg) from exc
        finally:
            self._join_waiters.pop(room_id, None)
        logger.debug("Joined room=%s", room_id)

    async def send(self, room: str, text: str) -> None:
        wait = self._last_send + self._send_interval - time.monotonic()
        if wait > 0:
            await asyncio.sleep(wait)
        await self._send_raw(f"{to_room_id(room)}|{text}")
        self._last_send = time.monotonic()

    async def events(self) -> AsyncIterator[ChatEvent]:
        while True:
            event = await self._events.get()
            yield event
            if event.kind is ChatEventKind.DISCONNECTED:
                return

    async def close(self) -> None:
        self._mark_closed("closed by client")
        try:
            await self._ws.close()
        finally:
            await self._session.close()
            if not self._reader.done():
                self._reader.cancel()

    async def _send_raw(self, data: str) -> None:
        if self._closed:
            msg = "websocket is closed"
            raise ChatConnectionLost(msg)
        try:
            await self._ws.send_str(data)
        except (ConnectionError, aiohttp.ClientError) as exc:
            self._mark_closed(f"send failed: {exc}")
            msg = f"send failed: {exc}"
            raise ChatConnectionLost(msg) from exc


_HANDLERS = {
    "challstr": ShowdownConnection._on_challstr,
    "updateuser": ShowdownConnection._on_updateuser,
    "nametaken": ShowdownConnection._on_nametaken,
    "init": ShowdownConnection._on_init,
    "noinit": ShowdownConnection._on_noinit,
    "deinit": ShowdownConnection._on_deinit,
    "c": ShowdownConnection._on_chat,
    "c:": ShowdownConnection._on_chat,
    "chat": ShowdownConnection._on_chat,
}


class ShowdownTransport:
    """Opens `ShowdownConnection` instances and performs the login handshake."""

    def __init__(  # noqa: PLR0913
        self,
        server_url: str,
        login_url: str,
        *,
        login_timeout: float = 30.0,
        join_timeout: float = 10.0,
        send_interval: float = 0.6,
    ) -> None:
        self._server_url = server_url
        self._login_url = login_url
        self._login_timeout = login_timeout
        self._join_timeout = join_timeout
        self._send_interval = send_interval

    async def connect(self, credentials: ChatCredentials) -> ShowdownConnection:
        timeout = aiohttp.ClientTimeout(total=None, connect=self._login_timeout)
        session = aiohttp.ClientSession(timeout=timeout)
        connection: ShowdownConnection | None = None
        try:
            async with asyncio.timeout(self._login_timeout):
                try:
                    ws = await session.ws_connect(self._server_url, heartbeat=_HEARTBEAT_S)
                except (aiohttp.ClientError, OSError) as exc:
                    msg = f"cannot reach {self._server_url}: {exc}"
                    raise ChatConnectionLost(msg) from exc
                connection = ShowdownConnection(
                    session,
                    ws,
                    username=credentials.username,
                    join_timeout=self._join_timeout,
                    send_interval=self._send_interval,
                )
                challstr = await connection.challstr()
                assertion = await self._fetch_assertion(session, credentials, challstr)
                await connection.rename(credentials.username, assertion)
        except TimeoutError as exc:
            await _discard(session, connection)
            msg = "login timed out"
            raise LoginFailed(msg) from exc
        except BaseException:
            await _discard(session, connection)
            raise
        logger.info("Showdown login succeeded user=%s", credentials.username)
        return connection

    async def _fetch_assertion(
        self,
        session: aiohttp.ClientSession,
        credentials: ChatCredentials,
        challstr: str,
    ) -> str:
        data = {
            "act": "login",
            "name": credentials.username,
            "pass": credentials.password,
            "challstr": challstr,
        }
        try:
            async with session.post(self._login_url, data=data) as resp:
                if resp.status != 200:
                    msg = f"login server returned HTTP {resp.status}"
                    raise LoginFailed(msg)
                text = await resp.text(errors="replace")
        except (aiohttp.ClientError, ValueError) as exc:
            msg = f"login request failed: {exc}"
            raise LoginFailed(msg) from exc
        return parse_login_response(text)


async def _discard(session: aiohttp.ClientSession, connection: ShowdownConnection | None) -> None:
    """Release everything a half-finished `ShowdownTransport.connect` opened."""
    try:
        if connection is not None:
            await connection.close()
        else:
            await session.close()
    except (aiohttp.ClientError, OSError):
        logger.debug("Error closing abandoned Showdown connection", exc_info=True)
