"""Chat session manager: one persistent, self-healing connection to the chat service.

The manager is an actor.  A single background task owns the connection and
every state transition; request handlers only call `ChatSessionManager.submit`,
which appends to a bounded queue and returns immediately.  The task connects,
logs in, joins rooms, flushes the queue in submission order and starts over
with exponential backoff whenever the connection drops.

Queue policy: bounded, drop-oldest.  During a long outage the most recent
activity survives and memory stays flat.  Queued messages are lost on
shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from psrelay.chat.protocol import ChatEventKind
from psrelay.errors import ChatConnectionLost, ChatError, LoginFailed, RoomJoinFailed
from psrelay.log_context import set_log_context

if TYPE_CHECKING:
    from psrelay.chat.protocol import ChatConnection, ChatCredentials, ChatTransport

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100
_MAX_BACKOFF_EXPONENT = 64

SleepFunc = Callable[[float], Awaitable[None]]


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINED_ROOMS = "joined_rooms"


@dataclass(frozen=True)
class ReconnectBackoff:
    """Exponential backoff: ``min(initial * factor**attempt, maximum)``."""

    initial: float = 1.0
    maximum: float = 60.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        exponent = min(max(attempt, 0), _MAX_BACKOFF_EXPONENT)
        return min(self.initial * self.factor**exponent, self.maximum)


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    room: str
    text: str


class ChatSessionManager:
    """Owns the chat connection and serializes all sends through one task."""

    def __init__(  # noqa: PLR0913
        self,
        transport: ChatTransport,
        credentials: ChatCredentials,
        rooms: Iterable[str],
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        backoff: ReconnectBackoff | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._credentials = credentials
        self._rooms: tuple[str, ...] = tuple(dict.fromkeys(rooms))
        self._queue_size = max(1, queue_size)
        self._backoff = backoff or ReconnectBackoff()
        self._sleep = sleep

        self._outbox: deque[OutboundMessage] = deque()
        self._wakeup = asyncio.Event()
        self._state = SessionState.DISCONNECTED
        self._state_events = {state: asyncio.Event() for state in SessionState}
        self._state_events[self._state].set()
        self._joined: set[str] = set()
        self._excluded: set[str] = set()
        self._dropped = 0
        self._task: asyncio.Task[None] | None = None

    # -- Introspection --

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def joined_rooms(self) -> frozenset[str]:
        return frozenset(self._joined)

    @property
    def excluded_rooms(self) -> frozenset[str]:
        """Rooms whose join failed; they receive no further messages."""
        return frozenset(self._excluded)

    @property
    def pending(self) -> int:
        """Messages accepted but not yet sent."""
        return len(self._outbox)

    @property
    def dropped_count(self) -> int:
        """Messages discarded because the queue overflowed."""
        return self._dropped

    async def wait_for_state(self, state: SessionState) -> None:
        """Block until the session enters *state* (returns at once if already there)."""
        await self._state_events[state].wait()

    # -- Lifecycle --

    def start(self) -> None:
        """Spawn the connection task; the session begins connecting right away."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(_log_task_crash)
        logger.info("Chat session started (%d rooms)", len(self._rooms))

    async def stop(self) -> None:
        """Stop the connection task and drop anything still queued."""
        if self._task:
            task = self._task
            self._task = None
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._outbox:
            logger.warning("Chat session stopped with %d unsent messages", len(self._outbox))
            self._outbox.clear()
        self._set_state(SessionState.DISCONNECTED)
        logger.info("Chat session stopped")

    # -- Submission --

    def submit(self, room: str, text: str) -> bool:
        """Queue *text* for *room* without waiting for delivery.

        Returns ``False`` if the room is not configured or was excluded after
        a failed join.  A full queue drops its oldest message to make space.
        """
        if room not in self._rooms or room in self._excluded:
            logger.warning("Dropping message for unavailable room=%s", room)
            return False
        if len(self._outbox) >= self._queue_size:
            oldest = self._outbox.popleft()
            self._dropped += 1
            logger.warning(
                "Send queue full (%d), dropped oldest message for room=%s",
                self._queue_size,
                oldest.room,
            )
        self._outbox.append(OutboundMessage(room, text))
        self._wakeup.set()
        return True

    async def send(self, room: str, text: str) -> bool:
        """Async form of `submit`; resolves once the message is queued."""
        return self.submit(room, text)

    # -- Actor loop --

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("Chat state %s -> %s", self._state.value, state.value)
        self._state = state
        for candidate, event in self._state_events.items():
            if candidate is state:
                event.set()
            else:
                event.clear()

    async def _run(self) -> None:
        set_log_context(operation="chat")
        attempt = 0
        while True:
            self._set_state(SessionState.CONNECTING)
            try:
                connection = await self._transport.connect(self._credentials)
            except (LoginFailed, ChatConnectionLost) as exc:
                logger.warning("Chat connect failed: %s", exc)
                attempt = await self._back_off(attempt)
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Chat connect failed unexpectedly")
                attempt = await self._back_off(attempt)
                continue

            self._set_state(SessionState.AUTHENTICATED)
            logger.info("Chat logged in as %s", self._credentials.username)
            try:
                await self._join_rooms(connection)
                self._set_state(SessionState.JOINED_ROOMS)
                attempt = 0
                await self._pump(connection)
            except ChatConnectionLost as exc:
                logger.warning("Chat connection lost: %s", exc)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Chat session error, reconnecting")
            finally:
                self._joined.clear()
                await _close_quietly(connection)

            attempt = await self._back_off(attempt)

    async def _back_off(self, attempt: int) -> int:
        """Sleep before the next connect attempt and return the new attempt count."""
        self._set_state(SessionState.DISCONNECTED)
        delay = self._backoff.delay(attempt)
        logger.info(
            "Reconnecting in %.1fs (attempt=%d, %d messages queued)",
            delay,
            attempt + 1,
            len(self._outbox),
        )
        await self._sleep(delay)
        return attempt + 1

    async def _join_rooms(self, connection: ChatConnection) -> None:
        for room in self._rooms:
            if room in self._excluded:
                continue
            try:
                await connection.join(room)
            except RoomJoinFailed as exc:
                logger.warning("Excluding room=%s after failed join: %s", room, exc.reason or exc)
                self._excluded.add(room)
                continue
            self._joined.add(room)
        logger.info(
            "Joined %d rooms (%d excluded)",
            len(self._joined),
            len(self._excluded),
        )

    async def _pump(self, connection: ChatConnection) -> None:
        """Flush the queue whenever it grows, until the connection drops."""
        watcher = asyncio.create_task(self._watch(connection))
        waiter: asyncio.Task[bool] | None = None
        try:
            while True:
                self._wakeup.clear()
                await self._flush(connection, watcher)
                waiter = asyncio.create_task(self._wakeup.wait())
                await asyncio.wait({waiter, watcher}, return_when=asyncio.FIRST_COMPLETED)
                if watcher.done():
                    exc = watcher.exception()
                    msg = f"event stream failed: {exc}" if exc else "server closed the connection"
                    raise ChatConnectionLost(msg) from exc
        finally:
            for task in (waiter, watcher):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    async def _watch(self, connection: ChatConnection) -> None:
        async for event in connection.events():
            if event.kind is ChatEventKind.DISCONNECTED:
                return
            logger.debug("Ignoring chat message room=%s", event.room)

    async def _flush(self, connection: ChatConnection, watcher: asyncio.Task[None]) -> None:
        while self._outbox:
            if watcher.done():
                msg = "server closed the connection"
                raise ChatConnectionLost(msg)
            message = self._outbox.popleft()
            if message.room not in self._joined:
                logger.warning("Dropping message for unjoined room=%s", message.room)
                continue
            try:
                await connection.send(message.room, message.text)
            except ChatConnectionLost:
                self._requeue(message)
                raise
            logger.debug("Sent message room=%s chars=%d", message.room, len(message.text))

    def _requeue(self, message: OutboundMessage) -> None:
        """Put an unsent message back at the head of the queue."""
        if len(self._outbox) >= self._queue_size:
            # It is the oldest message, so drop-oldest discards it.
            self._dropped += 1
            logger.warning("Send queue full, dropped unsent message for room=%s", message.room)
            return
        self._outbox.appendleft(message)


async def _close_quietly(connection: ChatConnection) -> None:
    try:
        await connection.close()
    except (ChatError, OSError):
        logger.debug("Error closing chat connection", exc_info=True)


def _log_task_crash(task: asyncio.Task[None]) -> None:
    """Log if the session task crashes unexpectedly."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Chat session loop crashed: %s", exc, exc_info=exc)
