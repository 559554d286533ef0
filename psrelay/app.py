"""Application wiring: build the pipeline from config and run until signalled."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING

from psrelay.chat.protocol import ChatCredentials
from psrelay.chat.session import ChatSessionManager, ReconnectBackoff
from psrelay.chat.showdown import ShowdownTransport
from psrelay.github.render import MessageRenderer
from psrelay.webhook.dedup import DeliveryDeduplicator
from psrelay.webhook.server import WebhookServer

if TYPE_CHECKING:
    from psrelay.chat.protocol import ChatTransport
    from psrelay.config import RelayConfig

logger = logging.getLogger(__name__)


class RelayApp:
    """Owns the chat session and the webhook server for one process."""

    def __init__(self, config: RelayConfig, *, transport: ChatTransport | None = None) -> None:
        self._config = config
        chat = config.chat
        self.session = ChatSessionManager(
            transport
            or ShowdownTransport(
                chat.server_url,
                chat.login_url,
                login_timeout=chat.login_timeout,
                join_timeout=chat.join_timeout,
                send_interval=chat.send_interval,
            ),
            ChatCredentials(chat.username, chat.password),
            config.all_rooms(),
            queue_size=chat.queue_size,
            backoff=ReconnectBackoff(chat.backoff_initial, chat.backoff_max, chat.backoff_factor),
        )
        self.deduplicator = DeliveryDeduplicator(config.webhook.dedup_capacity)
        self.server = WebhookServer(
            config,
            deduplicator=self.deduplicator,
            renderer=MessageRenderer(config.aliases()),
            session=self.session,
        )

    async def start(self) -> None:
        self.session.start()
        await self.server.start()

    async def stop(self) -> None:
        """Drain HTTP first, then drop the chat session (queued messages are lost)."""
        await self.server.stop()
        await self.session.stop()

    async def run(self) -> None:
        """Start everything and block until SIGINT/SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)

        await self.start()
        try:
            await stop_event.wait()
            logger.info("Shutdown requested")
        finally:
            await self.stop()
