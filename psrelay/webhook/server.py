"""Webhook HTTP server: aiohttp-based ingress for GitHub deliveries."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

from aiohttp import web

from psrelay.errors import AuthenticationFailed, MalformedPayload
from psrelay.github.decoder import decode_event
from psrelay.github.events import OtherEvent
from psrelay.log_context import set_log_context
from psrelay.webhook.auth import match_secret
from psrelay.webhook.dedup import DedupVerdict

if TYPE_CHECKING:
    from psrelay.chat.session import ChatSessionManager
    from psrelay.config import RelayConfig, RoomTargets
    from psrelay.github.events import Event
    from psrelay.github.render import MessageRenderer
    from psrelay.webhook.dedup import DeliveryDeduplicator

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
DELIVERY_HEADER = "X-GitHub-Delivery"
EVENT_HEADER = "X-GitHub-Event"


class WebhookServer:
    """HTTP server accepting GitHub webhook deliveries and relaying them to chat.

    Routes:
    - ``GET  /health``            -- Health check with the chat session state.
    - ``POST /github/callback``   -- GitHub webhook endpoint (path is configurable).

    The response never waits for chat delivery: rendered lines are handed to
    the session manager's queue and the request is acknowledged right away.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        deduplicator: DeliveryDeduplicator,
        renderer: MessageRenderer,
        session: ChatSessionManager,
    ) -> None:
        self._config = config
        self._secrets = config.all_secrets()
        self._dedup = deduplicator
        self._renderer = renderer
        self._session = session
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self._config.webhook.max_body_bytes)
        app.router.add_get("/health", self._handle_health)
        app.router.add_post(self._config.webhook.path, self._handle_delivery)
        return app

    async def start(self) -> None:
        """Create the aiohttp app and start listening."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.webhook.host, self._config.webhook.port)
        await site.start()
        logger.info(
            "Webhook server listening on %s:%d%s",
            self._config.webhook.host,
            self._config.webhook.port,
            self._config.webhook.path,
        )

    async def stop(self) -> None:
        """Shut down the server, letting in-flight requests finish."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Webhook server stopped")

    # -- Handlers --

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "chat": self._session.state.value})

    def _targets_for(self, event: Event) -> RoomTargets:
        repository = event.repository
        if repository is None:
            return self._config.rooms_for("")
        return self._config.rooms_for(repository.full_name, repository.name)

    async def _handle_delivery(self, request: web.Request) -> web.Response:  # noqa: PLR0911
        delivery_id = request.headers.get(DELIVERY_HEADER, "")
        kind = request.headers.get(EVENT_HEADER, "")
        set_log_context(operation="wh", delivery_id=delivery_id or None)
        logger.info("Webhook request received event=%s", kind or "?")

        # 1. Raw body: the signature covers the exact bytes received
        raw_body = await request.read()

        # 2. Signature, before anything looks at the payload
        try:
            secret = match_secret(raw_body, request.headers.get(SIGNATURE_HEADER, ""), self._secrets)
        except AuthenticationFailed:
            logger.warning("Webhook rejected: unauthorized")
            return web.json_response({"error": "unauthorized"}, status=401)

        if not kind or not delivery_id:
            logger.warning("Webhook rejected: missing %s or %s", EVENT_HEADER, DELIVERY_HEADER)
            return web.json_response({"error": "missing_headers"}, status=400)

        # 3. Decode
        try:
            event = decode_event(kind, raw_body)
        except MalformedPayload as exc:
            logger.warning("Webhook rejected: %s payload=%r", exc, exc.excerpt)
            return web.json_response({"error": "malformed_payload"}, status=400)

        # 4. Repository-specific secrets only authenticate their own repository
        targets = self._targets_for(event)
        if not hmac.compare_digest(secret.encode(), targets.secret.encode()):
            logger.warning("Webhook rejected: signed with another repository's secret")
            return web.json_response({"error": "unauthorized"}, status=401)

        if isinstance(event, OtherEvent):
            logger.info("Webhook ignored event=%s action=%s", event.kind, event.action or "-")
            return web.json_response({"accepted": True, "ignored": True}, status=202)

        # 5. Deduplicate retried deliveries
        if self._dedup.check_and_record(delivery_id) is DedupVerdict.DUPLICATE:
            logger.info("Webhook duplicate delivery suppressed")
            return web.json_response({"accepted": True, "duplicate": True})

        # 6. Render and hand off to the chat session
        message = self._renderer.render_message(event)
        sent = 0
        for room, text in message.outbound(targets):
            if self._session.submit(room, text):
                sent += 1
        logger.info("Webhook relayed event=%s messages=%d", kind, sent)
        return web.json_response({"accepted": True, "sent": sent})
