"""Webhook ingress: signature checks, delivery dedup and the HTTP server."""

from psrelay.webhook.dedup import DedupVerdict, DeliveryDeduplicator
from psrelay.webhook.server import WebhookServer

__all__ = ["DedupVerdict", "DeliveryDeduplicator", "WebhookServer"]
