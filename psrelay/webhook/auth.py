"""Webhook authentication: GitHub ``X-Hub-Signature-256`` HMAC validation."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from collections.abc import Iterable

from psrelay.errors import AuthenticationFailed

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
_HEX_DIGEST_RE = re.compile(r"[0-9a-fA-F]{64}")


def sign_payload(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature GitHub would send for *body*."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def _extract_digest(signature: str) -> str:
    if not signature:
        msg = "missing signature"
        raise AuthenticationFailed(msg)
    if not signature.startswith(SIGNATURE_PREFIX):
        msg = "signature without sha256= prefix"
        raise AuthenticationFailed(msg)
    digest = signature[len(SIGNATURE_PREFIX) :]
    if not _HEX_DIGEST_RE.fullmatch(digest):
        msg = "signature is not a sha256 hex digest"
        raise AuthenticationFailed(msg)
    return digest.lower()


def _matches(body: bytes, digest: str, secret: str) -> bool:
    if not secret:
        return False
    computed = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, computed)


def verify_signature(body: bytes, signature: str, secret: str) -> None:
    """Check *signature* against an HMAC-SHA256 of the exact *body* bytes.

    Uses constant-time comparison. Raises `AuthenticationFailed` when the
    header is missing or malformed, the secret is empty, or the digest differs.
    """
    try:
        digest = _extract_digest(signature)
    except AuthenticationFailed as exc:
        logger.warning("HMAC auth failed: %s", exc)
        raise
    if not _matches(body, digest, secret):
        logger.warning("HMAC auth failed: signature mismatch")
        msg = "signature mismatch"
        raise AuthenticationFailed(msg)


def match_secret(body: bytes, signature: str, secrets: Iterable[str]) -> str:
    """Return the first of *secrets* that *signature* verifies against.

    Lets per-repository secrets be honoured without parsing the body before
    it is authenticated.
    """
    try:
        digest = _extract_digest(signature)
    except AuthenticationFailed as exc:
        logger.warning("HMAC auth failed: %s", exc)
        raise
    for secret in secrets:
        if _matches(body, digest, secret):
            return secret
    logger.warning("HMAC auth failed: no configured secret matches")
    msg = "signature mismatch"
    raise AuthenticationFailed(msg)
