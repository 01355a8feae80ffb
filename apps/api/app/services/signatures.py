"""Webhook signature verification for vendor callbacks."""
from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import HTTPException, status

SIGNATURE_HEADER = "x-vapi-signature"

logger = logging.getLogger(__name__)


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Return ``True`` when ``signature`` is the HMAC-SHA256 of ``body``."""

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided.lower(), expected)


def check_webhook_signature(secret: str | None, body: bytes, signature: str | None) -> None:
    """Reject the request when a configured secret does not match the header.

    Without a configured secret, or without a signature header, the request is
    accepted unsigned.
    """

    if not secret:
        logger.debug("Webhook secret not configured; accepting unsigned request")
        return
    if not signature:
        return
    if not verify_signature(secret, body, signature):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
