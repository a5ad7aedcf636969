"""Webhook signature verification."""

from __future__ import annotations

import hmac
import logging
from hashlib import sha256
from typing import Optional

from ..core.errors import TriggerAuthenticationFailure

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def sign(payload: bytes, secret: str) -> str:
    """Signature header value for a payload."""
    return SIGNATURE_PREFIX + hmac.new(secret.encode(), payload, sha256).hexdigest()


def verify_signature(signature: Optional[str], payload: bytes, secret: Optional[str]) -> None:
    """
    Verify a GitHub style ``sha256=<hex>`` HMAC signature over the raw body.

    Raises:
        TriggerAuthenticationFailure: on a missing secret, header or mismatch
    """
    if not secret:
        logger.warning("Webhook secret not configured; rejecting event")
        raise TriggerAuthenticationFailure("Webhook secret not configured")
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        logger.warning("Webhook signature header missing or malformed")
        raise TriggerAuthenticationFailure("Invalid webhook signature")

    expected = hmac.new(secret.encode(), payload, sha256).hexdigest()
    provided = signature[len(SIGNATURE_PREFIX):]
    if not hmac.compare_digest(expected, provided):
        logger.warning("Webhook signature mismatch")
        raise TriggerAuthenticationFailure("Invalid webhook signature")
