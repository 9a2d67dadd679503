"""Webhook security and validation utilities."""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of the payload."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class WebhookValidator:
    """Validator for relay webhook request signatures."""

    def __init__(self, webhook_secret: Optional[str] = None):
        """
        Initialize webhook validator.

        Args:
            webhook_secret: Shared secret for HMAC signature validation.
                           Without one every signature is rejected.
        """
        self.webhook_secret = webhook_secret

    def validate_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Validate a webhook signature.

        Args:
            payload: Raw request body bytes
            signature: Signature header value, hex digest with optional "sha256=" prefix

        Returns:
            True only if the signature matches the payload
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured, rejecting webhook")
            return False

        if not signature:
            logger.warning("Missing webhook signature header")
            return False

        signature = signature.strip()
        if signature.lower().startswith(SIGNATURE_PREFIX):
            signature = signature[len(SIGNATURE_PREFIX):]

        expected = compute_signature(self.webhook_secret, payload)

        is_valid = hmac.compare_digest(expected, signature.lower())

        if not is_valid:
            logger.warning("Invalid webhook signature")

        return is_valid
