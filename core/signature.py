"""
Gateway signature verification.

Webhook deliveries are signed with HMAC-SHA256 over the exact request body
bytes. Hashing anything other than the untouched wire body (for example a
re-serialized JSON object) breaks verification, so callers must pass the raw
bytes captured before any JSON parsing.
"""
import hashlib
import hmac
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """
    Verifies gateway-issued signatures.

    Fails closed: any missing input (secret, body, signature) yields ``False``
    rather than an exception.
    """

    def __init__(self, webhook_secret: Optional[str], key_secret: Optional[str] = None):
        """
        Args:
            webhook_secret: Shared secret configured for the webhook endpoint
            key_secret: API key secret, used for checkout callback signatures
        """
        self.webhook_secret = webhook_secret or ""
        self.key_secret = key_secret or ""

        if not self.webhook_secret:
            logger.warning("webhook_secret_not_configured")

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """
        Verify a webhook delivery.

        Args:
            raw_body: Request body exactly as received on the wire
            signature_header: Value of the signature header

        Returns:
            bool: True only if the signature matches
        """
        if not self.webhook_secret:
            logger.error("webhook_signature_rejected", reason="secret_not_configured")
            return False
        if not raw_body:
            logger.warning("webhook_signature_rejected", reason="empty_body")
            return False
        if not signature_header or not signature_header.strip():
            logger.warning("webhook_signature_rejected", reason="missing_signature")
            return False

        expected = compute_signature(self.webhook_secret, raw_body)
        return hmac.compare_digest(
            expected.encode("ascii"), signature_header.strip().encode("utf-8")
        )

    def verify_payment(
        self,
        gateway_order_id: Optional[str],
        gateway_payment_id: Optional[str],
        signature: Optional[str],
    ) -> bool:
        """
        Verify the signature the checkout widget hands back to the client.

        The gateway signs ``"<order_id>|<payment_id>"`` with the API key secret.
        """
        if not self.key_secret:
            logger.error("payment_signature_rejected", reason="key_secret_not_configured")
            return False
        if not gateway_order_id or not gateway_payment_id or not signature:
            logger.warning("payment_signature_rejected", reason="missing_fields")
            return False

        message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
        expected = compute_signature(self.key_secret, message)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))
