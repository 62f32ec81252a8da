"""Transactional email delivery through Resend."""
import asyncio
from typing import Any, Dict, Optional

import resend
import structlog

from config import get_settings

logger = structlog.get_logger(__name__)


class EmailDeliveryError(Exception):
    """Raised when the email provider rejects or fails a send."""

    pass


class ResendEmailSender:
    """
    Sends HTML email via the Resend SDK.

    The SDK is synchronous, so sends run in the default executor to keep the
    event loop free.
    """

    def __init__(self, api_key: Optional[str] = None, sender: Optional[str] = None):
        settings = get_settings()
        self.api_key = (api_key if api_key is not None else settings.resend_api_key).strip()
        self.sender = sender or settings.email_from

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _send_sync(self, payload: Dict[str, Any]) -> str:
        resend.api_key = self.api_key
        response = resend.Emails.send(payload)
        if not isinstance(response, dict) or not response.get("id"):
            raise EmailDeliveryError(f"Unexpected response from Resend: {response}")
        return response["id"]

    async def send(self, to: str, subject: str, html: str) -> str:
        """
        Send one email.

        Returns:
            str: Provider message id

        Raises:
            EmailDeliveryError: If the sender is unconfigured or the send fails
        """
        if not self.configured:
            raise EmailDeliveryError("Resend API key is not configured")

        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        loop = asyncio.get_running_loop()
        try:
            message_id = await loop.run_in_executor(None, self._send_sync, payload)
        except EmailDeliveryError:
            raise
        except Exception as e:
            raise EmailDeliveryError(str(e)) from e

        logger.info("email_sent", to=to, subject=subject, message_id=message_id)
        return message_id
