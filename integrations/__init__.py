"""External integrations: payment gateway, email, object storage and webhooks."""
from .email_client import EmailDeliveryError, ResendEmailSender
from .gateway_client import GatewayError, RazorpayClient
from .storage_client import S3DownloadLinkSigner
from .webhook_handler import WebhookHandler

__all__ = [
    "EmailDeliveryError",
    "GatewayError",
    "RazorpayClient",
    "ResendEmailSender",
    "S3DownloadLinkSigner",
    "WebhookHandler",
]
