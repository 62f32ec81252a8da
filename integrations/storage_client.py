"""Signed download links for prompt-pack PDFs stored in S3."""
import asyncio
from typing import Optional

import boto3
import structlog
from botocore.config import Config

from config import get_settings

logger = structlog.get_logger(__name__)


class S3DownloadLinkSigner:
    """Presigned GET URLs for object keys; absolute URLs pass through unchanged."""

    def __init__(self, bucket: Optional[str] = None, region: Optional[str] = None, s3_client=None):
        settings = get_settings()
        self.bucket = bucket or settings.s3_bucket_name
        self.s3 = s3_client or boto3.client(
            "s3",
            region_name=region or settings.aws_region,
            config=Config(signature_version="s3v4"),
        )

    def _sign(self, key: str, expires_in_seconds: int) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in_seconds,
        )

    async def signed_url(self, key_or_url: str, expires_in_seconds: int = 1800) -> str:
        """
        Args:
            key_or_url: Object key, or an already absolute http(s) URL
            expires_in_seconds: Link lifetime

        Returns:
            str: URL the customer can download from
        """
        if key_or_url.startswith(("http://", "https://")):
            return key_or_url

        loop = asyncio.get_running_loop()
        url = await loop.run_in_executor(None, self._sign, key_or_url, expires_in_seconds)
        logger.debug("download_url_signed", key=key_or_url, expires_in=expires_in_seconds)
        return url
