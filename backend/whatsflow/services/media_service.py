# /whatsflow/services/media_service.py

import asyncio
import logging
from typing import Optional

import boto3

from whatsflow.config.settings import settings

logger = logging.getLogger(__name__)


class MediaService:
    """
    Turns the media reference stored on a message node into a URL the
    messaging channel can download.

    Absolute http(s) URLs are already deliverable. Anything else is an object
    key in the media bucket (optionally written as `s3://bucket/key`) and is
    resolved to a presigned GET URL.
    """

    def __init__(
        self,
        bucket: Optional[str],
        region: str = "us-east-1",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        expires_in: int = 3600,
    ):
        self.bucket = bucket
        self.expires_in = expires_in
        self._s3 = None
        if bucket:
            self._s3 = boto3.client(
                "s3",
                region_name=region,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
            )

    @staticmethod
    def is_public_url(media_ref: str) -> bool:
        return media_ref.lower().startswith(("http://", "https://"))

    def _split_reference(self, media_ref: str):
        if media_ref.startswith("s3://"):
            bucket, _, key = media_ref[len("s3://"):].partition("/")
            return bucket, key
        return self.bucket, media_ref.lstrip("/")

    async def resolve(self, media_ref: str) -> Optional[str]:
        """Returns a deliverable URL for `media_ref`, or None if it cannot be resolved."""
        if not media_ref or not media_ref.strip():
            logger.error("media_resolve_empty_reference")
            return None
        media_ref = media_ref.strip()
        if self.is_public_url(media_ref):
            return media_ref

        if not self._s3:
            logger.error(f"media_resolve_no_storage for {media_ref}: no media bucket configured")
            return None

        bucket, key = self._split_reference(media_ref)
        if not bucket or not key:
            logger.error(f"media_resolve_invalid_reference: {media_ref}")
            return None
        try:
            return await asyncio.to_thread(
                self._s3.generate_presigned_url,
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=self.expires_in,
            )
        except Exception as e:
            logger.error(f"media_resolve_failed for {media_ref}: {e}")
            return None

# Globally accessible instance
media_service = MediaService(
    settings.media_bucket,
    region=settings.media_region,
    access_key=settings.aws_access_key_id,
    secret_key=settings.aws_secret_access_key,
    expires_in=settings.media_url_expiry_seconds,
)
