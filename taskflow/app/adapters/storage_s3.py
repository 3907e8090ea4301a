"""S3-compatible object storage (Supabase S3 gateway, Cloudflare R2, MinIO)."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from taskflow.app.core.errors import UploadFailure
from taskflow.app.ports.storage import IStorageService

logger = logging.getLogger(__name__)


class S3StorageService(IStorageService):
    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region_name: str = "auto",
        public_base_url: str = "",
        client=None,
    ):
        if client is None and not (endpoint_url and access_key and secret_key):
            raise RuntimeError("S3 storage is not configured: S3_ENDPOINT, S3_ACCESS_KEY, S3_SECRET_KEY")
        self.endpoint_url = (endpoint_url or "").rstrip("/")
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.s3_client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region_name,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        if not content_type:
            guess, _ = mimetypes.guess_type(key)
            content_type = guess or "application/octet-stream"
        try:
            # boto3 is blocking; keep the event loop free
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("s3 upload failed bucket=%s key=%s: %s", bucket, key, exc)
            raise UploadFailure(str(exc), cause=exc) from exc
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        base = self.public_base_url or f"{self.endpoint_url}/{bucket}"
        return f"{base}/{quote(key)}"
