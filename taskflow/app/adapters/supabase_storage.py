from __future__ import annotations

import logging
import mimetypes
from typing import Optional
from urllib.parse import quote

import httpx

from taskflow.app.adapters.supabase_http import api_headers, error_message, error_status
from taskflow.app.core.errors import UploadFailure
from taskflow.app.ports.storage import IStorageService

logger = logging.getLogger(__name__)


class SupabaseStorageService(IStorageService):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

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
        headers = api_headers(self.api_key, access_token)
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "false"
        url = f"{self.base_url}/storage/v1/object/{bucket}/{quote(key)}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("storage upload transport error key=%s: %s", key, exc)
            raise UploadFailure(f"storage unreachable: {exc}", cause=exc) from exc
        if response.status_code >= 400:
            raise UploadFailure(error_message(response), status_code=error_status(response))
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(key)}"
