"""LeadZap – Object Storage client (Supabase Storage REST API)."""

from __future__ import annotations

from urllib.parse import quote

import httpx
import structlog

logger = structlog.get_logger()


class StorageError(Exception):
    """Upload rejected by the storage service."""


class StorageClient:
    """Uploads media into a public bucket and builds public URLs."""

    def __init__(self, base_url: str, service_key: str, bucket: str = "whatsapp-media", timeout: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._bucket = bucket
        self._timeout = timeout

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{quote(path)}"

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        *,
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> str:
        """Store ``data`` under ``path`` and return its public URL.

        Raises:
            StorageError: Non-2xx answer from the storage service.
        """
        headers = {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
            "Content-Type": content_type,
            "cache-control": f"max-age={cache_control}",
            "x-upsert": "true" if upsert else "false",
        }
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{quote(path)}"
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(url, content=data, headers=headers)
        if not 200 <= response.status_code < 300:
            logger.error("storage.upload_failed", path=path, status=response.status_code, body=response.text[:200])
            raise StorageError(f"Upload of {path} failed with HTTP {response.status_code}")
        logger.info("storage.uploaded", path=path, size=len(data), content_type=content_type)
        return self.public_url(path)
