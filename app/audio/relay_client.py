"""Client side of the Send/Relay Function."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

CLOUD_SEND_PATH = "/functions/whatsapp-cloud-send"


class RelayError(Exception):
    """The relay answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.message_id = message_id


class RelayClient:
    """Invokes the relay with the end user's bearer token."""

    def __init__(self, base_url: str, access_token: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._timeout = timeout

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                f"{self._base_url}{CLOUD_SEND_PATH}",
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not 200 <= response.status_code < 300:
            error = str(data.get("error") or f"Relay returned HTTP {response.status_code}")
            raise RelayError(error, response.status_code, data.get("message_id"))
        return data

    async def send_audio(
        self,
        *,
        contact_id: str,
        media_url: str,
        media_filename: str,
        audio_duration: float | None,
    ) -> dict[str, Any]:
        """Queue a voice note; the relay answers 202 before delivery."""
        data = await self.send({
            "action": "send",
            "contact_id": contact_id,
            "content": "[AUDIO]",
            "message_type": "audio",
            "media_url": media_url,
            "media_filename": media_filename,
            "audio_duration": audio_duration,
        })
        logger.info("audio.relay.accepted", message_id=data.get("message_id"), status=data.get("status"))
        return data
