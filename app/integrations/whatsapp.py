"""LeadZap – WhatsApp Integration.

Supports two delivery modes:
  - Meta Cloud API   – requires access_token + phone_number_id
  - WhatsApp Web/QR  – routes outbound text through the Baileys bridge server

Media is sent by reference (public ``link``) for image/video/document. Audio
has to be uploaded to the ``/media`` endpoint first and sent by media id,
because the Cloud API only plays voice notes it hosts itself.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

CAPTION_TYPES = {"image", "video", "document"}


class WhatsAppAPIError(Exception):
    """Provider rejected the request (non-2xx or missing expected field)."""

    def __init__(self, message: str, status_code: int | None = None, payload: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(data: dict[str, Any], default: str) -> str:
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return default


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


class WhatsAppClient:
    """WhatsApp client for the Meta Cloud API and the Baileys bridge."""

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_base: str = "https://graph.facebook.com/v18.0",
        bridge_url: str = "",
        bridge_secret: str = "",
        timeout: float = 30.0,
    ) -> None:
        self._access_token = access_token
        self._phone_number_id = phone_number_id
        self._api_base = api_base.rstrip("/")
        self._bridge_url = bridge_url.rstrip("/") if bridge_url else ""
        self._bridge_secret = bridge_secret
        self._timeout = timeout

    @property
    def messages_url(self) -> str:
        return f"{self._api_base}/{self._phone_number_id}/messages"

    @property
    def media_url(self) -> str:
        return f"{self._api_base}/{self._phone_number_id}/media"

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    # ──────────────────────────────────────────────────────────────
    # Cloud API
    # ──────────────────────────────────────────────────────────────

    async def send_text(self, to: str, body: str) -> dict[str, Any]:
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        return await self._send_via_meta_api(payload)

    async def send_media(
        self,
        to: str,
        message_type: str,
        link: str,
        caption: str | None = None,
        filename: str | None = None,
    ) -> dict[str, Any]:
        """Send image/video/document/audio by public URL.

        Caption applies to image, video and document; filename to documents.
        """
        media: dict[str, Any] = {"link": link}
        if caption and message_type in CAPTION_TYPES:
            media["caption"] = caption
        if filename and message_type == "document":
            media["filename"] = filename
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": message_type,
            message_type: media,
        }
        return await self._send_via_meta_api(payload)

    async def send_audio(self, to: str, media_id: str) -> dict[str, Any]:
        """Send a voice note previously uploaded with :meth:`upload_media`."""
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "audio",
            "audio": {"id": media_id},
        }
        return await self._send_via_meta_api(payload)

    async def upload_media(self, data: bytes, mime_type: str, filename: str = "audio.ogg") -> str:
        """Upload raw bytes to the ``/media`` endpoint.

        Returns:
            The provider media handle.

        Raises:
            WhatsAppAPIError: Upload rejected or no ``id`` in the response.
        """
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self.media_url,
                headers=self._auth_headers,
                data={"messaging_product": "whatsapp", "type": mime_type},
                files={"file": (filename, data, mime_type)},
            )
        result = _json_or_empty(response)
        media_id = result.get("id")
        if not _is_success(response) or not media_id:
            message = _error_message(result, "Failed to upload audio to WhatsApp")
            logger.error("whatsapp.media_upload.failed", status=response.status_code, error=message)
            raise WhatsAppAPIError(message, response.status_code, result)
        logger.info("whatsapp.media_upload.ok", media_id=media_id, size=len(data), mime_type=mime_type)
        return str(media_id)

    async def get_phone_number_info(self) -> dict[str, Any]:
        """Fetch the registered number; used to verify credentials.

        Raises:
            WhatsAppAPIError: Credentials rejected by the provider.
        """
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(
                f"{self._api_base}/{self._phone_number_id}",
                headers=self._auth_headers,
            )
        data = _json_or_empty(response)
        if not _is_success(response):
            raise WhatsAppAPIError(_error_message(data, "Invalid credentials"), response.status_code, data)
        return data

    async def _send_via_meta_api(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to ``/messages``.

        Raises:
            WhatsAppAPIError: Non-2xx answer (message taken from ``error.message``).
            httpx.HTTPError: Transport failure.
        """
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self.messages_url,
                json=payload,
                headers={**self._auth_headers, "Content-Type": "application/json"},
            )
        data = _json_or_empty(response)
        if not _is_success(response):
            message = _error_message(data, "Failed to send message")
            logger.error(
                "whatsapp.cloud_api.failed",
                to=payload.get("to"),
                type=payload.get("type"),
                status=response.status_code,
                error=message,
            )
            raise WhatsAppAPIError(message, response.status_code, data)
        logger.info("whatsapp.cloud_api.sent", to=payload.get("to"), type=payload.get("type"), id=extract_message_id(data))
        return data

    # ──────────────────────────────────────────────────────────────
    # Baileys bridge
    # ──────────────────────────────────────────────────────────────

    async def send_via_bridge(
        self,
        *,
        company_id: str,
        message_id: str,
        phone: str,
        message: str,
        message_type: str = "text",
    ) -> None:
        """Hand a message to the WhatsApp Web bridge.

        Raises:
            WhatsAppAPIError: Bridge not configured or answered non-2xx.
        """
        if not self._bridge_url:
            raise WhatsAppAPIError("WhatsApp server URL not configured")
        headers = {"Content-Type": "application/json"}
        if self._bridge_secret:
            headers["x-server-token"] = self._bridge_secret
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                f"{self._bridge_url}/send",
                headers=headers,
                json={
                    "company_id": company_id,
                    "message_id": message_id,
                    "phone": phone,
                    "message": message,
                    "message_type": message_type,
                },
            )
        if not _is_success(response):
            logger.error("whatsapp.bridge.failed", status=response.status_code, body=response.text[:200])
            raise WhatsAppAPIError("WhatsApp server rejected the message", response.status_code)
        logger.info("whatsapp.bridge.sent", message_id=message_id)


def extract_message_id(data: dict[str, Any]) -> str | None:
    """Provider message handle from a ``/messages`` response."""
    messages = data.get("messages") or [{}]
    return messages[0].get("id") if isinstance(messages[0], dict) else None
