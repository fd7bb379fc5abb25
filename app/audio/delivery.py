"""Async Audio Delivery Task.

Runs after the relay has already answered 202. Downloads the stored voice
note, uploads it to the Cloud API ``/media`` endpoint, sends it by media id
and records the outcome on the message. Any failure marks the message
``failed`` and stops; there are no retries.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from app.audio.ogg import is_likely_ogg_opus
from app.core.instrumentation import AUDIO_DELIVERIES, MESSAGES_SENT
from app.gateway.persistence import MessageStore
from app.gateway.redis_bus import RedisBus
from app.integrations.whatsapp import WhatsAppAPIError, WhatsAppClient, extract_message_id

logger = structlog.get_logger()

MIN_DELIVERY_SECONDS = 1.0
# Cloud API limit for audio media.
MAX_AUDIO_BYTES = 16 * 1024 * 1024
DEFAULT_AUDIO_MIME = "audio/ogg"


class DeliveryError(Exception):
    """A delivery step failed; the message text is stored on the record."""


@dataclass
class AudioDelivery:
    message_id: str
    company_id: str
    contact_id: str | None
    recipient: str
    media_url: str
    audio_duration: float | None = None


def effective_audio_mime(content_type: str | None) -> str:
    """Base MIME of a download, coerced to ``audio/ogg`` unless it is ``audio/*``."""
    mime = (content_type or DEFAULT_AUDIO_MIME).split(";")[0].strip().lower()
    if not mime.startswith("audio/"):
        return DEFAULT_AUDIO_MIME
    return mime


async def deliver_audio(
    job: AudioDelivery,
    *,
    client: WhatsAppClient,
    store: MessageStore,
    bus: RedisBus | None = None,
    download_timeout: float = 30.0,
    max_bytes: int = MAX_AUDIO_BYTES,
) -> bool:
    """Deliver one voice note. Returns True when the message ended ``sent``."""
    log = logger.bind(message_id=job.message_id, company_id=job.company_id)

    try:
        if not store.update_status(job.message_id, "processing"):
            log.warning("audio.delivery.skipped", reason="message not in a deliverable state")
            return False

        if job.audio_duration is not None and job.audio_duration < MIN_DELIVERY_SECONDS:
            raise DeliveryError(f"Audio too short ({job.audio_duration:.2f}s)")

        async with httpx.AsyncClient(timeout=download_timeout, follow_redirects=True) as http:
            response = await http.get(job.media_url)
        if not 200 <= response.status_code < 300:
            raise DeliveryError(f"Failed to download audio (HTTP {response.status_code})")
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise DeliveryError(f"Audio too large ({int(declared)} bytes)")
        data = response.content
        if len(data) > max_bytes:
            raise DeliveryError(f"Audio too large ({len(data)} bytes)")

        mime = effective_audio_mime(response.headers.get("content-type"))
        if mime != DEFAULT_AUDIO_MIME:
            log.warning("audio.delivery.unexpected_mime", mime_type=mime)
        if not is_likely_ogg_opus(data):
            log.warning("audio.delivery.not_ogg_opus", size=len(data))

        media_id = await client.upload_media(data, mime)
        result = await client.send_audio(job.recipient, media_id)
        provider_id = extract_message_id(result)

        store.update_status(job.message_id, "sent", provider_message_id=provider_id)
    except (DeliveryError, WhatsAppAPIError) as e:
        return await _fail(job, store, bus, str(e))
    except httpx.HTTPError as e:
        return await _fail(job, store, bus, f"Network error: {e}")
    except Exception as e:
        return await _fail(job, store, bus, f"Unexpected error: {type(e).__name__}: {e}")

    try:
        store.touch_contact(job.contact_id)
    except SQLAlchemyError as e:
        log.warning("audio.delivery.contact_touch_failed", error=str(e))
    AUDIO_DELIVERIES.labels(status="sent").inc()
    MESSAGES_SENT.labels(message_type="audio", status="sent").inc()
    log.info("audio.delivery.sent", media_id=media_id, meta_message_id=provider_id, size=len(data))
    if bus is not None:
        await bus.publish_message_status(
            company_id=job.company_id,
            message_id=job.message_id,
            status="sent",
            provider_message_id=provider_id,
        )
    return True


async def _fail(job: AudioDelivery, store: MessageStore, bus: RedisBus | None, error: str) -> bool:
    logger.error("audio.delivery.failed", message_id=job.message_id, error=error)
    store.update_status(job.message_id, "failed", error=error)
    AUDIO_DELIVERIES.labels(status="failed").inc()
    MESSAGES_SENT.labels(message_type="audio", status="failed").inc()
    if bus is not None:
        await bus.publish_message_status(
            company_id=job.company_id,
            message_id=job.message_id,
            status="failed",
            error=error,
        )
    return False
