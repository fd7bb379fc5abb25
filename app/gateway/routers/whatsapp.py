"""LeadZap – WhatsApp relay endpoints.

``/functions/whatsapp-cloud-send`` sends through the Meta Cloud API. Text and
by-link media are delivered synchronously; audio is accepted with 202 and
handed to the background supervisor, because the provider's media upload can
take several seconds.

``/functions/whatsapp-send`` forwards to the WhatsApp Web (Baileys) bridge.
"""

from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.audio.delivery import AudioDelivery, deliver_audio
from app.core.auth import AuthContext, get_current_user
from app.core.background import BackgroundSupervisor
from app.core.instrumentation import MESSAGES_SENT
from app.core.models import Company
from app.gateway.dependencies import (
    get_app_settings,
    get_message_store,
    get_redis_bus,
    get_supervisor,
    get_whatsapp_client,
)
from app.gateway.persistence import MessageStore
from app.gateway.redis_bus import RedisBus
from app.gateway.schemas import BridgeSendPayload, MessageType, SendAction, SendMessagePayload
from app.integrations.phone_normalizer import normalize_phone
from app.integrations.whatsapp import WhatsAppAPIError, WhatsAppClient, extract_message_id
from config.settings import Settings

router = APIRouter(prefix="/functions", tags=["whatsapp"])
logger = structlog.get_logger()


async def _parse_body(request: Request, model: type[BaseModel]) -> Any:
    try:
        raw = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise HTTPException(status_code=400, detail=f"Invalid field '{field}': {first.get('msg')}")


def _require_company(user: AuthContext, store: MessageStore) -> Company:
    company = store.get_company(user.company_id) if user.company_id else None
    if company is None:
        raise HTTPException(status_code=400, detail="User has no company")
    return company


async def _test_connection(company: Company, access_token: str, cfg: Settings) -> dict[str, Any]:
    if not access_token:
        return {"success": False, "error": "Access token not configured"}
    if not company.whatsapp_phone_number_id:
        return {"success": False, "error": "Phone Number ID not configured"}
    client = get_whatsapp_client(company, access_token, cfg)
    try:
        info = await client.get_phone_number_info()
    except WhatsAppAPIError as e:
        return {"success": False, "error": e.message}
    except httpx.HTTPError as e:
        logger.warning("whatsapp.test_connection_failed", company_id=company.id, error=str(e))
        return {"success": False, "error": "Connection failed"}
    return {
        "success": True,
        "phone_number": info.get("display_phone_number"),
        "verified_name": info.get("verified_name"),
    }


async def _finish(
    store: MessageStore,
    bus: RedisBus,
    *,
    company_id: str,
    message_id: str,
    message_type: str,
    status: str,
    provider_message_id: str | None = None,
    error: str | None = None,
) -> None:
    store.update_status(message_id, status, provider_message_id=provider_message_id, error=error)
    MESSAGES_SENT.labels(message_type=message_type, status=status).inc()
    await bus.publish_message_status(
        company_id=company_id,
        message_id=message_id,
        status=status,
        error=error,
        provider_message_id=provider_message_id,
    )


@router.post("/whatsapp-cloud-send")
async def whatsapp_cloud_send(
    request: Request,
    user: AuthContext = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    supervisor: BackgroundSupervisor = Depends(get_supervisor),
    bus: RedisBus = Depends(get_redis_bus),
    cfg: Settings = Depends(get_app_settings),
) -> Any:
    """Send a message through the Meta Cloud API for the caller's company."""
    company = _require_company(user, store)
    payload: SendMessagePayload = await _parse_body(request, SendMessagePayload)
    access_token = store.resolve_access_token(company, cfg.whatsapp_cloud_access_token)

    if payload.action is SendAction.CHECK_TOKEN:
        return {"has_token": bool(access_token)}
    if payload.action is SendAction.TEST:
        return await _test_connection(company, access_token, cfg)

    if not access_token:
        raise HTTPException(status_code=400, detail="Cloud API access token not configured")
    if not company.whatsapp_phone_number_id:
        raise HTTPException(status_code=400, detail="Phone Number ID not configured for this company")

    contact = None
    recipient = ""
    if payload.contact_id:
        contact = store.get_contact(company.id, payload.contact_id)
        if contact is None:
            raise HTTPException(status_code=404, detail="Contact not found")
        recipient = contact.normalized_phone or normalize_phone(contact.phone)
    elif payload.phone:
        recipient = normalize_phone(payload.phone)
    if not recipient:
        raise HTTPException(status_code=400, detail="Missing phone number")

    mtype = payload.message_type
    if mtype is MessageType.TEXT and not (payload.content or "").strip():
        raise HTTPException(status_code=400, detail="Missing content for text message")
    if mtype is not MessageType.TEXT and not payload.media_url:
        raise HTTPException(status_code=400, detail="Missing media_url for media message")

    if contact is None:
        contact = store.get_or_create_contact(company.id, recipient)

    if mtype is MessageType.TEXT:
        content = payload.content
    else:
        content = payload.media_caption or f"[{mtype.value.upper()}]"

    try:
        msg = store.create_message(
            company_id=company.id,
            contact_id=contact.id,
            content=content,
            message_type=mtype.value,
            status="processing" if mtype is MessageType.AUDIO else "pending",
            media_url=payload.media_url,
            audio_duration=payload.audio_duration,
        )
    except SQLAlchemyError as e:
        logger.error("whatsapp.message_insert_failed", company_id=company.id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create message record")

    client: WhatsAppClient = get_whatsapp_client(company, access_token, cfg)

    if mtype is MessageType.AUDIO:
        delivery = AudioDelivery(
            message_id=msg.id,
            company_id=company.id,
            contact_id=contact.id,
            recipient=recipient,
            media_url=payload.media_url,
            audio_duration=payload.audio_duration,
        )
        try:
            supervisor.spawn(
                deliver_audio(delivery, client=client, store=store, bus=bus),
                name=f"audio-delivery-{msg.id}",
            )
        except RuntimeError as e:
            await _finish(
                store, bus,
                company_id=company.id, message_id=msg.id, message_type=mtype.value,
                status="failed", error=str(e),
            )
            return JSONResponse(status_code=503, content={"error": "Server is shutting down", "message_id": msg.id})
        logger.info("whatsapp.audio_queued", message_id=msg.id, company_id=company.id)
        return JSONResponse(
            status_code=202,
            content={"success": True, "message_id": msg.id, "status": "processing"},
        )

    try:
        if mtype is MessageType.TEXT:
            result = await client.send_text(recipient, content)
        else:
            result = await client.send_media(
                recipient,
                mtype.value,
                payload.media_url,
                caption=payload.media_caption,
                filename=payload.media_filename,
            )
    except WhatsAppAPIError as e:
        await _finish(
            store, bus,
            company_id=company.id, message_id=msg.id, message_type=mtype.value,
            status="failed", error=e.message,
        )
        return JSONResponse(status_code=400, content={"error": e.message, "message_id": msg.id})
    except httpx.HTTPError as e:
        logger.error("whatsapp.cloud_api.transport_error", message_id=msg.id, error=str(e))
        await _finish(
            store, bus,
            company_id=company.id, message_id=msg.id, message_type=mtype.value,
            status="failed", error=str(e) or type(e).__name__,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to send message to Meta API", "message_id": msg.id},
        )

    meta_message_id = extract_message_id(result)
    await _finish(
        store, bus,
        company_id=company.id, message_id=msg.id, message_type=mtype.value,
        status="sent", provider_message_id=meta_message_id,
    )
    store.touch_contact(contact.id)
    return {"success": True, "message_id": msg.id, "meta_message_id": meta_message_id}


@router.post("/whatsapp-send")
async def whatsapp_bridge_send(
    request: Request,
    user: AuthContext = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    bus: RedisBus = Depends(get_redis_bus),
    cfg: Settings = Depends(get_app_settings),
) -> Any:
    """Send a message through the company's WhatsApp Web session."""
    company = _require_company(user, store)
    payload: BridgeSendPayload = await _parse_body(request, BridgeSendPayload)

    contact = store.get_contact(company.id, payload.contact_id)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    if store.get_session_status(company.id) != "connected":
        raise HTTPException(status_code=400, detail="WhatsApp not connected")

    try:
        msg = store.create_message(
            company_id=company.id,
            contact_id=contact.id,
            content=payload.message,
            message_type=payload.message_type,
            status="pending",
        )
    except SQLAlchemyError as e:
        logger.error("whatsapp.message_insert_failed", company_id=company.id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create message record")
    store.touch_contact(contact.id)

    if cfg.whatsapp_server_url:
        client = get_whatsapp_client(company, "", cfg)
        try:
            await client.send_via_bridge(
                company_id=company.id,
                message_id=msg.id,
                phone=contact.phone,
                message=payload.message,
                message_type=payload.message_type,
            )
        except (WhatsAppAPIError, httpx.HTTPError) as e:
            logger.error("whatsapp.bridge.send_failed", message_id=msg.id, error=str(e))
            await _finish(
                store, bus,
                company_id=company.id, message_id=msg.id, message_type=payload.message_type,
                status="failed", error=str(e) or type(e).__name__,
            )

    return {"success": True, "message_id": msg.id}
