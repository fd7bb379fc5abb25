"""Shared dependencies for the Gateway routers.

Avoids circular imports by centralizing singleton initialization.
"""
import structlog

from app.core.background import BackgroundSupervisor
from app.core.models import Company
from app.gateway.persistence import MessageStore
from app.gateway.redis_bus import RedisBus
from app.integrations.whatsapp import WhatsAppClient
from config.settings import Settings, get_settings

logger = structlog.get_logger()
settings = get_settings()

# Initialize Singletons
redis_bus = RedisBus(redis_url=settings.redis_url)
supervisor = BackgroundSupervisor()
message_store = MessageStore()


def get_redis_bus() -> RedisBus:
    return redis_bus


def get_supervisor() -> BackgroundSupervisor:
    return supervisor


def get_message_store() -> MessageStore:
    return message_store


def get_app_settings() -> Settings:
    return settings


def get_whatsapp_client(company: Company, access_token: str, cfg: Settings | None = None) -> WhatsAppClient:
    """Company-scoped WhatsAppClient (Cloud API credentials + bridge endpoint)."""
    cfg = cfg or settings
    return WhatsAppClient(
        access_token=access_token,
        phone_number_id=company.whatsapp_phone_number_id or "",
        api_base=cfg.graph_api_base,
        bridge_url=cfg.whatsapp_server_url,
        bridge_secret=cfg.whatsapp_server_secret,
        timeout=cfg.provider_timeout_seconds,
    )
