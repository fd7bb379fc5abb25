from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Text, UniqueConstraint

from app.core.db import Base


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    whatsapp_mode = Column(String, default="cloud", nullable=False)  # cloud|baileys
    whatsapp_phone_number_id = Column(String, nullable=True)
    whatsapp_waba_id = Column(String, nullable=True)
    whatsapp_access_token = Column(String, nullable=True)  # ENC:-prefixed (app/core/crypto.py)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class UserAccount(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(String, default="member", nullable=False)  # owner|admin|member
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now)


class WhatsAppSession(Base):
    """Baileys (WhatsApp Web) connection state, one per company."""

    __tablename__ = "whatsapp_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), unique=True, nullable=False)
    phone_number = Column(String, nullable=True)
    status = Column(String, default="disconnected", nullable=False)  # disconnected|connecting|qr_code|connected
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class WhatsAppContact(Base):
    __tablename__ = "whatsapp_contacts"
    __table_args__ = (UniqueConstraint("company_id", "normalized_phone", name="uq_contact_company_phone"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True, nullable=False)
    phone = Column(String, nullable=False)
    normalized_phone = Column(String, index=True, nullable=True)
    name = Column(String, nullable=True)
    last_message_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), index=True, nullable=False)
    contact_id = Column(String(36), ForeignKey("whatsapp_contacts.id", ondelete="CASCADE"), index=True, nullable=True)
    message_id = Column(String, nullable=True)  # provider handle (wamid.*), set once sent
    content = Column(Text, nullable=False)
    message_type = Column(String, default="text", nullable=False)  # text|image|audio|document|video
    media_url = Column(Text, nullable=True)
    audio_duration = Column(Float, nullable=True)
    is_from_me = Column(Boolean, default=False, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending|processing|sent|failed
    error = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)
