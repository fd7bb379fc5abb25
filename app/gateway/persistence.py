import structlog
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError

from app.core.crypto import decrypt_value
from app.core.db import SessionLocal
from app.core.models import Company, WhatsAppContact, WhatsAppMessage, WhatsAppSession
from app.integrations.phone_normalizer import normalize_phone

logger = structlog.get_logger()

# Status lifecycle of an outbound message. Terminal states have no exits.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "sent", "failed"},
    "processing": {"processing", "sent", "failed"},
    "sent": set(),
    "failed": set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Persistence for companies, contacts and outbound WhatsApp messages.

    Every call opens its own short-lived session, so the store is safe to
    share between request handlers and background deliveries.
    """

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    # ── Companies ─────────────────────────────────────────────────

    def get_company(self, company_id: str) -> Company | None:
        db = self._session_factory()
        try:
            return db.query(Company).filter(Company.id == company_id).first()
        finally:
            db.close()

    def resolve_access_token(self, company: Company, fallback: str = "") -> str:
        """Company token (decrypted) or the process-wide fallback."""
        stored = decrypt_value(company.whatsapp_access_token) if company.whatsapp_access_token else ""
        return stored or fallback or ""

    def get_session_status(self, company_id: str) -> str | None:
        db = self._session_factory()
        try:
            row = db.query(WhatsAppSession).filter(WhatsAppSession.company_id == company_id).first()
            return row.status if row else None
        finally:
            db.close()

    # ── Contacts ──────────────────────────────────────────────────

    def get_contact(self, company_id: str, contact_id: str) -> WhatsAppContact | None:
        """Contact by id, only if it belongs to ``company_id``."""
        db = self._session_factory()
        try:
            return (
                db.query(WhatsAppContact)
                .filter(WhatsAppContact.id == contact_id, WhatsAppContact.company_id == company_id)
                .first()
            )
        finally:
            db.close()

    def get_or_create_contact(self, company_id: str, phone: str) -> WhatsAppContact:
        """Find the contact by normalized phone, creating it on first use."""
        normalized = normalize_phone(phone)
        db = self._session_factory()
        try:
            contact = (
                db.query(WhatsAppContact)
                .filter(WhatsAppContact.company_id == company_id, WhatsAppContact.normalized_phone == normalized)
                .first()
            )
            if contact:
                return contact
            contact = WhatsAppContact(company_id=company_id, phone=normalized, normalized_phone=normalized)
            db.add(contact)
            try:
                db.commit()
            except IntegrityError:
                # Created concurrently by another request.
                db.rollback()
                return (
                    db.query(WhatsAppContact)
                    .filter(WhatsAppContact.company_id == company_id, WhatsAppContact.normalized_phone == normalized)
                    .one()
                )
            db.refresh(contact)
            logger.info("db.contact_created", company_id=company_id, contact_id=contact.id)
            return contact
        finally:
            db.close()

    def touch_contact(self, contact_id: str | None) -> None:
        if not contact_id:
            return
        db = self._session_factory()
        try:
            db.query(WhatsAppContact).filter(WhatsAppContact.id == contact_id).update(
                {WhatsAppContact.last_message_at: _now()}
            )
            db.commit()
        finally:
            db.close()

    # ── Messages ──────────────────────────────────────────────────

    def create_message(
        self,
        *,
        company_id: str,
        contact_id: str | None,
        content: str,
        message_type: str,
        status: str,
        media_url: str | None = None,
        audio_duration: float | None = None,
    ) -> WhatsAppMessage:
        """Insert an outbound message record.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: Insert failed.
        """
        db = self._session_factory()
        try:
            msg = WhatsAppMessage(
                company_id=company_id,
                contact_id=contact_id,
                content=content,
                message_type=message_type,
                media_url=media_url,
                audio_duration=audio_duration,
                is_from_me=True,
                status=status,
            )
            db.add(msg)
            db.commit()
            db.refresh(msg)
            logger.info("db.message_created", message_id=msg.id, message_type=message_type, status=status)
            return msg
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_message(self, message_id: str) -> WhatsAppMessage | None:
        db = self._session_factory()
        try:
            return db.query(WhatsAppMessage).filter(WhatsAppMessage.id == message_id).first()
        finally:
            db.close()

    def update_status(
        self,
        message_id: str,
        status: str,
        *,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a message to ``status`` if the lifecycle allows it.

        Returns:
            False when the message is unknown or the transition is refused.
        """
        db = self._session_factory()
        try:
            msg = db.query(WhatsAppMessage).filter(WhatsAppMessage.id == message_id).first()
            if msg is None:
                logger.warning("db.message_missing", message_id=message_id, status=status)
                return False
            if status not in ALLOWED_TRANSITIONS.get(msg.status, set()):
                logger.warning(
                    "db.status_transition_refused",
                    message_id=message_id,
                    current=msg.status,
                    requested=status,
                )
                return False
            msg.status = status
            if provider_message_id:
                msg.message_id = provider_message_id
            if error is not None:
                msg.error = error
            if status == "sent":
                msg.sent_at = _now()
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
