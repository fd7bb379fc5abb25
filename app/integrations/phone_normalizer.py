"""LeadZap – Phone Normalizer.

Turns any WhatsApp identifier (JID, device JID, formatted number) into a
digits-only E.164 string. Brazilian numbers get the DDI inferred and the
mobile 9th digit inserted, so the same contact always normalizes to the
same key.

    "5583999999999:45@s.whatsapp.net" -> "5583999999999"
    "+55 83 9 9999-9999"               -> "5583999999999"
    "83999999999"                      -> "5583999999999"
    "558381579397"                     -> "5583981579397"
"""

from __future__ import annotations

import re

import structlog

logger = structlog.get_logger()

BRAZIL_DDI = "55"
MAX_E164_DIGITS = 15

_JID_SUFFIX = re.compile(r"@(s\.whatsapp\.net|c\.us|lid|g\.us|broadcast)$", re.IGNORECASE)
_NON_DIGIT = re.compile(r"\D")


def normalize_phone(value: str | None) -> str:
    """Normalize a WhatsApp identifier to digits with country code.

    Returns "" for empty input and for values longer than 15 digits, which are
    LIDs (WhatsApp link ids) rather than phone numbers.
    """
    if not value or not isinstance(value, str):
        return ""

    phone = _JID_SUFFIX.sub("", value.strip())
    phone = phone.split(":", 1)[0]
    phone = _NON_DIGIT.sub("", phone)

    if len(phone) > MAX_E164_DIGITS:
        logger.warning("phone.too_long_possible_lid", length=len(phone))
        return ""

    if 10 <= len(phone) <= 11:
        phone = BRAZIL_DDI + phone

    # 55 + DDD + 8 digits: legacy mobile format, missing the leading 9
    if phone.startswith(BRAZIL_DDI) and len(phone) == 12:
        phone = f"{phone[:2]}{phone[2:4]}9{phone[4:]}"

    return phone


def is_lid(value: str | None) -> bool:
    return bool(value) and isinstance(value, str) and "@lid" in value


def extract_phone_from_jid(jid: str | None) -> str | None:
    """Phone number from a full JID, or None for LIDs and unusable input."""
    if not jid:
        return None
    if is_lid(jid):
        logger.warning("phone.lid_ignored")
        return None
    return normalize_phone(jid) or None


def phone_to_jid(phone: str) -> str:
    """Format a number as the JID used for sending through the bridge.

    Raises:
        ValueError: If the number does not normalize.
    """
    normalized = normalize_phone(phone)
    if not normalized:
        raise ValueError(f"Invalid phone number for JID: {phone!r}")
    return f"{normalized}@s.whatsapp.net"


def format_phone_for_display(phone: str) -> str:
    """5583999999999 -> +55 83 99999-9999"""
    normalized = normalize_phone(phone)
    if not normalized:
        return phone
    if normalized.startswith(BRAZIL_DDI) and len(normalized) == 13:
        return f"+{normalized[:2]} {normalized[2:4]} {normalized[4:9]}-{normalized[9:]}"
    return f"+{normalized}"


def format_local_phone(phone: str) -> str:
    """5583999999999 -> 83 99999-9999"""
    normalized = normalize_phone(phone)
    if not normalized:
        return phone
    if normalized.startswith(BRAZIL_DDI) and len(normalized) == 13:
        return f"{normalized[2:4]} {normalized[4:9]}-{normalized[9:]}"
    return normalized
