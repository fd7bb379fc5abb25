"""LeadZap – PII Filter for logs.

Regex-based masking of phone numbers, WhatsApp JIDs and e-mail addresses.
Applied to log records only, never to message content sent to providers.
"""

import re
from typing import Any

PATTERNS: dict[str, re.Pattern[str]] = {
    "jid": re.compile(r"\b\d{8,20}(?::\d+)?@(?:s\.whatsapp\.net|c\.us|lid|g\.us)\b"),
    "phone": re.compile(r"\+?\b\d{10,15}\b"),
    "email": re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"),
}

# Log keys whose values are identifiers, not PII, even when they are long digit runs.
SAFE_KEYS = {"event", "timestamp", "level", "message_id", "media_id", "meta_message_id", "phone_number_id", "waba_id"}


def _mask_phone(match: re.Match[str]) -> str:
    full = match.group(0)
    if len(full) > 6:
        return full[:6] + "****"
    return "****"


def _mask_email(match: re.Match[str]) -> str:
    local, _, domain = match.group(0).partition("@")
    domain_name, _, tld = domain.rpartition(".")
    return f"{local[:1]}****@{domain_name[:1]}****.{tld or 'com'}"


class PIIFilter:
    """PII detection and masking for log safety.

    Usage:
        pii = PIIFilter()
        safe_text = pii.mask(raw)
    """

    def __init__(self, patterns: dict[str, re.Pattern[str]] | None = None) -> None:
        self._patterns = patterns or PATTERNS

    def contains_pii(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._patterns.values())

    def mask(self, text: str) -> str:
        """Mask phone numbers (first 6 digits kept), JIDs and e-mails."""
        result = self._patterns["jid"].sub(_mask_phone, text)
        result = self._patterns["email"].sub(_mask_email, result)
        result = self._patterns["phone"].sub(_mask_phone, result)
        return result


_default_filter = PIIFilter()


def filter_log_record(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking PII in string values of a log record."""
    for key, value in event_dict.items():
        if key in SAFE_KEYS:
            continue
        if isinstance(value, str):
            event_dict[key] = _default_filter.mask(value)
    return event_dict
