"""Phone number normalisation."""

from __future__ import annotations

import re

_FORMATTING = re.compile(r"[\s\-().]")
_NON_DIAL = re.compile(r"[^\d+]")


def normalize_to_e164(phone_number: str) -> str:
    """Format a number the way voice providers require (leading +).

    "61370566663"   -> "+61370566663"
    "0061370566663" -> "+61370566663"
    "+1 (415) 555-1234" -> "+14155551234"
    """
    cleaned = _FORMATTING.sub("", phone_number)
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("00"):
        return "+" + cleaned[2:]
    return "+" + cleaned


def normalize_recipient_number(phone_number: str) -> str:
    """Normalise an imported recipient number.

    Ten-digit numbers without a country code are taken as US numbers.
    """
    normalized = _NON_DIAL.sub("", phone_number)
    if not normalized.startswith("+") and len(normalized) == 10:
        normalized = "+1" + normalized
    if not normalized.startswith("+"):
        normalized = "+" + normalized
    return normalized
