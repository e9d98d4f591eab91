"""
Identity Resolver

Maps the raw `From` identifier of an inbound message to a registered Actor.

Identifiers arrive in several shapes for the same phone:
- with the transport prefix ("whatsapp:+5215512345678")
- with the mobile digit some carriers insert after the country code
  ("+521..." vs "+52...")
- with interior whitespace or punctuation ("+52 55 1234 5678")
- as the bare 10-digit national number

The directory is typed in by people, so stored numbers are just as
inconsistent. Resolution tries the canonical form first, then falls back
to comparing the last 10 significant digits against every active actor.
"""

import logging
import re
from typing import Dict, Optional

from folioflow.core.database import FolioDB, get_db
from folioflow.core.models import Actor
from folioflow.core.settings import get_settings

logger = logging.getLogger(__name__)

SIGNIFICANT_DIGITS = 10

# Country code -> digit some carriers insert between it and the national number
MOBILE_PREFIX_BY_COUNTRY: Dict[str, str] = {
    "52": "1",
    "54": "9",
}

_TRANSPORT_PREFIX = re.compile(r"^\s*whatsapp:", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")


def digits_only(raw: Optional[str]) -> str:
    return _NON_DIGITS.sub("", str(raw or ""))


def last_significant_digits(raw: Optional[str], count: int = SIGNIFICANT_DIGITS) -> str:
    return digits_only(raw)[-count:]


def same_phone(a: Optional[str], b: Optional[str]) -> bool:
    """Formatting-insensitive phone equality on the last 10 digits."""
    left, right = last_significant_digits(a), last_significant_digits(b)
    return bool(left) and len(left) == SIGNIFICANT_DIGITS and left == right


def normalize_phone(raw: Optional[str], default_country_code: Optional[str] = None) -> str:
    """Canonical `+<cc><national>` form of a phone identifier."""
    country_code = (default_country_code or get_settings().default_country_code).lstrip("+")
    text = _TRANSPORT_PREFIX.sub("", str(raw or "")).strip()
    if not text:
        return ""

    digits = digits_only(text)
    if text.startswith("00"):
        digits = digits[2:]
    elif not text.startswith("+") and len(digits) == SIGNIFICANT_DIGITS:
        digits = country_code + digits

    for cc, mobile_digit in MOBILE_PREFIX_BY_COUNTRY.items():
        duplicated = cc + mobile_digit
        if digits.startswith(duplicated) and len(digits) == len(cc) + 1 + SIGNIFICANT_DIGITS:
            digits = cc + digits[len(duplicated):]
            break

    return f"+{digits}" if digits else ""


class IdentityResolver:
    """Read-only lookup of actors by phone."""

    def __init__(self, db: Optional[FolioDB] = None):
        self.db = db or get_db()

    def resolve(self, raw_identifier: Optional[str]) -> Optional[Actor]:
        """Return the Actor for this identifier, or None when unregistered."""
        canonical = normalize_phone(raw_identifier)
        if not canonical:
            return None

        row = self.db.get_actor_by_phone(canonical)
        if row:
            return self.db.actor_from_row(row, canonical)

        tail = last_significant_digits(canonical)
        if len(tail) < SIGNIFICANT_DIGITS:
            return None

        matches = [
            candidate for candidate in self.db.list_active_actors()
            if last_significant_digits(candidate.get("phone")) == tail
        ]
        if not matches:
            logger.info("No actor registered for %s", canonical)
            return None
        if len(matches) > 1:
            logger.warning(
                "Phone %s matches %d actors on its last %d digits; using the oldest",
                canonical, len(matches), SIGNIFICANT_DIGITS,
            )
        return self.db.actor_from_row(matches[0], canonical)


def resolve(raw_identifier: Optional[str]) -> Optional[Actor]:
    return IdentityResolver().resolve(raw_identifier)
