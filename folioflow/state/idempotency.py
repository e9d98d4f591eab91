"""Inbound delivery dedup. The messaging gateway retries on any timeout or non-2xx."""
from enum import Enum
from typing import Optional

from folioflow.core.database import FolioDB, get_db, now_iso


class Admission(str, Enum):
    FIRST_SEEN = "first_seen"
    ALREADY_SEEN = "already_seen"


def admit(delivery_id: Optional[str], source_phone: str = "", db: Optional[FolioDB] = None) -> Admission:
    """Record a delivery id; report whether this call was the one that inserted it.

    Events without a delivery id are always FIRST_SEEN (at-least-once for that path).
    """
    if not delivery_id:
        return Admission.FIRST_SEEN
    db = db or get_db()
    inserted = db.write(
        "INSERT INTO idempotency_ledger (delivery_id, source_phone, received_at) VALUES (?, ?, ?) "
        "ON CONFLICT (delivery_id) DO NOTHING",
        (delivery_id, source_phone, now_iso()),
    )
    return Admission.FIRST_SEEN if inserted == 1 else Admission.ALREADY_SEEN


def seen(delivery_id: str, db: Optional[FolioDB] = None) -> bool:
    db = db or get_db()
    row = db.query_one("SELECT delivery_id FROM idempotency_ledger WHERE delivery_id = ?", (delivery_id,))
    return row is not None
