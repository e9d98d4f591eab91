"""
Sequence Registry

Issues `<PREFIX>-<YYYYMM>-<NNN>` codes. Each (prefix, period) pair has one
counter row; the row is created and incremented by a single upsert so two
writers in the same period can never read the same value. Called inside
the record-creating transaction, a rollback also rolls back the increment.
"""
from datetime import datetime, timezone
from typing import Optional

from folioflow.core.database import FolioDB, get_db

FOLIO_PREFIX = "F"
PROJECT_PREFIX = "PRJ"


def period_key_for(when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    return f"{when.year:04d}{when.month:02d}"


def format_code(prefix: str, period_key: str, sequence: int) -> str:
    return f"{prefix}-{period_key}-{sequence:03d}"


def next_sequence(cur, prefix: str, period_key: str, db: Optional[FolioDB] = None) -> int:
    """Increment-and-return on an open transaction cursor."""
    db = db or get_db()
    row = db.fetchone(
        cur,
        "INSERT INTO sequence_counters (prefix, period_key, last_sequence) VALUES (?, ?, 1) "
        "ON CONFLICT (prefix, period_key) DO UPDATE SET last_sequence = sequence_counters.last_sequence + 1 "
        "RETURNING last_sequence",
        (prefix, period_key),
    )
    return int(row["last_sequence"])


def next_code(
    prefix: str,
    period_key: Optional[str] = None,
    cur=None,
    db: Optional[FolioDB] = None,
) -> str:
    """Issue the next code. Opens its own transaction when no cursor is given."""
    db = db or get_db()
    period_key = period_key or period_key_for()
    if cur is not None:
        return format_code(prefix, period_key, next_sequence(cur, prefix, period_key, db))
    with db.transaction() as own_cur:
        return format_code(prefix, period_key, next_sequence(own_cur, prefix, period_key, db))


def current_sequence(prefix: str, period_key: str, db: Optional[FolioDB] = None) -> int:
    db = db or get_db()
    row = db.query_one(
        "SELECT last_sequence FROM sequence_counters WHERE prefix = ? AND period_key = ?",
        (prefix, period_key),
    )
    return int(row["last_sequence"]) if row else 0
