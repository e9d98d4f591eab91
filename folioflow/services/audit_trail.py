"""
Audit Trail Service

Append-only history of status changes and comments for folios and
projects. Rows are inserted on the caller's transaction cursor so the
history commits or rolls back together with the transition it records.
There is no update or delete path.
"""

import logging
from typing import List, Optional

from folioflow.core.database import FolioDB, get_db, new_id, now_iso
from folioflow.core.models import Actor, AuditEntry, RecordKind

logger = logging.getLogger(__name__)

_TABLES = {
    RecordKind.FOLIO: "folio_history",
    RecordKind.PROJECT: "project_history",
}


class AuditTrailService:
    def __init__(self, db: Optional[FolioDB] = None):
        self.db = db or get_db()

    def append(
        self,
        cur,
        kind: RecordKind,
        record_id: str,
        record_code: str,
        status: str,
        comment: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=new_id("HIS"),
            record_id=record_id,
            record_code=record_code,
            status_at_entry=status,
            comment=comment,
            actor_phone=actor.canonical_phone if actor else None,
            actor_role=actor.role.value if actor else None,
            created_at=now_iso(),
        )
        self.db.execute(
            cur,
            f"INSERT INTO {_TABLES[kind]} "
            "(id, record_id, record_code, status, comment, actor_phone, actor_role, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                entry.record_id,
                entry.record_code,
                entry.status_at_entry,
                entry.comment,
                entry.actor_phone,
                entry.actor_role,
                entry.created_at,
            ),
        )
        logger.debug("History %s %s -> %s", kind.value, record_code, status)
        return entry

    def list_history(
        self,
        kind: RecordKind,
        record_code: str,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Ascending order replays the lifecycle; descending is for display."""
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT * FROM {_TABLES[kind]} WHERE record_code = ? ORDER BY created_at {order}, id {order}"
        params: list = [record_code]
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [AuditEntry.from_row(row) for row in self.db.query_all(sql, params)]

    def count(self, kind: RecordKind, record_code: str) -> int:
        row = self.db.query_one(
            f"SELECT COUNT(*) AS n FROM {_TABLES[kind]} WHERE record_code = ?",
            (record_code,),
        )
        return int(row["n"]) if row else 0


def format_history(entries: List[AuditEntry]) -> str:
    lines = []
    for entry in entries:
        stamp = entry.created_at.replace("T", " ")[:16]
        who = f" ({entry.actor_role})" if entry.actor_role else ""
        comment = f": {entry.comment}" if entry.comment else ""
        lines.append(f"[{stamp}] {entry.status_at_entry}{who}{comment}")
    return "\n".join(lines)
