"""
Notification Fan-out Engine

Given a record and an event kind, computes who should hear about it
(role x org unit), sends one message per recipient through the transport
and writes one notification_log row per attempt.

Recipient computation is a pure function (`recipient_scopes`); resolving
scopes to phone numbers reads the actor directory. A failure for one
recipient never stops the rest, and nothing is retried.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from folioflow.core.database import FolioDB, get_db, new_id, now_iso
from folioflow.core.models import Folio, NotificationRequest, Project, Role
from folioflow.core.settings import Settings, get_settings
from folioflow.services.identity import last_significant_digits, normalize_phone, same_phone
from folioflow.services.metrics import record_notification
from folioflow.services.transport import MessageTransport, as_whatsapp_address, get_transport

logger = logging.getLogger(__name__)

OUTCOME_SENT = "SENT"
OUTCOME_FAILED = "FAILED"


class EventKind(str, Enum):
    FOLIO_CREATED = "FOLIO_CREATED"
    PLANT_APPROVED = "PLANT_APPROVED"
    APPROVED = "APPROVED"
    OVERRIDE_APPROVED = "OVERRIDE_APPROVED"
    SELECTED = "SELECTED"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAID = "PAID"
    CLOSED = "CLOSED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELED = "CANCELED"
    CANCELLATION_REJECTED = "CANCELLATION_REJECTED"
    COMMENT = "COMMENT"
    QUOTE_ATTACHED = "QUOTE_ATTACHED"
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_APPROVED = "PROJECT_APPROVED"
    PROJECT_CLOSED = "PROJECT_CLOSED"
    PROJECT_CANCELLATION_REQUESTED = "PROJECT_CANCELLATION_REQUESTED"
    PROJECT_CANCELED = "PROJECT_CANCELED"


@dataclass(frozen=True)
class RecipientScope:
    """A role, limited to the record's org unit or taken system-wide."""
    role: Role
    unit_scoped: bool


_PLANT = (RecipientScope(Role.SITE_MANAGER, True), RecipientScope(Role.GENERAL_MANAGER, True))
_CONTROLLERS = (RecipientScope(Role.CONTROLLER, False),)
_DIRECTORS = (RecipientScope(Role.DIRECTOR, False),)

EVENT_SCOPES: Dict[EventKind, Sequence[RecipientScope]] = {
    EventKind.FOLIO_CREATED: _PLANT,
    EventKind.PLANT_APPROVED: _DIRECTORS,
    EventKind.APPROVED: _PLANT + _CONTROLLERS,
    EventKind.OVERRIDE_APPROVED: _PLANT + _CONTROLLERS,
    EventKind.SELECTED: _PLANT,
    EventKind.PAYMENT_REQUESTED: _PLANT,
    EventKind.PAID: _PLANT,
    EventKind.CLOSED: _PLANT,
    EventKind.CANCELLATION_REQUESTED: _DIRECTORS,
    EventKind.CANCELED: _PLANT + _CONTROLLERS,
    EventKind.CANCELLATION_REJECTED: _PLANT + _CONTROLLERS,
    EventKind.COMMENT: _PLANT + _CONTROLLERS,
    EventKind.QUOTE_ATTACHED: _PLANT + _DIRECTORS,
    EventKind.PROJECT_CREATED: _PLANT + _DIRECTORS,
    EventKind.PROJECT_APPROVED: _PLANT,
    EventKind.PROJECT_CLOSED: _PLANT + _DIRECTORS,
    EventKind.PROJECT_CANCELLATION_REQUESTED: _DIRECTORS,
    EventKind.PROJECT_CANCELED: _PLANT,
}


def recipient_scopes(
    event_kind: str,
    role_filter: Optional[Sequence[Role]] = None,
    notify_everyone: bool = False,
) -> List[RecipientScope]:
    """Which (role, unit-scoped?) pairs receive `event_kind`.

    An explicit role filter replaces the event table. "Notify everyone"
    takes the plant roles of the unit plus every controller and director.
    """
    if notify_everyone:
        return list(_PLANT + _CONTROLLERS + _DIRECTORS)
    if role_filter:
        return [RecipientScope(Role(role), Role(role).is_plant_scoped) for role in role_filter]
    try:
        kind = EventKind(event_kind)
    except ValueError:
        return []
    return list(EVENT_SCOPES.get(kind, ()))


@dataclass
class DispatchOptions:
    org_unit_id: Optional[str]
    body: str
    actor_phone: Optional[str] = None
    role_filter: Optional[List[Role]] = None
    notify_everyone: bool = False
    exclude_actor: Optional[bool] = None

    @classmethod
    def from_request(cls, request: NotificationRequest) -> "DispatchOptions":
        return cls(
            org_unit_id=request.org_unit_id,
            body=request.body,
            actor_phone=request.actor_phone,
            role_filter=request.role_filter,
            notify_everyone=request.notify_everyone,
            exclude_actor=request.exclude_actor,
        )


@dataclass
class DispatchReport:
    record_code: str
    event_kind: str
    sent: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.sent + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_code": self.record_code,
            "event_kind": self.event_kind,
            "sent": self.sent,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class FanoutEngine:
    def __init__(
        self,
        db: Optional[FolioDB] = None,
        transport: Optional[MessageTransport] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db or get_db()
        self.transport = transport or get_transport()
        self.settings = settings or get_settings()
        self._sleep = sleep

    def resolve_recipients(
        self,
        scopes: Sequence[RecipientScope],
        org_unit_id: Optional[str],
        actor_phone: Optional[str] = None,
        exclude_actor: bool = True,
    ) -> List[str]:
        """Canonical phones for `scopes`, de-duplicated on their last 10 digits."""
        recipients: List[str] = []
        seen: set = set()
        for scope in scopes:
            if scope.unit_scoped and not org_unit_id:
                continue
            rows = self.db.list_active_actors(
                roles=[scope.role],
                org_unit_id=org_unit_id if scope.unit_scoped else None,
            )
            for row in rows:
                phone = normalize_phone(row.get("phone"))
                key = last_significant_digits(phone)
                if not phone or key in seen:
                    continue
                if exclude_actor and actor_phone and same_phone(phone, actor_phone):
                    continue
                seen.add(key)
                recipients.append(phone)
        return recipients

    def _log_attempt(
        self,
        record_code: str,
        event_kind: str,
        org_unit_id: Optional[str],
        recipient: str,
        outcome: str,
        error_detail: Optional[str] = None,
    ) -> None:
        try:
            self.db.write(
                "INSERT INTO notification_log "
                "(id, record_code, org_unit_id, event_kind, recipient, outcome, error_detail, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (new_id("NTF"), record_code, org_unit_id, event_kind, recipient, outcome, error_detail, now_iso()),
            )
        except Exception:
            logger.exception("Could not write notification log for %s -> %s", record_code, recipient)

    async def _send_one(self, record_code: str, event_kind: str, options: DispatchOptions, phone: str, report: DispatchReport) -> None:
        try:
            result = await self.transport.send(as_whatsapp_address(phone), options.body)
            ok, error = bool(result.ok), result.error
        except Exception as exc:
            logger.exception("Transport raised while notifying %s about %s", phone, record_code)
            ok, error = False, str(exc) or exc.__class__.__name__

        if ok:
            report.sent += 1
            logger.info("Notified %s about %s (%s)", phone, record_code, event_kind)
            self._log_attempt(record_code, event_kind, options.org_unit_id, phone, OUTCOME_SENT)
        else:
            report.failed += 1
            report.failures.append({"recipient": phone, "error": error})
            logger.warning("Notification to %s about %s failed: %s", phone, record_code, error)
            self._log_attempt(record_code, event_kind, options.org_unit_id, phone, OUTCOME_FAILED, error)
        record_notification(event_kind, OUTCOME_SENT if ok else OUTCOME_FAILED)

    async def dispatch(self, record_code: str, event_kind: str, options: DispatchOptions) -> DispatchReport:
        """Send `options.body` to everyone the event fans out to.

        Recipients go out in chunks of NOTIFY_CHUNK_SIZE with
        NOTIFY_CHUNK_DELAY_SECONDS between chunks.
        """
        event_kind = getattr(event_kind, "value", event_kind)
        report = DispatchReport(record_code=record_code, event_kind=event_kind)

        exclude = self.settings.notify_exclude_actor if options.exclude_actor is None else options.exclude_actor
        scopes = recipient_scopes(event_kind, options.role_filter, options.notify_everyone)
        try:
            recipients = self.resolve_recipients(scopes, options.org_unit_id, options.actor_phone, exclude)
        except Exception as exc:
            logger.exception("Could not resolve recipients for %s (%s)", record_code, event_kind)
            report.failures.append({"recipient": None, "error": str(exc)})
            return report

        if not recipients:
            logger.info("No recipients for %s (%s)", record_code, event_kind)
            return report

        chunk_size = max(1, int(self.settings.notify_chunk_size or 1))
        for start in range(0, len(recipients), chunk_size):
            if start:
                await self._sleep(self.settings.notify_chunk_delay_seconds)
            for phone in recipients[start:start + chunk_size]:
                await self._send_one(record_code, event_kind, options, phone, report)

        logger.info(
            "Fan-out %s %s: sent=%d failed=%d", record_code, event_kind, report.sent, report.failed,
        )
        return report

    async def dispatch_request(self, request: NotificationRequest) -> DispatchReport:
        return await self.dispatch(request.record_code, request.event_kind, DispatchOptions.from_request(request))


# ----------------------------------------------------------------------
# Message bodies
# ----------------------------------------------------------------------

def urgent_prefix(folio: Folio) -> str:
    return "URGENT | " if folio.is_urgent else ""


def format_amount(amount: Optional[float]) -> str:
    if amount is None:
        return "-"
    return f"${amount:,.2f}"


def folio_summary(folio: Folio) -> str:
    lines = [
        f"{urgent_prefix(folio)}Folio {folio.code}",
        f"Plant: {folio.org_unit_name or folio.org_unit or '-'}",
        f"Beneficiary: {folio.beneficiary or '-'}",
        f"Purpose: {folio.purpose or '-'}",
        f"Amount: {format_amount(folio.amount)}",
        f"Category: {folio.category or '-'}" + (f" / {folio.subcategory}" if folio.subcategory else ""),
    ]
    if folio.unit_ref:
        lines.append(f"Unit: {folio.unit_ref}")
    if folio.project_ref:
        lines.append(f"Project: {folio.project_ref}")
    lines.append(f"Status: {folio.status.value}")
    return "\n".join(lines)


_FOLIO_HEADLINES: Dict[EventKind, str] = {
    EventKind.FOLIO_CREATED: "New folio awaiting plant approval",
    EventKind.PLANT_APPROVED: "Folio approved by plant, awaiting director approval",
    EventKind.APPROVED: "Folio approved",
    EventKind.OVERRIDE_APPROVED: "Folio approved by director override",
    EventKind.SELECTED: "Folio selected for this week's payments",
    EventKind.PAYMENT_REQUESTED: "Payment requested",
    EventKind.PAID: "Folio paid",
    EventKind.CLOSED: "Folio closed",
    EventKind.CANCELLATION_REQUESTED: "Cancellation requested",
    EventKind.CANCELED: "Folio canceled",
    EventKind.CANCELLATION_REJECTED: "Cancellation rejected",
    EventKind.COMMENT: "New comment",
    EventKind.QUOTE_ATTACHED: "Quote attached",
}


def folio_message(event_kind: EventKind, folio: Folio, actor_name: Optional[str] = None, note: Optional[str] = None) -> str:
    headline = _FOLIO_HEADLINES.get(event_kind, event_kind.value)
    parts = [f"{urgent_prefix(folio)}{headline}: {folio.code}"]
    if actor_name:
        parts.append(f"By: {actor_name}")
    if note:
        parts.append(note)
    if event_kind in (EventKind.APPROVED, EventKind.OVERRIDE_APPROVED) and not folio.quote_attachment_ref:
        parts.append("Warning: no quote attached yet.")
    parts.append("")
    parts.append(folio_summary(folio))
    return "\n".join(parts)


_PROJECT_HEADLINES: Dict[EventKind, str] = {
    EventKind.PROJECT_CREATED: "New project",
    EventKind.PROJECT_APPROVED: "Project approved by director",
    EventKind.PROJECT_CLOSED: "Project closed",
    EventKind.PROJECT_CANCELLATION_REQUESTED: "Project cancellation requested",
    EventKind.PROJECT_CANCELED: "Project canceled",
}


def project_message(event_kind: EventKind, project: Project, actor_name: Optional[str] = None, note: Optional[str] = None) -> str:
    lines = [f"{_PROJECT_HEADLINES.get(event_kind, event_kind.value)}: {project.code}"]
    if actor_name:
        lines.append(f"By: {actor_name}")
    if note:
        lines.append(note)
    lines.extend([
        "",
        f"Project {project.code}: {project.name}",
        f"Plant: {project.org_unit_name or project.org_unit or '-'}",
        f"Status: {project.status.value}",
    ])
    return "\n".join(lines)


_ENGINE: Optional[FanoutEngine] = None


def get_fanout_engine() -> FanoutEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = FanoutEngine()
    return _ENGINE


def reset_fanout_engine() -> None:
    global _ENGINE
    _ENGINE = None
