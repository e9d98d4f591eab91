"""
Folio Workflow Service

Applies every folio transition inside one database transaction:
lock the row, check the actor's role against the edge, check the edge
against the current status, write the new status and its audit rows.
Notifications are built only after the transaction has committed and are
handed back to the caller as NotificationRequests.

Flow:
1. Requester creates a folio -> PENDING_PLANT_APPROVAL
   (a director's own folio goes straight to READY_TO_SCHEDULE)
2. Plant approves -> PLANT_APPROVED -> PENDING_HQ_APPROVAL (one hop)
3. Director approves -> HQ_APPROVED -> READY_TO_SCHEDULE
4. Controller selects for the week, requests payment, marks paid, closes
Cancellation can be requested from any open status and is resolved by
a director, who either cancels the folio or restores its prior status.
"""

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from folioflow.core.database import FolioDB, get_db, now_iso, new_id
from folioflow.core.models import (
    CENTS,
    MAX_AMOUNT,
    Actor,
    AuditEntry,
    Folio,
    FolioStatus,
    NotificationRequest,
    Priority,
    ProjectStatus,
    RecordKind,
    Role,
    TransitionResult,
)
from folioflow.services.audit_trail import AuditTrailService
from folioflow.services.errors import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from folioflow.services.folio_state import (
    EDGE_SOURCES,
    HQ_APPROVED_OR_LATER,
    NOT_CANCELLABLE,
    PLANT_APPROVED_OR_LATER,
    Edge,
    FolioStateError,
    assert_valid_transition,
    can_transition,
    roles_for,
)
from folioflow.services.metrics import record_transition
from folioflow.services.notifications import EventKind, folio_message
from folioflow.services.object_store import ObjectStore, attachment_key, get_object_store
from folioflow.state.sequence import FOLIO_PREFIX, format_code, next_code, period_key_for

logger = logging.getLogger(__name__)

FOLIO_CODE_RE = re.compile(r"^F-(\d{6})-(\d{3,})$", re.IGNORECASE)
SHORT_TOKEN_RE = re.compile(r"^\d{1,3}$")

EDGE_VERBS: Dict[Edge, str] = {
    Edge.PLANT_APPROVE: "approve folios at plant level",
    Edge.HQ_APPROVE: "give director approval",
    Edge.HQ_OVERRIDE: "approve by override",
    Edge.SELECT_FOR_WEEK: "select folios for the week",
    Edge.REQUEST_PAYMENT: "request payment",
    Edge.MARK_PAID: "mark folios as paid",
    Edge.CLOSE: "close folios",
    Edge.REQUEST_CANCELLATION: "request cancellations",
    Edge.RESOLVE_CANCELLATION: "authorize or reject cancellations",
}


def require_role(actor: Actor, edge: Edge) -> None:
    if can_transition(actor.role, edge):
        return
    allowed = ", ".join(sorted(role.value for role in roles_for(edge)))
    verb = EDGE_VERBS.get(edge, edge.value.replace("_", " "))
    raise AuthorizationError(
        f"Your role ({actor.role.value}) cannot {verb}. Allowed: {allowed}.",
        role=actor.role.value,
        edge=edge.value,
    )


def normalize_folio_code(token: Optional[str]) -> str:
    """Upper-cased folio code, or a Validation error when malformed."""
    text = str(token or "").strip().upper()
    if not FOLIO_CODE_RE.match(text):
        raise ValidationError(
            f"'{token}' is not a valid folio code. Expected F-YYYYMM-NNN.",
            field="code",
            code=ErrorCode.MALFORMED_CODE,
        )
    return text


AMOUNT_RE = re.compile(
    r"^(?:[A-Z]{3}\s*)?\$?\s*(-?\s*(?:\d+(?:\.\d*)?|\.\d+))\s*(?:[A-Z]{3})?$",
    re.IGNORECASE,
)


def parse_amount(raw: Any) -> float:
    """Parse "$1,500.50", "1500.50 MXN" or 1500.5 into a positive float."""
    unreadable = ValidationError(
        f"Could not read the amount '{raw}'. Use a number like 1500.50.",
        field="amount",
        code=ErrorCode.INVALID_AMOUNT,
    )
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if isinstance(raw, float) and not math.isfinite(raw):
            raise unreadable
        value = Decimal(str(raw))
    else:
        match = AMOUNT_RE.match(str(raw or "").replace(",", "").strip())
        if not match:
            raise unreadable
        try:
            value = Decimal(match.group(1).replace(" ", ""))
        except InvalidOperation:
            raise unreadable
    if 0 < value <= MAX_AMOUNT:
        value = value.quantize(CENTS, rounding=ROUND_HALF_UP)
    if value <= 0:
        raise ValidationError("The amount must be greater than zero.", field="amount", code=ErrorCode.INVALID_AMOUNT)
    if value > MAX_AMOUNT:
        raise ValidationError(
            f"The amount must be at most {MAX_AMOUNT:,}.", field="amount", code=ErrorCode.INVALID_AMOUNT,
        )
    return float(value)


def requires_unit(category: Optional[str]) -> bool:
    return "workshop" in str(category or "").lower()


@dataclass
class FolioDraft:
    """Fields gathered for a folio before it is created."""
    purpose: Optional[str] = None
    beneficiary: Optional[str] = None
    amount: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    unit_ref: Optional[str] = None
    plant: Optional[str] = None
    project_ref: Optional[str] = None
    urgent: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FolioDraft":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merge(self, other: "FolioDraft") -> "FolioDraft":
        merged = self.to_dict()
        for key, value in other.to_dict().items():
            if key == "urgent":
                merged[key] = merged[key] or value
            elif value not in (None, ""):
                merged[key] = value
        return FolioDraft.from_dict(merged)

    def missing_fields(self, actor: Actor) -> List[str]:
        missing = []
        if not (self.plant or (actor.role.is_plant_scoped and actor.org_unit)):
            missing.append("Plant")
        if not self.beneficiary:
            missing.append("Beneficiary")
        if not self.purpose:
            missing.append("Purpose")
        if self.amount in (None, ""):
            missing.append("Amount")
        if not self.category:
            missing.append("Category")
        if requires_unit(self.category) and not self.unit_ref:
            missing.append("Unit")
        return missing


class BatchOutcome(str, Enum):
    APPROVED = "approved"
    ALREADY_APPROVED = "already-approved"
    NOT_FOUND = "not-found"
    WRONG_STATE = "wrong-state"
    CANCELED = "canceled"
    MALFORMED_TOKEN = "malformed-token"


@dataclass
class BatchItem:
    token: str
    code: Optional[str]
    outcome: BatchOutcome
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "code": self.code, "outcome": self.outcome.value, "status": self.status}


@dataclass
class BatchReport:
    items: List[BatchItem] = field(default_factory=list)
    notifications: List[NotificationRequest] = field(default_factory=list)

    def count(self, outcome: BatchOutcome) -> int:
        return sum(1 for item in self.items if item.outcome is outcome)

    def summary(self) -> Dict[str, int]:
        return {outcome.value: self.count(outcome) for outcome in BatchOutcome if self.count(outcome)}

    def to_dict(self) -> Dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items], "summary": self.summary()}


def resolve_batch_tokens(tokens: Sequence[str], when: Optional[datetime] = None) -> List[Tuple[str, Optional[str]]]:
    """Pair each token with the folio code it names (None when malformed).

    Short 1-3 digit tokens take the period of the first fully-qualified
    code in the list, or the current period when there is none.
    """
    period = None
    for token in tokens:
        match = FOLIO_CODE_RE.match(token.strip())
        if match:
            period = match.group(1)
            break
    period = period or period_key_for(when)

    resolved = []
    for token in tokens:
        text = token.strip().rstrip(",;.")
        if FOLIO_CODE_RE.match(text):
            resolved.append((token, text.upper()))
        elif SHORT_TOKEN_RE.match(text):
            resolved.append((token, format_code(FOLIO_PREFIX, period, int(text))))
        else:
            resolved.append((token, None))
    return resolved


def approval_outcome(role: Role, status: FolioStatus) -> Optional[BatchOutcome]:
    """Why `role` cannot approve a folio in `status`; None when it can."""
    if status in (FolioStatus.CANCELED, FolioStatus.CANCELLATION_REQUESTED):
        return BatchOutcome.CANCELED
    if role.is_top_tier:
        if status in EDGE_SOURCES[Edge.HQ_APPROVE]:
            return None
        if status in HQ_APPROVED_OR_LATER:
            return BatchOutcome.ALREADY_APPROVED
        return BatchOutcome.WRONG_STATE
    if status in EDGE_SOURCES[Edge.PLANT_APPROVE]:
        return None
    if status in PLANT_APPROVED_OR_LATER:
        return BatchOutcome.ALREADY_APPROVED
    return BatchOutcome.WRONG_STATE


class FolioWorkflowService:
    """
    Usage:
        service = FolioWorkflowService()
        result = service.create_folio(actor, FolioDraft(...))
        result = service.approve(director, result.record_code)
    """

    def __init__(self, db: Optional[FolioDB] = None, audit: Optional[AuditTrailService] = None):
        self.db = db or get_db()
        self.audit = audit or AuditTrailService(self.db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_folio(self, code: str) -> Optional[Folio]:
        row = self.db.query_one(self.db.FOLIO_SELECT + " WHERE f.code = ?", (str(code or "").strip().upper(),))
        return Folio.from_row(row) if row else None

    def get_folio(self, code: str) -> Folio:
        code = normalize_folio_code(code)
        folio = self.find_folio(code)
        if folio is None:
            raise NotFoundError("Folio", code)
        return folio

    def history(self, code: str, newest_first: bool = False) -> List[AuditEntry]:
        folio = self.get_folio(code)
        return self.audit.list_history(RecordKind.FOLIO, folio.code, newest_first=newest_first)

    def list_for_project(self, project_code: str) -> List[Folio]:
        rows = self.db.query_all(
            self.db.FOLIO_SELECT + " WHERE f.project_ref = ? ORDER BY f.created_at ASC",
            (project_code,),
        )
        return [Folio.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    def _lock(self, cur, code: str) -> Folio:
        locked = self.db.fetchone(cur, "SELECT id FROM folios WHERE code = ?" + self.db.lock_clause, (code,))
        if not locked:
            raise NotFoundError("Folio", code)
        row = self.db.fetchone(cur, self.db.FOLIO_SELECT + " WHERE f.id = ?", (locked["id"],))
        return Folio.from_row(row)

    def _reload(self, cur, folio_id: str) -> Folio:
        return Folio.from_row(self.db.fetchone(cur, self.db.FOLIO_SELECT + " WHERE f.id = ?", (folio_id,)))

    def _update(self, cur, folio: Folio, status: FolioStatus, **fields: Any) -> None:
        fields["status"] = status.value
        fields["updated_at"] = now_iso()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        self.db.execute(cur, f"UPDATE folios SET {assignments} WHERE id = ?", [*fields.values(), folio.id])

    @staticmethod
    def _check_path(folio: Folio, path: Sequence[FolioStatus]) -> None:
        current = folio.status
        for status in path:
            try:
                assert_valid_transition(current, status)
            except FolioStateError as exc:
                raise ConflictError(
                    f"Folio {folio.code} is {folio.status.value}; that step is not allowed.",
                    current_status=folio.status.value,
                ) from exc
            current = status

    def _walk(self, cur, folio: Folio, path: Sequence[FolioStatus], actor: Actor, comments: Sequence[Optional[str]]) -> None:
        """Validate every hop of `path` from the folio's status and audit each one."""
        self._check_path(folio, path)
        for status, comment in zip(path, comments):
            self.audit.append(cur, RecordKind.FOLIO, folio.id, folio.code, status.value, comment, actor)

    def _notify(
        self,
        event: EventKind,
        folio: Folio,
        actor: Optional[Actor],
        note: Optional[str] = None,
        notify_everyone: bool = False,
    ) -> NotificationRequest:
        return NotificationRequest(
            record_code=folio.code,
            event_kind=event.value,
            org_unit_id=folio.org_unit_id,
            body=folio_message(event, folio, actor.name if actor else None, note),
            actor_phone=actor.canonical_phone if actor else None,
            notify_everyone=notify_everyone,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _resolve_plant(self, actor: Actor, draft: FolioDraft) -> Dict[str, Any]:
        if actor.role.is_plant_scoped and actor.org_unit_id and not draft.plant:
            unit = self.db.get_org_unit_by_id(actor.org_unit_id)
        elif draft.plant:
            unit = self.db.find_org_unit(draft.plant)
            if unit is None:
                raise NotFoundError("Plant", draft.plant)
        else:
            raise ValidationError("Tell me the plant with a line like 'Plant: PUE'.", field="plant", code=ErrorCode.MISSING_FIELD)
        if actor.role.is_plant_scoped and actor.org_unit_id and unit["id"] != actor.org_unit_id:
            raise AuthorizationError(
                f"You can only create folios for your own plant ({actor.org_unit}).",
                role=actor.role.value,
            )
        return unit

    def _check_project(self, cur, project_ref: str, org_unit_id: str) -> str:
        code = project_ref.strip().upper()
        row = self.db.fetchone(cur, "SELECT code, org_unit_id, status FROM projects WHERE code = ?", (code,))
        if not row:
            raise NotFoundError("Project", code)
        if row["org_unit_id"] != org_unit_id:
            raise ValidationError(f"Project {code} belongs to another plant.", field="project")
        if row["status"] != ProjectStatus.EN_COURSE.value:
            raise ConflictError(f"Project {code} is {row['status']} and cannot take new folios.", current_status=row["status"])
        return code

    def create_folio(self, actor: Actor, draft: FolioDraft, when: Optional[datetime] = None) -> TransitionResult:
        missing = draft.missing_fields(actor)
        if missing:
            raise ValidationError(
                "Missing fields: " + ", ".join(missing) + ".",
                field=missing[0].lower(),
                code=ErrorCode.MISSING_FIELD,
            )
        amount = parse_amount(draft.amount)
        unit = self._resolve_plant(actor, draft)
        when = when or datetime.now(timezone.utc)
        top_tier = actor.role.is_top_tier
        status = FolioStatus.READY_TO_SCHEDULE if top_tier else FolioStatus.PENDING_PLANT_APPROVAL

        with self.db.transaction() as cur:
            project_ref = self._check_project(cur, draft.project_ref, unit["id"]) if draft.project_ref else None
            code = next_code(FOLIO_PREFIX, period_key_for(when), cur=cur, db=self.db)
            folio_id = new_id("FOL")
            stamp = now_iso()
            self.db.execute(
                cur,
                "INSERT INTO folios (id, code, org_unit_id, created_by_id, beneficiary, purpose, amount, "
                "category, subcategory, unit_ref, priority, status, approved_by, approved_at, project_ref, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    folio_id, code, unit["id"], actor.user_id,
                    draft.beneficiary.strip(), draft.purpose.strip(), amount,
                    draft.category.strip(), (draft.subcategory or "").strip() or None,
                    (draft.unit_ref or "").strip().upper() or None,
                    (Priority.URGENT if draft.urgent else Priority.NORMAL).value,
                    status.value,
                    actor.user_id if top_tier else None,
                    stamp if top_tier else None,
                    project_ref, stamp, stamp,
                ),
            )
            self.audit.append(cur, RecordKind.FOLIO, folio_id, code, FolioStatus.GENERATED.value, "Folio created", actor)
            if top_tier:
                self.audit.append(
                    cur, RecordKind.FOLIO, folio_id, code, FolioStatus.HQ_APPROVED.value,
                    "Approved automatically: created by director", actor,
                )
            self.audit.append(cur, RecordKind.FOLIO, folio_id, code, status.value, None, actor)
            folio = self._reload(cur, folio_id)

        record_transition("folio", "create")
        logger.info("Folio %s created by %s (%s) -> %s", code, actor.name, actor.role.value, status.value)
        event = EventKind.APPROVED if top_tier else EventKind.FOLIO_CREATED
        note = "Approved automatically (created by director)." if top_tier else None
        return TransitionResult(
            record_code=code,
            status=status.value,
            message=f"Folio {code} created. Status: {status.value}.",
            notifications=[self._notify(event, folio, actor, note)],
            folio=folio,
        )

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def _approve_locked(self, cur, actor: Actor, folio: Folio) -> Tuple[Folio, NotificationRequest]:
        if actor.role.is_top_tier:
            self._walk(
                cur, folio,
                [FolioStatus.HQ_APPROVED, FolioStatus.READY_TO_SCHEDULE],
                actor, ["Approved by director", None],
            )
            self._update(cur, folio, FolioStatus.READY_TO_SCHEDULE, approved_by=actor.user_id, approved_at=now_iso())
            updated = self._reload(cur, folio.id)
            return updated, self._notify(EventKind.APPROVED, updated, actor)

        self._walk(
            cur, folio,
            [FolioStatus.PLANT_APPROVED, FolioStatus.PENDING_HQ_APPROVAL],
            actor, [f"Approved by plant ({actor.role.value})", None],
        )
        self._update(cur, folio, FolioStatus.PENDING_HQ_APPROVAL)
        updated = self._reload(cur, folio.id)
        return updated, self._notify(EventKind.PLANT_APPROVED, updated, actor)

    def _approval_edge(self, actor: Actor) -> Edge:
        edge = Edge.HQ_APPROVE if actor.role.is_top_tier else Edge.PLANT_APPROVE
        require_role(actor, edge)
        return edge

    def approve(self, actor: Actor, code: str) -> TransitionResult:
        edge = self._approval_edge(actor)
        code = normalize_folio_code(code)
        with self.db.transaction() as cur:
            folio = self._lock(cur, code)
            blocked = approval_outcome(actor.role, folio.status)
            if blocked is BatchOutcome.ALREADY_APPROVED:
                raise ConflictError(f"Folio {code} is already approved ({folio.status.value}).", current_status=folio.status.value)
            if blocked is BatchOutcome.CANCELED:
                raise ConflictError(f"Folio {code} is {folio.status.value}.", current_status=folio.status.value)
            if blocked is BatchOutcome.WRONG_STATE:
                hint = " It still needs plant approval; use approve_override with a reason." if actor.role.is_top_tier else ""
                raise ConflictError(
                    f"Folio {code} is {folio.status.value} and cannot be approved now.{hint}",
                    current_status=folio.status.value,
                )
            updated, notification = self._approve_locked(cur, actor, folio)

        record_transition("folio", edge.value)
        logger.info("Folio %s approved by %s -> %s", code, actor.role.value, updated.status.value)
        return TransitionResult(
            record_code=code,
            status=updated.status.value,
            message=f"Folio {code} approved. Status: {updated.status.value}.",
            notifications=[notification],
            folio=updated,
        )

    def approve_batch(self, actor: Actor, tokens: Sequence[str], when: Optional[datetime] = None) -> BatchReport:
        """Approve each named folio in its own transaction and report per item."""
        edge = self._approval_edge(actor)
        report = BatchReport()
        for token, code in resolve_batch_tokens(tokens, when):
            if code is None:
                report.items.append(BatchItem(token, None, BatchOutcome.MALFORMED_TOKEN))
                continue
            try:
                with self.db.transaction() as cur:
                    folio = self._lock(cur, code)
                    blocked = approval_outcome(actor.role, folio.status)
                    if blocked is not None:
                        report.items.append(BatchItem(token, code, blocked, folio.status.value))
                        continue
                    updated, notification = self._approve_locked(cur, actor, folio)
            except NotFoundError:
                report.items.append(BatchItem(token, code, BatchOutcome.NOT_FOUND))
                continue
            except ConflictError as exc:
                report.items.append(BatchItem(token, code, BatchOutcome.WRONG_STATE, exc.context.get("current_status")))
                continue
            record_transition("folio", edge.value)
            report.items.append(BatchItem(token, code, BatchOutcome.APPROVED, updated.status.value))
            report.notifications.append(notification)
        logger.info("Batch approval by %s: %s", actor.role.value, report.summary())
        return report

    def approve_override(self, actor: Actor, code: str, reason: str) -> TransitionResult:
        require_role(actor, Edge.HQ_OVERRIDE)
        code = normalize_folio_code(code)
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("An override needs a reason: approve_override <code> reason: <text>", field="reason", code=ErrorCode.MISSING_FIELD)
        with self.db.transaction() as cur:
            folio = self._lock(cur, code)
            if folio.status not in EDGE_SOURCES[Edge.HQ_OVERRIDE]:
                if folio.status in HQ_APPROVED_OR_LATER:
                    raise ConflictError(f"Folio {code} is already approved ({folio.status.value}).", current_status=folio.status.value)
                raise ConflictError(f"Folio {code} is {folio.status.value} and cannot be approved.", current_status=folio.status.value)
            self._check_path(folio, [FolioStatus.READY_TO_SCHEDULE])
            self.audit.append(
                cur, RecordKind.FOLIO, folio.id, folio.code, FolioStatus.HQ_APPROVED.value,
                f"Override approval from {folio.status.value}. Reason: {reason}", actor,
            )
            self.audit.append(cur, RecordKind.FOLIO, folio.id, folio.code, FolioStatus.READY_TO_SCHEDULE.value, None, actor)
            self._update(cur, folio, FolioStatus.READY_TO_SCHEDULE, approved_by=actor.user_id, approved_at=now_iso())
            updated = self._reload(cur, folio.id)

        record_transition("folio", Edge.HQ_OVERRIDE.value)
        logger.info("Folio %s approved by override from %s", code, folio.status.value)
        return TransitionResult(
            record_code=code,
            status=updated.status.value,
            message=f"Folio {code} approved by override. Status: {updated.status.value}.",
            notifications=[self._notify(EventKind.OVERRIDE_APPROVED, updated, actor, f"Reason: {reason}")],
            folio=updated,
        )

    # ------------------------------------------------------------------
    # Controller lane
    # ------------------------------------------------------------------

    def _advance(self, actor: Actor, code: str, edge: Edge, target: FolioStatus, event: EventKind, done: str) -> TransitionResult:
        require_role(actor, edge)
        code = normalize_folio_code(code)
        with self.db.transaction() as cur:
            folio = self._lock(cur, code)
            if folio.status is target:
                raise ConflictError(f"Folio {code} is already {target.value}.", current_status=folio.status.value)
            if folio.status not in EDGE_SOURCES[edge]:
                expected = ", ".join(sorted(s.value for s in EDGE_SOURCES[edge]))
                raise ConflictError(
                    f"Folio {code} is {folio.status.value}; it must be {expected} first.",
                    current_status=folio.status.value,
                )
            self._walk(cur, folio, [target], actor, [None])
            self._update(cur, folio, target)
            updated = self._reload(cur, folio.id)

        record_transition("folio", edge.value)
        logger.info("Folio %s -> %s by %s", code, target.value, actor.role.value)
        return TransitionResult(
            record_code=code,
            status=target.value,
            message=f"Folio {code} {done}. Status: {target.value}.",
            notifications=[self._notify(event, updated, actor)],
            folio=updated,
        )

    def select_for_week(self, actor: Actor, code: str) -> TransitionResult:
        return self._advance(actor, code, Edge.SELECT_FOR_WEEK, FolioStatus.SELECTED_FOR_WEEK, EventKind.SELECTED, "selected for this week")

    def request_payment(self, actor: Actor, code: str) -> TransitionResult:
        return self._advance(actor, code, Edge.REQUEST_PAYMENT, FolioStatus.PAYMENT_REQUESTED, EventKind.PAYMENT_REQUESTED, "sent for payment")

    def mark_paid(self, actor: Actor, code: str) -> TransitionResult:
        return self._advance(actor, code, Edge.MARK_PAID, FolioStatus.PAID, EventKind.PAID, "marked as paid")

    def close_folio(self, actor: Actor, code: str) -> TransitionResult:
        return self._advance(actor, code, Edge.CLOSE, FolioStatus.CLOSED, EventKind.CLOSED, "closed")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def request_cancellation(self, actor: Actor, code: str, reason: str) -> TransitionResult:
        require_role(actor, Edge.REQUEST_CANCELLATION)
        code = normalize_folio_code(code)
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation needs a reason: cancel <code> reason: <text>", field="reason", code=ErrorCode.MISSING_FIELD)
        with self.db.transaction() as cur:
            folio = self._lock(cur, code)
            if folio.status in NOT_CANCELLABLE:
                raise ConflictError(
                    f"Folio {code} is {folio.status.value} and cannot be canceled.",
                    current_status=folio.status.value,
                )
            self._walk(cur, folio, [FolioStatus.CANCELLATION_REQUESTED], actor, [f"Cancellation requested. Reason: {reason}"])
            self._update(cur, folio, FolioStatus.CANCELLATION_REQUESTED, prior_status=folio.status.value)
            updated = self._reload(cur, folio.id)

        record_transition("folio", Edge.REQUEST_CANCELLATION.value)
        return TransitionResult(
            record_code=code,
            status=updated.status.value,
            message=f"Cancellation of {code} requested. A director must authorize it.",
            notifications=[self._notify(EventKind.CANCELLATION_REQUESTED, updated, actor, f"Reason: {reason}")],
            folio=updated,
        )

    def _lock_pending_cancellation(self, cur, code: str) -> Folio:
        folio = self._lock(cur, code)
        if folio.status is not FolioStatus.CANCELLATION_REQUESTED:
            raise ConflictError(
                f"Folio {code} has no pending cancellation (status {folio.status.value}).",
                current_status=folio.status.value,
            )
        return folio

    def authorize_cancellation(self, actor: Actor, code: str) -> TransitionResult:
        require_role(actor, Edge.RESOLVE_CANCELLATION)
        code = normalize_folio_code(code)
        with self.db.transaction() as cur:
            folio = self._lock_pending_cancellation(cur, code)
            self._walk(cur, folio, [FolioStatus.CANCELED], actor, ["Cancellation authorized"])
            self._update(cur, folio, FolioStatus.CANCELED, prior_status=None)
            updated = self._reload(cur, folio.id)

        record_transition("folio", Edge.RESOLVE_CANCELLATION.value)
        return TransitionResult(
            record_code=code,
            status=updated.status.value,
            message=f"Folio {code} canceled.",
            notifications=[self._notify(EventKind.CANCELED, updated, actor)],
            folio=updated,
        )

    def reject_cancellation(self, actor: Actor, code: str, reason: str) -> TransitionResult:
        require_role(actor, Edge.RESOLVE_CANCELLATION)
        code = normalize_folio_code(code)
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError(
                "Rejecting a cancellation needs a reason: reject cancellation <code> reason: <text>",
                field="reason",
                code=ErrorCode.MISSING_FIELD,
            )
        with self.db.transaction() as cur:
            folio = self._lock_pending_cancellation(cur, code)
            restored = folio.prior_status
            if restored is None:
                raise ConflictError(f"Folio {code} has no status to restore.", current_status=folio.status.value)
            self.audit.append(
                cur, RecordKind.FOLIO, folio.id, folio.code, restored.value,
                f"Cancellation rejected. Reason: {reason}", actor,
            )
            self._update(cur, folio, restored, prior_status=None)
            updated = self._reload(cur, folio.id)

        record_transition("folio", Edge.RESOLVE_CANCELLATION.value)
        return TransitionResult(
            record_code=code,
            status=restored.value,
            message=f"Cancellation of {code} rejected. Status restored to {restored.value}.",
            notifications=[self._notify(EventKind.CANCELLATION_REJECTED, updated, actor, f"Reason: {reason}")],
            folio=updated,
        )

    # ------------------------------------------------------------------
    # Comments and attachments
    # ------------------------------------------------------------------

    def add_comment(self, actor: Actor, code: str, text: str) -> TransitionResult:
        code = normalize_folio_code(code)
        text = str(text or "").strip()
        if not text:
            raise ValidationError("The comment is empty. Use: comment <code>: <text>", field="comment", code=ErrorCode.MISSING_FIELD)
        with self.db.transaction() as cur:
            folio = self._lock(cur, code)
            self.audit.append(cur, RecordKind.FOLIO, folio.id, folio.code, folio.status.value, text, actor)

        return TransitionResult(
            record_code=code,
            status=folio.status.value,
            message=f"Comment added to {code}.",
            notifications=[self._notify(EventKind.COMMENT, folio, actor, f"Comment: {text}", notify_everyone=True)],
            folio=folio,
        )

    def attach_quote(
        self,
        actor: Actor,
        code: str,
        data: bytes,
        content_type: Optional[str] = None,
        store: Optional[ObjectStore] = None,
    ) -> TransitionResult:
        code = normalize_folio_code(code)
        folio = self.get_folio(code)
        if folio.status is FolioStatus.CANCELED:
            raise ConflictError(f"Folio {code} is CANCELED.", current_status=folio.status.value)
        if not data:
            raise ValidationError("The attachment is empty.", field="attachment")

        url = (store or get_object_store()).put(data, attachment_key("quotes", code, content_type), content_type)
        with self.db.transaction() as cur:
            folio = self._lock(cur, code)
            self.db.execute(
                cur,
                "UPDATE folios SET quote_attachment_ref = ?, updated_at = ? WHERE id = ?",
                (url, now_iso(), folio.id),
            )
            self.audit.append(cur, RecordKind.FOLIO, folio.id, folio.code, folio.status.value, f"Quote attached: {url}", actor)
            updated = self._reload(cur, folio.id)

        logger.info("Quote attached to %s: %s", code, url)
        return TransitionResult(
            record_code=code,
            status=updated.status.value,
            message=f"Quote attached to {code}.",
            notifications=[self._notify(EventKind.QUOTE_ATTACHED, updated, actor)],
            folio=updated,
        )


_SERVICE: Optional[FolioWorkflowService] = None


def get_folio_workflow() -> FolioWorkflowService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = FolioWorkflowService()
    return _SERVICE


def reset_folio_workflow() -> None:
    global _SERVICE
    _SERVICE = None
