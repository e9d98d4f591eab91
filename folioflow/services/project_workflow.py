"""
Project Workflow Service

Projects group folios under a lifecycle of their own:
EN_COURSE -> CLOSED, or EN_COURSE -> CANCELLATION_REQUESTED -> CANCELED.
Director approval is a flag next to the status, not a status.

Closing a project that still has open folios needs a second, explicit
confirmation. The engine only reports that with ConfirmationRequired;
remembering that the user was asked is the conversation layer's job.
"""

import logging
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from folioflow.core.database import FolioDB, get_db, new_id, now_iso
from folioflow.core.models import (
    Actor,
    AuditEntry,
    FolioStatus,
    NotificationRequest,
    Project,
    ProjectStatus,
    RecordKind,
    TransitionResult,
    money,
)
from folioflow.services.audit_trail import AuditTrailService
from folioflow.services.errors import (
    AuthorizationError,
    ConfirmationRequired,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from folioflow.services.folio_state import (
    SETTLED_FOR_PROJECT,
    Edge,
    FolioStateError,
    assert_valid_project_transition,
    can_transition,
    roles_for,
)
from folioflow.services.metrics import record_transition
from folioflow.services.notifications import EventKind, project_message
from folioflow.services.object_store import ObjectStore, attachment_key, get_object_store
from folioflow.state.sequence import PROJECT_PREFIX, next_code, period_key_for

logger = logging.getLogger(__name__)

PROJECT_CODE_RE = re.compile(r"^PRJ-\d{6}-\d{3,}$", re.IGNORECASE)
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_VERBS = {
    Edge.PROJECT_CREATE: "create projects",
    Edge.PROJECT_APPROVE: "approve projects",
    Edge.PROJECT_CLOSE: "close projects",
    Edge.PROJECT_REQUEST_CANCELLATION: "request project cancellations",
    Edge.PROJECT_CONFIRM_CANCELLATION: "confirm project cancellations",
}


def _require(actor: Actor, edge: Edge) -> None:
    if not can_transition(actor.role, edge):
        allowed = ", ".join(sorted(role.value for role in roles_for(edge)))
        raise AuthorizationError(
            f"Your role ({actor.role.value}) cannot {_VERBS[edge]}. Allowed: {allowed}.",
            role=actor.role.value,
            edge=edge.value,
        )


def normalize_project_code(token: Optional[str]) -> str:
    text = str(token or "").strip().upper()
    if not PROJECT_CODE_RE.match(text):
        raise ValidationError(
            f"'{token}' is not a valid project code. Expected PRJ-YYYYMM-NNN.",
            field="code",
            code=ErrorCode.MALFORMED_CODE,
        )
    return text


def parse_date(raw: Optional[str], field_name: str) -> Optional[str]:
    text = str(raw or "").strip()
    if not text:
        return None
    if not DATE_RE.match(text):
        raise ValidationError(f"{field_name} must look like YYYY-MM-DD.", field=field_name.lower())
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        raise ValidationError(f"{field_name} '{text}' is not a real date.", field=field_name.lower())


@dataclass
class ProjectDraft:
    name: Optional[str] = None
    plant: Optional[str] = None
    start_date: Optional[str] = None
    estimated_close_date: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectDraft":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merge(self, other: "ProjectDraft") -> "ProjectDraft":
        merged = self.to_dict()
        merged.update({k: v for k, v in other.to_dict().items() if v not in (None, "")})
        return ProjectDraft.from_dict(merged)

    def missing_fields(self, actor: Actor) -> List[str]:
        missing = []
        if not self.name:
            missing.append("Name")
        if not (self.plant or (actor.role.is_plant_scoped and actor.org_unit)):
            missing.append("Plant")
        return missing


@dataclass
class ProjectTotals:
    folio_count: int
    total_amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {"folio_count": self.folio_count, "total_amount": self.total_amount}


@dataclass
class ProjectSummary:
    project: Project
    totals: ProjectTotals

    def to_dict(self) -> Dict[str, Any]:
        data = self.project.to_dict()
        data.update(self.totals.to_dict())
        return data


class ProjectWorkflowService:
    def __init__(self, db: Optional[FolioDB] = None, audit: Optional[AuditTrailService] = None):
        self.db = db or get_db()
        self.audit = audit or AuditTrailService(self.db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_project(self, code: str) -> Project:
        code = normalize_project_code(code)
        row = self.db.query_one(self.db.PROJECT_SELECT + " WHERE p.code = ?", (code,))
        if not row:
            raise NotFoundError("Project", code)
        return Project.from_row(row)

    def history(self, code: str, newest_first: bool = False) -> List[AuditEntry]:
        project = self.get_project(code)
        return self.audit.list_history(RecordKind.PROJECT, project.code, newest_first=newest_first)

    def totals(self, code: str) -> ProjectTotals:
        """Count and amount of the project's folios, canceled ones excluded."""
        project = self.get_project(code)
        row = self.db.query_one(
            "SELECT COUNT(*) AS folio_count, COALESCE(SUM(amount), 0) AS total_amount "
            "FROM folios WHERE project_ref = ? AND status <> ?",
            (project.code, FolioStatus.CANCELED.value),
        )
        return ProjectTotals(int(row["folio_count"] or 0), money(row["total_amount"] or 0))

    def list_projects_for_unit(self, unit: str, status: Optional[str] = None) -> List[ProjectSummary]:
        found = self.db.find_org_unit(unit)
        if found is None:
            raise NotFoundError("Plant", str(unit))
        sql = (
            "SELECT p.*, o.code AS org_unit_code, o.name AS org_unit_name, "
            "COUNT(f.id) AS folio_count, COALESCE(SUM(f.amount), 0) AS total_amount "
            "FROM projects p "
            "JOIN org_units o ON o.id = p.org_unit_id "
            "LEFT JOIN folios f ON f.project_ref = p.code AND f.status <> ? "
            "WHERE p.org_unit_id = ?"
        )
        params: List[Any] = [FolioStatus.CANCELED.value, found["id"]]
        if status:
            sql += " AND p.status = ?"
            params.append(status.upper())
        sql += " GROUP BY p.id, o.code, o.name ORDER BY p.created_at ASC"
        return [
            ProjectSummary(
                Project.from_row(row),
                ProjectTotals(int(row["folio_count"] or 0), money(row["total_amount"] or 0)),
            )
            for row in self.db.query_all(sql, params)
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock(self, cur, code: str) -> Project:
        locked = self.db.fetchone(cur, "SELECT id FROM projects WHERE code = ?" + self.db.lock_clause, (code,))
        if not locked:
            raise NotFoundError("Project", code)
        return self._reload(cur, locked["id"])

    def _reload(self, cur, project_id: str) -> Project:
        return Project.from_row(self.db.fetchone(cur, self.db.PROJECT_SELECT + " WHERE p.id = ?", (project_id,)))

    def _move(self, cur, project: Project, target: ProjectStatus, actor: Actor, comment: Optional[str], **fields: Any) -> Project:
        try:
            assert_valid_project_transition(project.status, target)
        except FolioStateError as exc:
            raise ConflictError(
                f"Project {project.code} is {project.status.value}; that step is not allowed.",
                current_status=project.status.value,
            ) from exc
        fields.update(status=target.value, updated_at=now_iso())
        assignments = ", ".join(f"{name} = ?" for name in fields)
        self.db.execute(cur, f"UPDATE projects SET {assignments} WHERE id = ?", [*fields.values(), project.id])
        self.audit.append(cur, RecordKind.PROJECT, project.id, project.code, target.value, comment, actor)
        return self._reload(cur, project.id)

    def _notify(self, event: EventKind, project: Project, actor: Actor, note: Optional[str] = None) -> NotificationRequest:
        return NotificationRequest(
            record_code=project.code,
            event_kind=event.value,
            org_unit_id=project.org_unit_id,
            body=project_message(event, project, actor.name, note),
            actor_phone=actor.canonical_phone,
        )

    def _result(self, project: Project, message: str, notification: NotificationRequest) -> TransitionResult:
        return TransitionResult(
            record_code=project.code,
            status=project.status.value,
            message=message,
            notifications=[notification],
            project=project,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_project(self, actor: Actor, draft: ProjectDraft, when: Optional[datetime] = None) -> TransitionResult:
        _require(actor, Edge.PROJECT_CREATE)
        missing = draft.missing_fields(actor)
        if missing:
            raise ValidationError("Missing fields: " + ", ".join(missing) + ".", field=missing[0].lower(), code=ErrorCode.MISSING_FIELD)

        if draft.plant:
            unit = self.db.find_org_unit(draft.plant)
            if unit is None:
                raise NotFoundError("Plant", draft.plant)
            if actor.role.is_plant_scoped and actor.org_unit_id and unit["id"] != actor.org_unit_id:
                raise AuthorizationError(f"You can only create projects for your own plant ({actor.org_unit}).", role=actor.role.value)
        else:
            unit = self.db.get_org_unit_by_id(actor.org_unit_id)

        when = when or datetime.now(timezone.utc)
        start = parse_date(draft.start_date, "Start") or when.date().isoformat()
        estimated = parse_date(draft.estimated_close_date, "Estimated close")
        if estimated and estimated < start:
            raise ValidationError("Estimated close cannot be before the start date.", field="estimated_close_date")
        top_tier = actor.role.is_top_tier

        with self.db.transaction() as cur:
            code = next_code(PROJECT_PREFIX, period_key_for(when), cur=cur, db=self.db)
            project_id = new_id("PRJ")
            stamp = now_iso()
            self.db.execute(
                cur,
                "INSERT INTO projects (id, code, org_unit_id, name, start_date, estimated_close_date, status, "
                "zp_approved, approved_by, created_by_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    project_id, code, unit["id"], draft.name.strip(), start, estimated,
                    ProjectStatus.EN_COURSE.value, 1 if top_tier else 0,
                    actor.user_id if top_tier else None, actor.user_id, stamp, stamp,
                ),
            )
            self.audit.append(cur, RecordKind.PROJECT, project_id, code, ProjectStatus.EN_COURSE.value, "Project created", actor)
            if top_tier:
                self.audit.append(
                    cur, RecordKind.PROJECT, project_id, code, ProjectStatus.EN_COURSE.value,
                    "Approved automatically: created by director", actor,
                )
            project = self._reload(cur, project_id)

        record_transition("project", Edge.PROJECT_CREATE.value)
        logger.info("Project %s created by %s", code, actor.role.value)
        return self._result(project, f"Project {code} created: {project.name}.", self._notify(EventKind.PROJECT_CREATED, project, actor))

    def approve_project(self, actor: Actor, code: str) -> TransitionResult:
        _require(actor, Edge.PROJECT_APPROVE)
        code = normalize_project_code(code)
        with self.db.transaction() as cur:
            project = self._lock(cur, code)
            if project.zp_approved:
                raise ConflictError(f"Project {code} is already approved.", current_status=project.status.value)
            if project.status is not ProjectStatus.EN_COURSE:
                raise ConflictError(f"Project {code} is {project.status.value}.", current_status=project.status.value)
            self.db.execute(
                cur,
                "UPDATE projects SET zp_approved = 1, approved_by = ?, updated_at = ? WHERE id = ?",
                (actor.user_id, now_iso(), project.id),
            )
            self.audit.append(cur, RecordKind.PROJECT, project.id, code, project.status.value, "Approved by director", actor)
            project = self._reload(cur, project.id)

        record_transition("project", Edge.PROJECT_APPROVE.value)
        return self._result(project, f"Project {code} approved.", self._notify(EventKind.PROJECT_APPROVED, project, actor))

    def open_folio_count(self, cur, project_code: str) -> int:
        settled = sorted(s.value for s in SETTLED_FOR_PROJECT)
        row = self.db.fetchone(
            cur,
            "SELECT COUNT(*) AS n FROM folios WHERE project_ref = ? AND status NOT IN ("
            + ",".join("?" for _ in settled) + ")",
            [project_code, *settled],
        )
        return int(row["n"]) if row else 0

    def close_project(self, actor: Actor, code: str, confirmed: bool = False) -> TransitionResult:
        """Close the project. With open folios, `confirmed` must be True."""
        _require(actor, Edge.PROJECT_CLOSE)
        code = normalize_project_code(code)
        with self.db.transaction() as cur:
            project = self._lock(cur, code)
            if project.status is not ProjectStatus.EN_COURSE:
                raise ConflictError(f"Project {code} is {project.status.value}.", current_status=project.status.value)
            pending = self.open_folio_count(cur, code)
            if pending and not confirmed:
                raise ConfirmationRequired(
                    f"Project {code} still has {pending} open folio(s). "
                    f"Send 'confirm close project {code}' to close it anyway.",
                    record_code=code,
                    pending=pending,
                )
            comment = f"Closed with {pending} open folio(s)" if pending else "Project closed"
            project = self._move(
                cur, project, ProjectStatus.CLOSED, actor, comment,
                actual_close_date=datetime.now(timezone.utc).date().isoformat(),
            )

        record_transition("project", Edge.PROJECT_CLOSE.value)
        return self._result(project, f"Project {code} closed.", self._notify(EventKind.PROJECT_CLOSED, project, actor))

    def request_cancellation(self, actor: Actor, code: str, reason: Optional[str] = None) -> TransitionResult:
        _require(actor, Edge.PROJECT_REQUEST_CANCELLATION)
        code = normalize_project_code(code)
        reason = str(reason or "").strip()
        comment = f"Cancellation requested. Reason: {reason}" if reason else "Cancellation requested"
        with self.db.transaction() as cur:
            project = self._lock(cur, code)
            if project.status is ProjectStatus.CANCELLATION_REQUESTED:
                raise ConflictError(f"Project {code} already has a pending cancellation.", current_status=project.status.value)
            project = self._move(cur, project, ProjectStatus.CANCELLATION_REQUESTED, actor, comment)

        record_transition("project", Edge.PROJECT_REQUEST_CANCELLATION.value)
        return self._result(
            project,
            f"Cancellation of project {code} requested. A director must confirm it.",
            self._notify(EventKind.PROJECT_CANCELLATION_REQUESTED, project, actor, f"Reason: {reason}" if reason else None),
        )

    def confirm_cancellation(self, actor: Actor, code: str) -> TransitionResult:
        _require(actor, Edge.PROJECT_CONFIRM_CANCELLATION)
        code = normalize_project_code(code)
        with self.db.transaction() as cur:
            project = self._lock(cur, code)
            if project.status is not ProjectStatus.CANCELLATION_REQUESTED:
                raise ConflictError(
                    f"Project {code} has no pending cancellation (status {project.status.value}).",
                    current_status=project.status.value,
                )
            project = self._move(cur, project, ProjectStatus.CANCELED, actor, "Cancellation confirmed")

        record_transition("project", Edge.PROJECT_CONFIRM_CANCELLATION.value)
        return self._result(project, f"Project {code} canceled.", self._notify(EventKind.PROJECT_CANCELED, project, actor))

    def attach(
        self,
        actor: Actor,
        code: str,
        data: bytes,
        content_type: Optional[str] = None,
        store: Optional[ObjectStore] = None,
    ) -> TransitionResult:
        project = self.get_project(code)
        if project.status is ProjectStatus.CANCELED:
            raise ConflictError(f"Project {project.code} is CANCELED.", current_status=project.status.value)
        if not data:
            raise ValidationError("The attachment is empty.", field="attachment")

        url = (store or get_object_store()).put(data, attachment_key("projects", project.code, content_type), content_type)
        with self.db.transaction() as cur:
            project = self._lock(cur, project.code)
            self.db.execute(
                cur,
                "INSERT INTO project_attachments (id, project_id, project_code, attachment_ref, content_type, uploaded_by, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (new_id("ATT"), project.id, project.code, url, content_type, actor.user_id, now_iso()),
            )
            self.audit.append(cur, RecordKind.PROJECT, project.id, project.code, project.status.value, f"Attachment added: {url}", actor)

        logger.info("Attachment added to project %s: %s", project.code, url)
        return TransitionResult(record_code=project.code, status=project.status.value, message=f"File attached to project {project.code}.", project=project)

    def attachments(self, code: str) -> List[Dict[str, Any]]:
        project = self.get_project(code)
        return self.db.query_all(
            "SELECT * FROM project_attachments WHERE project_code = ? ORDER BY created_at ASC",
            (project.code,),
        )


_SERVICE: Optional[ProjectWorkflowService] = None


def get_project_workflow() -> ProjectWorkflowService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ProjectWorkflowService()
    return _SERVICE


def reset_project_workflow() -> None:
    global _SERVICE
    _SERVICE = None
