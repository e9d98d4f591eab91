"""
folioflow Core Data Models

Domain types shared by every surface (webhook, engines, reports).
Rows coming back from the database are turned into these dataclasses
right at the persistence boundary.
"""

from dataclasses import dataclass, field, asdict
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    """Authority levels. Codes match the seeded `roles` table."""
    SITE_MANAGER = "GA"       # Administrative manager of a plant
    GENERAL_MANAGER = "GG"    # General manager of a plant (mid-tier)
    DIRECTOR = "ZP"           # Director (top-tier)
    CONTROLLER = "CDMX"       # Corporate controller

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]

    @property
    def level(self) -> int:
        return ROLE_LEVELS[self]

    @property
    def is_top_tier(self) -> bool:
        return self is Role.DIRECTOR

    @property
    def is_plant_scoped(self) -> bool:
        """Plant-scoped roles belong to exactly one org unit."""
        return self in (Role.SITE_MANAGER, Role.GENERAL_MANAGER)

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return None


ROLE_LABELS: Dict[Role, str] = {
    Role.SITE_MANAGER: "Administrative Manager",
    Role.GENERAL_MANAGER: "General Manager",
    Role.DIRECTOR: "Director",
    Role.CONTROLLER: "Corporate Controller",
}

ROLE_LEVELS: Dict[Role, int] = {
    Role.SITE_MANAGER: 10,
    Role.GENERAL_MANAGER: 20,
    Role.DIRECTOR: 30,
    Role.CONTROLLER: 40,
}


class FolioStatus(str, Enum):
    GENERATED = "GENERATED"
    PENDING_PLANT_APPROVAL = "PENDING_PLANT_APPROVAL"
    PLANT_APPROVED = "PLANT_APPROVED"
    PENDING_HQ_APPROVAL = "PENDING_HQ_APPROVAL"
    HQ_APPROVED = "HQ_APPROVED"
    READY_TO_SCHEDULE = "READY_TO_SCHEDULE"
    SELECTED_FOR_WEEK = "SELECTED_FOR_WEEK"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAID = "PAID"
    CLOSED = "CLOSED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELED = "CANCELED"


class ProjectStatus(str, Enum):
    EN_COURSE = "EN_COURSE"
    CLOSED = "CLOSED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELED = "CANCELED"


class Priority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class RecordKind(str, Enum):
    FOLIO = "folio"
    PROJECT = "project"


@dataclass
class Actor:
    """Identity resolved for one inbound event. Never persisted as a session."""
    user_id: str
    name: str
    role: Role
    canonical_phone: str
    org_unit_id: Optional[str] = None
    org_unit: Optional[str] = None
    org_unit_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def role_level(self) -> int:
        return self.role.level

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["role_level"] = self.role_level
        return data


CENTS = Decimal("0.01")

# Largest value a NUMERIC(12,2) column holds
MAX_AMOUNT = Decimal("9999999999.99")


def money(value: Any) -> Optional[float]:
    """Amount from a DB row (float, int or Decimal) rounded to cents."""
    if value is None:
        return None
    return float(Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP))


def _status(value: Any, enum_cls):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass
class Folio:
    """An expense request."""
    id: str
    code: str
    org_unit_id: str
    status: FolioStatus
    org_unit: Optional[str] = None
    org_unit_name: Optional[str] = None
    created_by_id: Optional[str] = None
    beneficiary: Optional[str] = None
    purpose: Optional[str] = None
    amount: Optional[float] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    unit_ref: Optional[str] = None
    priority: Priority = Priority.NORMAL
    quote_attachment_ref: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    prior_status: Optional[FolioStatus] = None
    project_ref: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_urgent(self) -> bool:
        return self.priority is Priority.URGENT

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Folio":
        return cls(
            id=row["id"],
            code=row["code"],
            org_unit_id=row["org_unit_id"],
            status=FolioStatus(row["status"]),
            org_unit=row.get("org_unit_code"),
            org_unit_name=row.get("org_unit_name"),
            created_by_id=row.get("created_by_id"),
            beneficiary=row.get("beneficiary"),
            purpose=row.get("purpose"),
            amount=money(row.get("amount")),
            category=row.get("category"),
            subcategory=row.get("subcategory"),
            unit_ref=row.get("unit_ref"),
            priority=_status(row.get("priority"), Priority) or Priority.NORMAL,
            quote_attachment_ref=row.get("quote_attachment_ref"),
            approved_by=row.get("approved_by"),
            approved_at=row.get("approved_at"),
            prior_status=_status(row.get("prior_status"), FolioStatus),
            project_ref=row.get("project_ref"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["priority"] = self.priority.value
        data["prior_status"] = self.prior_status.value if self.prior_status else None
        return data


@dataclass
class Project:
    """Umbrella record grouping folios. Totals are derived, never stored."""
    id: str
    code: str
    org_unit_id: str
    name: str
    status: ProjectStatus
    org_unit: Optional[str] = None
    org_unit_name: Optional[str] = None
    start_date: Optional[str] = None
    estimated_close_date: Optional[str] = None
    actual_close_date: Optional[str] = None
    zp_approved: bool = False
    approved_by: Optional[str] = None
    created_by_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Project":
        return cls(
            id=row["id"],
            code=row["code"],
            org_unit_id=row["org_unit_id"],
            name=row.get("name") or "",
            status=ProjectStatus(row["status"]),
            org_unit=row.get("org_unit_code"),
            org_unit_name=row.get("org_unit_name"),
            start_date=row.get("start_date"),
            estimated_close_date=row.get("estimated_close_date"),
            actual_close_date=row.get("actual_close_date"),
            zp_approved=bool(row.get("zp_approved")),
            approved_by=row.get("approved_by"),
            created_by_id=row.get("created_by_id"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class AuditEntry:
    """Append-only history row for a folio or project."""
    id: str
    record_id: str
    record_code: str
    status_at_entry: str
    comment: Optional[str]
    actor_phone: Optional[str]
    actor_role: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=row["id"],
            record_id=row["record_id"],
            record_code=row["record_code"],
            status_at_entry=row["status"],
            comment=row.get("comment"),
            actor_phone=row.get("actor_phone"),
            actor_role=row.get("actor_role"),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationRequest:
    """A fan-out to run once the originating transaction has committed."""
    record_code: str
    event_kind: str
    org_unit_id: Optional[str]
    body: str
    actor_phone: Optional[str] = None
    role_filter: Optional[List[Role]] = None
    notify_everyone: bool = False
    exclude_actor: Optional[bool] = None


@dataclass
class TransitionResult:
    """Outcome of one engine operation."""
    record_code: str
    status: str
    message: str
    notifications: List[NotificationRequest] = field(default_factory=list)
    folio: Optional[Folio] = None
    project: Optional[Project] = None
