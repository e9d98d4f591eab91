"""Response models for the read-only reports API."""
from typing import List, Optional

from pydantic import ConfigDict, Field

from folioflow.models.base import FFBaseModel


class ReportModel(FFBaseModel):
    """Read models are built from wider rows; unknown keys are dropped."""
    model_config = ConfigDict(extra="ignore")


class HistoryEntryOut(ReportModel):
    id: str
    record_code: str
    status_at_entry: str
    comment: Optional[str] = None
    actor_phone: Optional[str] = None
    actor_role: Optional[str] = None
    created_at: str


class FolioOut(ReportModel):
    code: str
    org_unit: Optional[str] = None
    org_unit_name: Optional[str] = None
    status: str
    priority: str = "normal"
    beneficiary: Optional[str] = None
    purpose: Optional[str] = None
    amount: Optional[float] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    unit_ref: Optional[str] = None
    quote_attachment_ref: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    prior_status: Optional[str] = None
    project_ref: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class FolioDetailOut(ReportModel):
    folio: FolioOut
    history: List[HistoryEntryOut] = Field(default_factory=list)


class FolioListOut(ReportModel):
    count: int
    folios: List[FolioOut] = Field(default_factory=list)


class ProjectOut(ReportModel):
    code: str
    name: str
    org_unit: Optional[str] = None
    org_unit_name: Optional[str] = None
    status: str
    start_date: Optional[str] = None
    estimated_close_date: Optional[str] = None
    actual_close_date: Optional[str] = None
    zp_approved: bool = False
    approved_by: Optional[str] = None
    folio_count: int = 0
    total_amount: float = 0.0
    created_at: Optional[str] = None


class AttachmentOut(ReportModel):
    attachment_ref: str
    content_type: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: Optional[str] = None


class ProjectDetailOut(ReportModel):
    project: ProjectOut
    folios: List[FolioOut] = Field(default_factory=list)
    history: List[HistoryEntryOut] = Field(default_factory=list)
    attachments: List[AttachmentOut] = Field(default_factory=list)


class ProjectListOut(ReportModel):
    count: int
    projects: List[ProjectOut] = Field(default_factory=list)


class NotificationOut(ReportModel):
    record_code: str
    org_unit_id: Optional[str] = None
    event_kind: str
    recipient: str
    outcome: str
    error_detail: Optional[str] = None
    created_at: Optional[str] = None


class NotificationListOut(ReportModel):
    count: int
    notifications: List[NotificationOut] = Field(default_factory=list)
