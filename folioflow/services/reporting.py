"""
Reporting Queries

Read-only views of folios, projects and the notification log for the
board/KPI component. Nothing here writes.
"""

import logging
from typing import Any, Dict, List, Optional

from folioflow.core.database import FolioDB, get_db
from folioflow.core.models import Folio, FolioStatus, Project, ProjectStatus, RecordKind, money
from folioflow.services.audit_trail import AuditTrailService
from folioflow.services.errors import NotFoundError, ValidationError
from folioflow.services.folio_workflow import FolioWorkflowService
from folioflow.services.project_workflow import ProjectWorkflowService

logger = logging.getLogger(__name__)

MAX_LIMIT = 500


def _status_filter(value: Optional[str], enum_cls) -> Optional[str]:
    if not value:
        return None
    try:
        return enum_cls(value.strip().upper()).value
    except ValueError:
        raise ValidationError(f"Unknown status '{value}'.", field="status")


class ReportingService:
    def __init__(self, db: Optional[FolioDB] = None):
        self.db = db or get_db()
        self.audit = AuditTrailService(self.db)
        self.folios = FolioWorkflowService(self.db, self.audit)
        self.projects = ProjectWorkflowService(self.db, self.audit)

    def _unit_id(self, org_unit: Optional[str]) -> Optional[str]:
        if not org_unit:
            return None
        unit = self.db.find_org_unit(org_unit)
        if unit is None:
            raise NotFoundError("Plant", org_unit)
        return unit["id"]

    def list_folios(
        self,
        org_unit: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 100,
    ) -> List[Folio]:
        """Folios newest first. Dates compare against created_at (YYYY-MM-DD)."""
        sql = self.db.FOLIO_SELECT + " WHERE 1 = 1"
        params: List[Any] = []
        unit_id = self._unit_id(org_unit)
        if unit_id:
            sql += " AND f.org_unit_id = ?"
            params.append(unit_id)
        if category:
            sql += " AND LOWER(f.category) = ?"
            params.append(category.strip().lower())
        status_value = _status_filter(status, FolioStatus)
        if status_value:
            sql += " AND f.status = ?"
            params.append(status_value)
        if date_from:
            sql += " AND f.created_at >= ?"
            params.append(date_from)
        if date_to:
            # Inclusive of the whole end day
            sql += " AND f.created_at < ?"
            params.append(f"{date_to}T99")
        sql += " ORDER BY f.created_at DESC LIMIT ?"
        params.append(max(1, min(int(limit or 100), MAX_LIMIT)))
        return [Folio.from_row(row) for row in self.db.query_all(sql, params)]

    def get_folio_detail(self, code: str) -> Dict[str, Any]:
        folio = self.folios.get_folio(code)
        return {
            "folio": folio,
            "history": self.audit.list_history(RecordKind.FOLIO, folio.code),
        }

    def list_projects(self, org_unit: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        status_value = _status_filter(status, ProjectStatus)
        if org_unit:
            summaries = self.projects.list_projects_for_unit(org_unit, status_value)
            return [summary.to_dict() for summary in summaries]

        sql = (
            "SELECT p.*, o.code AS org_unit_code, o.name AS org_unit_name, "
            "COUNT(f.id) AS folio_count, COALESCE(SUM(f.amount), 0) AS total_amount "
            "FROM projects p "
            "JOIN org_units o ON o.id = p.org_unit_id "
            "LEFT JOIN folios f ON f.project_ref = p.code AND f.status <> ?"
        )
        params: List[Any] = [FolioStatus.CANCELED.value]
        if status_value:
            sql += " WHERE p.status = ?"
            params.append(status_value)
        sql += " GROUP BY p.id, o.code, o.name ORDER BY p.created_at ASC"
        results = []
        for row in self.db.query_all(sql, params):
            data = Project.from_row(row).to_dict()
            data["folio_count"] = int(row["folio_count"] or 0)
            data["total_amount"] = money(row["total_amount"] or 0)
            results.append(data)
        return results

    def get_project_detail(self, code: str) -> Dict[str, Any]:
        project = self.projects.get_project(code)
        data = project.to_dict()
        data.update(self.projects.totals(project.code).to_dict())
        return {
            "project": data,
            "folios": self.folios.list_for_project(project.code),
            "history": self.audit.list_history(RecordKind.PROJECT, project.code),
            "attachments": self.projects.attachments(project.code),
        }

    def list_notifications(self, record_code: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM notification_log"
        params: List[Any] = []
        if record_code:
            sql += " WHERE record_code = ?"
            params.append(record_code.strip().upper())
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(1, min(int(limit or 100), MAX_LIMIT)))
        return self.db.query_all(sql, params)


def get_reporting_service() -> ReportingService:
    return ReportingService()
