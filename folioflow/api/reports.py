"""
Reports API

Read-only JSON views of folios, projects and the notification log for
the board/KPI frontend. Protected by X-API-Key when API_KEY is set.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from folioflow.models.reports import (
    FolioDetailOut,
    FolioListOut,
    FolioOut,
    HistoryEntryOut,
    NotificationListOut,
    ProjectDetailOut,
    ProjectListOut,
)
from folioflow.services.auth import verify_api_key
from folioflow.services.errors import FolioflowError, to_http_exception
from folioflow.services.reporting import get_reporting_service

router = APIRouter(prefix="/reports", tags=["reports"], dependencies=[Depends(verify_api_key)])


def _folio_out(folio) -> FolioOut:
    return FolioOut(**folio.to_dict())


def _history_out(entries):
    return [HistoryEntryOut(**entry.to_dict()) for entry in entries]


@router.get("/folios", response_model=FolioListOut)
def list_folios(
    org_unit: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD, inclusive"),
    limit: int = Query(100, ge=1, le=500),
):
    try:
        folios = get_reporting_service().list_folios(org_unit, category, status, date_from, date_to, limit)
    except FolioflowError as exc:
        raise to_http_exception(exc)
    return FolioListOut(count=len(folios), folios=[_folio_out(f) for f in folios])


@router.get("/folios/{code}", response_model=FolioDetailOut)
def get_folio(code: str):
    try:
        detail = get_reporting_service().get_folio_detail(code)
    except FolioflowError as exc:
        raise to_http_exception(exc)
    return FolioDetailOut(folio=_folio_out(detail["folio"]), history=_history_out(detail["history"]))


@router.get("/projects", response_model=ProjectListOut)
def list_projects(org_unit: Optional[str] = None, status: Optional[str] = None):
    try:
        projects = get_reporting_service().list_projects(org_unit, status)
    except FolioflowError as exc:
        raise to_http_exception(exc)
    return ProjectListOut(count=len(projects), projects=projects)


@router.get("/projects/{code}", response_model=ProjectDetailOut)
def get_project(code: str):
    try:
        detail = get_reporting_service().get_project_detail(code)
    except FolioflowError as exc:
        raise to_http_exception(exc)
    return ProjectDetailOut(
        project=detail["project"],
        folios=[_folio_out(f) for f in detail["folios"]],
        history=_history_out(detail["history"]),
        attachments=detail["attachments"],
    )


@router.get("/notifications", response_model=NotificationListOut)
def list_notifications(record_code: Optional[str] = None, limit: int = Query(100, ge=1, le=500)):
    try:
        rows = get_reporting_service().list_notifications(record_code, limit)
    except FolioflowError as exc:
        raise to_http_exception(exc)
    return NotificationListOut(count=len(rows), notifications=rows)
