"""Folio and project state machines: legal edges and the roles allowed to take them."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Set

from folioflow.core.models import FolioStatus, ProjectStatus, Role


class Edge(str, Enum):
    PLANT_APPROVE = "plant_approve"
    HQ_APPROVE = "hq_approve"
    HQ_OVERRIDE = "hq_override"
    SELECT_FOR_WEEK = "select_for_week"
    REQUEST_PAYMENT = "request_payment"
    MARK_PAID = "mark_paid"
    CLOSE = "close"
    REQUEST_CANCELLATION = "request_cancellation"
    RESOLVE_CANCELLATION = "resolve_cancellation"
    PROJECT_CREATE = "project_create"
    PROJECT_APPROVE = "project_approve"
    PROJECT_CLOSE = "project_close"
    PROJECT_REQUEST_CANCELLATION = "project_request_cancellation"
    PROJECT_CONFIRM_CANCELLATION = "project_confirm_cancellation"


EDGE_ROLES: Dict[Edge, FrozenSet[Role]] = {
    Edge.PLANT_APPROVE: frozenset({Role.SITE_MANAGER, Role.GENERAL_MANAGER}),
    Edge.HQ_APPROVE: frozenset({Role.DIRECTOR}),
    Edge.HQ_OVERRIDE: frozenset({Role.DIRECTOR}),
    Edge.SELECT_FOR_WEEK: frozenset({Role.CONTROLLER}),
    Edge.REQUEST_PAYMENT: frozenset({Role.CONTROLLER}),
    Edge.MARK_PAID: frozenset({Role.CONTROLLER}),
    Edge.CLOSE: frozenset({Role.CONTROLLER}),
    Edge.REQUEST_CANCELLATION: frozenset({Role.SITE_MANAGER, Role.GENERAL_MANAGER, Role.CONTROLLER}),
    Edge.RESOLVE_CANCELLATION: frozenset({Role.DIRECTOR}),
    Edge.PROJECT_CREATE: frozenset({Role.SITE_MANAGER, Role.GENERAL_MANAGER, Role.DIRECTOR}),
    Edge.PROJECT_APPROVE: frozenset({Role.DIRECTOR}),
    Edge.PROJECT_CLOSE: frozenset({Role.SITE_MANAGER, Role.GENERAL_MANAGER, Role.DIRECTOR}),
    Edge.PROJECT_REQUEST_CANCELLATION: frozenset({Role.SITE_MANAGER, Role.GENERAL_MANAGER, Role.CONTROLLER}),
    Edge.PROJECT_CONFIRM_CANCELLATION: frozenset({Role.DIRECTOR}),
}


# Source statuses each edge may leave from.
EDGE_SOURCES: Dict[Edge, FrozenSet[FolioStatus]] = {
    Edge.PLANT_APPROVE: frozenset({FolioStatus.PENDING_PLANT_APPROVAL}),
    Edge.HQ_APPROVE: frozenset({FolioStatus.PENDING_HQ_APPROVAL}),
    Edge.HQ_OVERRIDE: frozenset({
        FolioStatus.PENDING_PLANT_APPROVAL,
        FolioStatus.PLANT_APPROVED,
        FolioStatus.PENDING_HQ_APPROVAL,
    }),
    Edge.SELECT_FOR_WEEK: frozenset({FolioStatus.READY_TO_SCHEDULE}),
    Edge.REQUEST_PAYMENT: frozenset({FolioStatus.SELECTED_FOR_WEEK}),
    Edge.MARK_PAID: frozenset({FolioStatus.PAYMENT_REQUESTED}),
    Edge.CLOSE: frozenset({FolioStatus.PAID}),
}


VALID_TRANSITIONS: Dict[FolioStatus, Set[FolioStatus]] = {
    FolioStatus.GENERATED: {FolioStatus.PENDING_PLANT_APPROVAL, FolioStatus.READY_TO_SCHEDULE},
    FolioStatus.PENDING_PLANT_APPROVAL: {FolioStatus.PLANT_APPROVED, FolioStatus.READY_TO_SCHEDULE, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.PLANT_APPROVED: {FolioStatus.PENDING_HQ_APPROVAL, FolioStatus.READY_TO_SCHEDULE, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.PENDING_HQ_APPROVAL: {FolioStatus.HQ_APPROVED, FolioStatus.READY_TO_SCHEDULE, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.HQ_APPROVED: {FolioStatus.READY_TO_SCHEDULE, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.READY_TO_SCHEDULE: {FolioStatus.SELECTED_FOR_WEEK, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.SELECTED_FOR_WEEK: {FolioStatus.PAYMENT_REQUESTED, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.PAYMENT_REQUESTED: {FolioStatus.PAID, FolioStatus.CANCELLATION_REQUESTED},
    FolioStatus.PAID: {FolioStatus.CLOSED},
    FolioStatus.CLOSED: set(),
    # Rejection restores the prior status, which is validated separately.
    FolioStatus.CANCELLATION_REQUESTED: {FolioStatus.CANCELED},
    FolioStatus.CANCELED: set(),
}

TERMINAL_STATUSES: FrozenSet[FolioStatus] = frozenset({FolioStatus.CLOSED, FolioStatus.CANCELED})

NOT_CANCELLABLE: FrozenSet[FolioStatus] = frozenset({
    FolioStatus.PAID,
    FolioStatus.CLOSED,
    FolioStatus.CANCELED,
    FolioStatus.CANCELLATION_REQUESTED,
})

# Statuses at or past top-tier approval on the main lane.
HQ_APPROVED_OR_LATER: FrozenSet[FolioStatus] = frozenset({
    FolioStatus.HQ_APPROVED,
    FolioStatus.READY_TO_SCHEDULE,
    FolioStatus.SELECTED_FOR_WEEK,
    FolioStatus.PAYMENT_REQUESTED,
    FolioStatus.PAID,
    FolioStatus.CLOSED,
})

PLANT_APPROVED_OR_LATER: FrozenSet[FolioStatus] = HQ_APPROVED_OR_LATER | frozenset({
    FolioStatus.PLANT_APPROVED,
    FolioStatus.PENDING_HQ_APPROVAL,
})

# Folio statuses that no longer block closing their project.
SETTLED_FOR_PROJECT: FrozenSet[FolioStatus] = frozenset({
    FolioStatus.PAID,
    FolioStatus.CLOSED,
    FolioStatus.CANCELED,
})


PROJECT_TRANSITIONS: Dict[ProjectStatus, Set[ProjectStatus]] = {
    ProjectStatus.EN_COURSE: {ProjectStatus.CLOSED, ProjectStatus.CANCELLATION_REQUESTED},
    ProjectStatus.CANCELLATION_REQUESTED: {ProjectStatus.CANCELED},
    ProjectStatus.CLOSED: set(),
    ProjectStatus.CANCELED: set(),
}


class FolioStateError(ValueError):
    """Raised when an invalid transition is attempted."""


def can_transition(role: Role, edge: Edge) -> bool:
    return role in EDGE_ROLES.get(edge, frozenset())


def roles_for(edge: Edge) -> FrozenSet[Role]:
    return EDGE_ROLES.get(edge, frozenset())


def is_valid_transition(from_status: FolioStatus, to_status: FolioStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def assert_valid_transition(from_status: FolioStatus, to_status: FolioStatus) -> None:
    if not is_valid_transition(from_status, to_status):
        raise FolioStateError(f"Invalid transition: {from_status.value} -> {to_status.value}")


def assert_valid_project_transition(from_status: ProjectStatus, to_status: ProjectStatus) -> None:
    if to_status not in PROJECT_TRANSITIONS.get(from_status, set()):
        raise FolioStateError(f"Invalid transition: {from_status.value} -> {to_status.value}")
