"""Requisition workflow routes.

Handlers only translate HTTP into service calls; authorization and status
rules live in RequisitionService and surface as WorkflowError subclasses.
"""

from typing import List, Optional

from fastapi import APIRouter, Query, Request

from factory_app.core.rate_limit import limiter
from factory_app.core.rbac import CurrentUser
from factory_app.db.session import DbSession
from factory_app.schemas.requisition import (
    ApprovalAction,
    CancelRequest,
    DashboardStats,
    FulfillRequest,
    RequisitionCreate,
    RequisitionCreated,
    RequisitionUpdate,
)
from factory_app.services.requisition_service import RequisitionService

router = APIRouter()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


@router.get("")
@limiter.limit("60/minute")
def list_requisitions(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    status: Optional[str] = Query(None),
    department: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
) -> List[dict]:
    """List requisitions visible to the caller, newest first."""
    return RequisitionService.list_requisitions(
        db, current_user, status=status, department=department, priority=priority
    )


@router.post("", response_model=RequisitionCreated)
@limiter.limit("30/minute")
def create_requisition(
    request: Request,
    data: RequisitionCreate,
    db: DbSession,
    current_user: CurrentUser,
):
    """Create a draft requisition with its items."""
    return RequisitionService.create_requisition(db, data, current_user, _client_ip(request))


# Declared before /{requisition_id} so "stats" is not parsed as an id
@router.get("/stats/dashboard", response_model=DashboardStats)
@limiter.limit("60/minute")
def get_dashboard_stats(request: Request, db: DbSession, current_user: CurrentUser):
    """Requisition counts for the dashboard."""
    return RequisitionService.dashboard_stats(db, current_user)


@router.get("/{requisition_id}")
@limiter.limit("60/minute")
def get_requisition(
    request: Request,
    requisition_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """Get a requisition with its items and approval history."""
    return RequisitionService.get_requisition(db, requisition_id, current_user)


@router.put("/{requisition_id}")
@limiter.limit("30/minute")
def update_requisition(
    request: Request,
    requisition_id: int,
    data: RequisitionUpdate,
    db: DbSession,
    current_user: CurrentUser,
):
    """Update the descriptive fields of a requisition."""
    return RequisitionService.update_requisition(
        db, requisition_id, data, current_user, _client_ip(request)
    )


@router.post("/{requisition_id}/submit")
@limiter.limit("30/minute")
def submit_requisition(
    request: Request,
    requisition_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """Submit a draft requisition for approval."""
    return RequisitionService.submit_requisition(
        db, requisition_id, current_user, _client_ip(request)
    )


@router.post("/{requisition_id}/review")
@limiter.limit("30/minute")
def review_requisition(
    request: Request,
    requisition_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """Take a submitted requisition into review (pending_approval)."""
    return RequisitionService.review_requisition(
        db, requisition_id, current_user, _client_ip(request)
    )


@router.post("/{requisition_id}/approve")
@limiter.limit("30/minute")
def approve_requisition(
    request: Request,
    requisition_id: int,
    data: ApprovalAction,
    db: DbSession,
    current_user: CurrentUser,
):
    """Approve or reject a requisition."""
    return RequisitionService.decide_requisition(
        db, requisition_id, current_user, data.action, data.comments, _client_ip(request)
    )


@router.post("/{requisition_id}/fulfill")
@limiter.limit("30/minute")
def fulfill_requisition(
    request: Request,
    requisition_id: int,
    db: DbSession,
    current_user: CurrentUser,
    data: Optional[FulfillRequest] = None,
):
    """Record delivered quantities. No lines means everything was delivered."""
    lines = data.lines if data else []
    return RequisitionService.fulfill_requisition(
        db, requisition_id, current_user, lines, _client_ip(request)
    )


@router.post("/{requisition_id}/cancel")
@limiter.limit("30/minute")
def cancel_requisition(
    request: Request,
    requisition_id: int,
    db: DbSession,
    current_user: CurrentUser,
    data: Optional[CancelRequest] = None,
):
    """Cancel a requisition that has not been decided yet."""
    return RequisitionService.cancel_requisition(
        db, requisition_id, current_user, data.reason if data else None, _client_ip(request)
    )


@router.delete("/{requisition_id}")
@limiter.limit("30/minute")
def delete_requisition(
    request: Request,
    requisition_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    """Delete a requisition."""
    return RequisitionService.delete_requisition(
        db, requisition_id, current_user, _client_ip(request)
    )
