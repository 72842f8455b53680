"""Approval queue router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_branch_scope, ensure_staff_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.approvals import (
    approval_stats_service,
    decide_approval_service,
    list_approval_requests_service,
    submit_approval_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class SubmitApprovalRequest(BaseModel):
    approval_type: str
    reference_type: str
    reference_id: str
    branch_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = None


class DecideApprovalRequest(BaseModel):
    approved: bool
    reviewer_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


@router.get("")
async def list_approvals(
    branch_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default="pending"),
    approval_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_approval_requests_service(
        db=db,
        branch_id=ensure_branch_scope(auth, branch_id),
        status=status,
        approval_type=approval_type,
        limit=limit,
    )


@router.get("/stats")
async def approvals_stats(
    branch_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await approval_stats_service(db=db, branch_id=ensure_branch_scope(auth, branch_id))


@router.post("")
async def submit_approval(
    request: SubmitApprovalRequest,
    _rate_limit: None = Depends(rate_limit("approval_submit", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    requested_by = ensure_staff_scope(auth.staff_id, request.requested_by)
    return await submit_approval_service(
        approval_type=request.approval_type,
        reference_type=request.reference_type,
        reference_id=request.reference_id,
        branch_id=request.branch_id or auth.branch_id,
        payload=request.payload,
        requested_by=requested_by,
        db=db,
    )


@router.post("/{request_id}/decide")
async def decide_approval(
    request_id: str,
    request: DecideApprovalRequest,
    _rate_limit: None = Depends(rate_limit("approval_decide", limit=240, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    reviewer_id = ensure_staff_scope(auth.staff_id, request.reviewer_id)
    logger.info("Decision on approval %s submitted by %s (approved=%s)", request_id, reviewer_id, request.approved)
    return await decide_approval_service(
        request_id=request_id,
        approved=request.approved,
        reviewer_id=reviewer_id,
        notes=request.notes,
        db=db,
    )
