"""Membership lifecycle router: freeze, resume, cancel and previews."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_staff_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.cancellation import cancel_membership_service, get_refund_quote_service
from services.freeze import (
    get_freeze_allowance_service,
    quick_freeze_service,
    resume_from_freeze_service,
    submit_freeze_service,
)
from services.membership_state import activate_membership_service, run_membership_sweep

router = APIRouter()
logger = logging.getLogger(__name__)


class FreezeRequest(BaseModel):
    start_date: date
    end_date: date
    reason: Optional[str] = Field(default=None, max_length=500)
    member_name: Optional[str] = None
    requested_by: Optional[str] = None


class QuickFreezeRequest(BaseModel):
    days: int
    reason: Optional[str] = Field(default=None, max_length=500)
    staff_id: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str
    refund_policy: str = "prorated"
    refund_method: str = "cash"
    custom_amount: Optional[float] = None
    cancelled_by: Optional[str] = None


class SweepRequest(BaseModel):
    as_of: Optional[date] = None


@router.post("/sweep")
async def sweep_memberships(
    request: Optional[SweepRequest] = None,
    _rate_limit: None = Depends(rate_limit("membership_sweep", limit=12, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    today = request.as_of if request else None
    logger.info("Membership sweep triggered by %s", auth.staff_id)
    return await run_membership_sweep(db=db, today=today)


@router.get("/{membership_id}/freeze_allowance")
async def freeze_allowance(
    membership_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_freeze_allowance_service(membership_id=membership_id, db=db)


@router.get("/{membership_id}/refund_quote")
async def refund_quote(
    membership_id: str,
    policy: str = Query(default="prorated"),
    custom_amount: Optional[float] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_refund_quote_service(
        membership_id=membership_id,
        policy=policy,
        custom_amount=custom_amount,
        db=db,
    )


@router.post("/{membership_id}/freeze")
async def submit_freeze(
    membership_id: str,
    request: FreezeRequest,
    _rate_limit: None = Depends(rate_limit("membership_freeze", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    requested_by = ensure_staff_scope(auth.staff_id, request.requested_by)
    return await submit_freeze_service(
        membership_id=membership_id,
        start_date=request.start_date,
        end_date=request.end_date,
        reason=request.reason,
        requested_by=requested_by,
        member_name=request.member_name,
        db=db,
    )


@router.post("/{membership_id}/quick_freeze")
async def quick_freeze(
    membership_id: str,
    request: QuickFreezeRequest,
    _rate_limit: None = Depends(rate_limit("membership_quick_freeze", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    staff_id = ensure_staff_scope(auth.staff_id, request.staff_id)
    return await quick_freeze_service(
        membership_id=membership_id,
        days=request.days,
        reason=request.reason,
        staff_id=staff_id,
        db=db,
    )


@router.post("/{membership_id}/resume")
async def resume_membership(
    membership_id: str,
    _rate_limit: None = Depends(rate_limit("membership_resume", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Resume requested for membership %s by %s", membership_id, auth.staff_id)
    return await resume_from_freeze_service(membership_id=membership_id, db=db)


@router.post("/{membership_id}/cancel")
async def cancel_membership(
    membership_id: str,
    request: CancelRequest,
    _rate_limit: None = Depends(rate_limit("membership_cancel", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    cancelled_by = ensure_staff_scope(auth.staff_id, request.cancelled_by)
    return await cancel_membership_service(
        membership_id=membership_id,
        reason=request.reason,
        refund_policy=request.refund_policy,
        refund_method=request.refund_method,
        custom_amount=request.custom_amount,
        cancelled_by=cancelled_by,
        db=db,
    )


@router.post("/{membership_id}/activate")
async def activate_membership(
    membership_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await activate_membership_service(membership_id=membership_id, db=db)
