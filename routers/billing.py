"""Billing router: refund reversals written against the invoice ledger."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_staff_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.reconciliation import ReversalEntry, apply_reversal_service, get_reversal_service

router = APIRouter()
logger = logging.getLogger(__name__)


class ReversalRequest(BaseModel):
    reference_type: str
    reference_id: str
    amount: float = Field(gt=0)
    reason: str
    method: str = "cash"
    branch_id: str
    member_id: Optional[str] = None
    description: Optional[str] = None
    actor_id: Optional[str] = None


@router.post("/reversals")
async def apply_reversal(
    request: ReversalRequest,
    _rate_limit: None = Depends(rate_limit("billing_reversal", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    actor_id = ensure_staff_scope(auth.staff_id, request.actor_id)
    logger.info(
        "Reversal requested for %s:%s by %s", request.reference_type, request.reference_id, actor_id
    )
    entry = ReversalEntry(
        reference_type=request.reference_type,
        reference_id=request.reference_id,
        amount=request.amount,
        reason=request.reason,
        method=request.method,
        branch_id=request.branch_id,
        member_id=request.member_id,
        description=request.description,
        actor_id=actor_id,
    )
    return await apply_reversal_service(entry=entry, db=db)


@router.get("/reversals/{reference_type}/{reference_id}")
async def get_reversal(
    reference_type: str,
    reference_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_reversal_service(reference_type=reference_type, reference_id=reference_id, db=db)
