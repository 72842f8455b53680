"""Freeze and unfreeze calculations for memberships.

The pure helpers at the top compute allowance, day counts, fees and resumed
end dates. The services below wrap them in one transaction per command.

Frozen days are always recomputed from the full approved history rather than
incremented, so a replayed resume or decision cannot double count.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.branch_settings import BranchSettings
from models.freeze_history import MembershipFreezeHistory
from models.membership import Membership
from models.membership_plan import MembershipPlan
from services import membership_state
from services.approvals import FreezePayload, create_approval_request, serialize_approval_request
from services.errors import InsufficientAllowance, InvalidDateRange, InvalidTransition, ValidationError
from services.events import FREEZE_SUBMITTED, MEMBERSHIP_FROZEN, MEMBERSHIP_RESUMED, DomainEvent, publish_event
from services.persistence import commit_unit, load_membership, money, to_decimal, utc_now, utc_today

logger = logging.getLogger(__name__)

FREEZE_REFERENCE_TYPE = "membership_freeze"
QUICK_FREEZE_DEFAULT_REASON = "Staff initiated quick freeze"


def inclusive_day_count(start_date: date, end_date: date) -> int:
    """Days covered by a window including both ends; <= 0 when end precedes start."""
    return (end_date - start_date).days + 1


def plan_max_freeze_days(plan: Optional[MembershipPlan]) -> int:
    if plan is None or plan.max_freeze_days is None:
        return int(settings.DEFAULT_MAX_FREEZE_DAYS)
    return int(plan.max_freeze_days)


def remaining_allowance(max_freeze_days: int, used_days: int) -> int:
    return max(int(max_freeze_days) - int(used_days), 0)


def flat_freeze_fee(branch_settings: Optional[BranchSettings]) -> Decimal:
    if branch_settings is None:
        return Decimal("0")
    return to_decimal(branch_settings.freeze_fee)


def validate_freeze_days(days_frozen: int, remaining: int) -> None:
    if days_frozen <= 0:
        raise InvalidDateRange("End date must be on or after the start date", days_frozen=days_frozen)
    if days_frozen > remaining:
        raise InsufficientAllowance(
            f"Cannot freeze for more than {remaining} days",
            requested_days=days_frozen,
            remaining_days=remaining,
        )


def total_frozen_days(windows: Iterable[MembershipFreezeHistory]) -> int:
    return sum(int(window.days_frozen or 0) for window in windows if window.status == "approved")


def resumed_end_date(original_end_date: date, frozen_days: int) -> date:
    return original_end_date + timedelta(days=int(frozen_days))


async def _freeze_day_totals(db: AsyncSession, membership_id: str) -> Tuple[int, int]:
    """Return (approved_days, pending_days) recorded for a membership."""
    result = await db.execute(
        select(
            MembershipFreezeHistory.status,
            func.coalesce(func.sum(MembershipFreezeHistory.days_frozen), 0),
        )
        .where(
            MembershipFreezeHistory.membership_id == membership_id,
            MembershipFreezeHistory.status.in_(("approved", "pending")),
        )
        .group_by(MembershipFreezeHistory.status)
    )
    totals = {status: int(days or 0) for status, days in result.all()}
    return totals.get("approved", 0), totals.get("pending", 0)


async def _load_plan(db: AsyncSession, plan_id: str) -> Optional[MembershipPlan]:
    result = await db.execute(select(MembershipPlan).where(MembershipPlan.id == plan_id))
    return result.scalar_one_or_none()


async def _load_branch_settings(db: AsyncSession, branch_id: str) -> Optional[BranchSettings]:
    result = await db.execute(select(BranchSettings).where(BranchSettings.branch_id == branch_id))
    return result.scalar_one_or_none()


async def _committed_allowance(db: AsyncSession, membership: Membership) -> Dict[str, int]:
    """Allowance as seen inside the current transaction.

    Pending requests reserve their days so two queued requests can never be
    approved past the plan limit.
    """
    plan = await _load_plan(db, membership.plan_id)
    max_days = plan_max_freeze_days(plan)
    approved_days, pending_days = await _freeze_day_totals(db, membership.id)
    used_days = max(int(membership.total_freeze_days_used or 0), approved_days)
    return {
        "max_freeze_days": max_days,
        "used_days": used_days,
        "pending_days": pending_days,
        "remaining_days": remaining_allowance(max_days, used_days + pending_days),
    }


def serialize_freeze(row: MembershipFreezeHistory) -> Dict[str, Any]:
    return {
        "id": row.id,
        "membership_id": row.membership_id,
        "start_date": row.start_date.isoformat() if row.start_date else None,
        "end_date": row.end_date.isoformat() if row.end_date else None,
        "days_frozen": row.days_frozen,
        "reason": row.reason,
        "fee_charged": money(row.fee_charged),
        "status": row.status,
        "requested_by": row.requested_by,
        "approved_by": row.approved_by,
        "approved_at": row.approved_at.isoformat() if row.approved_at else None,
    }


def serialize_membership(membership: Membership) -> Dict[str, Any]:
    return {
        "id": membership.id,
        "member_id": membership.member_id,
        "plan_id": membership.plan_id,
        "branch_id": membership.branch_id,
        "status": membership.status,
        "start_date": membership.start_date.isoformat(),
        "original_end_date": membership.original_end_date.isoformat(),
        "end_date": membership.end_date.isoformat(),
        "price_paid": money(membership.price_paid),
        "total_freeze_days_used": int(membership.total_freeze_days_used or 0),
        "refund_amount": money(membership.refund_amount) if membership.refund_amount is not None else None,
        "cancelled_at": membership.cancelled_at.isoformat() if membership.cancelled_at else None,
    }


async def get_freeze_allowance_service(*, membership_id: str, db: AsyncSession) -> Dict[str, Any]:
    membership = await load_membership(db, membership_id)
    allowance = await _committed_allowance(db, membership)
    fee = flat_freeze_fee(await _load_branch_settings(db, membership.branch_id))
    return {
        "membership_id": membership.id,
        "status": membership.status,
        **allowance,
        "freeze_fee": money(fee),
    }


async def submit_freeze_service(
    *,
    membership_id: str,
    start_date: date,
    end_date: date,
    reason: Optional[str],
    requested_by: Optional[str],
    db: AsyncSession,
    member_name: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Queue a freeze window for approval.

    The freeze row and its approval request are written in one unit, after
    the allowance has been re-read under the membership lock.
    """
    current_day = today or utc_today()
    if start_date < current_day:
        raise ValidationError("Freeze cannot start in the past", start_date=start_date.isoformat())

    days_frozen = inclusive_day_count(start_date, end_date)
    if days_frozen <= 0:
        raise InvalidDateRange("End date must be on or after the start date", days_frozen=days_frozen)

    membership = await load_membership(db, membership_id, for_update=True)
    if membership.status != "active":
        raise InvalidTransition(
            f"Only active memberships can be frozen (status '{membership.status}')",
            current=membership.status,
            target="frozen",
        )

    allowance = await _committed_allowance(db, membership)
    validate_freeze_days(days_frozen, allowance["remaining_days"])
    fee = flat_freeze_fee(await _load_branch_settings(db, membership.branch_id))

    freeze = MembershipFreezeHistory(
        id=str(uuid.uuid4()),
        membership_id=membership.id,
        start_date=start_date,
        end_date=end_date,
        days_frozen=days_frozen,
        reason=(reason or "").strip() or None,
        fee_charged=fee,
        status="pending",
        requested_by=requested_by,
    )
    db.add(freeze)

    payload = FreezePayload(
        membership_id=membership.id,
        member_name=member_name,
        start_date=start_date,
        end_date=end_date,
        days_frozen=days_frozen,
        reason=freeze.reason,
        fee_charged=float(fee),
    )
    approval = create_approval_request(
        db,
        approval_type="membership_freeze",
        reference_type=FREEZE_REFERENCE_TYPE,
        reference_id=freeze.id,
        branch_id=membership.branch_id,
        payload=payload,
        requested_by=requested_by,
    )
    # Bumps the version column so a concurrent submission against a stale allowance conflicts.
    membership.updated_at = utc_now()
    await commit_unit(db)

    logger.info(
        "Freeze %s queued for membership %s (%d days, approval %s)",
        freeze.id,
        membership.id,
        days_frozen,
        approval.id,
    )
    await publish_event(
        DomainEvent(
            name=FREEZE_SUBMITTED,
            aggregate_type="membership_freeze",
            aggregate_id=freeze.id,
            branch_id=membership.branch_id,
            membership_id=membership.id,
            member_id=membership.member_id,
            data={"approval_request_id": approval.id, "days_frozen": days_frozen},
        )
    )
    return {
        "freeze": serialize_freeze(freeze),
        "approval_request": serialize_approval_request(approval),
        "remaining_days": allowance["remaining_days"] - days_frozen,
    }


async def quick_freeze_service(
    *,
    membership_id: str,
    days: int,
    reason: Optional[str],
    staff_id: Optional[str],
    db: AsyncSession,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Freeze immediately from today, bypassing the approval queue."""
    max_days = int(settings.QUICK_FREEZE_MAX_DAYS)
    if days < 1 or days > max_days:
        raise ValidationError(f"Freeze duration must be between 1 and {max_days} days", days=days)

    current_day = today or utc_today()
    membership = await load_membership(db, membership_id, for_update=True)
    membership_state.ensure_transition(membership, "frozen")

    allowance = await _committed_allowance(db, membership)
    validate_freeze_days(days, allowance["remaining_days"])
    fee = flat_freeze_fee(await _load_branch_settings(db, membership.branch_id))

    now = utc_now()
    freeze = MembershipFreezeHistory(
        id=str(uuid.uuid4()),
        membership_id=membership.id,
        start_date=current_day,
        end_date=current_day + timedelta(days=days - 1),
        days_frozen=days,
        reason=(reason or "").strip() or QUICK_FREEZE_DEFAULT_REASON,
        fee_charged=fee,
        status="approved",
        requested_by=staff_id,
        approved_by=staff_id,
        approved_at=now,
    )
    db.add(freeze)
    membership_state.apply_freeze(membership, freeze, current_day)
    await commit_unit(db)

    await publish_event(
        DomainEvent(
            name=MEMBERSHIP_FROZEN,
            aggregate_type="membership",
            aggregate_id=membership.id,
            branch_id=membership.branch_id,
            membership_id=membership.id,
            member_id=membership.member_id,
            data={"freeze_id": freeze.id, "source": "quick_freeze"},
        )
    )
    return {
        "membership": serialize_membership(membership),
        "freeze": serialize_freeze(freeze),
    }


async def resume_from_freeze_service(
    *,
    membership_id: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Unfreeze and push the end date out by every approved frozen day.

    A repeated call on a membership that is already active rewrites the same
    recomputed values, so retries converge on one result.
    """
    membership = await load_membership(db, membership_id, for_update=True)
    if membership.status not in ("frozen", "active"):
        membership_state.ensure_transition(membership, "active")

    result = await db.execute(
        select(MembershipFreezeHistory).where(
            MembershipFreezeHistory.membership_id == membership.id,
            MembershipFreezeHistory.status == "approved",
        )
    )
    frozen_days = total_frozen_days(result.scalars().all())
    new_end_date = resumed_end_date(membership.original_end_date, frozen_days)

    replayed = membership.status == "active"
    if replayed:
        membership.end_date = new_end_date
        membership.total_freeze_days_used = frozen_days
    else:
        membership_state.resume(
            membership,
            end_date=new_end_date,
            total_freeze_days_used=frozen_days,
        )
    await commit_unit(db)

    await publish_event(
        DomainEvent(
            name=MEMBERSHIP_RESUMED,
            aggregate_type="membership",
            aggregate_id=membership.id,
            branch_id=membership.branch_id,
            membership_id=membership.id,
            member_id=membership.member_id,
            data={"end_date": new_end_date.isoformat(), "total_freeze_days_used": frozen_days, "replayed": replayed},
        )
    )
    return {
        "membership": serialize_membership(membership),
        "new_end_date": new_end_date.isoformat(),
        "total_frozen_days": frozen_days,
        "replayed": replayed,
    }
