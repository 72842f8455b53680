"""Membership state machine.

The only module allowed to write ``Membership.status``. Transition helpers
mutate the ORM object in the caller's unit of work and never commit; the
sweep opens and commits its own units.

    pending -> active <-> frozen
    {active, frozen} -> cancelled   (terminal)
    active -> expired               (terminal)
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.freeze_history import MembershipFreezeHistory
from models.membership import Membership
from services.errors import EngineError, InvalidTransition, NotCancellable
from services.events import (
    MEMBERSHIP_ACTIVATED,
    MEMBERSHIP_EXPIRED,
    MEMBERSHIP_FROZEN,
    DomainEvent,
    publish_event,
)
from services.persistence import commit_unit, load_membership, utc_now, utc_today

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"active"}),
    "active": frozenset({"frozen", "cancelled", "expired"}),
    "frozen": frozenset({"active", "cancelled"}),
    "expired": frozenset(),
    "cancelled": frozenset(),
}
CANCELLABLE_STATUSES = ("active", "frozen")


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(membership: Membership, target: str) -> None:
    current = membership.status
    if can_transition(current, target):
        return
    if target == "cancelled":
        raise NotCancellable(
            f"Membership in status '{current}' cannot be cancelled",
            current=current,
            target=target,
        )
    raise InvalidTransition(
        f"Membership cannot move from '{current}' to '{target}'",
        current=current,
        target=target,
    )


def _set_status(membership: Membership, target: str) -> str:
    ensure_transition(membership, target)
    previous = membership.status
    membership.status = target
    logger.info("Membership %s: %s -> %s", membership.id, previous, target)
    return previous


def activate(membership: Membership) -> None:
    _set_status(membership, "active")


def freeze_is_due(freeze: MembershipFreezeHistory, today: date) -> bool:
    return freeze.status == "approved" and freeze.applied_at is None and freeze.start_date <= today


def apply_freeze(membership: Membership, freeze: MembershipFreezeHistory, today: date) -> bool:
    """Freeze for an approved window. Returns False while the window is still in the future."""
    if freeze.membership_id != membership.id:
        raise InvalidTransition("Freeze window belongs to a different membership")
    if freeze.status != "approved":
        raise InvalidTransition(
            "Only approved freeze windows can be applied",
            current=membership.status,
            target="frozen",
        )
    if not freeze_is_due(freeze, today):
        return False
    _set_status(membership, "frozen")
    freeze.applied_at = utc_now()
    return True


def resume(membership: Membership, *, end_date: date, total_freeze_days_used: int) -> None:
    if end_date < membership.start_date:
        raise InvalidTransition("Resumed end date precedes the start date")
    _set_status(membership, "active")
    membership.end_date = end_date
    membership.total_freeze_days_used = total_freeze_days_used


def cancel(
    membership: Membership,
    *,
    cancelled_by: Optional[str],
    reason: str,
    refund_amount: Decimal,
    cancelled_at: Optional[datetime] = None,
) -> None:
    _set_status(membership, "cancelled")
    membership.cancelled_at = cancelled_at or utc_now()
    membership.cancelled_by = cancelled_by
    membership.cancellation_reason = reason
    membership.refund_amount = refund_amount


def expire(membership: Membership, today: date) -> bool:
    if membership.status != "active" or membership.end_date >= today:
        return False
    _set_status(membership, "expired")
    return True


async def activate_membership_service(
    *,
    membership_id: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Payment-capture hook: pending -> active."""
    membership = await load_membership(db, membership_id, for_update=True)
    activate(membership)
    await commit_unit(db)
    await publish_event(
        DomainEvent(
            name=MEMBERSHIP_ACTIVATED,
            aggregate_type="membership",
            aggregate_id=membership.id,
            branch_id=membership.branch_id,
            membership_id=membership.id,
            member_id=membership.member_id,
        )
    )
    return {"membership_id": membership.id, "status": membership.status}


async def _due_freeze_windows(session: AsyncSession, today: date) -> List[Tuple[str, str]]:
    result = await session.execute(
        select(MembershipFreezeHistory.id, MembershipFreezeHistory.membership_id)
        .join(Membership, Membership.id == MembershipFreezeHistory.membership_id)
        .where(
            Membership.status == "active",
            MembershipFreezeHistory.status == "approved",
            MembershipFreezeHistory.start_date <= today,
            MembershipFreezeHistory.applied_at.is_(None),
            MembershipFreezeHistory.end_date >= today,
        )
        .order_by(MembershipFreezeHistory.start_date)
    )
    return [(str(freeze_id), str(membership_id)) for freeze_id, membership_id in result.all()]


async def _lapsed_membership_ids(session: AsyncSession, today: date) -> List[str]:
    result = await session.execute(
        select(Membership.id).where(
            Membership.status == "active",
            Membership.end_date < today,
        )
    )
    return [str(membership_id) for membership_id in result.scalars().all()]


async def run_membership_sweep(
    db: Optional[AsyncSession] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Freeze memberships whose approved window has started and expire lapsed ones.

    Each membership is its own unit: one failing row does not block the rest.
    """
    current_day = today or utc_today()
    frozen: List[str] = []
    expired: List[str] = []
    errors: List[str] = []

    async def _run_with_session(session: AsyncSession) -> None:
        due_windows = await _due_freeze_windows(session, current_day)
        lapsed_ids = await _lapsed_membership_ids(session, current_day)

        for freeze_id, membership_id in due_windows:
            if membership_id in frozen:
                continue
            try:
                membership = await load_membership(session, membership_id, for_update=True)
                window = await session.get(MembershipFreezeHistory, freeze_id, populate_existing=True)
                if membership.status != "active" or window is None or not apply_freeze(membership, window, current_day):
                    await session.commit()
                    continue
                event = DomainEvent(
                    name=MEMBERSHIP_FROZEN,
                    aggregate_type="membership",
                    aggregate_id=membership_id,
                    branch_id=membership.branch_id,
                    membership_id=membership_id,
                    member_id=membership.member_id,
                    data={"freeze_id": freeze_id, "source": "sweep"},
                )
                await commit_unit(session)
            except EngineError as exc:
                await session.rollback()
                errors.append(f"{membership_id}:{exc}")
                continue
            frozen.append(membership_id)
            await publish_event(event)

        for membership_id in lapsed_ids:
            if membership_id in frozen:
                continue
            try:
                membership = await load_membership(session, membership_id, for_update=True)
                if not expire(membership, current_day):
                    await session.commit()
                    continue
                event = DomainEvent(
                    name=MEMBERSHIP_EXPIRED,
                    aggregate_type="membership",
                    aggregate_id=membership_id,
                    branch_id=membership.branch_id,
                    membership_id=membership_id,
                    member_id=membership.member_id,
                )
                await commit_unit(session)
            except EngineError as exc:
                await session.rollback()
                errors.append(f"{membership_id}:{exc}")
                continue
            expired.append(membership_id)
            await publish_event(event)

    if db is not None:
        await _run_with_session(db)
    else:
        async with async_session_maker() as session:
            await _run_with_session(session)

    if frozen or expired:
        logger.info("Membership sweep %s: frozen=%d expired=%d", current_day, len(frozen), len(expired))

    return {
        "date": current_day.isoformat(),
        "frozen": frozen,
        "expired": expired,
        "errors": errors[:20],
    }
