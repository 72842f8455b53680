"""Membership cancellation and refund calculation."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.membership import Membership
from models.membership_plan import MembershipPlan
from services import membership_state
from services.errors import InvalidRefundAmount, ValidationError
from services.events import MEMBERSHIP_CANCELLED, DomainEvent, publish_event
from services.persistence import commit_unit, flush_unit, load_member, load_membership, money, to_decimal, utc_today
from services.reconciliation import REFUND_REFERENCE_TYPE, ReversalEntry, validate_payment_method, write_reversal

logger = logging.getLogger(__name__)

REFUND_POLICIES = ("full", "prorated", "none", "custom")

Amount = Union[Decimal, float, int]


@dataclass
class RefundQuote:
    policy: str
    price_paid: Decimal
    total_days: int
    days_elapsed: int
    days_remaining: int
    daily_rate: Decimal
    prorated_amount: Decimal
    refund_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("price_paid", "daily_rate", "prorated_amount", "refund_amount"):
            payload[key] = money(payload[key])
        return payload


def round_currency(value: Decimal) -> Decimal:
    """Round half up to whole currency units."""
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def prorated_refund(price_paid: Amount, total_days: int, days_remaining: int) -> Decimal:
    if total_days <= 0:
        return Decimal("0")
    price = to_decimal(price_paid)
    return round_currency(price / Decimal(total_days) * Decimal(days_remaining))


def compute_refund(
    *,
    price_paid: Amount,
    start_date: date,
    end_date: date,
    today: date,
    policy: str,
    custom_amount: Optional[Amount] = None,
) -> RefundQuote:
    if policy not in REFUND_POLICIES:
        raise ValidationError(
            f"refund policy must be one of {', '.join(REFUND_POLICIES)}",
            policy=policy,
        )
    price = to_decimal(price_paid)
    total_days = (end_date - start_date).days
    days_elapsed = max(0, (today - start_date).days)
    days_remaining = max(0, total_days - days_elapsed)
    prorated = prorated_refund(price, total_days, days_remaining)
    daily_rate = price / Decimal(total_days) if total_days > 0 else Decimal("0")

    if policy == "full":
        refund = price
    elif policy == "prorated":
        refund = prorated
    elif policy == "custom":
        if custom_amount is None:
            raise InvalidRefundAmount("A custom refund requires an amount")
        refund = to_decimal(custom_amount)
        if refund < 0 or refund > price:
            raise InvalidRefundAmount(
                f"Custom refund must be between 0 and {money(price)}",
                amount=float(refund),
                max_amount=money(price),
            )
    else:
        refund = Decimal("0")

    return RefundQuote(
        policy=policy,
        price_paid=price,
        total_days=total_days,
        days_elapsed=days_elapsed,
        days_remaining=days_remaining,
        daily_rate=daily_rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        prorated_amount=prorated,
        refund_amount=refund,
    )


async def get_refund_quote_service(
    *,
    membership_id: str,
    policy: str,
    db: AsyncSession,
    custom_amount: Optional[Amount] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    membership = await load_membership(db, membership_id)
    quote = compute_refund(
        price_paid=membership.price_paid,
        start_date=membership.start_date,
        end_date=membership.end_date,
        today=today or utc_today(),
        policy=policy,
        custom_amount=custom_amount,
    )
    return {
        "membership_id": membership.id,
        "status": membership.status,
        "cancellable": membership.status in membership_state.CANCELLABLE_STATUSES,
        **quote.to_dict(),
    }


async def _has_other_active_membership(db: AsyncSession, member_id: str, membership_id: str) -> bool:
    result = await db.execute(
        select(Membership.id)
        .where(
            Membership.member_id == member_id,
            Membership.status == "active",
            Membership.id != membership_id,
        )
        .limit(1)
    )
    return result.first() is not None


async def _plan_name(db: AsyncSession, plan_id: str) -> str:
    result = await db.execute(select(MembershipPlan.name).where(MembershipPlan.id == plan_id))
    return result.scalar_one_or_none() or "Membership"


async def cancel_membership_service(
    *,
    membership_id: str,
    reason: str,
    refund_policy: str,
    refund_method: str,
    cancelled_by: Optional[str],
    db: AsyncSession,
    custom_amount: Optional[Amount] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Cancel a membership, record any refund reversal and re-derive member status.

    Everything below commits as one unit; any failure leaves the membership,
    ledger and member untouched.
    """
    cancellation_reason = (reason or "").strip()
    if not cancellation_reason:
        raise ValidationError("Please provide a cancellation reason")

    current_day = today or utc_today()
    membership = await load_membership(db, membership_id, for_update=True)
    try:
        membership_state.ensure_transition(membership, "cancelled")

        quote = compute_refund(
            price_paid=membership.price_paid,
            start_date=membership.start_date,
            end_date=membership.end_date,
            today=current_day,
            policy=refund_policy,
            custom_amount=custom_amount,
        )
        refund_amount = quote.refund_amount
        if refund_amount > 0:
            validate_payment_method(refund_method)

        membership_state.cancel(
            membership,
            cancelled_by=cancelled_by,
            reason=cancellation_reason,
            refund_amount=refund_amount,
        )
        await flush_unit(db)

        reversal_id = None
        if refund_amount > 0:
            plan_name = await _plan_name(db, membership.plan_id)
            reversal_id, _ = await write_reversal(
                db,
                ReversalEntry(
                    reference_type=REFUND_REFERENCE_TYPE,
                    reference_id=membership.id,
                    amount=refund_amount,
                    reason=cancellation_reason,
                    method=refund_method,
                    branch_id=membership.branch_id,
                    member_id=membership.member_id,
                    description=f"Refund - {plan_name} ({quote.days_remaining} days remaining)",
                    actor_id=cancelled_by,
                ),
                today=current_day,
            )

        member_status = None
        member = await load_member(db, membership.member_id, for_update=True)
        if member is not None:
            if not await _has_other_active_membership(db, membership.member_id, membership.id):
                member.status = "inactive"
            member_status = member.status
    except Exception:
        await db.rollback()
        raise

    await commit_unit(db)

    logger.info(
        "Membership %s cancelled by %s (policy=%s refund=%s)",
        membership.id,
        cancelled_by,
        refund_policy,
        refund_amount,
    )
    await publish_event(
        DomainEvent(
            name=MEMBERSHIP_CANCELLED,
            aggregate_type="membership",
            aggregate_id=membership.id,
            branch_id=membership.branch_id,
            membership_id=membership.id,
            member_id=membership.member_id,
            data={
                "refund_amount": money(refund_amount),
                "reversal_id": reversal_id,
                "member_status": member_status,
            },
        )
    )
    return {
        "membership_id": membership.id,
        "status": membership.status,
        "refund": quote.to_dict(),
        "refund_amount": money(refund_amount),
        "reversal_id": reversal_id,
        "member_status": member_status,
    }
