"""Billing reconciliation: write refund reversals into the ledger.

A reversal is a negative invoice, its single line item and a matching
negative payment. The three rows are staged together and committed by the
caller's unit of work, so either all exist or none do. Reversals are keyed by
``(reference_type, reference_id)``; replaying the same reference returns the
reversal that already exists.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.invoice import Invoice, InvoiceItem
from models.payment import Payment
from services.errors import InvalidRefundAmount, NotFound, ValidationError
from services.events import REVERSAL_RECORDED, DomainEvent, publish_event
from services.persistence import commit_unit, flush_unit, money, to_decimal, utc_now, utc_today

logger = logging.getLogger(__name__)

REFUND_REFERENCE_TYPE = "membership_refund"
APPROVED_REFUND_REFERENCE_TYPE = "approval_refund"
PAYMENT_METHODS = ("cash", "card", "bank_transfer", "wallet", "upi", "cheque", "other")


@dataclass(frozen=True)
class ReversalEntry:
    reference_type: str
    reference_id: str
    amount: Union[Decimal, float, int]
    reason: str
    method: str
    branch_id: str
    member_id: Optional[str] = None
    description: Optional[str] = None
    actor_id: Optional[str] = None


def _invoice_number(today: date) -> str:
    return f"{settings.REFUND_INVOICE_PREFIX}-{today:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def validate_payment_method(method: str) -> str:
    if method not in PAYMENT_METHODS:
        raise ValidationError(
            f"refund method must be one of {', '.join(PAYMENT_METHODS)}",
            method=method,
        )
    return method


def _validate(entry: ReversalEntry) -> Decimal:
    if not entry.reference_type or not entry.reference_id:
        raise ValidationError("Reversal reference_type and reference_id are required")
    amount = to_decimal(entry.amount)
    if amount <= 0:
        raise InvalidRefundAmount("Reversal amount must be greater than 0", amount=float(amount))
    validate_payment_method(entry.method)
    if not (entry.reason or "").strip():
        raise ValidationError("Reversal reason is required")
    return amount


async def find_reversal(db: AsyncSession, reference_type: str, reference_id: str) -> Optional[Invoice]:
    result = await db.execute(
        select(Invoice).where(
            Invoice.reference_type == reference_type,
            Invoice.reference_id == reference_id,
        )
    )
    return result.scalar_one_or_none()


async def _latest_member_invoice(db: AsyncSession, member_id: Optional[str]) -> Optional[Invoice]:
    if not member_id:
        return None
    result = await db.execute(
        select(Invoice)
        .where(Invoice.member_id == member_id, Invoice.reference_type.is_(None))
        .order_by(Invoice.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def write_reversal(
    db: AsyncSession,
    entry: ReversalEntry,
    *,
    today: Optional[date] = None,
) -> Tuple[str, bool]:
    """Stage a reversal in the caller's transaction.

    Returns ``(invoice_id, created)``; ``created`` is False when a reversal for
    the same reference already exists and nothing new was written.
    """
    amount = _validate(entry)
    existing = await find_reversal(db, entry.reference_type, entry.reference_id)
    if existing is not None:
        logger.info(
            "Reversal for %s:%s already recorded as %s",
            entry.reference_type,
            entry.reference_id,
            existing.id,
        )
        return existing.id, False

    now = utc_now()
    original = await _latest_member_invoice(db, entry.member_id)
    reason = entry.reason.strip()
    invoice = Invoice(
        id=str(uuid.uuid4()),
        branch_id=entry.branch_id,
        member_id=entry.member_id,
        invoice_number=_invoice_number(today or utc_today()),
        subtotal=-amount,
        total_amount=-amount,
        status="refunded",
        notes=(
            f"Refund for {entry.reference_type} {entry.reference_id}. "
            f"Original invoice: {original.invoice_number if original else 'N/A'}. Reason: {reason}"
        ),
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        refund_amount=amount,
        refund_reason=reason,
        refunded_at=now,
        refunded_by=entry.actor_id,
    )
    item = InvoiceItem(
        invoice_id=invoice.id,
        description=entry.description or f"Refund - {entry.reference_type}",
        quantity=1,
        unit_price=-amount,
        total_amount=-amount,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
    )
    payment = Payment(
        branch_id=entry.branch_id,
        member_id=entry.member_id,
        invoice_id=invoice.id,
        amount=-amount,
        payment_method=entry.method,
        status="completed",
        payment_date=now,
    )
    db.add_all([invoice, item, payment])
    await flush_unit(db)
    logger.info("Reversal %s staged for %s:%s (%s)", invoice.id, entry.reference_type, entry.reference_id, amount)
    return invoice.id, True


def serialize_reversal(invoice: Invoice, item: Optional[InvoiceItem], payment: Optional[Payment]) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "reference_type": invoice.reference_type,
        "reference_id": invoice.reference_id,
        "total_amount": money(invoice.total_amount),
        "refund_reason": invoice.refund_reason,
        "status": invoice.status,
        "item": (
            {
                "id": item.id,
                "description": item.description,
                "total_amount": money(item.total_amount),
            }
            if item
            else None
        ),
        "payment": (
            {
                "id": payment.id,
                "amount": money(payment.amount),
                "payment_method": payment.payment_method,
                "status": payment.status,
            }
            if payment
            else None
        ),
    }


async def get_reversal_service(*, reference_type: str, reference_id: str, db: AsyncSession) -> Dict[str, Any]:
    invoice = await find_reversal(db, reference_type, reference_id)
    if invoice is None:
        raise NotFound("Reversal not found", reference_type=reference_type, reference_id=reference_id)
    item_result = await db.execute(select(InvoiceItem).where(InvoiceItem.invoice_id == invoice.id))
    payment_result = await db.execute(select(Payment).where(Payment.invoice_id == invoice.id))
    return serialize_reversal(
        invoice,
        item_result.scalars().first(),
        payment_result.scalars().first(),
    )


async def apply_reversal_service(
    *,
    entry: ReversalEntry,
    db: AsyncSession,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Write a reversal as its own unit. Safe to call again with the same reference."""
    reversal_id, created = await write_reversal(db, entry, today=today)
    await commit_unit(db)
    if created:
        await publish_event(
            DomainEvent(
                name=REVERSAL_RECORDED,
                aggregate_type="invoice",
                aggregate_id=reversal_id,
                branch_id=entry.branch_id,
                member_id=entry.member_id,
                data={"reference_type": entry.reference_type, "reference_id": entry.reference_id},
            )
        )
    return {"reversal_id": reversal_id, "created": created}
