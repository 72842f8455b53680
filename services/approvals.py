"""Approval gateway: one envelope for every privileged request type.

Each approval type has a typed payload model; ``request_data`` stores the
payload snapshot so the queue can be rendered and decisions replayed without
re-joining source tables.

``decide_approval_service`` moves a request out of ``pending`` with a single
conditional UPDATE. Only the caller whose UPDATE matched runs the side-effect
handler, and the handler commits in the same transaction as the status write.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.approval_request import ApprovalRequest
from models.freeze_history import MembershipFreezeHistory
from models.membership_plan import MembershipPlan
from services import membership_state
from services.errors import (
    AlreadyReviewed,
    InsufficientAllowance,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from services.events import APPROVAL_DECIDED, APPROVAL_SUBMITTED, DomainEvent, publish_event
from services.persistence import commit_unit, load_member, load_membership, utc_now, utc_today
from services.reconciliation import APPROVED_REFUND_REFERENCE_TYPE, ReversalEntry, write_reversal

logger = logging.getLogger(__name__)

APPROVAL_STATUSES = ("pending", "approved", "rejected")


class FreezePayload(BaseModel):
    kind: Literal["membership_freeze"] = "membership_freeze"
    membership_id: str
    member_name: Optional[str] = None
    start_date: date
    end_date: date
    days_frozen: int = Field(ge=1)
    reason: Optional[str] = None
    fee_charged: float = 0


class TrainerChangePayload(BaseModel):
    kind: Literal["trainer_change"] = "trainer_change"
    member_id: str
    current_trainer_id: Optional[str] = None
    new_trainer_id: Optional[str] = None
    reason: Optional[str] = None


class RefundPayload(BaseModel):
    kind: Literal["refund"] = "refund"
    membership_id: str
    amount: float = Field(gt=0)
    reason: str = Field(min_length=1)
    refund_method: str = "cash"


class TransferPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["membership_transfer"] = "membership_transfer"
    membership_id: str
    to_member_id: Optional[str] = None
    reason: Optional[str] = None


class DiscountPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["discount"] = "discount"
    amount: Optional[float] = Field(default=None, ge=0)
    percent: Optional[float] = Field(default=None, ge=0, le=100)
    reason: Optional[str] = None


class ComplimentaryPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["complimentary"] = "complimentary"
    member_id: Optional[str] = None
    description: Optional[str] = None
    reason: Optional[str] = None


class ExpensePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["expense"] = "expense"
    amount: float = Field(ge=0)
    category: Optional[str] = None
    description: Optional[str] = None


class ContractPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["contract"] = "contract"
    contract_id: Optional[str] = None
    summary: Optional[str] = None


ApprovalPayload = Annotated[
    Union[
        FreezePayload,
        TrainerChangePayload,
        RefundPayload,
        TransferPayload,
        DiscountPayload,
        ComplimentaryPayload,
        ExpensePayload,
        ContractPayload,
    ],
    Field(discriminator="kind"),
]
_payload_adapter: TypeAdapter = TypeAdapter(ApprovalPayload)

APPROVAL_TYPES = (
    "membership_freeze",
    "trainer_change",
    "refund",
    "membership_transfer",
    "discount",
    "complimentary",
    "expense",
    "contract",
)


def parse_payload(approval_type: str, data: Dict[str, Any]) -> BaseModel:
    """Validate a raw payload against the variant registered for approval_type."""
    if approval_type not in APPROVAL_TYPES:
        raise ValidationError(f"Unknown approval type '{approval_type}'", approval_type=approval_type)
    try:
        return _payload_adapter.validate_python({**(data or {}), "kind": approval_type})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid payload for {approval_type}",
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()],
        ) from exc


def serialize_approval_request(row: ApprovalRequest) -> Dict[str, Any]:
    return {
        "id": row.id,
        "branch_id": row.branch_id,
        "approval_type": row.approval_type,
        "reference_type": row.reference_type,
        "reference_id": row.reference_id,
        "request_data": row.request_data,
        "status": row.status,
        "requested_by": row.requested_by,
        "reviewed_by": row.reviewed_by,
        "reviewed_at": row.reviewed_at.isoformat() if row.reviewed_at else None,
        "review_notes": row.review_notes,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def create_approval_request(
    db: AsyncSession,
    *,
    approval_type: str,
    reference_type: str,
    reference_id: str,
    branch_id: Optional[str],
    payload: BaseModel,
    requested_by: Optional[str] = None,
) -> ApprovalRequest:
    """Stage an approval request in the caller's unit of work (no commit)."""
    if getattr(payload, "kind", None) != approval_type:
        raise ValidationError(
            f"Payload kind does not match approval type '{approval_type}'",
            approval_type=approval_type,
        )
    row = ApprovalRequest(
        branch_id=branch_id,
        approval_type=approval_type,
        reference_type=reference_type,
        reference_id=reference_id,
        request_data=payload.model_dump(mode="json"),
        status="pending",
        requested_by=requested_by,
        created_at=utc_now(),
    )
    db.add(row)
    return row


async def _pending_request_exists(db: AsyncSession, approval_type: str, reference_id: str) -> bool:
    result = await db.execute(
        select(ApprovalRequest.id).where(
            ApprovalRequest.approval_type == approval_type,
            ApprovalRequest.reference_id == reference_id,
            ApprovalRequest.status == "pending",
        )
    )
    return result.first() is not None


async def submit_approval_service(
    *,
    approval_type: str,
    reference_type: str,
    reference_id: str,
    branch_id: Optional[str],
    payload: Dict[str, Any],
    requested_by: Optional[str],
    db: AsyncSession,
) -> Dict[str, Any]:
    """Queue a non-freeze request. Freezes go through submit_freeze_service."""
    if approval_type == "membership_freeze":
        raise ValidationError("Freeze requests must be submitted through the freeze endpoint")
    typed_payload = parse_payload(approval_type, payload)
    if await _pending_request_exists(db, approval_type, reference_id):
        raise ValidationError(
            "An approval request is already pending for this record",
            approval_type=approval_type,
            reference_id=reference_id,
        )

    row = create_approval_request(
        db,
        approval_type=approval_type,
        reference_type=reference_type,
        reference_id=reference_id,
        branch_id=branch_id,
        payload=typed_payload,
        requested_by=requested_by,
    )
    await commit_unit(db)
    await publish_event(
        DomainEvent(
            name=APPROVAL_SUBMITTED,
            aggregate_type="approval_request",
            aggregate_id=row.id,
            branch_id=branch_id,
            data={"approval_type": approval_type, "reference_type": reference_type, "reference_id": reference_id},
        )
    )
    return serialize_approval_request(row)


@dataclass
class DecisionContext:
    reviewer_id: str
    decided_at: datetime
    today: date
    membership_id: Optional[str] = None
    member_id: Optional[str] = None


@dataclass
class DecisionResult:
    request_id: str
    approval_type: str
    status: str
    reviewed_by: str
    reviewed_at: str
    review_notes: Optional[str] = None
    effects: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[AsyncSession, ApprovalRequest, Any, DecisionContext], Awaitable[Dict[str, Any]]]

_APPROVE_HANDLERS: Dict[str, Handler] = {}
_REJECT_HANDLERS: Dict[str, Handler] = {}


def approval_handler(approval_type: str, *, on: str) -> Callable[[Handler], Handler]:
    """Register the side effect run when a request of approval_type is decided."""
    registry = _APPROVE_HANDLERS if on == "approve" else _REJECT_HANDLERS

    def _register(fn: Handler) -> Handler:
        registry[approval_type] = fn
        return fn

    return _register


async def _no_side_effect(db, request, payload, ctx) -> Dict[str, Any]:
    return {}


async def _load_pending_freeze(db: AsyncSession, freeze_id: str) -> MembershipFreezeHistory:
    freeze = await db.get(MembershipFreezeHistory, freeze_id, populate_existing=True)
    if freeze is None:
        raise NotFound("Freeze record not found", freeze_id=freeze_id)
    if freeze.status != "pending":
        raise InvalidTransition(
            f"Freeze record is already {freeze.status}",
            current=freeze.status,
        )
    return freeze


@approval_handler("membership_freeze", on="approve")
async def _approve_freeze(db: AsyncSession, request: ApprovalRequest, payload: FreezePayload, ctx: DecisionContext):
    freeze = await _load_pending_freeze(db, request.reference_id)
    membership = await load_membership(db, freeze.membership_id, for_update=True)
    ctx.membership_id = membership.id
    ctx.member_id = membership.member_id
    if membership.status not in ("active", "frozen"):
        raise InvalidTransition(
            f"Cannot approve a freeze for a membership in status '{membership.status}'",
            current=membership.status,
            target="frozen",
        )

    plan = await db.get(MembershipPlan, membership.plan_id)
    max_days = settings.DEFAULT_MAX_FREEZE_DAYS
    if plan is not None and plan.max_freeze_days is not None:
        max_days = plan.max_freeze_days
    approved_days = await db.execute(
        select(func.coalesce(func.sum(MembershipFreezeHistory.days_frozen), 0)).where(
            MembershipFreezeHistory.membership_id == membership.id,
            MembershipFreezeHistory.status == "approved",
        )
    )
    used_days = max(int(approved_days.scalar() or 0), int(membership.total_freeze_days_used or 0))
    if used_days + int(freeze.days_frozen) > int(max_days):
        raise InsufficientAllowance(
            "Approving this freeze would exceed the plan's freeze allowance",
            requested_days=int(freeze.days_frozen),
            max_freeze_days=int(max_days),
        )

    freeze.status = "approved"
    freeze.approved_by = ctx.reviewer_id
    freeze.approved_at = ctx.decided_at

    applied = False
    if membership.status == "active":
        applied = membership_state.apply_freeze(membership, freeze, ctx.today)
    # Touch the aggregate so concurrent writers on this membership conflict.
    membership.updated_at = ctx.decided_at
    return {
        "freeze_id": freeze.id,
        "freeze_status": freeze.status,
        "membership_status": membership.status,
        "freeze_applied": applied,
    }


@approval_handler("membership_freeze", on="reject")
async def _reject_freeze(db: AsyncSession, request: ApprovalRequest, payload: FreezePayload, ctx: DecisionContext):
    freeze = await _load_pending_freeze(db, request.reference_id)
    ctx.membership_id = freeze.membership_id
    freeze.status = "rejected"
    return {"freeze_id": freeze.id, "freeze_status": freeze.status}


@approval_handler("trainer_change", on="approve")
async def _approve_trainer_change(
    db: AsyncSession,
    request: ApprovalRequest,
    payload: TrainerChangePayload,
    ctx: DecisionContext,
):
    member = await load_member(db, payload.member_id, for_update=True)
    if member is None:
        raise NotFound("Member not found", member_id=payload.member_id)
    ctx.member_id = member.id
    if not payload.new_trainer_id:
        logger.info("Trainer change %s approved without a new trainer; member unchanged", request.id)
        return {"member_id": member.id, "assigned_trainer_id": member.assigned_trainer_id}
    member.assigned_trainer_id = payload.new_trainer_id
    return {"member_id": member.id, "assigned_trainer_id": member.assigned_trainer_id}


@approval_handler("refund", on="approve")
async def _approve_refund(db: AsyncSession, request: ApprovalRequest, payload: RefundPayload, ctx: DecisionContext):
    membership = await load_membership(db, payload.membership_id, for_update=True)
    ctx.membership_id = membership.id
    ctx.member_id = membership.member_id
    reversal_id, created = await write_reversal(
        db,
        ReversalEntry(
            reference_type=APPROVED_REFUND_REFERENCE_TYPE,
            reference_id=request.id,
            amount=payload.amount,
            reason=payload.reason,
            method=payload.refund_method,
            branch_id=membership.branch_id,
            member_id=membership.member_id,
            actor_id=ctx.reviewer_id,
        ),
        today=ctx.today,
    )
    return {"reversal_id": reversal_id, "reversal_created": created}


for _envelope_only in ("membership_transfer", "discount", "complimentary", "expense", "contract"):
    approval_handler(_envelope_only, on="approve")(_no_side_effect)
for _approval_type in APPROVAL_TYPES:
    _REJECT_HANDLERS.setdefault(_approval_type, _no_side_effect)


async def decide_approval_service(
    *,
    request_id: str,
    approved: bool,
    reviewer_id: str,
    notes: Optional[str],
    db: AsyncSession,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Approve or reject a pending request exactly once."""
    if not reviewer_id:
        raise ValidationError("reviewer_id is required")

    decided_at = utc_now()
    status = "approved" if approved else "rejected"
    review_notes = (notes or "").strip() or None

    swap = await db.execute(
        update(ApprovalRequest)
        .where(ApprovalRequest.id == request_id, ApprovalRequest.status == "pending")
        .values(status=status, reviewed_by=reviewer_id, reviewed_at=decided_at, review_notes=review_notes)
        .execution_options(synchronize_session=False)
    )
    if swap.rowcount != 1:
        await db.rollback()
        existing = await db.get(ApprovalRequest, request_id, populate_existing=True)
        if existing is None:
            raise NotFound("Approval request not found", request_id=request_id)
        raise AlreadyReviewed(
            f"Request was already {existing.status}",
            request_id=request_id,
            status=existing.status,
            reviewed_by=existing.reviewed_by,
        )

    request = await db.get(ApprovalRequest, request_id, populate_existing=True)
    ctx = DecisionContext(reviewer_id=reviewer_id, decided_at=decided_at, today=today or utc_today())
    try:
        payload = parse_payload(request.approval_type, request.request_data)
        registry = _APPROVE_HANDLERS if approved else _REJECT_HANDLERS
        handler = registry.get(request.approval_type, _no_side_effect)
        effects = await handler(db, request, payload, ctx)
    except Exception:
        await db.rollback()
        raise
    await commit_unit(db)

    logger.info("Approval %s (%s) %s by %s", request.id, request.approval_type, status, reviewer_id)
    await publish_event(
        DomainEvent(
            name=APPROVAL_DECIDED,
            aggregate_type="approval_request",
            aggregate_id=request.id,
            branch_id=request.branch_id,
            membership_id=ctx.membership_id,
            member_id=ctx.member_id,
            data={"approval_type": request.approval_type, "status": status, **effects},
        )
    )
    return asdict(
        DecisionResult(
            request_id=request.id,
            approval_type=request.approval_type,
            status=status,
            reviewed_by=reviewer_id,
            reviewed_at=decided_at.isoformat(),
            review_notes=review_notes,
            effects=effects,
        )
    )


async def list_approval_requests_service(
    *,
    db: AsyncSession,
    branch_id: Optional[str] = None,
    status: Optional[str] = None,
    approval_type: Optional[str] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    if status and status not in APPROVAL_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(APPROVAL_STATUSES)}")
    if approval_type and approval_type not in APPROVAL_TYPES:
        raise ValidationError(f"Unknown approval type '{approval_type}'")

    stmt = select(ApprovalRequest)
    if branch_id:
        stmt = stmt.where(ApprovalRequest.branch_id == branch_id)
    if status:
        stmt = stmt.where(ApprovalRequest.status == status)
    if approval_type:
        stmt = stmt.where(ApprovalRequest.approval_type == approval_type)
    result = await db.execute(
        stmt.order_by(ApprovalRequest.created_at.desc()).limit(max(1, min(int(limit), 100)))
    )
    rows: List[ApprovalRequest] = list(result.scalars().all())
    return {
        "items": [serialize_approval_request(row) for row in rows],
        "count": len(rows),
    }


async def approval_stats_service(
    *,
    db: AsyncSession,
    branch_id: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, int]:
    current_day = today or utc_today()
    day_start = datetime.combine(current_day, datetime.min.time()).replace(tzinfo=utc_now().tzinfo)
    day_end = day_start + timedelta(days=1)

    async def _count(*conditions) -> int:
        stmt = select(func.count(ApprovalRequest.id)).where(*conditions)
        if branch_id:
            stmt = stmt.where(ApprovalRequest.branch_id == branch_id)
        result = await db.execute(stmt)
        return int(result.scalar() or 0)

    return {
        "pending": await _count(ApprovalRequest.status == "pending"),
        "approved_today": await _count(
            ApprovalRequest.status == "approved",
            ApprovalRequest.reviewed_at >= day_start,
            ApprovalRequest.reviewed_at < day_end,
        ),
        "rejected_today": await _count(
            ApprovalRequest.status == "rejected",
            ApprovalRequest.reviewed_at >= day_start,
            ApprovalRequest.reviewed_at < day_end,
        ),
    }
