import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from models.approval_request import ApprovalRequest
from models.freeze_history import MembershipFreezeHistory
from models.invoice import Invoice
from models.member import Member
from models.membership import Membership
from services.approvals import (
    FreezePayload,
    TrainerChangePayload,
    approval_stats_service,
    decide_approval_service,
    list_approval_requests_service,
    parse_payload,
    submit_approval_service,
)
from services.cancellation import cancel_membership_service
from services.errors import AlreadyReviewed, InvalidTransition, NotFound, ValidationError
from services.freeze import get_freeze_allowance_service, submit_freeze_service
from services.membership_state import run_membership_sweep


async def _submit_freeze(session_maker, membership_id, start_date, end_date, today):
    async with session_maker() as session:
        return await submit_freeze_service(
            membership_id=membership_id,
            start_date=start_date,
            end_date=end_date,
            reason="Travel",
            requested_by="staff-1",
            db=session,
            today=today,
        )


def test_parse_payload_returns_typed_variants():
    freeze = parse_payload(
        "membership_freeze",
        {"membership_id": "m-1", "start_date": "2024-01-11", "end_date": "2024-01-15", "days_frozen": 5},
    )
    trainer = parse_payload("trainer_change", {"member_id": "member-1", "new_trainer_id": "trainer-2"})
    assert isinstance(freeze, FreezePayload)
    assert freeze.start_date == date(2024, 1, 11)
    assert isinstance(trainer, TrainerChangePayload)


def test_parse_payload_rejects_unknown_types_and_bad_payloads():
    with pytest.raises(ValidationError):
        parse_payload("gift_card", {})
    with pytest.raises(ValidationError) as exc_info:
        parse_payload("refund", {"membership_id": "m-1", "amount": -10, "reason": "x"})
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail["errors"]


@pytest.mark.asyncio
async def test_decision_is_applied_exactly_once(session_maker, seed_membership, recorded_events):
    ids = await seed_membership()
    submitted = await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 11), date(2024, 1, 15), date(2024, 1, 10))
    request_id = submitted["approval_request"]["id"]

    async with session_maker() as stale_session:
        stale = await stale_session.get(ApprovalRequest, request_id)
        assert stale.status == "pending"

        async with session_maker() as session:
            first = await decide_approval_service(
                request_id=request_id,
                approved=True,
                reviewer_id="manager-1",
                notes=None,
                db=session,
                today=date(2024, 1, 11),
            )
        assert first["status"] == "approved"

        with pytest.raises(AlreadyReviewed) as exc_info:
            await decide_approval_service(
                request_id=request_id,
                approved=False,
                reviewer_id="manager-2",
                notes="too late",
                db=stale_session,
                today=date(2024, 1, 11),
            )
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail["status"] == "approved"

    async with session_maker() as session:
        row = await session.get(ApprovalRequest, request_id)
        freezes = (await session.execute(select(MembershipFreezeHistory))).scalars().all()
    assert row.status == "approved"
    assert row.reviewed_by == "manager-1"
    assert [freeze.status for freeze in freezes] == ["approved"]
    assert [event.name for event in recorded_events] == ["freeze.submitted", "approval.decided"]


@pytest.mark.asyncio
async def test_concurrent_reviewers_decide_once(session_maker, seed_membership, recorded_events):
    ids = await seed_membership()
    submitted = await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 11), date(2024, 1, 15), date(2024, 1, 10))
    request_id = submitted["approval_request"]["id"]

    async def decide_as(reviewer_id):
        async with session_maker() as session:
            return await decide_approval_service(
                request_id=request_id,
                approved=True,
                reviewer_id=reviewer_id,
                notes=None,
                db=session,
                today=date(2024, 1, 11),
            )

    outcomes = await asyncio.gather(decide_as("manager-1"), decide_as("manager-2"), return_exceptions=True)
    decided = [outcome for outcome in outcomes if isinstance(outcome, dict)]
    refused = [outcome for outcome in outcomes if isinstance(outcome, AlreadyReviewed)]
    assert len(decided) == 1
    assert len(refused) == 1
    assert refused[0].detail["reviewed_by"] == decided[0]["reviewed_by"]

    async with session_maker() as session:
        row = await session.get(ApprovalRequest, request_id)
        freezes = (await session.execute(select(MembershipFreezeHistory))).scalars().all()
        membership = await session.get(Membership, ids["membership_id"])
    assert row.reviewed_by == decided[0]["reviewed_by"]
    assert [(freeze.status, freeze.approved_by) for freeze in freezes] == [("approved", decided[0]["reviewed_by"])]
    assert membership.status == "frozen"
    assert [event.name for event in recorded_events].count("approval.decided") == 1


@pytest.mark.asyncio
async def test_rejection_releases_reserved_days(session_maker, seed_membership):
    ids = await seed_membership()
    submitted = await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 11), date(2024, 1, 20), date(2024, 1, 10))

    async with session_maker() as session:
        decision = await decide_approval_service(
            request_id=submitted["approval_request"]["id"],
            approved=False,
            reviewer_id="manager-1",
            notes="Not eligible",
            db=session,
            today=date(2024, 1, 11),
        )
    assert decision["status"] == "rejected"
    assert decision["review_notes"] == "Not eligible"
    assert decision["effects"]["freeze_status"] == "rejected"

    async with session_maker() as session:
        membership = await session.get(Membership, ids["membership_id"])
        allowance = await get_freeze_allowance_service(membership_id=ids["membership_id"], db=session)
    assert membership.status == "active"
    assert membership.end_date == date(2024, 1, 31)
    assert allowance["remaining_days"] == 30


@pytest.mark.asyncio
async def test_future_dated_freeze_waits_for_the_sweep(session_maker, seed_membership, recorded_events):
    ids = await seed_membership()
    submitted = await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 20), date(2024, 1, 24), date(2024, 1, 5))

    async with session_maker() as session:
        decision = await decide_approval_service(
            request_id=submitted["approval_request"]["id"],
            approved=True,
            reviewer_id="manager-1",
            notes=None,
            db=session,
            today=date(2024, 1, 6),
        )
    assert decision["effects"]["freeze_applied"] is False
    assert decision["effects"]["membership_status"] == "active"

    async with session_maker() as session:
        early = await run_membership_sweep(db=session, today=date(2024, 1, 19))
        due = await run_membership_sweep(db=session, today=date(2024, 1, 20))
        again = await run_membership_sweep(db=session, today=date(2024, 1, 21))
        membership = await session.get(Membership, ids["membership_id"])

    assert early["frozen"] == []
    assert due["frozen"] == [ids["membership_id"]]
    assert again["frozen"] == []
    assert membership.status == "frozen"
    assert [event.name for event in recorded_events].count("membership.frozen") == 1


@pytest.mark.asyncio
async def test_failed_side_effect_keeps_request_pending(session_maker, seed_membership):
    ids = await seed_membership()
    submitted = await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 15), date(2024, 1, 16), date(2024, 1, 10))

    async with session_maker() as session:
        await cancel_membership_service(
            membership_id=ids["membership_id"],
            reason="Relocating",
            refund_policy="none",
            refund_method="cash",
            cancelled_by="staff-1",
            db=session,
            today=date(2024, 1, 11),
        )

    async with session_maker() as session:
        with pytest.raises(InvalidTransition):
            await decide_approval_service(
                request_id=submitted["approval_request"]["id"],
                approved=True,
                reviewer_id="manager-1",
                notes=None,
                db=session,
                today=date(2024, 1, 12),
            )

    async with session_maker() as session:
        row = await session.get(ApprovalRequest, submitted["approval_request"]["id"])
        freeze = await session.get(MembershipFreezeHistory, submitted["freeze"]["id"])
    assert row.status == "pending"
    assert row.reviewed_by is None
    assert freeze.status == "pending"


@pytest.mark.asyncio
async def test_unknown_request_is_not_found(session_maker):
    async with session_maker() as session:
        with pytest.raises(NotFound):
            await decide_approval_service(
                request_id="missing",
                approved=True,
                reviewer_id="manager-1",
                notes=None,
                db=session,
            )


@pytest.mark.asyncio
async def test_trainer_change_approval_reassigns_member(session_maker, seed_membership):
    ids = await seed_membership()

    async with session_maker() as session:
        submitted = await submit_approval_service(
            approval_type="trainer_change",
            reference_type="member",
            reference_id=ids["member_id"],
            branch_id=ids["branch_id"],
            payload={"member_id": ids["member_id"], "new_trainer_id": "trainer-9", "reason": "Schedule"},
            requested_by="staff-1",
            db=session,
        )
    assert submitted["status"] == "pending"
    assert submitted["request_data"]["kind"] == "trainer_change"

    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await submit_approval_service(
                approval_type="trainer_change",
                reference_type="member",
                reference_id=ids["member_id"],
                branch_id=ids["branch_id"],
                payload={"member_id": ids["member_id"], "new_trainer_id": "trainer-3"},
                requested_by="staff-2",
                db=session,
            )

    async with session_maker() as session:
        await decide_approval_service(
            request_id=submitted["id"],
            approved=True,
            reviewer_id="manager-1",
            notes=None,
            db=session,
        )

    async with session_maker() as session:
        member = await session.get(Member, ids["member_id"])
    assert member.assigned_trainer_id == "trainer-9"


@pytest.mark.asyncio
async def test_refund_approval_writes_a_reversal(session_maker, seed_membership):
    ids = await seed_membership()

    async with session_maker() as session:
        submitted = await submit_approval_service(
            approval_type="refund",
            reference_type="membership",
            reference_id=ids["membership_id"],
            branch_id=ids["branch_id"],
            payload={"membership_id": ids["membership_id"], "amount": 500, "reason": "Goodwill"},
            requested_by="staff-1",
            db=session,
        )
        decision = await decide_approval_service(
            request_id=submitted["id"],
            approved=True,
            reviewer_id="manager-1",
            notes=None,
            db=session,
        )
    assert decision["effects"]["reversal_created"] is True

    async with session_maker() as session:
        invoice = await session.get(Invoice, decision["effects"]["reversal_id"])
    assert invoice.total_amount == Decimal("-500")
    assert invoice.reference_type == "approval_refund"
    assert invoice.reference_id == submitted["id"]


@pytest.mark.asyncio
async def test_freezes_cannot_bypass_the_freeze_command(session_maker, seed_membership):
    ids = await seed_membership()

    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await submit_approval_service(
                approval_type="membership_freeze",
                reference_type="membership_freeze",
                reference_id="anything",
                branch_id=ids["branch_id"],
                payload={},
                requested_by="staff-1",
                db=session,
            )


@pytest.mark.asyncio
async def test_envelope_only_types_record_the_decision(session_maker):
    async with session_maker() as session:
        submitted = await submit_approval_service(
            approval_type="expense",
            reference_type="expense",
            reference_id="exp-1",
            branch_id="branch-1",
            payload={"amount": 1500, "category": "maintenance", "vendor": "CoolAir"},
            requested_by="staff-1",
            db=session,
        )
        decision = await decide_approval_service(
            request_id=submitted["id"],
            approved=True,
            reviewer_id="manager-1",
            notes=None,
            db=session,
        )
    assert submitted["request_data"]["vendor"] == "CoolAir"
    assert decision["status"] == "approved"
    assert decision["effects"] == {}


@pytest.mark.asyncio
async def test_queue_listing_and_stats(session_maker, seed_membership):
    ids = await seed_membership()
    first = await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 11), date(2024, 1, 12), date(2024, 1, 10))
    await _submit_freeze(session_maker, ids["membership_id"], date(2024, 1, 20), date(2024, 1, 21), date(2024, 1, 10))

    async with session_maker() as session:
        await decide_approval_service(
            request_id=first["approval_request"]["id"],
            approved=True,
            reviewer_id="manager-1",
            notes=None,
            db=session,
            today=date(2024, 1, 10),
        )

    async with session_maker() as session:
        pending = await list_approval_requests_service(db=session, branch_id=ids["branch_id"], status="pending")
        everything = await list_approval_requests_service(db=session, approval_type="membership_freeze")
        other_branch = await list_approval_requests_service(db=session, branch_id="branch-2")
        stats = await approval_stats_service(db=session, branch_id=ids["branch_id"])

    assert pending["count"] == 1
    assert everything["count"] == 2
    assert other_branch["count"] == 0
    assert stats == {"pending": 1, "approved_today": 1, "rejected_today": 0}

    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await list_approval_requests_service(db=session, status="archived")
