import logging
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from services.persistence import utc_today
from services.session_token import create_session_token


STAFF_ID = "staff-1"
MANAGER_ID = "manager-1"
STAFF_HEADER = {"Authorization": f"Bearer {create_session_token(STAFF_ID, 'front-desk@example.com')['token']}"}
MANAGER_HEADER = {
    "Authorization": f"Bearer {create_session_token(MANAGER_ID, 'manager@example.com', branch_id='branch-1')['token']}"
}


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def current_membership(seed_membership):
    today = utc_today()
    return await seed_membership(
        start_date=today - timedelta(days=10),
        end_date=today + timedelta(days=20),
        price_paid=Decimal("1200"),
    )


@pytest.mark.asyncio
async def test_requests_without_a_session_are_rejected(api_client, current_membership):
    response = await api_client.get(f"/memberships/{current_membership['membership_id']}/freeze_allowance")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_freeze_approval_flow(api_client, current_membership):
    membership_id = current_membership["membership_id"]
    today = utc_today()

    submit = await api_client.post(
        f"/memberships/{membership_id}/freeze",
        json={
            "start_date": (today + timedelta(days=1)).isoformat(),
            "end_date": (today + timedelta(days=5)).isoformat(),
            "reason": "Travel",
        },
        headers=STAFF_HEADER,
    )
    assert submit.status_code == 200
    submitted = submit.json()
    assert submitted["freeze"]["requested_by"] == STAFF_ID
    assert submitted["remaining_days"] == 25

    queue = await api_client.get("/approvals", headers=MANAGER_HEADER)
    assert queue.status_code == 200
    assert [item["id"] for item in queue.json()["items"]] == [submitted["approval_request"]["id"]]

    request_id = submitted["approval_request"]["id"]
    decide = await api_client.post(
        f"/approvals/{request_id}/decide",
        json={"approved": True, "notes": "Enjoy the trip"},
        headers=MANAGER_HEADER,
    )
    assert decide.status_code == 200
    assert decide.json()["reviewed_by"] == MANAGER_ID
    assert decide.json()["effects"]["freeze_applied"] is False

    replay = await api_client.post(
        f"/approvals/{request_id}/decide",
        json={"approved": False},
        headers=MANAGER_HEADER,
    )
    assert replay.status_code == 409
    assert replay.json()["detail"]["code"] == "already_reviewed"

    stats = await api_client.get("/approvals/stats", headers=MANAGER_HEADER)
    assert stats.json()["approved_today"] == 1

    sweep = await api_client.post(
        "/memberships/sweep",
        json={"as_of": (today + timedelta(days=1)).isoformat()},
        headers=MANAGER_HEADER,
    )
    assert sweep.status_code == 200
    assert sweep.json()["frozen"] == [membership_id]

    resume = await api_client.post(f"/memberships/{membership_id}/resume", headers=STAFF_HEADER)
    assert resume.status_code == 200
    assert resume.json()["new_end_date"] == (today + timedelta(days=25)).isoformat()


@pytest.mark.asyncio
async def test_reviewer_cannot_decide_on_behalf_of_someone_else(api_client, current_membership):
    today = utc_today()
    submit = await api_client.post(
        f"/memberships/{current_membership['membership_id']}/freeze",
        json={"start_date": today.isoformat(), "end_date": today.isoformat()},
        headers=STAFF_HEADER,
    )
    response = await api_client.post(
        f"/approvals/{submit.json()['approval_request']['id']}/decide",
        json={"approved": True, "reviewer_id": "someone-else"},
        headers=MANAGER_HEADER,
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_branch_bound_staff_cannot_read_other_branch_queue(api_client):
    response = await api_client.get("/approvals?branch_id=branch-2", headers=MANAGER_HEADER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_domain_errors_surface_as_structured_responses(api_client, current_membership):
    membership_id = current_membership["membership_id"]
    today = utc_today()

    too_long = await api_client.post(
        f"/memberships/{membership_id}/freeze",
        json={"start_date": today.isoformat(), "end_date": (today + timedelta(days=39)).isoformat()},
        headers=STAFF_HEADER,
    )
    assert too_long.status_code == 422
    assert too_long.json()["detail"]["code"] == "insufficient_allowance"

    missing = await api_client.post("/memberships/missing/resume", headers=STAFF_HEADER)
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_cancel_with_prorated_refund_and_reversal_lookup(api_client, current_membership):
    membership_id = current_membership["membership_id"]

    quote = await api_client.get(
        f"/memberships/{membership_id}/refund_quote",
        params={"policy": "prorated"},
        headers=STAFF_HEADER,
    )
    assert quote.status_code == 200
    assert quote.json()["refund_amount"] == 800.0

    cancel = await api_client.post(
        f"/memberships/{membership_id}/cancel",
        json={"reason": "Relocating", "refund_policy": "prorated", "refund_method": "upi"},
        headers=STAFF_HEADER,
    )
    assert cancel.status_code == 200
    assert cancel.json()["refund_amount"] == 800.0
    assert cancel.json()["member_status"] == "inactive"

    again = await api_client.post(
        f"/memberships/{membership_id}/cancel",
        json={"reason": "Relocating", "refund_policy": "none"},
        headers=STAFF_HEADER,
    )
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "not_cancellable"

    reversal = await api_client.get(
        f"/billing/reversals/membership_refund/{membership_id}",
        headers=STAFF_HEADER,
    )
    assert reversal.status_code == 200
    assert reversal.json()["total_amount"] == -800.0
    assert reversal.json()["payment"]["payment_method"] == "upi"


@pytest.mark.asyncio
async def test_quick_freeze_and_allowance_preview(api_client, current_membership):
    membership_id = current_membership["membership_id"]

    quick = await api_client.post(
        f"/memberships/{membership_id}/quick_freeze",
        json={"days": 3},
        headers=STAFF_HEADER,
    )
    assert quick.status_code == 200
    assert quick.json()["membership"]["status"] == "frozen"

    allowance = await api_client.get(f"/memberships/{membership_id}/freeze_allowance", headers=STAFF_HEADER)
    assert allowance.status_code == 200
    assert allowance.json()["used_days"] == 3
    assert allowance.json()["remaining_days"] == 27


@pytest.mark.asyncio
async def test_billing_reversal_endpoint_is_retry_safe(api_client, current_membership, caplog):
    body = {
        "reference_type": "manual_adjustment",
        "reference_id": "adj-1",
        "amount": 150,
        "reason": "Double charge",
        "method": "card",
        "branch_id": current_membership["branch_id"],
        "member_id": current_membership["member_id"],
    }
    with caplog.at_level(logging.INFO, logger="routers.billing"):
        first = await api_client.post("/billing/reversals", json=body, headers=STAFF_HEADER)
        second = await api_client.post("/billing/reversals", json=body, headers=STAFF_HEADER)
    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.json() == {"reversal_id": first.json()["reversal_id"], "created": False}
    assert "Reversal requested for manual_adjustment:adj-1 by staff-1" in caplog.text


@pytest.mark.asyncio
async def test_liveness_probe(api_client):
    response = await api_client.get("/health/live")
    assert response.status_code == 200
    assert response.json() == {"alive": True}
