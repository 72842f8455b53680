from datetime import date
from decimal import Decimal
from typing import Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.branch_settings import BranchSettings
from models.member import Member
from models.membership import Membership
from models.membership_plan import MembershipPlan
from routers import rate_limit
from services.events import event_bus


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_event_bus():
    event_bus.clear()
    yield
    event_bus.clear()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gym_operations.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def recorded_events():
    events = []
    event_bus.subscribe("*", events.append)
    return events


@pytest.fixture
def seed_membership(session_maker):
    """Insert a member, plan, branch settings and one membership; returns their ids."""

    async def _seed(
        *,
        status: str = "active",
        start_date: date = date(2024, 1, 1),
        end_date: date = date(2024, 1, 31),
        price_paid: Decimal = Decimal("3000"),
        max_freeze_days: Optional[int] = 30,
        freeze_fee: Optional[Decimal] = None,
        branch_id: str = "branch-1",
        member_id: Optional[str] = None,
    ) -> Dict[str, str]:
        async with session_maker() as session:
            if member_id is None:
                member = Member(branch_id=branch_id, full_name="Asha Rao", status="active")
                session.add(member)
                await session.flush()
                member_id = member.id
            plan = MembershipPlan(
                branch_id=branch_id,
                name="Monthly",
                duration_days=(end_date - start_date).days,
                price=price_paid,
                max_freeze_days=max_freeze_days,
            )
            session.add(plan)
            if freeze_fee is not None:
                session.add(BranchSettings(branch_id=branch_id, freeze_fee=freeze_fee))
            await session.flush()
            membership = Membership(
                member_id=member_id,
                plan_id=plan.id,
                branch_id=branch_id,
                start_date=start_date,
                original_end_date=end_date,
                end_date=end_date,
                status=status,
                price_paid=price_paid,
            )
            session.add(membership)
            await session.commit()
            return {
                "member_id": member_id,
                "plan_id": plan.id,
                "membership_id": membership.id,
                "branch_id": branch_id,
            }

    return _seed
