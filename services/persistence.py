"""Shared loading and commit helpers for the membership aggregate."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from models.member import Member
from models.membership import Membership
from services.errors import NotFound, PersistenceConflict

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utc_now().date()


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Any) -> float:
    return float(to_decimal(value))


async def load_membership(
    db: AsyncSession,
    membership_id: str,
    *,
    for_update: bool = False,
) -> Membership:
    """Fetch a membership, locking its row when the caller is about to mutate it."""
    stmt = select(Membership).where(Membership.id == membership_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    membership = result.scalar_one_or_none()
    if membership is None:
        raise NotFound("Membership not found", membership_id=membership_id)
    return membership


async def load_member(db: AsyncSession, member_id: str, *, for_update: bool = False) -> Optional[Member]:
    stmt = select(Member).where(Member.id == member_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def commit_unit(db: AsyncSession) -> None:
    """Commit one atomic unit, rolling everything back on failure.

    Optimistic-lock and uniqueness failures surface as PersistenceConflict so
    the caller can re-read and resubmit; nothing is retried here.
    """
    try:
        await db.commit()
    except (StaleDataError, IntegrityError) as exc:
        await db.rollback()
        logger.warning("Concurrent write rejected: %s", exc)
        raise PersistenceConflict(
            "The record was changed by another request. Reload and try again."
        ) from exc
    except Exception:
        await db.rollback()
        raise


async def flush_unit(db: AsyncSession) -> None:
    """Flush pending changes, mapping write conflicts the same way as commit_unit."""
    try:
        await db.flush()
    except (StaleDataError, IntegrityError) as exc:
        await db.rollback()
        logger.warning("Concurrent write rejected on flush: %s", exc)
        raise PersistenceConflict(
            "The record was changed by another request. Reload and try again."
        ) from exc
