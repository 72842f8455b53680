"""Membership model: one subscription term for a member."""

import uuid

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


MEMBERSHIP_STATUSES = ("pending", "active", "frozen", "expired", "cancelled")


class Membership(Base):
    """Subscription term. Status is only changed through services.membership_state."""

    __tablename__ = "memberships"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_memberships_date_order"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    member_id = Column(String, ForeignKey("members.id"), nullable=False, index=True)
    plan_id = Column(String, ForeignKey("membership_plans.id"), nullable=False)
    branch_id = Column(String, nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    original_end_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    price_paid = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_freeze_days_used = Column(Integer, nullable=False, default=0)
    created_by = Column(String, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    member = relationship("Member", back_populates="memberships")
    freezes = relationship(
        "MembershipFreezeHistory",
        back_populates="membership",
        order_by="MembershipFreezeHistory.start_date",
    )

    # UPDATE ... WHERE version = :old; a concurrent writer raises StaleDataError.
    __mapper_args__ = {"version_id_col": version}
