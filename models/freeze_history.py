"""Freeze window requested against a membership."""

import uuid

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class MembershipFreezeHistory(Base):
    """One row per freeze window; approved rows count toward the allowance."""

    __tablename__ = "membership_freeze_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    membership_id = Column(String, ForeignKey("memberships.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    days_frozen = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    fee_charged = Column(Numeric(12, 2), nullable=True, default=0)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, approved, rejected
    requested_by = Column(String, nullable=True)
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    membership = relationship("Membership", back_populates="freezes")
