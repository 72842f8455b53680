"""BranchSettings model (read-only configuration input)."""

import uuid

from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.sql import func

from database import Base


class BranchSettings(Base):
    """Per-branch fees consulted by the freeze calculator."""

    __tablename__ = "branch_settings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_id = Column(String, nullable=False, unique=True, index=True)
    freeze_fee = Column(Numeric(12, 2), nullable=True, default=0)
    currency = Column(String, nullable=True, default="INR")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
