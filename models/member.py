"""Member model."""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Member(Base):
    """Gym member owning one or more memberships."""

    __tablename__ = "members"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_id = Column(String, nullable=False, index=True)
    member_code = Column(String, nullable=True, unique=True)
    full_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # active, inactive, suspended, blacklisted
    assigned_trainer_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    memberships = relationship("Membership", back_populates="member")
