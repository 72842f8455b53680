"""ApprovalRequest model: generic pending-decision envelope."""

import uuid

from sqlalchemy import Column, DateTime, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class ApprovalRequest(Base):
    """Decision envelope; request_data holds the typed payload snapshot."""

    __tablename__ = "approval_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_id = Column(String, nullable=True, index=True)
    approval_type = Column(String, nullable=False, index=True)
    reference_type = Column(String, nullable=False)
    reference_id = Column(String, nullable=False, index=True)
    request_data = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, approved, rejected
    requested_by = Column(String, nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
