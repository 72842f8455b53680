"""Payment ledger model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Payment(Base):
    """Money movement against an invoice; refunds are negative amounts."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_id = Column(String, nullable=False, index=True)
    member_id = Column(String, ForeignKey("members.id"), nullable=True, index=True)
    invoice_id = Column(String, ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String, nullable=False)  # cash, card, bank_transfer, wallet, upi, cheque, other
    status = Column(String, nullable=False, default="completed")  # pending, completed, failed, refunded
    payment_date = Column(DateTime(timezone=True), server_default=func.now())

    invoice = relationship("Invoice", back_populates="payments")
