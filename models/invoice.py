"""Invoice and InvoiceItem ledger models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Invoice(Base):
    """Ledger invoice. Reversals carry a unique (reference_type, reference_id)."""

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("reference_type", "reference_id", name="uq_invoices_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_id = Column(String, nullable=False, index=True)
    member_id = Column(String, ForeignKey("members.id"), nullable=True, index=True)
    invoice_number = Column(String, nullable=False, unique=True)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")  # draft, pending, paid, partial, overdue, cancelled, refunded
    notes = Column(Text, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    items = relationship("InvoiceItem", back_populates="invoice", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="invoice")


class InvoiceItem(Base):
    """Single invoice line."""

    __tablename__ = "invoice_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(String, ForeignKey("invoices.id"), nullable=False, index=True)
    description = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)

    invoice = relationship("Invoice", back_populates="items")
