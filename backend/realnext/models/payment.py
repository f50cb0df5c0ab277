"""
Payment model - settlement attempts against an invoice.

Gateway identifiers and signatures are stored as opaque strings. Refunds
accumulate in refund_amount / refunded_at and never change amount.
"""

import enum
from decimal import Decimal

from sqlalchemy import (
    Column, String, DateTime, Numeric, Enum, Text,
    ForeignKey, Index
)
from sqlalchemy import JSON

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class PaymentStatus(str, enum.Enum):
    """Payment status values."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(Base, TimestampMixin, TenantScopedMixin):
    """Captured (or attempted) payment for an invoice."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    invoice_id = Column(
        String(36),
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    amount = Column(Numeric(10, 2), nullable=False, comment="Captured amount; immutable")
    currency = Column(String(3), nullable=False, default="INR")

    status = Column(
        Enum(*[s.value for s in PaymentStatus], name="payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        index=True,
    )

    payment_method = Column(String(50), nullable=True)

    gateway_order_id = Column(String(255), nullable=True, index=True)
    gateway_payment_id = Column(String(255), nullable=True, unique=True)
    gateway_signature = Column(String(512), nullable=True)
    gateway_refund_id = Column(String(255), nullable=True)

    failure_reason = Column(Text, nullable=True)

    refund_amount = Column(Numeric(10, 2), nullable=False, default=0)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    extra_metadata = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_payments_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, invoice_id={self.invoice_id}, status={self.status})>"

    @property
    def refundable_amount(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.refund_amount or 0)
