"""
Invoice and InvoiceSequence models.

Invoice numbers have the form INV-YYYYMM-NNNNN. InvoiceSequence holds one
counter row per calendar month; realnext.services.billing_service
increments it under a row lock so concurrent issuers never share a number.
"""

import enum
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, DateTime, Numeric, Enum, Text,
    ForeignKey, Index
)
from sqlalchemy import JSON

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class InvoiceStatus(str, enum.Enum):
    """Invoice status values."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


INVOICE_NUMBER_PREFIX = "INV"


def format_invoice_number(period_key: str, value: int, padding: int = 5,
                          prefix: str = INVOICE_NUMBER_PREFIX) -> str:
    """INV-202401-00042 style number for a YYYYMM key and counter value."""
    return f"{prefix}-{period_key}-{value:0{padding}d}"


class Invoice(Base, TimestampMixin, TenantScopedMixin):
    """
    Tenant-billed document.

    total_amount is supplied by the caller; amount + tax_amount must equal it.
    """

    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    invoice_number = Column(
        String(50),
        nullable=False,
        unique=True,
        comment="INV-YYYYMM-NNNNN, sequential within the calendar month"
    )

    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    partner_id = Column(
        String(36),
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
    )

    amount = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    status = Column(
        Enum(*[s.value for s in InvoiceStatus], name="invoice_status"),
        nullable=False,
        default=InvoiceStatus.PENDING.value,
        index=True,
    )

    billing_period_start = Column(DateTime(timezone=True), nullable=True)
    billing_period_end = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    payment_method = Column(String(50), nullable=True)
    failure_reason = Column(Text, nullable=True)

    line_items = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered list of {description, amount, quantity}"
    )

    extra_metadata = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_invoices_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(number={self.invoice_number}, status={self.status}, total={self.total_amount})>"

    @property
    def total(self) -> Decimal:
        return Decimal(self.total_amount)


class InvoiceSequence(Base):
    """Per-month invoice counter. last_value is the highest issued suffix."""

    __tablename__ = "invoice_sequences"

    period_key = Column(
        String(6),
        primary_key=True,
        comment="Calendar month as YYYYMM"
    )

    last_value = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<InvoiceSequence(period={self.period_key}, last={self.last_value})>"
