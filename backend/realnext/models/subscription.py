"""
Subscription model for tracking a tenant's plan lifecycle.

A tenant may accumulate historical subscriptions (cancelled, expired);
Tenant.current_subscription_id names the authoritative one.

Status transitions are owned by realnext.services.subscription_service.
Entitlement predicates live in realnext.entitlements.policy; the
properties below delegate to it so period comparisons exist in one place.
"""

import enum

from sqlalchemy import (
    Column, String, Boolean, DateTime, Enum, Text,
    ForeignKey, Index
)
from sqlalchemy import JSON
from sqlalchemy.orm import relationship

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle states."""
    TRIAL = "trial"            # Initial state; plan features available until period end
    ACTIVE = "active"          # Paid and current
    PAST_DUE = "past_due"      # Renewal payment failed
    SUSPENDED = "suspended"    # Operator action; billing/read-only access only
    CANCELLED = "cancelled"    # Terminal
    EXPIRED = "expired"        # Terminal; period ended


TERMINAL_STATUSES = frozenset([
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
])


class BillingCycle(str, enum.Enum):
    """Billing cycle values."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(Base, TimestampMixin, TenantScopedMixin):
    """
    A tenant's subscription to a plan.

    Invariant: current_period_end >= current_period_start.
    """

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Current plan"
    )

    partner_id = Column(
        String(36),
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Partner credited with commission"
    )

    status = Column(
        Enum(*[s.value for s in SubscriptionStatus], name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.TRIAL.value,
        index=True,
        comment="Current subscription status"
    )

    billing_cycle = Column(
        Enum(*[c.value for c in BillingCycle], name="subscription_billing_cycle"),
        nullable=False,
        default=BillingCycle.MONTHLY.value,
    )

    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)

    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Trial expiration; NULL for subscriptions started paid"
    )

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    cancel_at_period_end = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Cancellation requested; subscription lapses at period end"
    )

    scheduled_plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True,
        comment="Plan applied at next renewal (downgrades)"
    )

    proration_date = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the last prorated plan change happened"
    )

    payment_method = Column(String(50), nullable=True)

    external_subscription_id = Column(
        String(255),
        nullable=True,
        comment="Gateway subscription reference (opaque)"
    )

    extra_metadata = Column(JSON, nullable=True)

    plan = relationship("Plan", foreign_keys=[plan_id])
    scheduled_plan = relationship("Plan", foreign_keys=[scheduled_plan_id])
    usage = relationship(
        "SubscriptionUsage",
        back_populates="subscription",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )

    __table_args__ = (
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
        Index("ix_subscriptions_period_end", "current_period_end"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, status={self.status})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_entitled(self) -> bool:
        """Entitled right now (trial/active and inside the current period)."""
        from realnext.entitlements.policy import is_entitled
        return is_entitled(self)

    @property
    def is_in_trial(self) -> bool:
        from realnext.entitlements.policy import is_in_trial
        return is_in_trial(self)

    @property
    def trial_days_remaining(self) -> int:
        from realnext.entitlements.policy import trial_days_remaining
        return trial_days_remaining(self)

