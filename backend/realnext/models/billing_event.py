"""
BillingEvent model for immutable audit trail.

CRITICAL: This table is APPEND-ONLY for finance audit compliance.
Never update or delete billing events - only insert new ones.
"""

from sqlalchemy import Column, String, DateTime, Numeric, Text, Index
from sqlalchemy import JSON

from realnext.db_base import Base
from realnext.models.base import TenantScopedMixin, generate_uuid, utcnow


class BillingEventType:
    """Billing event type constants."""
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_REINSTATED = "subscription_reinstated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"

    # Trial events
    TRIAL_STARTED = "trial_started"
    TRIAL_CONVERTED = "trial_converted"

    # Plan changes
    SUBSCRIPTION_UPGRADED = "subscription_upgraded"
    SUBSCRIPTION_DOWNGRADE_SCHEDULED = "subscription_downgrade_scheduled"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"

    # Documents and payments
    INVOICE_ISSUED = "invoice_issued"
    INVOICE_CANCELLED = "invoice_cancelled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"


class ActorType:
    """Actor type constants."""
    USER = "user"
    SYSTEM = "system"
    GATEWAY = "gateway"
    OPERATOR = "operator"


class BillingEvent(Base, TenantScopedMixin):
    """
    Immutable audit log of billing events.

    NOTE: Does not use TimestampMixin - occurred_at is the event time.
    """

    __tablename__ = "billing_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    event_type = Column(String(64), nullable=False, index=True)

    subscription_id = Column(String(36), nullable=True, index=True)
    invoice_id = Column(String(36), nullable=True)
    payment_id = Column(String(36), nullable=True)

    from_plan_id = Column(String(36), nullable=True, comment="Previous plan (plan changes)")
    to_plan_id = Column(String(36), nullable=True, comment="New plan (plan changes)")

    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)

    amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)

    actor_type = Column(String(20), nullable=False, default=ActorType.SYSTEM)
    actor_id = Column(String(255), nullable=True)

    description = Column(Text, nullable=True)
    extra_metadata = Column(JSON, nullable=True)

    occurred_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )

    __table_args__ = (
        Index("ix_billing_events_tenant_time", "tenant_id", "occurred_at"),
        Index("ix_billing_events_subscription_time", "subscription_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(id={self.id}, type={self.event_type}, occurred_at={self.occurred_at})>"
