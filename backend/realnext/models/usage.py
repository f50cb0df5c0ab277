"""
SubscriptionUsage model - per-feature consumption counters.

One row per (subscription, feature_code, usage_period_start). Rows are
created lazily on first use in a period and never deleted; a passed
reset_at starts a new logical period with a fresh row.
"""

from sqlalchemy import (
    Column, String, Integer, DateTime,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy import JSON
from sqlalchemy.orm import relationship

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, generate_uuid


class SubscriptionUsage(Base, TimestampMixin):
    """
    Usage counter for one feature within one period.

    usage_count only grows within a period. Mutations go through the
    atomic statements in realnext.services.usage_metering.
    """

    __tablename__ = "subscription_usage"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    feature_code = Column(String(50), nullable=False)

    usage_count = Column(Integer, nullable=False, default=0)

    usage_period_start = Column(DateTime(timezone=True), nullable=False)
    usage_period_end = Column(DateTime(timezone=True), nullable=False)

    reset_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When passed, counting restarts in a new row from this instant"
    )

    extra_metadata = Column(JSON, nullable=True)

    subscription = relationship("Subscription", back_populates="usage")

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "feature_code", "usage_period_start",
            name="uq_subscription_usage_period",
        ),
        Index("ix_subscription_usage_lookup", "subscription_id", "feature_code"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionUsage(subscription_id={self.subscription_id}, "
            f"feature={self.feature_code}, count={self.usage_count})>"
        )
