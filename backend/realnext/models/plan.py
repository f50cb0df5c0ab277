"""
Plan, Feature and PlanFeature models.

Plans define pricing and quota limits. Features are the global catalog of
gated product areas with a platform-wide kill switch; PlanFeature enables
a feature for a plan and may carry feature-specific limits that take
precedence over Plan.limits.
"""

from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, Numeric, Enum,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy import JSON
from sqlalchemy.orm import relationship

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, generate_uuid


class Plan(Base, TimestampMixin):
    """
    Subscribable tier.

    Plans are global (not tenant-scoped).
    """

    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    code = Column(
        String(50),
        nullable=False,
        unique=True,
        comment="Machine identifier (starter, growth, enterprise)"
    )

    name = Column(String(100), nullable=False)

    description = Column(Text, nullable=True)

    price_monthly = Column(Numeric(10, 2), nullable=False, default=0)
    price_yearly = Column(Numeric(10, 2), nullable=True)

    currency = Column(String(3), nullable=False, default="INR")

    billing_period = Column(
        Enum("monthly", "yearly", name="plan_billing_period"),
        nullable=False,
        default="monthly",
        comment="Default billing cycle offered for this plan"
    )

    trial_days = Column(
        Integer,
        nullable=False,
        default=14,
        comment="Trial length for new subscriptions; 0 starts paid immediately"
    )

    is_public = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    limits = Column(
        JSON,
        nullable=True,
        comment="Quota name -> integer (max_users, storage_gb, ...)"
    )

    features = relationship(
        "PlanFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_plans_active_public", "is_active", "is_public"),
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, code={self.code}, price_monthly={self.price_monthly})>"

    def price_for_cycle(self, billing_cycle: str) -> Decimal:
        """Price charged per period for the given cycle."""
        if billing_cycle == "yearly" and self.price_yearly is not None:
            return Decimal(self.price_yearly)
        return Decimal(self.price_monthly or 0)


class Feature(Base, TimestampMixin):
    """Global feature catalog entry."""

    __tablename__ = "features"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    is_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Global kill switch; disabled features are denied for every tenant"
    )

    def __repr__(self) -> str:
        return f"<Feature(code={self.code}, enabled={self.is_enabled})>"


class PlanFeature(Base, TimestampMixin):
    """Per-plan enable flag and limits for one feature."""

    __tablename__ = "plan_features"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    plan_id = Column(
        String(36),
        ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    feature_id = Column(
        String(36),
        ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    is_enabled = Column(Boolean, nullable=False, default=True)

    limits = Column(
        JSON,
        nullable=True,
        comment="Feature-specific limits; override Plan.limits for the same key"
    )

    plan = relationship("Plan", back_populates="features")
    feature = relationship("Feature")

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )

    def __repr__(self) -> str:
        return f"<PlanFeature(plan_id={self.plan_id}, feature_id={self.feature_id}, enabled={self.is_enabled})>"
