"""
Tenant model - an organization using the CRM.

Tenant.id is the tenant_id used across every tenant-scoped model.
current_subscription_id points at the authoritative subscription so
callers never have to guess which historical row is current.
"""

import enum

from sqlalchemy import Column, String, Boolean, Enum, ForeignKey, Index
from sqlalchemy import JSON

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, SoftDeleteMixin, generate_uuid


class TenantStatus(str, enum.Enum):
    """Tenant lifecycle status."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class TenantEnvironment(str, enum.Enum):
    """Deployment environment tag."""
    PRODUCTION = "production"
    DEMO = "demo"
    STAGING = "staging"


class Tenant(Base, TimestampMixin, SoftDeleteMixin):
    """
    Organization boundary for data isolation, membership and billing.

    - partner_id NULL => direct signup
    - deleted_at set => soft-deleted, memberships no longer resolve
    """

    __tablename__ = "tenants"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    partner_id = Column(
        String(36),
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Reseller that onboarded this tenant (NULL for direct signup)"
    )

    name = Column(String(255), nullable=False)

    slug = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="URL-safe unique identifier"
    )

    email = Column(String(255), nullable=True, comment="Primary contact email")

    status = Column(
        Enum(*[s.value for s in TenantStatus], name="tenant_status"),
        nullable=False,
        default=TenantStatus.ACTIVE.value,
    )

    environment = Column(
        Enum(*[e.value for e in TenantEnvironment], name="tenant_environment"),
        nullable=False,
        default=TenantEnvironment.PRODUCTION.value,
    )

    is_demo = Column(Boolean, nullable=False, default=False)

    settings = Column(JSON, nullable=True)

    current_subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="SET NULL", use_alter=True,
                   name="fk_tenants_current_subscription"),
        nullable=True,
        comment="Authoritative subscription for entitlement checks"
    )

    __table_args__ = (
        Index("ix_tenants_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, slug={self.slug}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value and not self.is_deleted
