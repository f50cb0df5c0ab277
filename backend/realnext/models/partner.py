"""
Partner model - resellers that onboard and manage tenants.

Tenants with partner_id = NULL are direct signups. Slug and referral code
are generated by realnext.services.tenant_service before insert.
"""

import enum

from sqlalchemy import Column, String, Numeric, Enum, Index
from sqlalchemy import JSON

from realnext.db_base import Base
from realnext.models.base import TimestampMixin, SoftDeleteMixin, generate_uuid


class PartnerStatus(str, enum.Enum):
    """Partner lifecycle status."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class Partner(Base, TimestampMixin, SoftDeleteMixin):
    """Reseller account with commission attribution."""

    __tablename__ = "partners"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    name = Column(String(255), nullable=False, comment="Partner business name")

    slug = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="URL-safe unique identifier"
    )

    email = Column(String(255), nullable=False, comment="Billing/contact email")

    referral_code = Column(
        String(50),
        nullable=False,
        unique=True,
        comment="Referral code handed to prospective tenants"
    )

    commission_rate = Column(
        Numeric(5, 2),
        nullable=False,
        default=20,
        comment="Commission percentage on attributed subscriptions"
    )

    status = Column(
        Enum(*[s.value for s in PartnerStatus], name="partner_status"),
        nullable=False,
        default=PartnerStatus.ACTIVE.value,
    )

    settings = Column(JSON, nullable=True, comment="Branding and partner settings")

    __table_args__ = (
        Index("ix_partners_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Partner(id={self.id}, slug={self.slug}, status={self.status})>"
