"""
PartnerUser model - membership linking a User to a Partner.

Partner admins and managers act on every tenant whose partner_id matches
their partner (see realnext.auth.partner). Viewers only see the partner
itself.

SECURITY:
- Removing a partner member soft-deletes the row; soft-deleted rows never
  resolve.
- One row per (partner, user).
"""

from sqlalchemy import Column, String, Boolean, Enum, ForeignKey, Index, UniqueConstraint

from realnext.constants.permissions import PartnerRole
from realnext.db_base import Base
from realnext.models.base import TimestampMixin, SoftDeleteMixin, generate_uuid


class PartnerUser(Base, TimestampMixin, SoftDeleteMixin):
    """Membership of a user in a partner organization."""

    __tablename__ = "partner_users"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    partner_id = Column(
        String(36),
        ForeignKey("partners.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = Column(
        Enum(*[r.value for r in PartnerRole], name="partner_user_role"),
        nullable=False,
        default=PartnerRole.ADMIN.value,
    )

    is_owner = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("partner_id", "user_id", name="uq_partner_users_partner_user"),
        Index("ix_partner_users_user_partner", "user_id", "partner_id"),
    )

    def __repr__(self) -> str:
        return f"<PartnerUser(user_id={self.user_id}, partner_id={self.partner_id}, role={self.role})>"
