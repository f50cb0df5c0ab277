"""
TenantUser model - membership linking a User to a Tenant.

Exactly one row exists per (user, tenant) pair. The row carries three
role inputs consumed by realnext.services.rbac:
- is_owner: hard override, owners hold every permission in the tenant
- role_id: optional custom Role, wins over the legacy role when set
- role: legacy fixed role, mapped to a system role when role_id is NULL

SECURITY:
- Removing a member soft-deletes the row (deleted_at); soft-deleted rows
  never resolve to a principal.
- Unique constraint prevents duplicate memberships. Re-adding a removed
  member restores the existing row instead of inserting a new one.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, Boolean, Enum, ForeignKey, Index, UniqueConstraint

from realnext.constants.permissions import LegacyRole
from realnext.db_base import Base
from realnext.models.base import TimestampMixin, SoftDeleteMixin, TenantScopedMixin, generate_uuid


class TenantUser(Base, TimestampMixin, TenantScopedMixin, SoftDeleteMixin):
    """Membership of a user in a tenant."""

    __tablename__ = "tenant_users"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Member user"
    )

    role = Column(
        Enum(*[r.value for r in LegacyRole], name="tenant_user_role"),
        nullable=False,
        default=LegacyRole.USER.value,
        comment="Legacy fixed role, used only when role_id is NULL"
    )

    role_id = Column(
        String(36),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Custom role assignment; overrides the legacy role"
    )

    is_owner = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Owner override: full access within the tenant"
    )

    department = Column(String(100), nullable=True)

    invited_by = Column(
        String(36),
        nullable=True,
        comment="User ID that added this member (audit trail)"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_users_tenant_user"),
        Index("ix_tenant_users_user_tenant", "user_id", "tenant_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantUser(user_id={self.user_id}, tenant_id={self.tenant_id}, "
            f"role={self.role}, role_id={self.role_id}, owner={self.is_owner})>"
        )

    def restore(self, role: Optional[str] = None) -> None:
        """Bring a soft-deleted membership back."""
        self.deleted_at = None
        if role:
            self.role = role

    @classmethod
    def create_owner(cls, tenant_id: str, user_id: str) -> "TenantUser":
        """Factory for the membership created alongside a new tenant."""
        return cls(
            tenant_id=tenant_id,
            user_id=user_id,
            role=LegacyRole.ADMIN.value,
            is_owner=True,
        )

    @classmethod
    def create_member(
        cls,
        tenant_id: str,
        user_id: str,
        role: str = LegacyRole.USER.value,
        role_id: Optional[str] = None,
        invited_by: Optional[str] = None,
    ) -> "TenantUser":
        """Factory for an invited member."""
        return cls(
            tenant_id=tenant_id,
            user_id=user_id,
            role=LegacyRole(role).value,
            role_id=role_id,
            is_owner=False,
            invited_by=invited_by,
        )
