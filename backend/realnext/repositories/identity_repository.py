"""
Repository for principal and role lookups.

These are the only reads the authorization core performs:
- find_user(user_id)
- find_membership(user_id, tenant_id)
- find_role_by_id(role_id)
- find_system_role_by_code(code)
- find_partner_membership(user_id, partner_id)
- find_tenant_partner_id(tenant_id)

Soft-deleted memberships and memberships of soft-deleted tenants or
partners are never returned.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from realnext.models.partner import Partner, PartnerStatus
from realnext.models.partner_user import PartnerUser
from realnext.models.role import Role
from realnext.models.tenant import Tenant
from realnext.models.tenant_user import TenantUser
from realnext.models.user import User

logger = logging.getLogger(__name__)


class IdentityRepository:
    """Read-only access to users, memberships and roles."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_user(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def find_membership(self, user_id: str, tenant_id: str) -> Optional[TenantUser]:
        """
        Live membership for (user, tenant).

        Args:
            user_id: Member user ID
            tenant_id: Target tenant ID

        Returns:
            TenantUser or None when absent, soft-deleted, or the tenant is soft-deleted
        """
        if not user_id or not tenant_id:
            return None
        return (
            self.db.query(TenantUser)
            .join(Tenant, Tenant.id == TenantUser.tenant_id)
            .filter(
                TenantUser.user_id == user_id,
                TenantUser.tenant_id == tenant_id,
                TenantUser.deleted_at.is_(None),
                Tenant.deleted_at.is_(None),
            )
            .first()
        )

    def find_membership_including_deleted(self, user_id: str, tenant_id: str) -> Optional[TenantUser]:
        """Membership row regardless of soft-delete (used to restore members)."""
        return (
            self.db.query(TenantUser)
            .filter(TenantUser.user_id == user_id, TenantUser.tenant_id == tenant_id)
            .first()
        )

    def find_role_by_id(self, role_id: str) -> Optional[Role]:
        if not role_id:
            return None
        return self.db.query(Role).filter(Role.id == role_id).first()

    def find_system_role_by_code(self, code: str) -> Optional[Role]:
        """System role (tenant_id IS NULL) with the given machine code."""
        if not code:
            return None
        return (
            self.db.query(Role)
            .filter(Role.tenant_id.is_(None), Role.code == code)
            .first()
        )

    def find_partner_membership(self, user_id: str, partner_id: str) -> Optional[PartnerUser]:
        """Live membership of an active, non-deleted partner."""
        if not user_id or not partner_id:
            return None
        return (
            self.db.query(PartnerUser)
            .join(Partner, Partner.id == PartnerUser.partner_id)
            .filter(
                PartnerUser.user_id == user_id,
                PartnerUser.partner_id == partner_id,
                PartnerUser.deleted_at.is_(None),
                Partner.deleted_at.is_(None),
                Partner.status == PartnerStatus.ACTIVE.value,
            )
            .first()
        )

    def find_tenant_partner_id(self, tenant_id: str) -> Optional[str]:
        """partner_id of a live tenant (None for direct signups or unknown tenants)."""
        if not tenant_id:
            return None
        return (
            self.db.query(Tenant.partner_id)
            .filter(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
            .scalar()
        )
