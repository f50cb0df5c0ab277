"""
Principal resolution.

Turns (user_id, tenant_id) into the facts the permission resolver needs:

- Super admins short-circuit after loading the user; no membership lookup.
- Otherwise the live TenantUser row supplies is_owner, the legacy role and
  role_id.
- Without a membership, an admin or manager of the tenant's partner acts
  with the matching legacy role (admin or manager) and partner_id set.
- Unknown, inactive or non-member users resolve to NotTenantMember.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from realnext.auth.partner import PartnerPrincipalResolver, tenant_role_for_partner_role
from realnext.repositories.identity_repository import IdentityRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated user acting on a tenant."""
    user_id: str
    tenant_id: str
    is_super_admin: bool = False
    is_owner: bool = False
    role: Optional[str] = None
    role_id: Optional[str] = None
    membership_id: Optional[str] = None
    partner_id: Optional[str] = None

    @classmethod
    def super_admin(cls, user_id: str, tenant_id: str) -> "Principal":
        return cls(user_id=user_id, tenant_id=tenant_id, is_super_admin=True)


@dataclass(frozen=True)
class NotTenantMember:
    """Resolution outcome when the user has no live membership in the tenant."""
    user_id: str
    tenant_id: str
    reason: str = "not_a_member"

    message = "You are not a member of this tenant"


PrincipalResult = Union[Principal, NotTenantMember]


class PrincipalResolver:
    """Resolves principals against the identity tables."""

    def __init__(self, db_session: Session, repository: Optional[IdentityRepository] = None):
        self.db = db_session
        self.repository = repository or IdentityRepository(db_session)

    def resolve(self, user_id: str, tenant_id: str) -> PrincipalResult:
        """
        Resolve a principal for a tenant.

        Args:
            user_id: Authenticated user ID
            tenant_id: Target tenant ID from the request context

        Returns:
            Principal, or NotTenantMember when no live membership exists
        """
        user = self.repository.find_user(user_id)
        if user is None:
            logger.info("principal.unknown_user", extra={"user_id": user_id, "tenant_id": tenant_id})
            return NotTenantMember(user_id=user_id, tenant_id=tenant_id, reason="unknown_user")

        if not user.is_active:
            logger.info("principal.inactive_user", extra={
                "user_id": user_id, "tenant_id": tenant_id, "status": user.status,
            })
            return NotTenantMember(user_id=user_id, tenant_id=tenant_id, reason="inactive_user")

        if user.is_super_admin:
            return Principal.super_admin(user_id=user.id, tenant_id=tenant_id)

        membership = self.repository.find_membership(user_id, tenant_id)
        if membership is None:
            return self._resolve_partner_delegate(user.id, tenant_id)

        return Principal(
            user_id=user.id,
            tenant_id=tenant_id,
            is_super_admin=False,
            is_owner=bool(membership.is_owner),
            role=membership.role,
            role_id=membership.role_id,
            membership_id=membership.id,
        )

    def _resolve_partner_delegate(self, user_id: str, tenant_id: str) -> PrincipalResult:
        delegate = PartnerPrincipalResolver(self.db, self.repository).tenant_delegate(user_id, tenant_id)
        role = tenant_role_for_partner_role(delegate.role) if delegate is not None else None
        if role is None:
            return NotTenantMember(user_id=user_id, tenant_id=tenant_id)
        return Principal(
            user_id=user_id,
            tenant_id=tenant_id,
            role=role.value,
            partner_id=delegate.partner_id,
        )
