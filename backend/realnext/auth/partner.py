"""
Partner principal resolution.

A partner principal is a user acting on a partner organization:

- Super admins short-circuit, like tenant principals.
- Otherwise the live PartnerUser row of an active partner supplies the role.
- Partner admins and managers additionally act on the partner's tenants;
  PrincipalResolver asks tenant_delegate() when a user has no tenant
  membership of their own.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from realnext.constants.permissions import PARTNER_TENANT_ROLES, LegacyRole, PartnerRole
from realnext.repositories.identity_repository import IdentityRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartnerPrincipal:
    """Authenticated user acting on a partner."""
    user_id: str
    partner_id: str
    role: Optional[str] = None
    is_super_admin: bool = False
    membership_id: Optional[str] = None

    @property
    def is_partner_admin(self) -> bool:
        """Admins and managers may manage the partner and its tenants."""
        if self.is_super_admin:
            return True
        return self.role in {r.value for r in PARTNER_TENANT_ROLES}


@dataclass(frozen=True)
class NotPartnerMember:
    """Resolution outcome when the user has no live membership in the partner."""
    user_id: str
    partner_id: str
    reason: str = "not_a_partner_member"

    message = "Partner access required"


PartnerPrincipalResult = Union[PartnerPrincipal, NotPartnerMember]


class PartnerPrincipalResolver:
    """Resolves partner principals against the identity tables."""

    def __init__(self, db_session: Session, repository: Optional[IdentityRepository] = None):
        self.db = db_session
        self.repository = repository or IdentityRepository(db_session)

    def resolve(self, user_id: str, partner_id: str) -> PartnerPrincipalResult:
        user = self.repository.find_user(user_id)
        if user is None or not user.is_active:
            return NotPartnerMember(user_id=user_id, partner_id=partner_id, reason="unknown_user")

        if user.is_super_admin:
            return PartnerPrincipal(user_id=user.id, partner_id=partner_id, is_super_admin=True)

        membership = self.repository.find_partner_membership(user.id, partner_id)
        if membership is None:
            return NotPartnerMember(user_id=user_id, partner_id=partner_id)

        return PartnerPrincipal(
            user_id=user.id,
            partner_id=partner_id,
            role=membership.role,
            membership_id=membership.id,
        )

    def tenant_delegate(self, user_id: str, tenant_id: str) -> Optional[PartnerPrincipal]:
        """
        Partner admin/manager principal for one of the partner's tenants.

        Returns None for direct-signup tenants, tenants of other partners,
        viewers and non-members.
        """
        partner_id = self.repository.find_tenant_partner_id(tenant_id)
        if partner_id is None:
            return None
        membership = self.repository.find_partner_membership(user_id, partner_id)
        if membership is None:
            return None

        principal = PartnerPrincipal(
            user_id=user_id,
            partner_id=partner_id,
            role=membership.role,
            membership_id=membership.id,
        )
        if not principal.is_partner_admin:
            return None
        logger.info("principal.partner_delegate", extra={
            "user_id": user_id,
            "tenant_id": tenant_id,
            "partner_id": partner_id,
            "partner_role": membership.role,
        })
        return principal


def tenant_role_for_partner_role(partner_role: Optional[str]) -> Optional[LegacyRole]:
    """Legacy tenant role a partner role acts with, or None."""
    try:
        return PARTNER_TENANT_ROLES.get(PartnerRole(partner_role))
    except ValueError:
        return None
