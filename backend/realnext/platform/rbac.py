"""
Authorization gate.

authorize / authorize_any are pure decision functions over a principal
and its effective permissions; they never write. Every tenant-scoped
mutating or sensitive-read operation calls one of them before running.

Usage:
    gate = AuthorizationGate(db)
    decision = gate.authorize_user(user_id, tenant_id, Permission.LEADS_DELETE)
    if not decision.allowed:
        raise PermissionDeniedError(details=decision.to_dict())
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple, Union

from sqlalchemy.orm import Session

from realnext.auth.principal import Principal, PrincipalResolver, NotTenantMember
from realnext.services.rbac import EffectivePermissions, PermissionResolver, permission_code

logger = logging.getLogger(__name__)


class DenyReason(str, enum.Enum):
    """Why a request was denied."""
    NOT_TENANT_MEMBER = "not_tenant_member"
    MISSING_PERMISSION = "missing_permission"
    NO_MATCHING_PERMISSIONS = "no_matching_permissions"


_DENY_MESSAGES = {
    DenyReason.NOT_TENANT_MEMBER: "You are not a member of this tenant",
    DenyReason.MISSING_PERMISSION: "You do not have permission to perform this action",
    DenyReason.NO_MATCHING_PERMISSIONS: "You do not have any of the required permissions",
}


@dataclass(frozen=True)
class AuthorizationDecision:
    """Allow, or Deny with a reason and the permission code(s) involved."""
    allowed: bool
    reason: Optional[DenyReason] = None
    codes: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def allow(cls) -> "AuthorizationDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, codes: Iterable[str] = ()) -> "AuthorizationDecision":
        return cls(allowed=False, reason=reason, codes=tuple(codes))

    @property
    def message(self) -> Optional[str]:
        if self.allowed:
            return None
        return _DENY_MESSAGES[self.reason]

    def to_dict(self) -> dict:
        if self.allowed:
            return {"allowed": True}
        return {
            "allowed": False,
            "reason": self.reason.value,
            "message": self.message,
            "required": list(self.codes),
        }


def authorize(
    principal: Union[Principal, NotTenantMember],
    permissions: EffectivePermissions,
    code,
) -> AuthorizationDecision:
    """Allow iff the effective set contains the permission code."""
    code = permission_code(code)
    if isinstance(principal, NotTenantMember):
        return AuthorizationDecision.deny(DenyReason.NOT_TENANT_MEMBER, [code])
    if code in permissions:
        return AuthorizationDecision.allow()
    return AuthorizationDecision.deny(DenyReason.MISSING_PERMISSION, [code])


def authorize_any(
    principal: Union[Principal, NotTenantMember],
    permissions: EffectivePermissions,
    codes: Iterable,
) -> AuthorizationDecision:
    """Allow iff the effective set contains at least one of the codes."""
    codes = [permission_code(c) for c in codes]
    if isinstance(principal, NotTenantMember):
        return AuthorizationDecision.deny(DenyReason.NOT_TENANT_MEMBER, codes)
    if permissions.intersects(codes):
        return AuthorizationDecision.allow()
    return AuthorizationDecision.deny(DenyReason.NO_MATCHING_PERMISSIONS, codes)


class AuthorizationGate:
    """
    Resolve-then-decide entry point for request handlers.

    Denials are logged at WARNING for audit; the decision itself has no
    side effects.
    """

    def __init__(
        self,
        db_session: Session,
        principal_resolver: Optional[PrincipalResolver] = None,
        permission_resolver: Optional[PermissionResolver] = None,
    ):
        self.db = db_session
        self.principal_resolver = principal_resolver or PrincipalResolver(db_session)
        self.permission_resolver = permission_resolver or PermissionResolver(db_session)

    def _permissions_for(self, principal) -> EffectivePermissions:
        if isinstance(principal, NotTenantMember):
            return EffectivePermissions.empty()
        return self.permission_resolver.effective_permissions(principal)

    def authorize(self, principal, code) -> AuthorizationDecision:
        decision = authorize(principal, self._permissions_for(principal), code)
        self._audit(principal, decision)
        return decision

    def authorize_any(self, principal, codes: Iterable) -> AuthorizationDecision:
        decision = authorize_any(principal, self._permissions_for(principal), codes)
        self._audit(principal, decision)
        return decision

    def authorize_user(self, user_id: str, tenant_id: str, code) -> AuthorizationDecision:
        return self.authorize(self.principal_resolver.resolve(user_id, tenant_id), code)

    def authorize_user_any(self, user_id: str, tenant_id: str, codes: Iterable) -> AuthorizationDecision:
        return self.authorize_any(self.principal_resolver.resolve(user_id, tenant_id), codes)

    def _audit(self, principal, decision: AuthorizationDecision) -> None:
        if decision.allowed:
            return
        logger.warning(
            "rbac.denied",
            extra={
                "user_id": principal.user_id,
                "tenant_id": principal.tenant_id,
                "reason": decision.reason.value,
                "required": list(decision.codes),
            },
        )
