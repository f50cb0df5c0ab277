"""
Role & permission resolution for tenant principals.

Effective permissions follow a strict precedence, first match wins:
1. Super admin -> universal set
2. Tenant owner -> universal set within the tenant
3. Custom role (role_id) -> that role's permissions; a missing role, or a
   role owned by another tenant, resolves to the empty set
4. Legacy role -> system role mapped through LEGACY_ROLE_SYSTEM_ROLE_CODES

Default deny: anything unresolved is the empty set. Dangling role
references are logged as audit warnings, never raised.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from sqlalchemy.orm import Session

from realnext.auth.principal import Principal, PrincipalResolver, NotTenantMember
from realnext.constants.permissions import system_role_code_for
from realnext.repositories.identity_repository import IdentityRepository

logger = logging.getLogger(__name__)


def permission_code(code) -> str:
    """Plain string for a Permission member or a raw code."""
    if isinstance(code, enum.Enum):
        return code.value
    return str(code)


class PermissionSource(str, enum.Enum):
    """Which precedence step produced an effective set."""
    SUPER_ADMIN = "super_admin"
    OWNER = "owner"
    CUSTOM_ROLE = "custom_role"
    SYSTEM_ROLE = "system_role"
    DANGLING_ROLE = "dangling_role"
    NONE = "none"


@dataclass(frozen=True)
class EffectivePermissions:
    """
    Permission set with an explicit universal flag.

    `code in perms` is always True when grants_all is set.
    """
    codes: FrozenSet[str] = field(default_factory=frozenset)
    grants_all: bool = False
    source: PermissionSource = PermissionSource.NONE
    role_id: Optional[str] = None

    @classmethod
    def universal(cls, source: PermissionSource) -> "EffectivePermissions":
        return cls(codes=frozenset(), grants_all=True, source=source)

    @classmethod
    def empty(cls, source: PermissionSource = PermissionSource.NONE,
              role_id: Optional[str] = None) -> "EffectivePermissions":
        return cls(codes=frozenset(), grants_all=False, source=source, role_id=role_id)

    def __contains__(self, code: object) -> bool:
        if self.grants_all:
            return True
        return permission_code(code) in self.codes

    def __bool__(self) -> bool:
        return self.grants_all or bool(self.codes)

    def intersects(self, codes: Iterable[str]) -> bool:
        return any(code in self for code in codes)

    def to_list(self) -> list[str]:
        """Sorted codes, or ["*"] for the universal set."""
        if self.grants_all:
            return ["*"]
        return sorted(self.codes)


class PermissionResolver:
    """Computes EffectivePermissions for a Principal."""

    def __init__(self, db_session: Session, repository: Optional[IdentityRepository] = None):
        self.db = db_session
        self.repository = repository or IdentityRepository(db_session)

    def effective_permissions(self, principal: Principal) -> EffectivePermissions:
        """
        Resolve the effective permission set.

        Args:
            principal: Resolved principal (never NotTenantMember)

        Returns:
            EffectivePermissions
        """
        if principal.is_super_admin:
            return EffectivePermissions.universal(PermissionSource.SUPER_ADMIN)

        if principal.is_owner:
            return EffectivePermissions.universal(PermissionSource.OWNER)

        if principal.role_id:
            return self._resolve_custom_role(principal)

        return self._resolve_system_role(principal)

    def _resolve_custom_role(self, principal: Principal) -> EffectivePermissions:
        role = self.repository.find_role_by_id(principal.role_id)

        # A tenant role from another tenant is treated exactly like a missing one.
        if role is not None and role.tenant_id is not None and role.tenant_id != principal.tenant_id:
            logger.warning(
                "rbac.cross_tenant_role",
                extra={
                    "user_id": principal.user_id,
                    "tenant_id": principal.tenant_id,
                    "role_id": principal.role_id,
                    "role_tenant_id": role.tenant_id,
                },
            )
            role = None

        if role is None:
            logger.warning(
                "rbac.dangling_role",
                extra={
                    "user_id": principal.user_id,
                    "tenant_id": principal.tenant_id,
                    "role_id": principal.role_id,
                },
            )
            return EffectivePermissions.empty(PermissionSource.DANGLING_ROLE, role_id=principal.role_id)

        return EffectivePermissions(
            codes=role.permission_codes,
            source=PermissionSource.CUSTOM_ROLE,
            role_id=role.id,
        )

    def _resolve_system_role(self, principal: Principal) -> EffectivePermissions:
        code = system_role_code_for(principal.role)
        if code is None:
            logger.info(
                "rbac.unmapped_legacy_role",
                extra={"user_id": principal.user_id, "tenant_id": principal.tenant_id, "role": principal.role},
            )
            return EffectivePermissions.empty()

        role = self.repository.find_system_role_by_code(code)
        if role is None:
            logger.warning(
                "rbac.system_role_missing",
                extra={"tenant_id": principal.tenant_id, "role_code": code},
            )
            return EffectivePermissions.empty()

        return EffectivePermissions(
            codes=role.permission_codes,
            source=PermissionSource.SYSTEM_ROLE,
            role_id=role.id,
        )


def resolve_permissions_for_user(db: Session, user_id: str, tenant_id: str) -> EffectivePermissions:
    """
    Resolve a user's effective permissions in a tenant.

    Non-members get the empty set.
    """
    principal = PrincipalResolver(db).resolve(user_id, tenant_id)
    if isinstance(principal, NotTenantMember):
        return EffectivePermissions.empty()
    return PermissionResolver(db).effective_permissions(principal)


def user_has_permission(db: Session, user_id: str, tenant_id: str, permission: str) -> bool:
    """Check a single permission for a user in a tenant."""
    return permission in resolve_permissions_for_user(db, user_id, tenant_id)


def user_has_any_permission(db: Session, user_id: str, tenant_id: str, permissions: Iterable[str]) -> bool:
    """Check that a user holds at least one of the given permissions."""
    return resolve_permissions_for_user(db, user_id, tenant_id).intersects(permissions)
