"""
Permission check dependencies.

Usage:
    @router.delete("/leads/{lead_id}")
    def delete_lead(principal=Depends(require_permission(Permission.LEADS_DELETE))):
        ...

Denials raise PermissionDeniedError / TenantIsolationError (HTTP 403)
with AuthorizationDecision.to_dict() as the details. Register
realnext.platform.errors.app_error_handler on the app to render them.
"""

from typing import Callable, Iterable

from fastapi import Depends
from sqlalchemy.orm import Session

from realnext.api.dependencies.context import get_principal, require_tenant_member
from realnext.database.session import get_db_session
from realnext.platform.errors import PermissionDeniedError, TenantIsolationError
from realnext.platform.rbac import AuthorizationDecision, AuthorizationGate, DenyReason


def _raise_if_denied(decision: AuthorizationDecision) -> None:
    if decision.allowed:
        return
    if decision.reason == DenyReason.NOT_TENANT_MEMBER:
        raise TenantIsolationError(details=decision.to_dict())
    raise PermissionDeniedError(message=decision.message, details=decision.to_dict())


def require_permission(code) -> Callable:
    """Dependency that allows the request iff the principal holds `code`."""

    def check_permission(
        principal=Depends(get_principal),
        db_session: Session = Depends(get_db_session),
    ):
        _raise_if_denied(AuthorizationGate(db_session).authorize(principal, code))
        return principal

    return check_permission


def require_any_permission(codes: Iterable) -> Callable:
    """Dependency that allows the request iff the principal holds any of `codes`."""
    codes = list(codes)

    def check_any_permission(
        principal=Depends(get_principal),
        db_session: Session = Depends(get_db_session),
    ):
        _raise_if_denied(AuthorizationGate(db_session).authorize_any(principal, codes))
        return principal

    return check_any_permission


def require_super_admin() -> Callable:
    """Dependency for platform-operator endpoints."""

    def check_super_admin(principal=Depends(require_tenant_member)):
        if not principal.is_super_admin:
            raise PermissionDeniedError(message="Super admin access required")
        return principal

    return check_super_admin
