"""
Request identity for route dependencies.

Authentication middleware (outside this package) sets request.state.user_id
and request.state.tenant_id. These helpers read them and resolve the
Principal for the request once.
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from realnext.auth.principal import NotTenantMember, PrincipalResolver
from realnext.database.session import get_db_session
from realnext.platform.errors import AuthenticationError, TenantIsolationError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestIdentity:
    user_id: str
    tenant_id: str


def get_request_identity(request: Request) -> RequestIdentity:
    """
    Read the authenticated user and active tenant from request.state.

    Raises:
        AuthenticationError: no authenticated user (401)
        ValidationError: no tenant selected (400)
    """
    user_id = getattr(request.state, "user_id", None)
    tenant_id = getattr(request.state, "tenant_id", None)
    if not user_id:
        raise AuthenticationError()
    if not tenant_id:
        raise ValidationError("No tenant selected")
    return RequestIdentity(user_id=str(user_id), tenant_id=str(tenant_id))


def get_principal(
    identity: RequestIdentity = Depends(get_request_identity),
    db_session: Session = Depends(get_db_session),
):
    """Principal for the request, or NotTenantMember."""
    return PrincipalResolver(db_session).resolve(identity.user_id, identity.tenant_id)


def require_tenant_member(principal=Depends(get_principal)):
    """Reject callers that are not members of the active tenant (403)."""
    if isinstance(principal, NotTenantMember):
        logger.warning("request.not_tenant_member", extra={
            "user_id": principal.user_id, "tenant_id": principal.tenant_id,
        })
        raise TenantIsolationError(details={"reason": principal.reason})
    return principal
