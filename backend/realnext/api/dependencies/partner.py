"""
Partner-scoped route dependencies.

The partner comes from the `partner_id` path parameter when the route has
one, otherwise from request.state.partner_id (set by the authentication
middleware). Users may only reach partners they belong to; super admins
reach any partner.

Usage:
    @router.get("/partners/{partner_id}/tenants")
    def list_tenants(principal=Depends(require_partner_access())):
        ...
"""

import logging
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from realnext.auth.partner import NotPartnerMember, PartnerPrincipalResolver
from realnext.database.session import get_db_session
from realnext.platform.errors import AuthenticationError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)


def get_partner_principal(request: Request, db_session: Session = Depends(get_db_session)):
    """PartnerPrincipal for the request, or NotPartnerMember."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise AuthenticationError()
    partner_id = request.path_params.get("partner_id") or getattr(request.state, "partner_id", None)
    if not partner_id:
        raise ValidationError("No partner selected")
    return PartnerPrincipalResolver(db_session).resolve(str(user_id), str(partner_id))


def require_partner_access() -> Callable:
    """Any live member of the partner (admin, manager or viewer)."""

    def check_partner_access(principal=Depends(get_partner_principal)):
        if isinstance(principal, NotPartnerMember):
            logger.warning("request.not_partner_member", extra={
                "user_id": principal.user_id, "partner_id": principal.partner_id,
            })
            raise PermissionDeniedError(
                message=principal.message,
                details={"reason": principal.reason, "partner_id": principal.partner_id},
            )
        return principal

    return check_partner_access


def require_partner_admin() -> Callable:
    """Partner admins and managers."""

    def check_partner_admin(principal=Depends(require_partner_access())):
        if not principal.is_partner_admin:
            logger.warning("request.partner_admin_required", extra={
                "user_id": principal.user_id,
                "partner_id": principal.partner_id,
                "partner_role": principal.role,
            })
            raise PermissionDeniedError(
                message="Partner Admin access required",
                details={"partner_role": principal.role},
            )
        return principal

    return check_partner_admin
