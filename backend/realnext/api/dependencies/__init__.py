"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from realnext.api.dependencies.authorization import (
    require_any_permission,
    require_permission,
    require_super_admin,
)
from realnext.api.dependencies.context import get_principal, require_tenant_member
from realnext.api.dependencies.entitlements import (
    enforce_quota,
    require_active_subscription,
    require_feature,
)
from realnext.api.dependencies.partner import (
    get_partner_principal,
    require_partner_access,
    require_partner_admin,
)

__all__ = [
    "get_principal",
    "require_tenant_member",
    "require_permission",
    "require_any_permission",
    "require_super_admin",
    "require_active_subscription",
    "require_feature",
    "enforce_quota",
    "get_partner_principal",
    "require_partner_access",
    "require_partner_admin",
]
