"""
Canonical permission catalog and system-role matrix for RealNext.

IMPORTANT: This is the single source of truth for permission codes.
All permission checks MUST reference these constants.
UI permission gating is UX only - server-side enforcement is security.

Two role sources exist per membership:
- Custom roles: TenantUser.role_id -> roles row (tenant-scoped)
- Legacy roles: TenantUser.role enum -> system role (tenant_id NULL)

The legacy enum is mapped to system roles through
LEGACY_ROLE_SYSTEM_ROLE_CODES. Role names are display text only and are
never used to find a role.
"""

from enum import Enum
from typing import FrozenSet, Optional


class LegacyRole(str, Enum):
    """Fixed role stored on every membership row (TenantUser.role)."""
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class PartnerRole(str, Enum):
    """Role on a partner membership (PartnerUser.role)."""
    ADMIN = "admin"
    MANAGER = "manager"
    VIEWER = "viewer"


# Partner roles that may act on the partner's tenants, and the legacy
# tenant role they act with. Viewers get partner-level read access only.
PARTNER_TENANT_ROLES: dict[PartnerRole, LegacyRole] = {
    PartnerRole.ADMIN: LegacyRole.ADMIN,
    PartnerRole.MANAGER: LegacyRole.MANAGER,
}


class Permission(str, Enum):
    """
    Permission codes, namespaced by resource.

    Format: <resource>.<action>
    """
    # Leads
    LEADS_VIEW = "leads.view"
    LEADS_CREATE = "leads.create"
    LEADS_EDIT = "leads.edit"
    LEADS_DELETE = "leads.delete"
    LEADS_EXPORT = "leads.export"

    # Campaigns
    CAMPAIGNS_VIEW = "campaigns.view"
    CAMPAIGNS_CREATE = "campaigns.create"
    CAMPAIGNS_EDIT = "campaigns.edit"
    CAMPAIGNS_DELETE = "campaigns.delete"
    CAMPAIGNS_SEND = "campaigns.send"

    # Templates
    TEMPLATES_VIEW = "templates.view"
    TEMPLATES_CREATE = "templates.create"
    TEMPLATES_EDIT = "templates.edit"
    TEMPLATES_DELETE = "templates.delete"

    # Workflows
    WORKFLOWS_VIEW = "workflows.view"
    WORKFLOWS_CREATE = "workflows.create"
    WORKFLOWS_EDIT = "workflows.edit"
    WORKFLOWS_DELETE = "workflows.delete"

    # Team
    TEAM_VIEW = "team.view"
    TEAM_INVITE = "team.invite"
    TEAM_EDIT = "team.edit"
    TEAM_REMOVE = "team.remove"

    # Roles
    ROLES_VIEW = "roles.view"
    ROLES_CREATE = "roles.create"
    ROLES_EDIT = "roles.edit"
    ROLES_DELETE = "roles.delete"

    # Settings
    SETTINGS_VIEW = "settings.view"
    SETTINGS_EDIT = "settings.edit"
    SETTINGS_BILLING = "settings.billing"

    # Analytics
    ANALYTICS_VIEW = "analytics.view"
    ANALYTICS_EXPORT = "analytics.export"

    @property
    def category(self) -> str:
        return self.value.split(".", 1)[0]


_PERMISSION_NAMES = {
    "view": "View",
    "create": "Create",
    "edit": "Edit",
    "delete": "Delete",
    "export": "Export",
    "send": "Send",
    "invite": "Invite",
    "remove": "Remove",
    "billing": "Manage Billing for",
}


def permission_display_name(permission: Permission) -> str:
    """Human name for a catalog entry, e.g. 'Create Leads'."""
    resource, action = permission.value.split(".", 1)
    verb = _PERMISSION_NAMES.get(action, action.title())
    return f"{verb} {resource.title()}"


ALL_PERMISSIONS: FrozenSet[str] = frozenset(p.value for p in Permission)


# System role machine codes. Role.code holds these for tenant_id IS NULL rows.
SYSTEM_ROLE_ADMIN = "admin"
SYSTEM_ROLE_MANAGER = "manager"
SYSTEM_ROLE_USER = "user"


# Explicit legacy enum -> system role code table.
LEGACY_ROLE_SYSTEM_ROLE_CODES: dict[LegacyRole, str] = {
    LegacyRole.ADMIN: SYSTEM_ROLE_ADMIN,
    LegacyRole.MANAGER: SYSTEM_ROLE_MANAGER,
    LegacyRole.USER: SYSTEM_ROLE_USER,
}


_MANAGER_EXCLUDED: FrozenSet[str] = frozenset([
    Permission.ROLES_VIEW.value,
    Permission.ROLES_CREATE.value,
    Permission.ROLES_EDIT.value,
    Permission.ROLES_DELETE.value,
    Permission.TEAM_REMOVE.value,
    Permission.SETTINGS_BILLING.value,
])


SYSTEM_ROLE_TEMPLATES: dict[str, dict] = {
    SYSTEM_ROLE_ADMIN: {
        "name": "Admin",
        "description": "Full access to all tenant features",
        "permissions": ALL_PERMISSIONS,
        "is_default": False,
    },
    SYSTEM_ROLE_MANAGER: {
        "name": "Manager",
        "description": "Manage leads, campaigns and team without role or billing control",
        "permissions": ALL_PERMISSIONS - _MANAGER_EXCLUDED,
        "is_default": False,
    },
    SYSTEM_ROLE_USER: {
        "name": "User",
        "description": "Day-to-day CRM access",
        "permissions": frozenset([
            Permission.LEADS_VIEW.value,
            Permission.LEADS_CREATE.value,
            Permission.LEADS_EDIT.value,
            Permission.CAMPAIGNS_VIEW.value,
            Permission.TEMPLATES_VIEW.value,
            Permission.WORKFLOWS_VIEW.value,
            Permission.ANALYTICS_VIEW.value,
        ]),
        "is_default": True,
    },
}


def system_role_code_for(legacy_role: Optional[str]) -> Optional[str]:
    """
    Map a stored legacy role string to its system role code.

    Unknown values return None so the caller resolves an empty set.
    """
    if not legacy_role:
        return None
    try:
        return LEGACY_ROLE_SYSTEM_ROLE_CODES[LegacyRole(legacy_role)]
    except ValueError:
        return None
