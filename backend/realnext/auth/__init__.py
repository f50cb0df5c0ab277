"""Principal resolution for tenant- and partner-scoped requests."""

from realnext.auth.partner import NotPartnerMember, PartnerPrincipal, PartnerPrincipalResolver
from realnext.auth.principal import Principal, NotTenantMember, PrincipalResolver

__all__ = [
    "Principal",
    "NotTenantMember",
    "PrincipalResolver",
    "PartnerPrincipal",
    "NotPartnerMember",
    "PartnerPrincipalResolver",
]
