"""
Entitlement enforcement: subscription state, plan features and quotas.

- policy: pure predicates (is_entitled, is_in_trial, access_level)
- service: tenant-scoped feature and quota checks
- errors: 402 error payloads for the HTTP layer
"""

from realnext.entitlements.policy import (
    AccessLevel,
    access_level,
    effective_status,
    is_entitled,
    is_in_trial,
)
from realnext.entitlements.errors import (
    EntitlementError,
    EntitlementDeniedError,
    QuotaExceededError,
)

__all__ = [
    "AccessLevel",
    "access_level",
    "effective_status",
    "is_entitled",
    "is_in_trial",
    "EntitlementError",
    "EntitlementDeniedError",
    "QuotaExceededError",
]
