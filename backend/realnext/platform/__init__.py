"""
Platform-level modules for tenant enforcement and error handling.

- rbac: authorization gate (authorize / authorize_any)
- errors: consistent HTTP error types
"""

from realnext.platform.errors import (
    AppError,
    ValidationError,
    AuthenticationError,
    PaymentRequiredError,
    PermissionDeniedError,
    TenantIsolationError,
    NotFoundError,
    ConflictError,
)
from realnext.platform.rbac import (
    AuthorizationDecision,
    AuthorizationGate,
    DenyReason,
    authorize,
    authorize_any,
)

__all__ = [
    "AppError",
    "ValidationError",
    "AuthenticationError",
    "PaymentRequiredError",
    "PermissionDeniedError",
    "TenantIsolationError",
    "NotFoundError",
    "ConflictError",
    "AuthorizationDecision",
    "AuthorizationGate",
    "DenyReason",
    "authorize",
    "authorize_any",
]
