"""
Consistent error types for the HTTP surface.

Every AppError renders as:
    {"error": {"code": ..., "message": ..., "details": {...}}}

Domain outcomes (authorization deny, quota exceeded) are returned as
result objects by the core and converted to these errors only at the
FastAPI dependency layer.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with an HTTP status and machine code."""

    def __init__(
        self,
        code: str = "INTERNAL_ERROR",
        message: str = "An unexpected error occurred",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    def __init__(self, message: str = "Invalid request", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, status.HTTP_400_BAD_REQUEST, details)


class AuthenticationError(AppError):
    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, status.HTTP_401_UNAUTHORIZED, details)


class PaymentRequiredError(AppError):
    def __init__(self, message: str = "Please upgrade your plan", details: Optional[Dict[str, Any]] = None):
        super().__init__("PAYMENT_REQUIRED", message, status.HTTP_402_PAYMENT_REQUIRED, details)


class PermissionDeniedError(AppError):
    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__("PERMISSION_DENIED", message, status.HTTP_403_FORBIDDEN, details)


class TenantIsolationError(AppError):
    def __init__(self, message: str = "You are not a member of this tenant", details: Optional[Dict[str, Any]] = None):
        super().__init__("ACCESS_DENIED", message, status.HTTP_403_FORBIDDEN, details)


class NotFoundError(AppError):
    def __init__(self, resource: str = "Resource", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", f"{resource} not found", status.HTTP_404_NOT_FOUND, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, status.HTTP_409_CONFLICT, details)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """FastAPI exception handler: app.add_exception_handler(AppError, app_error_handler)."""
    if exc.status_code >= 500:
        logger.error("Application error", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
