"""
Structured error classes for entitlement enforcement.

The core returns result objects; these exceptions exist for the HTTP
dependency layer, which raises them as 402 responses.
"""

from typing import Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class EntitlementDeniedError(EntitlementError):
    """
    Raised when a subscription or feature entitlement check fails.

    Includes machine-readable reason codes for programmatic handling.
    """

    def __init__(
        self,
        feature: Optional[str],
        reason: str,
        subscription_status: Optional[str],
        plan_id: Optional[str] = None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        self.feature = feature
        self.reason = reason
        self.subscription_status = subscription_status
        self.plan_id = plan_id
        self.http_status = http_status
        target = f"Feature '{feature}'" if feature else "Subscription"
        super().__init__(f"{target} denied: {reason}")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "feature": self.feature,
            "reason": self.reason,
            "subscription_status": self.subscription_status,
            "plan_id": self.plan_id,
            "upgrade_required": True,
            "machine_readable": {
                "code": self._get_reason_code(),
                "subscription_status": self.subscription_status,
                "feature": self.feature,
            },
        }

    def _get_reason_code(self) -> str:
        """Get machine-readable reason code."""
        if self.subscription_status is None:
            return "no_subscription"
        if self.subscription_status == "expired":
            return "subscription_expired"
        if self.subscription_status == "cancelled":
            return "subscription_cancelled"
        if self.subscription_status == "past_due":
            return "payment_past_due"
        if self.subscription_status == "suspended":
            return "subscription_suspended"
        return "feature_not_entitled"


class QuotaExceededError(EntitlementError):
    """Raised by the HTTP layer when a usage quota is exhausted."""

    def __init__(
        self,
        feature: str,
        limit: int,
        current_usage: int,
        period_end=None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        self.feature = feature
        self.limit = limit
        self.current_usage = current_usage
        self.period_end = period_end
        self.http_status = http_status
        super().__init__(
            f"Usage limit reached for {feature}: {current_usage}/{limit}. Please upgrade your plan."
        )

    def to_dict(self) -> dict:
        return {
            "error": "quota_exceeded",
            "feature": self.feature,
            "limit": self.limit,
            "current_usage": self.current_usage,
            "resets_at": self.period_end.isoformat() if self.period_end else None,
            "upgrade_required": True,
            "message": "Usage limit reached. Please upgrade your plan.",
        }
