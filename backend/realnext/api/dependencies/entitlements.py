"""
Entitlement check dependencies.

Gated routes depend on these after the permission check. Denials raise
PaymentRequiredError (HTTP 402) carrying the EntitlementDeniedError or
QuotaExceededError payload, so clients can prompt an upgrade. Super
admins bypass entitlement and quota checks.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from realnext.api.dependencies.context import require_tenant_member
from realnext.database.session import get_db_session
from realnext.entitlements.errors import EntitlementDeniedError, QuotaExceededError
from realnext.entitlements.service import EntitlementCheckResult, EntitlementService
from realnext.platform.errors import PaymentRequiredError

logger = logging.getLogger(__name__)


def _denied(result: EntitlementCheckResult) -> PaymentRequiredError:
    error = EntitlementDeniedError(
        feature=result.feature,
        reason=result.reason or "not_entitled",
        subscription_status=result.subscription_status,
        plan_id=result.plan_id,
    )
    return PaymentRequiredError(details=error.to_dict())


def require_active_subscription() -> Callable:
    """Dependency that requires an entitled subscription."""

    def check_subscription(
        principal=Depends(require_tenant_member),
        db_session: Session = Depends(get_db_session),
    ):
        if principal.is_super_admin:
            return principal
        result = EntitlementService(db_session, principal.tenant_id).check_subscription()
        if not result.is_entitled:
            logger.warning("entitlement.subscription_denied", extra={
                "tenant_id": principal.tenant_id,
                "subscription_status": result.subscription_status,
            })
            raise _denied(result)
        return principal

    return check_subscription


def require_feature(feature_code: str) -> Callable:
    """Dependency that requires the plan to include `feature_code`."""

    def check_feature(
        principal=Depends(require_tenant_member),
        db_session: Session = Depends(get_db_session),
    ):
        if principal.is_super_admin:
            return principal
        result = EntitlementService(db_session, principal.tenant_id).check_feature(feature_code)
        if not result.is_entitled:
            logger.warning("entitlement.feature_denied", extra={
                "tenant_id": principal.tenant_id,
                "feature": feature_code,
                "reason": result.reason,
            })
            raise _denied(result)
        return principal

    return check_feature


def enforce_quota(feature_code: str, limit_key: Optional[str] = None, amount: int = 1) -> Callable:
    """
    Dependency that consumes `amount` units of a metered feature.

    The increment happens before the handler runs; a request that fails
    later still counts against the quota.
    """

    def check_quota(
        principal=Depends(require_tenant_member),
        db_session: Session = Depends(get_db_session),
    ):
        if principal.is_super_admin:
            return principal
        result = EntitlementService(db_session, principal.tenant_id).check_and_increment(
            feature_code, limit_key=limit_key, amount=amount,
        )
        if not result.entitlement.is_entitled:
            raise _denied(result.entitlement)
        if result.quota_exceeded:
            usage = result.usage
            error = QuotaExceededError(
                feature=feature_code,
                limit=usage.limit,
                current_usage=usage.current_usage,
                period_end=usage.period_end,
            )
            raise PaymentRequiredError(message=str(error), details=error.to_dict())
        return principal

    return check_quota
