"""
Entitlement service: subscription, feature and quota checks for a tenant.

Composes the pieces a gated action needs:
1. current subscription (Tenant.current_subscription_id), missing = denied
2. is_entitled(subscription) from realnext.entitlements.policy
3. global Feature kill switch, then PlanFeature enablement
4. quota from PlanFeature.limits, falling back to Plan.limits
5. atomic metering via UsageMeteringLedger

All outcomes are result objects. Nothing here raises for a denial.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from realnext.entitlements.policy import AccessLevel, access_level, effective_status, is_entitled
from realnext.models.base import ensure_utc, utcnow
from realnext.models.plan import Feature, Plan, PlanFeature
from realnext.models.subscription import Subscription
from realnext.repositories.billing_repository import SubscriptionRepository
from realnext.services.usage_metering import UsageCheckResult, UsageMeteringLedger

logger = logging.getLogger(__name__)


def _merge_limits(plan: Optional[Plan], feature_limits: Optional[dict]) -> Dict[str, Any]:
    """Plan.limits overridden by the plan feature's own limits."""
    limits: Dict[str, Any] = dict((plan.limits if plan else None) or {})
    limits.update(feature_limits or {})
    return limits


class DenialReason:
    """Machine-readable denial reasons."""
    NO_SUBSCRIPTION = "no_subscription"
    NOT_ENTITLED = "subscription_not_entitled"
    FEATURE_DISABLED = "feature_disabled"
    UNKNOWN_FEATURE = "unknown_feature"
    NOT_IN_PLAN = "feature_not_in_plan"


@dataclass
class EntitlementCheckResult:
    """Result of a subscription or feature entitlement check."""
    is_entitled: bool
    feature: Optional[str]
    subscription_id: Optional[str]
    subscription_status: Optional[str]
    access_level: AccessLevel
    plan_id: Optional[str] = None
    reason: Optional[str] = None
    limits: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QuotaCheckResult:
    """Entitlement plus metering outcome for a quota-gated action."""
    entitlement: EntitlementCheckResult
    usage: Optional[UsageCheckResult] = None

    @property
    def allowed(self) -> bool:
        return self.entitlement.is_entitled and self.usage is not None and self.usage.allowed

    @property
    def quota_exceeded(self) -> bool:
        return self.usage is not None and not self.usage.allowed


class EntitlementService:
    """
    Tenant-scoped entitlement checks.

    Args:
        db_session: Database session
        tenant_id: Tenant being checked (from the request context)
        clock: Optional callable returning "now" (tests)
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self.db = db_session
        self.tenant_id = tenant_id
        self._clock = clock or utcnow
        self.subscriptions = SubscriptionRepository(db_session)
        self.ledger = UsageMeteringLedger(db_session, tenant_id=tenant_id, clock=self._clock)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def get_subscription(self) -> Optional[Subscription]:
        return self.subscriptions.get_current_for_tenant(self.tenant_id)

    def check_subscription(self, subscription: Optional[Subscription] = None) -> EntitlementCheckResult:
        """Is the tenant's current subscription entitled right now."""
        subscription = subscription if subscription is not None else self.get_subscription()
        return self._subscription_result(subscription, feature=None)

    def _subscription_result(self, subscription: Optional[Subscription], feature: Optional[str]) -> EntitlementCheckResult:
        now = self._now()
        if subscription is None:
            logger.info("entitlement.no_subscription", extra={"tenant_id": self.tenant_id, "feature": feature})
            return EntitlementCheckResult(
                is_entitled=False,
                feature=feature,
                subscription_id=None,
                subscription_status=None,
                access_level=AccessLevel.NONE,
                reason=DenialReason.NO_SUBSCRIPTION,
            )

        entitled = is_entitled(subscription, now)
        return EntitlementCheckResult(
            is_entitled=entitled,
            feature=feature,
            subscription_id=subscription.id,
            subscription_status=effective_status(subscription, now),
            access_level=access_level(subscription, now),
            plan_id=subscription.plan_id,
            reason=None if entitled else DenialReason.NOT_ENTITLED,
        )

    def check_feature(self, feature_code: str) -> EntitlementCheckResult:
        """
        Check that the tenant may use a feature.

        Order: subscription entitlement, global feature flag, plan feature.
        """
        subscription = self.get_subscription()
        result = self._subscription_result(subscription, feature=feature_code)
        if not result.is_entitled:
            return result

        feature = self.db.query(Feature).filter(Feature.code == feature_code).first()
        if feature is None:
            return self._deny(result, DenialReason.UNKNOWN_FEATURE)
        if not feature.is_enabled:
            return self._deny(result, DenialReason.FEATURE_DISABLED)

        plan_feature = (
            self.db.query(PlanFeature)
            .filter(PlanFeature.plan_id == subscription.plan_id, PlanFeature.feature_id == feature.id)
            .first()
        )
        if plan_feature is None or not plan_feature.is_enabled:
            return self._deny(result, DenialReason.NOT_IN_PLAN)

        plan = self.db.query(Plan).filter(Plan.id == subscription.plan_id).first()
        result.limits = _merge_limits(plan, plan_feature.limits)
        return result

    def _deny(self, result: EntitlementCheckResult, reason: str) -> EntitlementCheckResult:
        logger.info(
            "entitlement.feature_denied",
            extra={"tenant_id": self.tenant_id, "feature": result.feature, "reason": reason},
        )
        result.is_entitled = False
        result.reason = reason
        return result

    def resolve_limit(self, feature_code: str, limit_key: Optional[str] = None) -> Optional[int]:
        """
        Quota for a feature: PlanFeature.limits, then Plan.limits, else unlimited (None).
        """
        result = self.check_feature(feature_code)
        return result.limits.get(limit_key or feature_code)

    def check_and_increment(
        self,
        feature_code: str,
        limit_key: Optional[str] = None,
        amount: int = 1,
    ) -> QuotaCheckResult:
        """
        Entitlement check followed by an atomic quota increment.

        The usage counter is keyed by feature_code within the subscription's
        current billing period; the limit is read from limit_key (defaults
        to the feature code).
        """
        entitlement = self.check_feature(feature_code)
        if not entitlement.is_entitled:
            return QuotaCheckResult(entitlement=entitlement)

        subscription = self.get_subscription()
        limit = entitlement.limits.get(limit_key or feature_code)
        usage = self.ledger.check_and_increment(
            subscription_id=subscription.id,
            feature_code=feature_code,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            limit=limit,
            amount=amount,
        )
        return QuotaCheckResult(entitlement=entitlement, usage=usage)

    def get_usage_stats(self) -> Dict[str, Any]:
        """Current-period usage per feature with the same limits check_feature resolves."""
        subscription = self.get_subscription()
        if subscription is None:
            return {"subscription_id": None, "usage": {}}

        plan = self.db.query(Plan).filter(Plan.id == subscription.plan_id).first()
        plan_features = dict(
            self.db.query(Feature.code, PlanFeature.limits)
            .join(PlanFeature, PlanFeature.feature_id == Feature.id)
            .filter(PlanFeature.plan_id == subscription.plan_id)
            .all()
        )
        rows = self.ledger.list_current_usage(subscription.id, at=self._now())
        return {
            "subscription_id": subscription.id,
            "period_start": ensure_utc(subscription.current_period_start).isoformat(),
            "period_end": ensure_utc(subscription.current_period_end).isoformat(),
            "usage": {
                row.feature_code: {
                    "used": row.usage_count,
                    "limit": _merge_limits(plan, plan_features.get(row.feature_code)).get(row.feature_code),
                }
                for row in rows
            },
        }
