"""
Entitlement policy evaluation.

Pure predicates over a subscription and an instant. is_entitled is the
single place that compares "now" with current_period_end; everything else
(feature gates, quota checks, HTTP dependencies, model properties) calls
it instead of repeating the comparison.

Expiry is lazy: a subscription whose period has ended reads as expired
here even before realnext.services.subscription_service writes the
status back.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from realnext.models.base import ensure_utc, utcnow
from realnext.models.subscription import SubscriptionStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = frozenset([
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.ACTIVE.value,
])


class AccessLevel(str, Enum):
    """What a tenant may do given its subscription state."""
    FULL = "full"                    # All plan features
    READ_ONLY = "read_only"          # Existing data only; new gated actions denied
    BILLING_ONLY = "billing_only"    # Billing and administrative endpoints only
    NONE = "none"                    # No access


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else utcnow()


def period_has_ended(subscription, now: Optional[datetime] = None) -> bool:
    """True once now is strictly past current_period_end."""
    return _now(now) > ensure_utc(subscription.current_period_end)


def is_entitled(subscription, now: Optional[datetime] = None) -> bool:
    """
    Canonical entitlement check.

    True iff status is trial or active and now <= current_period_end.
    A missing subscription is never entitled.
    """
    if subscription is None:
        return False
    if subscription.status not in ENTITLED_STATUSES:
        return False
    return not period_has_ended(subscription, now)


def is_in_trial(subscription, now: Optional[datetime] = None) -> bool:
    """True iff status is trial, trial_ends_at is set and now <= trial_ends_at."""
    if subscription is None:
        return False
    if subscription.status != SubscriptionStatus.TRIAL.value:
        return False
    if subscription.trial_ends_at is None:
        return False
    return _now(now) <= ensure_utc(subscription.trial_ends_at)


def trial_days_remaining(subscription, now: Optional[datetime] = None) -> int:
    """Whole days left in the trial, 0 outside a trial."""
    if not is_in_trial(subscription, now):
        return 0
    delta = ensure_utc(subscription.trial_ends_at) - _now(now)
    return max(0, delta.days)


def is_terminal(subscription) -> bool:
    return subscription is not None and subscription.status in TERMINAL_STATUSES


def effective_status(subscription, now: Optional[datetime] = None) -> Optional[str]:
    """
    Status as of now, applying lazy expiry.

    Any status other than expired reads as expired once the period ends,
    cancelled included.
    """
    if subscription is None:
        return None
    if subscription.status != SubscriptionStatus.EXPIRED.value and period_has_ended(subscription, now):
        return SubscriptionStatus.EXPIRED.value
    return subscription.status


def access_level(subscription, now: Optional[datetime] = None) -> AccessLevel:
    """
    Coarse access level for callers that degrade instead of deny.

    Which features degrade under READ_ONLY is the caller's decision.
    A cancelled subscription keeps FULL access until its period ends even
    though is_entitled is already false for it, so paid-only actions
    (new quota, plan changes) stay gated on is_entitled.
    """
    if is_entitled(subscription, now):
        return AccessLevel.FULL

    status = effective_status(subscription, now)
    if status == SubscriptionStatus.CANCELLED.value:
        return AccessLevel.FULL
    if status == SubscriptionStatus.PAST_DUE.value:
        return AccessLevel.READ_ONLY
    if status == SubscriptionStatus.SUSPENDED.value:
        return AccessLevel.BILLING_ONLY
    return AccessLevel.NONE
