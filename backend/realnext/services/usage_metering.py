"""
Usage metering ledger.

Tracks per-feature consumption for a subscription within a usage period
and enforces quotas without overshoot:

- The counter row for (subscription, feature, period_start) is created
  with INSERT ... ON CONFLICT DO NOTHING, so racing first uses converge
  on one row.
- Increments are a single conditional UPDATE:
      SET usage_count = usage_count + :n
      WHERE <key> AND usage_count + :n <= :limit
  The row lock taken by the UPDATE serializes concurrent callers and the
  WHERE clause is re-evaluated against the committed value, so at most
  `limit` units are ever granted.
- limit None, 0 or negative means unlimited; the UPDATE runs without the
  limit predicate and never denies.
- A row whose reset_at has passed starts a new logical period: counting
  continues in a fresh row keyed at reset_at. Old rows are never deleted.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from realnext.constants.features import is_unlimited
from realnext.database.upsert import insert_if_absent
from realnext.models.base import ensure_utc, generate_uuid, utcnow
from realnext.models.subscription import Subscription
from realnext.models.usage import SubscriptionUsage

logger = logging.getLogger(__name__)

# reset_at chains longer than this indicate corrupt data
_MAX_RESET_HOPS = 16


class UsageOutcome(str, enum.Enum):
    ALLOWED = "allowed"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class UsageCheckResult:
    """Result of check_and_increment."""
    outcome: UsageOutcome
    feature_code: str
    current_usage: int
    limit: Optional[int]
    period_start: datetime
    period_end: datetime

    @property
    def allowed(self) -> bool:
        return self.outcome == UsageOutcome.ALLOWED

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(0, int(self.limit) - self.current_usage)


class UsageMeteringError(Exception):
    """Invalid ledger call (bad amount, inverted period, foreign subscription)."""
    pass


class UsageMeteringLedger:
    """
    Atomic usage counters.

    When constructed with a tenant_id, every subscription_id passed in is
    checked to belong to that tenant before any write.
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.tenant_id = tenant_id
        self._clock = clock or utcnow
        self._verified_subscriptions: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_and_increment(
        self,
        subscription_id: str,
        feature_code: str,
        period_start: datetime,
        period_end: datetime,
        limit: Optional[int],
        amount: int = 1,
    ) -> UsageCheckResult:
        """
        Consume `amount` units if the quota allows it.

        Args:
            subscription_id: Subscription being metered
            feature_code: Feature or quota key (e.g. "campaigns")
            period_start: Start of the usage period
            period_end: End of the usage period
            limit: Maximum units per period; None/0/negative = unlimited
            amount: Units to consume (>= 1)

        Returns:
            UsageCheckResult with outcome ALLOWED or QUOTA_EXCEEDED
        """
        if amount < 1:
            raise UsageMeteringError(f"amount must be >= 1, got {amount}")
        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)
        if period_end < period_start:
            raise UsageMeteringError("period_end must not precede period_start")
        self._check_scope(subscription_id)

        now = ensure_utc(self._clock())
        key_start = self._resolve_period_start(subscription_id, feature_code, period_start, now)
        self._ensure_row(subscription_id, feature_code, key_start, period_end)

        unlimited = is_unlimited(limit)
        stmt = (
            update(SubscriptionUsage)
            .where(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.feature_code == feature_code,
                SubscriptionUsage.usage_period_start == key_start,
            )
            .values(usage_count=SubscriptionUsage.usage_count + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if not unlimited:
            stmt = stmt.where(SubscriptionUsage.usage_count + amount <= int(limit))

        result = self.db.execute(stmt)
        granted = result.rowcount == 1
        current = self._read_count(subscription_id, feature_code, key_start)
        self.db.commit()

        if not granted:
            logger.info(
                "usage.quota_exceeded",
                extra={
                    "subscription_id": subscription_id,
                    "feature_code": feature_code,
                    "limit": limit,
                    "current_usage": current,
                    "requested": amount,
                },
            )

        return UsageCheckResult(
            outcome=UsageOutcome.ALLOWED if granted else UsageOutcome.QUOTA_EXCEEDED,
            feature_code=feature_code,
            current_usage=current,
            limit=None if unlimited else int(limit),
            period_start=key_start,
            period_end=period_end,
        )

    def get_usage(self, subscription_id: str, feature_code: str, period_start: datetime) -> int:
        """Units consumed in the current logical period (0 if unused)."""
        self._check_scope(subscription_id)
        now = ensure_utc(self._clock())
        key_start = self._resolve_period_start(
            subscription_id, feature_code, ensure_utc(period_start), now
        )
        return self._read_count(subscription_id, feature_code, key_start)

    def list_current_usage(self, subscription_id: str, at: Optional[datetime] = None) -> List[SubscriptionUsage]:
        """Rows whose period covers `at` (defaults to now), one per feature."""
        self._check_scope(subscription_id)
        at = ensure_utc(at) if at is not None else ensure_utc(self._clock())
        rows = (
            self.db.query(SubscriptionUsage)
            .filter(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.usage_period_start <= at,
                SubscriptionUsage.usage_period_end >= at,
            )
            .order_by(SubscriptionUsage.feature_code, SubscriptionUsage.usage_period_start)
            .all()
        )
        latest = {}
        for row in rows:
            latest[row.feature_code] = row
        return list(latest.values())

    def schedule_reset(
        self,
        subscription_id: str,
        feature_code: str,
        period_start: datetime,
        reset_at: Optional[datetime] = None,
    ) -> Optional[SubscriptionUsage]:
        """
        Mark the current logical period to restart at reset_at (default now).

        Returns the row that was marked, or None if the feature was never used.
        """
        self._check_scope(subscription_id)
        now = ensure_utc(self._clock())
        reset_at = ensure_utc(reset_at) if reset_at is not None else now
        key_start = self._resolve_period_start(subscription_id, feature_code, ensure_utc(period_start), now)
        row = self._get_row(subscription_id, feature_code, key_start)
        if row is None:
            return None
        if reset_at < ensure_utc(row.usage_period_start):
            raise UsageMeteringError("reset_at must not precede the period start")
        row.reset_at = reset_at
        self.db.commit()
        logger.info(
            "usage.reset_scheduled",
            extra={
                "subscription_id": subscription_id,
                "feature_code": feature_code,
                "reset_at": reset_at.isoformat(),
            },
        )
        return row

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_scope(self, subscription_id: str) -> None:
        if not self.tenant_id or subscription_id in self._verified_subscriptions:
            return
        owner = (
            self.db.query(Subscription.tenant_id)
            .filter(Subscription.id == subscription_id)
            .scalar()
        )
        if owner != self.tenant_id:
            logger.error(
                "usage.subscription_scope_violation",
                extra={"subscription_id": subscription_id, "tenant_id": self.tenant_id},
            )
            raise UsageMeteringError(
                f"Subscription {subscription_id} does not belong to tenant {self.tenant_id}"
            )
        self._verified_subscriptions.add(subscription_id)

    def _get_row(self, subscription_id: str, feature_code: str, period_start: datetime) -> Optional[SubscriptionUsage]:
        return (
            self.db.query(SubscriptionUsage)
            .filter(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.feature_code == feature_code,
                SubscriptionUsage.usage_period_start == period_start,
            )
            .first()
        )

    def _read_count(self, subscription_id: str, feature_code: str, period_start: datetime) -> int:
        count = (
            self.db.query(SubscriptionUsage.usage_count)
            .filter(
                SubscriptionUsage.subscription_id == subscription_id,
                SubscriptionUsage.feature_code == feature_code,
                SubscriptionUsage.usage_period_start == period_start,
            )
            .scalar()
        )
        return int(count or 0)

    def _resolve_period_start(
        self,
        subscription_id: str,
        feature_code: str,
        period_start: datetime,
        now: datetime,
    ) -> datetime:
        """Follow passed reset_at markers to the live row's key."""
        key = period_start
        for _ in range(_MAX_RESET_HOPS):
            reset_at = (
                self.db.query(SubscriptionUsage.reset_at)
                .filter(
                    SubscriptionUsage.subscription_id == subscription_id,
                    SubscriptionUsage.feature_code == feature_code,
                    SubscriptionUsage.usage_period_start == key,
                )
                .scalar()
            )
            reset_at = ensure_utc(reset_at)
            if reset_at is None or reset_at > now or reset_at <= key:
                return key
            key = reset_at
        raise UsageMeteringError(
            f"reset chain too long for subscription {subscription_id} feature {feature_code}"
        )

    def _ensure_row(
        self,
        subscription_id: str,
        feature_code: str,
        period_start: datetime,
        period_end: datetime,
    ) -> None:
        """Insert the counter row if absent; concurrent inserts are harmless."""
        values = {
            "id": generate_uuid(),
            "subscription_id": subscription_id,
            "feature_code": feature_code,
            "usage_count": 0,
            "usage_period_start": period_start,
            "usage_period_end": period_end,
        }
        insert_if_absent(
            self.db,
            SubscriptionUsage,
            values,
            index_elements=["subscription_id", "feature_code", "usage_period_start"],
        )
