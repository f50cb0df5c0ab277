"""
Tests for the usage metering ledger.

Tests cover:
- Quota enforcement: limit N grants exactly N units
- Unlimited limits (None, 0, negative)
- Multi-unit increments never overshoot
- Counters are per subscription, feature and period
- reset_at starts a fresh logical period without deleting history
- Tenant scoping and input validation
"""

from datetime import timedelta

import pytest

from realnext.constants.features import is_unlimited
from realnext.models.usage import SubscriptionUsage
from realnext.services.usage_metering import (
    UsageMeteringError,
    UsageMeteringLedger,
    UsageOutcome,
)


@pytest.fixture
def subscription(make_tenant, make_plan, make_subscription):
    return make_subscription(make_tenant(), make_plan())


@pytest.fixture
def ledger(db_session, subscription, clock):
    return UsageMeteringLedger(db_session, tenant_id=subscription.tenant_id, clock=clock)


def _consume(ledger, subscription, feature="campaigns", limit=5, amount=1):
    return ledger.check_and_increment(
        subscription_id=subscription.id,
        feature_code=feature,
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
        limit=limit,
        amount=amount,
    )


class TestIsUnlimited:

    @pytest.mark.parametrize("limit", [None, 0, -1, "0"])
    def test_unlimited(self, limit):
        assert is_unlimited(limit) is True

    @pytest.mark.parametrize("limit", [1, 5, "10"])
    def test_limited(self, limit):
        assert is_unlimited(limit) is False


class TestQuota:

    def test_limit_five(self, ledger, subscription):
        results = [_consume(ledger, subscription) for _ in range(6)]

        assert [r.outcome for r in results[:5]] == [UsageOutcome.ALLOWED] * 5
        assert results[5].outcome == UsageOutcome.QUOTA_EXCEEDED
        assert results[5].current_usage == 5
        assert results[4].remaining == 0

    def test_limit_zero_is_unlimited(self, ledger, subscription):
        results = [_consume(ledger, subscription, limit=0) for _ in range(1000)]

        assert all(r.allowed for r in results)
        assert results[-1].current_usage == 1000
        assert results[-1].unlimited
        assert results[-1].remaining is None

    def test_none_limit(self, ledger, subscription):
        assert _consume(ledger, subscription, limit=None).allowed

    def test_amount_never_overshoots(self, ledger, subscription):
        assert _consume(ledger, subscription, limit=5, amount=3).allowed

        denied = _consume(ledger, subscription, limit=5, amount=3)

        assert not denied.allowed
        assert denied.current_usage == 3
        assert _consume(ledger, subscription, limit=5, amount=2).allowed

    def test_features_counted_separately(self, ledger, subscription):
        for _ in range(2):
            _consume(ledger, subscription, feature="campaigns", limit=2)

        assert not _consume(ledger, subscription, feature="campaigns", limit=2).allowed
        assert _consume(ledger, subscription, feature="workflows", limit=2).allowed

    def test_single_row_per_period(self, db_session, ledger, subscription):
        for _ in range(3):
            _consume(ledger, subscription)

        rows = db_session.query(SubscriptionUsage).filter(
            SubscriptionUsage.subscription_id == subscription.id
        ).all()
        assert len(rows) == 1
        assert rows[0].usage_count == 3

    def test_new_period_starts_at_zero(self, ledger, subscription):
        for _ in range(5):
            _consume(ledger, subscription)

        result = ledger.check_and_increment(
            subscription_id=subscription.id,
            feature_code="campaigns",
            period_start=subscription.current_period_end,
            period_end=subscription.current_period_end + timedelta(days=30),
            limit=5,
        )

        assert result.allowed
        assert result.current_usage == 1


class TestReset:

    def test_reset_starts_fresh_period(self, db_session, ledger, subscription, clock):
        for _ in range(5):
            _consume(ledger, subscription)
        assert not _consume(ledger, subscription).allowed

        ledger.schedule_reset(subscription.id, "campaigns", subscription.current_period_start)
        clock.advance(seconds=1)

        result = _consume(ledger, subscription)
        assert result.allowed
        assert result.current_usage == 1
        assert db_session.query(SubscriptionUsage).count() == 2

    def test_future_reset_not_applied_yet(self, ledger, subscription, clock):
        _consume(ledger, subscription)
        ledger.schedule_reset(
            subscription.id, "campaigns", subscription.current_period_start,
            reset_at=clock.now + timedelta(days=1),
        )

        assert ledger.get_usage(subscription.id, "campaigns", subscription.current_period_start) == 1

    def test_reset_unused_feature(self, ledger, subscription):
        assert ledger.schedule_reset(subscription.id, "campaigns", subscription.current_period_start) is None


class TestReads:

    def test_get_usage_unused(self, ledger, subscription):
        assert ledger.get_usage(subscription.id, "campaigns", subscription.current_period_start) == 0

    def test_list_current_usage(self, ledger, subscription):
        _consume(ledger, subscription, feature="campaigns")
        _consume(ledger, subscription, feature="leads")

        rows = ledger.list_current_usage(subscription.id)

        assert sorted(r.feature_code for r in rows) == ["campaigns", "leads"]


class TestValidation:

    def test_amount_must_be_positive(self, ledger, subscription):
        with pytest.raises(UsageMeteringError):
            _consume(ledger, subscription, amount=0)

    def test_inverted_period(self, ledger, subscription):
        with pytest.raises(UsageMeteringError):
            ledger.check_and_increment(
                subscription_id=subscription.id,
                feature_code="campaigns",
                period_start=subscription.current_period_end,
                period_end=subscription.current_period_start,
                limit=5,
            )

    @pytest.mark.security
    def test_foreign_subscription_rejected(self, db_session, subscription, make_tenant, clock):
        other = make_tenant()
        ledger = UsageMeteringLedger(db_session, tenant_id=other.id, clock=clock)

        with pytest.raises(UsageMeteringError):
            _consume(ledger, subscription)
        assert db_session.query(SubscriptionUsage).count() == 0
