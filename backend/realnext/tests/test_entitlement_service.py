"""
Tests for EntitlementService.

Feature checks run in a fixed order: subscription entitlement, global
feature flag, plan feature. Quota checks meter against the subscription's
current period.
"""

from datetime import timedelta

import pytest

from realnext.constants.features import FeatureCode
from realnext.entitlements.policy import AccessLevel
from realnext.entitlements.service import DenialReason, EntitlementService
from realnext.services.usage_metering import UsageOutcome


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def plan(make_plan):
    return make_plan(code="pro", limits={"campaigns": 10, "users": 5})


@pytest.fixture
def campaigns(make_feature, attach_feature, plan):
    feature = make_feature(FeatureCode.CAMPAIGNS.value)
    attach_feature(plan, feature, limits={FeatureCode.CAMPAIGNS.value: 2})
    return feature


@pytest.fixture
def service(db_session, tenant, clock):
    return EntitlementService(db_session, tenant.id, clock=clock)


class TestSubscriptionCheck:

    def test_requires_tenant(self, db_session):
        with pytest.raises(ValueError):
            EntitlementService(db_session, "")

    def test_no_subscription(self, service):
        result = service.check_subscription()

        assert result.is_entitled is False
        assert result.reason == DenialReason.NO_SUBSCRIPTION
        assert result.access_level == AccessLevel.NONE

    def test_active(self, service, tenant, plan, make_subscription):
        subscription = make_subscription(tenant, plan)

        result = service.check_subscription()

        assert result.is_entitled is True
        assert result.subscription_id == subscription.id
        assert result.access_level == AccessLevel.FULL

    def test_lapsed_period_reads_expired(self, service, tenant, plan, make_subscription, clock):
        make_subscription(tenant, plan, period_end=clock.now - timedelta(seconds=1))

        result = service.check_subscription()

        assert result.is_entitled is False
        assert result.subscription_status == "expired"
        assert result.reason == DenialReason.NOT_ENTITLED

    def test_past_due_is_read_only(self, service, tenant, plan, make_subscription):
        make_subscription(tenant, plan, status="past_due")

        result = service.check_subscription()

        assert result.is_entitled is False
        assert result.access_level == AccessLevel.READ_ONLY


class TestFeatureCheck:

    def test_feature_in_plan(self, service, tenant, plan, campaigns, make_subscription):
        make_subscription(tenant, plan)

        result = service.check_feature("campaigns")

        assert result.is_entitled is True
        assert result.feature == "campaigns"
        # plan feature limits override plan-wide limits
        assert result.limits == {"campaigns": 2, "users": 5}

    def test_unknown_feature_denied(self, service, tenant, plan, make_subscription):
        make_subscription(tenant, plan)

        result = service.check_feature("teleportation")

        assert result.is_entitled is False
        assert result.reason == DenialReason.UNKNOWN_FEATURE

    def test_globally_disabled(self, service, tenant, plan, campaigns, make_subscription, db_session):
        make_subscription(tenant, plan)
        campaigns.is_enabled = False
        db_session.flush()

        assert service.check_feature("campaigns").reason == DenialReason.FEATURE_DISABLED

    def test_not_in_plan(self, service, tenant, plan, make_feature, make_subscription):
        make_subscription(tenant, plan)
        make_feature(FeatureCode.WHITE_LABEL.value)

        assert service.check_feature(FeatureCode.WHITE_LABEL.value).reason == DenialReason.NOT_IN_PLAN

    def test_disabled_in_plan(self, service, tenant, plan, make_feature, attach_feature, make_subscription):
        make_subscription(tenant, plan)
        attach_feature(plan, make_feature("api_access"), is_enabled=False)

        assert service.check_feature("api_access").reason == DenialReason.NOT_IN_PLAN

    def test_subscription_checked_first(self, service, tenant, plan, campaigns, make_subscription):
        make_subscription(tenant, plan, status="suspended")

        result = service.check_feature("campaigns")

        assert result.reason == DenialReason.NOT_ENTITLED
        assert result.access_level == AccessLevel.BILLING_ONLY

    def test_resolve_limit(self, service, tenant, plan, campaigns, make_subscription):
        make_subscription(tenant, plan)

        assert service.resolve_limit("campaigns") == 2
        assert service.resolve_limit("campaigns", limit_key="users") == 5
        assert service.resolve_limit("campaigns", limit_key="storage") is None


class TestQuota:

    def test_check_and_increment_until_exhausted(self, service, tenant, plan, campaigns, make_subscription):
        make_subscription(tenant, plan)

        first = service.check_and_increment("campaigns")
        second = service.check_and_increment("campaigns")
        third = service.check_and_increment("campaigns")

        assert first.allowed and second.allowed
        assert third.allowed is False
        assert third.quota_exceeded is True
        assert third.usage.outcome == UsageOutcome.QUOTA_EXCEEDED
        assert third.usage.current_usage == 2
        assert third.usage.limit == 2

    def test_not_entitled_does_not_meter(self, service, tenant, plan, campaigns, make_subscription):
        make_subscription(tenant, plan, status="past_due")

        result = service.check_and_increment("campaigns")

        assert result.allowed is False
        assert result.usage is None
        assert result.quota_exceeded is False

    def test_unlimited_when_no_limit(self, service, tenant, make_plan, make_feature, attach_feature,
                                     make_subscription):
        free_for_all = make_plan(code="unlimited")
        attach_feature(free_for_all, make_feature("reports"))
        make_subscription(tenant, free_for_all)

        results = [service.check_and_increment("reports") for _ in range(5)]

        assert all(r.allowed for r in results)
        assert results[-1].usage.limit is None

    def test_usage_stats(self, service, tenant, plan, campaigns, make_subscription):
        subscription = make_subscription(tenant, plan)
        service.check_and_increment("campaigns", amount=2)

        stats = service.get_usage_stats()

        assert stats["subscription_id"] == subscription.id
        assert stats["usage"]["campaigns"] == {"used": 2, "limit": 2}

    def test_usage_stats_match_quota_limit(self, service, tenant, make_plan, make_feature, attach_feature,
                                           make_subscription):
        roomy = make_plan(code="roomy", limits={"reports": 100})
        attach_feature(roomy, make_feature("reports"), limits={"reports": 3})
        make_subscription(tenant, roomy)
        service.check_and_increment("reports")

        stats = service.get_usage_stats()

        assert stats["usage"]["reports"]["limit"] == 3
        assert stats["usage"]["reports"]["limit"] == service.resolve_limit("reports")

    def test_usage_stats_without_subscription(self, service):
        assert service.get_usage_stats() == {"subscription_id": None, "usage": {}}
