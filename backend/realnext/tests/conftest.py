"""
Root test configuration and fixtures.

Database:
- SQLite in-memory by default, PostgreSQL when DATABASE_URL is set.
- Services commit; each test runs inside an outer transaction that is
  rolled back, with session commits mapped to SAVEPOINTs.

Factories:
- make_user, make_tenant, add_member, make_partner, add_partner_member,
  make_plan, make_feature, attach_feature, make_subscription
- clock: frozen, advanceable "now" passed to services
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("ENV", "test")

FROZEN_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _get_test_database_url() -> str:
    from realnext.database.session import normalize_database_url

    return normalize_database_url(os.getenv("DATABASE_URL") or "sqlite:///:memory:")


def _is_postgres() -> bool:
    return _get_test_database_url().startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    from realnext.database.session import build_engine

    engine = build_engine(_get_test_database_url())
    if _is_postgres():
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(f"PostgreSQL not available. Error: {e}")

    from realnext.db_base import Base
    import realnext.models  # noqa: F401 - registers all tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Session bound to a connection whose outer transaction is rolled back.

    commit()/rollback() inside services operate on a SAVEPOINT.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_billing_settings():
    from realnext.config.billing_settings import reset_billing_settings

    reset_billing_settings()
    yield
    reset_billing_settings()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "postgres: requires DATABASE_URL pointing at PostgreSQL")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Clock
# =============================================================================


class FrozenClock:
    """Callable "now" that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_user(db_session):
    from realnext.models.user import User

    def _make(email=None, is_super_admin=False, status="active", name=None):
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            name=name,
            is_super_admin=is_super_admin,
            status=status,
        )
        db_session.add(user)
        db_session.flush()
        return user

    return _make


@pytest.fixture
def make_tenant(db_session):
    from realnext.models.tenant import Tenant

    def _make(name=None, partner_id=None):
        suffix = uuid.uuid4().hex[:8]
        tenant = Tenant(
            name=name or f"Tenant {suffix}",
            slug=f"tenant-{suffix}",
            partner_id=partner_id,
        )
        db_session.add(tenant)
        db_session.flush()
        return tenant

    return _make


@pytest.fixture
def make_partner(db_session):
    from realnext.models.partner import Partner

    def _make(name=None, status="active"):
        suffix = uuid.uuid4().hex[:8]
        partner = Partner(
            name=name or f"Partner {suffix}",
            slug=f"partner-{suffix}",
            email=f"partner-{suffix}@test.com",
            referral_code=f"REF-{suffix.upper()}",
            status=status,
        )
        db_session.add(partner)
        db_session.flush()
        return partner

    return _make


@pytest.fixture
def add_partner_member(db_session):
    from realnext.models.partner_user import PartnerUser

    def _add(partner, user, role="admin"):
        membership = PartnerUser(partner_id=partner.id, user_id=user.id, role=role)
        db_session.add(membership)
        db_session.flush()
        return membership

    return _add


@pytest.fixture
def add_member(db_session):
    from realnext.models.tenant_user import TenantUser

    def _add(tenant, user, role="user", role_id=None, is_owner=False):
        membership = TenantUser(
            tenant_id=tenant.id,
            user_id=user.id,
            role=role,
            role_id=role_id,
            is_owner=is_owner,
        )
        db_session.add(membership)
        db_session.flush()
        return membership

    return _add


@pytest.fixture
def make_plan(db_session):
    from realnext.models.plan import Plan

    def _make(code=None, price_monthly="1000.00", price_yearly=None, trial_days=14,
              limits=None, name=None, is_active=True):
        code = code or f"plan-{uuid.uuid4().hex[:6]}"
        plan = Plan(
            code=code,
            name=name or code.title(),
            price_monthly=Decimal(price_monthly),
            price_yearly=Decimal(price_yearly) if price_yearly is not None else None,
            trial_days=trial_days,
            limits=limits,
            is_active=is_active,
        )
        db_session.add(plan)
        db_session.flush()
        return plan

    return _make


@pytest.fixture
def make_feature(db_session):
    from realnext.models.plan import Feature

    def _make(code, is_enabled=True):
        feature = Feature(code=code, name=code.replace("_", " ").title(), is_enabled=is_enabled)
        db_session.add(feature)
        db_session.flush()
        return feature

    return _make


@pytest.fixture
def attach_feature(db_session):
    from realnext.models.plan import PlanFeature

    def _attach(plan, feature, limits=None, is_enabled=True):
        link = PlanFeature(plan_id=plan.id, feature_id=feature.id, limits=limits, is_enabled=is_enabled)
        db_session.add(link)
        db_session.flush()
        return link

    return _attach


@pytest.fixture
def make_subscription(db_session):
    from realnext.models.subscription import Subscription

    def _make(tenant, plan, status="active", period_start=None, period_end=None,
              trial_ends_at=None, billing_cycle="monthly", set_current=True, **extra):
        period_start = period_start or FROZEN_NOW - timedelta(days=5)
        period_end = period_end or period_start + timedelta(days=30)
        subscription = Subscription(
            tenant_id=tenant.id,
            plan_id=plan.id,
            status=status,
            billing_cycle=billing_cycle,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_ends_at=trial_ends_at,
            **extra,
        )
        db_session.add(subscription)
        db_session.flush()
        if set_current:
            tenant.current_subscription_id = subscription.id
            db_session.flush()
        return subscription

    return _make


@pytest.fixture
def system_roles(db_session):
    """Shared Admin / Manager / User roles keyed by code."""
    from realnext.models.role import seed_system_roles

    return {role.code: role for role in seed_system_roles(db_session)}
