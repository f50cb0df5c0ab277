"""
Tests for the FastAPI dependencies that gate routes.

A small app sets request.state from headers the way the authentication
middleware does, and shares the test session through get_db_session.
"""

from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from realnext.api.dependencies import (
    enforce_quota,
    require_any_permission,
    require_active_subscription,
    require_feature,
    require_partner_access,
    require_partner_admin,
    require_permission,
    require_super_admin,
)
from realnext.constants.permissions import Permission
from realnext.database.session import get_db_session
from realnext.models.base import utcnow
from realnext.platform.errors import AppError, app_error_handler


def _build_app(db_session) -> FastAPI:
    app = FastAPI()
    app.add_exception_handler(AppError, app_error_handler)

    @app.middleware("http")
    async def identity_from_headers(request: Request, call_next):
        request.state.user_id = request.headers.get("X-User-Id")
        request.state.tenant_id = request.headers.get("X-Tenant-Id")
        return await call_next(request)

    def _session():
        yield db_session

    app.dependency_overrides[get_db_session] = _session

    @app.get("/leads")
    def list_leads(principal=Depends(require_permission(Permission.LEADS_VIEW))):
        return {"user_id": principal.user_id}

    @app.delete("/leads")
    def delete_leads(principal=Depends(require_permission(Permission.LEADS_DELETE))):
        return {"deleted": True}

    @app.get("/reports")
    def reports(principal=Depends(require_any_permission([Permission.LEADS_EXPORT, Permission.ANALYTICS_VIEW]))):
        return {"ok": True}

    @app.get("/platform")
    def platform(principal=Depends(require_super_admin())):
        return {"ok": True}

    @app.get("/dashboard")
    def dashboard(principal=Depends(require_active_subscription())):
        return {"ok": True}

    @app.get("/campaigns")
    def campaigns(principal=Depends(require_feature("campaigns"))):
        return {"ok": True}

    @app.post("/campaigns")
    def create_campaign(principal=Depends(enforce_quota("campaigns"))):
        return {"created": True}

    @app.get("/partners/{partner_id}/tenants")
    def partner_tenants(partner_id: str, principal=Depends(require_partner_access())):
        return {"role": principal.role}

    @app.patch("/partners/{partner_id}/settings")
    def partner_settings(partner_id: str, principal=Depends(require_partner_admin())):
        return {"updated": True}

    return app


@pytest.fixture
def client(db_session):
    return TestClient(_build_app(db_session))


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def member(make_user, add_member, tenant, system_roles):
    user = make_user()
    add_member(tenant, user, role="user")
    return user


@pytest.fixture
def plan(make_plan, make_feature, attach_feature):
    plan = make_plan(code="growth")
    attach_feature(plan, make_feature("campaigns"), limits={"campaigns": 1})
    return plan


@pytest.fixture
def live_subscription(make_subscription, tenant, plan):
    # dependencies read the wall clock
    start = utcnow() - timedelta(days=1)
    return make_subscription(tenant, plan, period_start=start, period_end=start + timedelta(days=30))


def _headers(user, tenant):
    return {"X-User-Id": user.id, "X-Tenant-Id": tenant.id}


class TestIdentity:

    def test_unauthenticated(self, client):
        response = client.get("/leads")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"

    def test_no_tenant_selected(self, client, member):
        response = client.get("/leads", headers={"X-User-Id": member.id})

        assert response.status_code == 400

    @pytest.mark.security
    def test_non_member(self, client, make_user, tenant):
        outsider = make_user()

        response = client.get("/leads", headers=_headers(outsider, tenant))

        assert response.status_code == 403
        body = response.json()["error"]
        assert body["code"] == "ACCESS_DENIED"
        assert body["details"]["reason"] == "not_tenant_member"


class TestPermissions:

    def test_allowed(self, client, member, tenant):
        response = client.get("/leads", headers=_headers(member, tenant))

        assert response.status_code == 200
        assert response.json() == {"user_id": member.id}

    def test_missing_permission(self, client, member, tenant):
        response = client.delete("/leads", headers=_headers(member, tenant))

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "PERMISSION_DENIED"
        assert error["details"]["required"] == ["leads.delete"]

    def test_any_permission(self, client, member, tenant):
        response = client.get("/reports", headers=_headers(member, tenant))
        assert response.status_code == 200

    def test_super_admin_only(self, client, member, tenant, make_user):
        assert client.get("/platform", headers=_headers(member, tenant)).status_code == 403

        operator = make_user(is_super_admin=True)
        assert client.get("/platform", headers=_headers(operator, tenant)).status_code == 200


class TestEntitlements:

    def test_no_subscription_is_402(self, client, member, tenant):
        response = client.get("/dashboard", headers=_headers(member, tenant))

        assert response.status_code == 402
        details = response.json()["error"]["details"]
        assert details["error"] == "entitlement_denied"
        assert details["machine_readable"]["code"] == "no_subscription"

    def test_active_subscription(self, client, member, tenant, live_subscription):
        assert client.get("/dashboard", headers=_headers(member, tenant)).status_code == 200

    def test_past_due_is_402(self, client, member, tenant, live_subscription, db_session):
        live_subscription.status = "past_due"
        db_session.flush()

        response = client.get("/dashboard", headers=_headers(member, tenant))

        assert response.status_code == 402
        assert response.json()["error"]["details"]["machine_readable"]["code"] == "payment_past_due"

    def test_feature_not_in_plan(self, client, member, tenant, make_plan, make_feature, make_subscription):
        make_feature("campaigns")
        bare = make_plan(code="bare")
        start = utcnow() - timedelta(days=1)
        make_subscription(tenant, bare, period_start=start, period_end=start + timedelta(days=30))

        response = client.get("/campaigns", headers=_headers(member, tenant))

        assert response.status_code == 402
        assert response.json()["error"]["details"]["reason"] == "feature_not_in_plan"

    def test_feature_allowed(self, client, member, tenant, live_subscription):
        assert client.get("/campaigns", headers=_headers(member, tenant)).status_code == 200

    def test_quota_exhausted(self, client, member, tenant, live_subscription):
        first = client.post("/campaigns", headers=_headers(member, tenant))
        second = client.post("/campaigns", headers=_headers(member, tenant))

        assert first.status_code == 200
        assert second.status_code == 402
        details = second.json()["error"]["details"]
        assert details["error"] == "quota_exceeded"
        assert details["limit"] == 1
        assert details["current_usage"] == 1

    def test_super_admin_bypasses_entitlements(self, client, tenant, make_user):
        operator = make_user(is_super_admin=True)

        assert client.get("/dashboard", headers=_headers(operator, tenant)).status_code == 200
        assert client.post("/campaigns", headers=_headers(operator, tenant)).status_code == 200


class TestPartnerAccess:

    @pytest.fixture
    def partner(self, make_partner):
        return make_partner()

    def _user_with_role(self, make_user, add_partner_member, partner, role):
        user = make_user()
        add_partner_member(partner, user, role=role)
        return user

    def test_viewer_has_partner_access(self, client, make_user, add_partner_member, partner):
        viewer = self._user_with_role(make_user, add_partner_member, partner, "viewer")

        response = client.get(f"/partners/{partner.id}/tenants", headers={"X-User-Id": viewer.id})

        assert response.status_code == 200
        assert response.json() == {"role": "viewer"}

    def test_viewer_is_not_partner_admin(self, client, make_user, add_partner_member, partner):
        viewer = self._user_with_role(make_user, add_partner_member, partner, "viewer")

        response = client.patch(f"/partners/{partner.id}/settings", headers={"X-User-Id": viewer.id})

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Partner Admin access required"

    @pytest.mark.parametrize("role", ["admin", "manager"])
    def test_partner_admin_roles(self, client, make_user, add_partner_member, partner, role):
        user = self._user_with_role(make_user, add_partner_member, partner, role)

        response = client.patch(f"/partners/{partner.id}/settings", headers={"X-User-Id": user.id})

        assert response.status_code == 200

    @pytest.mark.security
    def test_other_partner_denied(self, client, make_user, make_partner, add_partner_member, partner):
        user = self._user_with_role(make_user, add_partner_member, partner, "admin")
        other = make_partner()

        response = client.get(f"/partners/{other.id}/tenants", headers={"X-User-Id": user.id})

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Partner access required"

    def test_unauthenticated(self, client, partner):
        assert client.get(f"/partners/{partner.id}/tenants").status_code == 401

    def test_super_admin(self, client, make_user, partner):
        admin = make_user(is_super_admin=True)

        response = client.patch(f"/partners/{partner.id}/settings", headers={"X-User-Id": admin.id})

        assert response.status_code == 200

    def test_partner_admin_reaches_partner_tenant(self, client, make_user, make_tenant, add_partner_member,
                                                  partner, system_roles):
        user = self._user_with_role(make_user, add_partner_member, partner, "admin")
        tenant = make_tenant(partner_id=partner.id)

        assert client.delete("/leads", headers=_headers(user, tenant)).status_code == 200

    @pytest.mark.security
    def test_partner_admin_blocked_from_direct_tenant(self, client, make_user, make_tenant,
                                                      add_partner_member, partner, system_roles):
        user = self._user_with_role(make_user, add_partner_member, partner, "admin")

        response = client.get("/leads", headers=_headers(user, make_tenant()))

        assert response.status_code == 403
