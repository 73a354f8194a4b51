"""
Tests for AccessGuardMiddleware and require_feature.

A stand-in auth middleware builds the principal from X-Test-User /
X-Test-Role headers, the way the real auth layer would from a session.
"""

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from pew_access.compliance.models import WILDCARD_USER, ComplianceRule
from pew_access.config.settings import AccessControlSettings
from pew_access.guard.decision import Decision, DecisionReason
from pew_access.guard.middleware import (
    AccessGuardMiddleware,
    build_request_context,
    denial_body,
    denial_status,
    require_feature,
)
from pew_access.platform.principal import Principal
from pew_access.policies.models import Policy, PolicyStatus


def add_test_auth(app: FastAPI) -> None:
    async def auth_middleware(request: Request, call_next):
        user_id = request.headers.get("X-Test-User")
        if user_id:
            request.state.principal = Principal(
                id=user_id, assigned_role=request.headers.get("X-Test-Role", "user")
            )
        return await call_next(request)

    # Added last so it runs before the guard
    app.middleware("http")(auth_middleware)


def _headers(user_id="u1", role="user", **extra):
    headers = {"X-Test-User": user_id, "X-Test-Role": role}
    headers.update(extra)
    return headers


@pytest.fixture
def guarded_app(make_guard):
    def _build(**guard_kwargs):
        guard = make_guard(**guard_kwargs)
        app = FastAPI()
        app.add_middleware(AccessGuardMiddleware, guard=guard, settings=AccessControlSettings())
        add_test_auth(app)

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        @app.get("/feed")
        async def feed(request: Request):
            return {"reason": request.state.access_decision.reason.value}

        @app.get("/admin/managers")
        async def managers():
            return {"managers": []}

        @app.get("/api/p2p/offers")
        async def offers(request: Request):
            decision = request.state.access_decision
            return {"restrictions": list(decision.restrictions), "country": request.state.request_context.country}

        @app.post("/api/matches")
        async def matches(decision: Decision = Depends(require_feature("matching"))):
            return {"variant": decision.variant}

        app.state.access_guard = guard
        return TestClient(app)

    return _build


# =============================================================================
# Middleware
# =============================================================================


class TestAccessGuardMiddleware:

    def test_public_route_without_principal(self, guarded_app):
        response = guarded_app().get("/health")
        assert response.status_code == 200

    def test_anonymous_gets_401(self, guarded_app):
        response = guarded_app().get("/feed")
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHENTICATED"

    def test_authenticated_route(self, guarded_app):
        response = guarded_app().get("/feed", headers=_headers())
        assert response.status_code == 200
        assert response.json() == {"reason": "allowed"}

    def test_insufficient_role_body(self, guarded_app):
        response = guarded_app().get("/admin/managers", headers=_headers(role="user"))

        assert response.status_code == 403
        body = response.json()
        assert body["error_code"] == "INSUFFICIENT_ROLE"
        assert body["required_role"] == "admin"
        assert body["restrictions"] == []

    def test_admin_allowed(self, guarded_app):
        response = guarded_app().get("/admin/managers", headers=_headers(role="admin"))
        assert response.status_code == 200

    def test_compliance_denial_from_geo_header(self, guarded_app):
        rule = ComplianceRule(
            id="geo-kp", user_id=WILDCARD_USER, feature="p2p",
            is_allowed=False, restrictions=("p2p",), country="KP",
        )
        client = guarded_app(rules=[rule])

        denied = client.get("/api/p2p/offers", headers=_headers(**{"CF-IPCountry": "kp"}))
        assert denied.status_code == 403
        body = denied.json()
        assert body["error_code"] == "COMPLIANCE_RESTRICTED"
        assert body["restrictions"] == ["p2p"]
        assert "geo-kp" not in denied.text

        allowed = client.get("/api/p2p/offers", headers=_headers(**{"CF-IPCountry": "us"}))
        assert allowed.status_code == 200
        assert allowed.json()["country"] == "US"

    def test_options_skips_guard(self, guarded_app, audit_sink):
        response = guarded_app().options("/admin/managers")
        assert response.status_code != 403
        assert audit_sink.records == []

    def test_audit_records_client_info(self, guarded_app, audit_sink):
        guarded_app().get(
            "/api/p2p/offers",
            headers=_headers(**{"X-Forwarded-For": "198.51.100.4, 10.0.0.1", "User-Agent": "pew-ios"}),
        )
        record = audit_sink.records[0]
        assert record.ip == "198.51.100.4"
        assert record.user_agent == "pew-ios"
        assert record.context["request"] == {"method": "GET"}


# =============================================================================
# require_feature
# =============================================================================


class TestRequireFeature:

    def test_feature_allowed(self, guarded_app):
        response = guarded_app().post("/api/matches", headers=_headers())
        assert response.status_code == 200
        assert response.json() == {"variant": None}

    def test_feature_denied_by_policy(self, guarded_app):
        policy = Policy(
            id="pause-matching", name="pause", feature="matching",
            status=PolicyStatus.ACTIVE, rules={"effect": "deny", "when": True},
        )
        response = guarded_app(policies=[policy]).post("/api/matches", headers=_headers())

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "POLICY_RESTRICTED"


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:

    def test_denial_status(self):
        assert denial_status(Decision.deny(DecisionReason.UNAUTHENTICATED)) == 401
        assert denial_status(Decision.deny(DecisionReason.EVALUATION_ERROR)) == 403

    def test_denial_body_has_no_policy_detail(self):
        body = denial_body(Decision.deny(
            DecisionReason.POLICY_RESTRICTED, restrictions=("matching",), feature="matching",
        ))
        assert set(body) == {"detail", "error_code", "required_role", "required_permission", "restrictions"}

    def test_build_request_context_custom_headers(self):
        app = FastAPI()

        @app.get("/echo-geo")
        async def echo_geo(request: Request):
            settings = AccessControlSettings(geo_country_header="X-Country", geo_region_header="X-Region")
            context = build_request_context(request, settings)
            return {"country": context.country, "region": context.region}

        response = TestClient(app).get("/echo-geo", headers={"X-Country": "ca", "X-Region": "on"})
        assert response.json() == {"country": "CA", "region": "ON"}
