"""
Application wiring.

build_access_guard() assembles the evaluators from settings:
- DATABASE_URL set: policies, compliance rules and A/B tests come from the
  database and audit records go to access_audit_logs
- otherwise: empty rule sets (everything fails open) and audit records go
  to the structured "audit.access" logger

create_app() returns the FastAPI app with AccessGuardMiddleware installed.
The external auth middleware that sets request.state.principal must be
added after it (Starlette runs the last-added middleware first).
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from pew_access import __version__
from pew_access.api.routes import admin_access, compliance
from pew_access.compliance.gate import ComplianceGate, StaticComplianceSource
from pew_access.config.settings import AccessControlSettings
from pew_access.database.session import dispose_engine
from pew_access.experiments.targeting import ExperimentTargeting, StaticABTestSource
from pew_access.guard.access import AccessGuard
from pew_access.guard.middleware import AccessGuardMiddleware
from pew_access.guard.routes import get_route_table_loader
from pew_access.platform.audit import AsyncAuditWriter, build_audit_sink
from pew_access.platform.errors import AccessControlError
from pew_access.policies.engine import PolicyEngine, StaticPolicySource
from pew_access.rbac.registry import RoleRegistry, build_role_source

logger = logging.getLogger(__name__)


def build_access_guard(settings: Optional[AccessControlSettings] = None) -> AccessGuard:
    settings = settings or AccessControlSettings.from_env()
    registry = RoleRegistry(build_role_source(settings))
    routes = get_route_table_loader().table

    if settings.database_url:
        from pew_access.database.session import get_session_factory
        from pew_access.repositories.ab_tests_repo import DatabaseABTestSource
        from pew_access.repositories.compliance_repo import DatabaseComplianceSource
        from pew_access.repositories.policies_repo import DatabasePolicySource

        session_factory = get_session_factory(settings)
        policy_source = DatabasePolicySource(session_factory)
        compliance_source = DatabaseComplianceSource(session_factory)
        test_source = DatabaseABTestSource(session_factory)
        audit_sink = build_audit_sink(settings, session_factory)
    else:
        logger.warning("DATABASE_URL is not set; policies, compliance rules and A/B tests are empty")
        policy_source = StaticPolicySource()
        compliance_source = StaticComplianceSource()
        test_source = StaticABTestSource()
        audit_sink = build_audit_sink(settings)

    return AccessGuard(
        registry=registry,
        routes=routes,
        policy_engine=PolicyEngine(policy_source),
        compliance_gate=ComplianceGate(compliance_source),
        targeting=ExperimentTargeting(test_source),
        audit_sink=audit_sink,
    )


def create_app(
    access_guard: Optional[AccessGuard] = None,
    settings: Optional[AccessControlSettings] = None,
) -> FastAPI:
    settings = settings or AccessControlSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Pew access-control API")
        if getattr(app.state, "access_guard", None) is None:
            app.state.access_guard = build_access_guard(settings)
        guard = app.state.access_guard
        try:
            roles = guard.registry.list_roles()
            logger.info("Role table ready", extra={"roles": [r.name for r in roles]})
        except AccessControlError:
            # Guard keeps denying privileged access until a reload succeeds
            logger.error("Role table unavailable at startup", exc_info=True)
        yield
        if isinstance(guard.audit_sink, AsyncAuditWriter):
            guard.audit_sink.stop()
        if settings.database_url:
            dispose_engine()
        logger.info("Shutting down Pew access-control API")

    app = FastAPI(
        title="Pew Access Control API",
        description="Role, policy, compliance and experiment gating for the Pew backend",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.access_guard = access_guard

    app.add_middleware(AccessGuardMiddleware, settings=settings)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(compliance.router)
    app.include_router(admin_access.router)

    @app.exception_handler(AccessControlError)
    async def access_control_error_handler(request: Request, exc: AccessControlError):
        logger.warning(
            "Access-control error",
            extra={"error_code": exc.error_code, "path": request.url.path, "error": exc.message},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            extra={
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "detail": "An unexpected error occurred"},
        )

    return app
