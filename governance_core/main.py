"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from governance_core.core.clock import Clock, utcnow
from governance_core.core.config import Settings, get_settings
from governance_core.core.exceptions import GovernanceError
from governance_core.core.middleware import setup_middleware
from governance_core.db.session import build_engine, build_session_factory
from governance_core.services.container import GovernanceServices, build_services

from governance_core.api.approvals import router as approvals_router
from governance_core.api.audit import router as audit_router
from governance_core.api.exports import router as exports_router
from governance_core.api.governance import router as governance_router
from governance_core.api.policies import router as policies_router
from governance_core.api.roles import router as roles_router

logger = logging.getLogger("governance_core")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings: Settings = app.state.settings
    logger.info("🚀 Starting %s", settings.APP_NAME)
    enabled = [name for name in (
        "ENABLE_RBAC", "ENABLE_POLICY_ENFORCEMENT", "ENABLE_APPROVAL_WORKFLOWS", "ENABLE_AUDIT_LOGS",
        "ENABLE_ESCALATION", "ENABLE_EXPORT_GATING", "ENABLE_NOTIFICATIONS",
    ) if getattr(settings, name)]
    logger.info("Governance features enabled: %s", ", ".join(enabled) or "none")
    yield
    logger.info("🔻 Shutting down %s", settings.APP_NAME)


async def governance_exception_handler(request: Request, exc: GovernanceError):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers(),
    )


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    services: Optional[GovernanceServices] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    if session_factory is None:
        session_factory = build_session_factory(build_engine(settings))

    app = FastAPI(
        title="Governance Core API",
        description="RBAC, policy enforcement, approvals, audit and governed exports",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.services = services or build_services(settings, session_factory, clock=clock)

    setup_middleware(app, settings)
    app.add_exception_handler(GovernanceError, governance_exception_handler)

    app.include_router(governance_router, prefix="/api")
    app.include_router(roles_router, prefix="/api")
    app.include_router(policies_router, prefix="/api")
    app.include_router(approvals_router, prefix="/api")
    app.include_router(audit_router, prefix="/api")
    app.include_router(exports_router, prefix="/api")

    @app.get("/")
    async def root():
        return {"name": settings.APP_NAME, "version": "0.1.0", "docs": "/docs"}

    @app.get("/api/health")
    async def health():
        """Quick health check endpoint."""
        return {"status": "ok"}

    return app
