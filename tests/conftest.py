"""
Shared fixtures: in-memory SQLite, seeded governance data, a controllable clock
and a FastAPI test client wired to the same session factory.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import governance_core.models  # noqa: F401
from governance_core.core.config import Settings
from governance_core.db.base import Base
from governance_core.db.seeds.seed_policies import seed_policies
from governance_core.db.seeds.seed_roles import seed_roles
from governance_core.db.session import build_session_factory
from governance_core.main import create_app
from governance_core.services.container import build_services


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        ENABLE_RBAC=True,
        ENABLE_POLICY_ENFORCEMENT=True,
        ENABLE_APPROVAL_WORKFLOWS=True,
        ENABLE_AUDIT_LOGS=True,
        ENABLE_ESCALATION=True,
        ENABLE_EXPORT_GATING=True,
        ENABLE_NOTIFICATIONS=False,
        EXPORT_STORAGE_PATH=str(tmp_path / "exports"),
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def seeded(session_factory):
    db = session_factory()
    try:
        seed_roles(db)
        seed_policies(db)
    finally:
        db.close()


@pytest.fixture
def db(session_factory, seeded):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def services(settings, session_factory, clock):
    return build_services(settings, session_factory, clock=clock)


@pytest.fixture
def make_client(settings, session_factory, seeded, clock):
    """Build a test client, optionally overriding settings."""
    clients = []

    def _make(**overrides):
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        services = build_services(app_settings, session_factory, clock=clock)
        client = TestClient(create_app(app_settings, session_factory, services))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def auth_headers(settings):
    """Bearer header for a user id holding the given roles."""

    def _headers(user_id: str, *roles: str) -> dict:
        token = jwt.encode(
            {"sub": user_id, "roles": list(roles)},
            settings.JWT_SECRET,
            algorithm=settings.JWT_ALGORITHM,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
