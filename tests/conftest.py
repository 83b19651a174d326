"""
tests/conftest.py — Shared Test Fixtures
========================================
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path

# ---------------------------------------------------------------------------
# Environment that must exist before any jmsmp.api import: the JWT secret
# is validated at module-load time and uploads resolve their directory once.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("JMSMP_CONFIG", str(Path(__file__).parent / "config.test.yaml"))
os.environ.setdefault("JMSMP_UPLOAD_DIR", tempfile.mkdtemp(prefix="jmsmp-test-uploads-"))
os.environ.pop("MAIN_ADMIN_USERNAME", None)

import pytest  # noqa: E402
from passlib.hash import bcrypt  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from jmsmp.database.engine import get_session  # noqa: E402
from jmsmp.database.models import ApplicationStatus, Base, Role, User  # noqa: E402
from jmsmp.engine.realtime import RealtimeHub  # noqa: E402
from jmsmp.services.identity_service import Identity, identity_from_user  # noqa: E402

# Low-cost hash so fixtures don't pay bcrypt's production work factor
TEST_PASSWORD = "secret123"
_FAST_HASH = bcrypt.using(rounds=4).hash(TEST_PASSWORD)


def run_async(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------
class RecordingHub(RealtimeHub):
    """Hub that records every emit instead of delivering it."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []
        self.joined: list[tuple[object, str]] = []
        self.subscriptions: list[tuple[str, object]] = []

    def join(self, conn, room):
        self.joined.append((conn, room))

    def leave(self, conn):
        self.joined = [(c, r) for c, r in self.joined if c is not conn]

    def emit(self, room, event, payload):
        self.events.append((room, event, payload))

    def subscribe(self, room, callback, loop=None):
        self.subscriptions.append((room, callback))

    def emitted(self, room: str | None = None, event: str | None = None) -> list[dict]:
        """Payloads emitted, optionally filtered by room and/or event name."""
        return [
            payload
            for r, e, payload in self.events
            if (room is None or r == room) and (event is None or e == event)
        ]


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all JMSMP tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` in ``run_db`` and by the
    TestClient's threadpool).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def make_user(db_engine: Engine):
    """Factory inserting a user and returning its :class:`Identity`."""

    def _make(
        username: str,
        role: str = Role.PLAYER,
        status: str = ApplicationStatus.PENDING,
        *,
        email: str | None = None,
        discord_id: int | None = None,
    ) -> Identity:
        with get_session(db_engine) as session:
            user = User(
                username=username,
                email=email or f"{username.lower()}@example.com",
                password_hash=_FAST_HASH,
                role=role,
                application_status=status,
                discord_id=discord_id,
            )
            session.add(user)
            session.flush()
            return identity_from_user(user)

    return _make


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------
def make_token(identity: Identity, ttl_days: int = 30) -> str:
    from jmsmp.api.deps import JWT_SECRET
    from jmsmp.services.identity_service import issue_token

    return issue_token(identity, JWT_SECRET, ttl_days)


def auth(identity: Identity) -> dict:
    return {"Authorization": f"Bearer {make_token(identity)}"}


@pytest.fixture
def client(db_engine: Engine, hub: RecordingHub):
    """TestClient bound to the test engine and a recording hub.

    The lifespan is not entered, so no PostgreSQL or seeding is needed.
    """
    from fastapi.testclient import TestClient

    from jmsmp.api.deps import get_engine, get_hub
    from jmsmp.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_hub] = lambda: hub
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
