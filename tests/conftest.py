"""Pytest fixtures."""

import os

# Point the app at a throwaway SQLite file and keep the background sweep off
os.environ["DATABASE_URL"] = "sqlite:///./test_api.db"
os.environ["ESCALATION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["JWT_SECRET"] = "test-secret"

import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from sosdispatch.core.config import Settings
from sosdispatch.core.security import Principal, create_access_token
from sosdispatch.db.base import Base
from sosdispatch.db.session import engine as app_engine
from sosdispatch.main import app
from sosdispatch.models import Alert, AuditRecord, Feedback, Notification, Responder, SafeZone  # noqa: F401 - register for create_all
from sosdispatch.models.enums import Category, Role, Urgency
from sosdispatch.services.dispatch_service import DispatchService
from sosdispatch.services.geo_service import GeoPoint

DELHI = GeoPoint(28.6139, 77.2090)


class FakeClock:
    """Settable clock shared by every component of a service under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now


class RecordingGateway:
    """Push gateway that keeps what it was asked to deliver. Can fail the first N calls."""

    name = "recording"

    def __init__(self, fail_first: int = 0) -> None:
        self.fail_first = fail_first
        self.calls = 0
        self.delivered: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def notify(self, target_id: str, message: dict) -> None:
        with self._lock:
            self.calls += 1
            if self.calls <= self.fail_first:
                raise ConnectionError("gateway unavailable")
            self.delivered.append((target_id, message))

    def targets(self, kind: str | None = None) -> list[str]:
        with self._lock:
            return [t for t, m in self.delivered if kind is None or m["kind"] == kind]


# ---------- service-level fixtures ----------


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def config():
    return Settings(
        database_url="sqlite://",
        escalation_sweep_interval_seconds=0,
        storage_retry_backoff_seconds=0.0,
        notification_retry_backoff_seconds=0.0,
        claim_timeout_seconds=10.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def service(config, session_factory, gateway, clock):
    svc = DispatchService(config, session_factory, [gateway], clock=clock)
    yield svc
    svc.fanout.shutdown()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_responder(
    service: DispatchService,
    db,
    principal_id: str,
    role: Role = Role.VOLUNTEER,
    point: GeoPoint = DELHI,
    radius_km: float = 5.0,
) -> Principal:
    """Register an on-duty responder at ``point``."""
    principal = Principal(principal_id=principal_id, role=role)
    service.update_responder(db, principal, on_duty=True, service_radius_km=radius_km)
    service.update_location(db, principal, point)
    return principal


def dispatched_alert(service: DispatchService, db, requester_id: str = "req-1", **kwargs) -> Alert:
    """An alert with no cancellation window, so it is DISPATCHED straight away."""
    requester = Principal(principal_id=requester_id, role=Role.USER)
    params = {
        "category": Category.MEDICAL,
        "urgency": Urgency.HIGH,
        "description": "Person collapsed near the metro exit",
        "location": DELHI,
        "cancel_window_seconds": 0,
    }
    params.update(kwargs)
    return service.create_alert(db, requester, **params)


# ---------- API fixtures ----------


@pytest.fixture(scope="session")
def setup_db():
    """Create tables once for test session."""
    Base.metadata.create_all(bind=app_engine)
    yield
    Base.metadata.drop_all(bind=app_engine)


@pytest.fixture
def client(setup_db):
    """Test client running the app lifespan."""
    with TestClient(app) as c:
        yield c


def auth(principal_id: str, role: Role = Role.USER) -> dict:
    token = create_access_token(principal_id, role)
    return {"Authorization": f"Bearer {token}"}
