"""Pytest configuration and fixtures for backend tests."""

import threading
import time

import pytest
from sqlalchemy.orm import sessionmaker

from abuse_guard.db import SqlAlchemySecurityEventRepository, build_engine, init_db
from abuse_guard.models import RateLimitPolicy
from abuse_guard.rate_limit import RateLimitEngine
from abuse_guard.security_events import SecurityEventLogger
from abuse_guard.storage import InMemorySecurityEventRepository, SecurityEventRepository


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingRepository(SecurityEventRepository):
    """Every operation raises, simulating an unreachable database."""

    def add(self, payload):
        raise OSError("disk I/O error")

    def list_recent(self, limit, event_type=None, severity=None, acknowledged=None):
        raise OSError("disk I/O error")

    def acknowledge(self, event_id, acknowledged_by, at=None):
        raise OSError("disk I/O error")


class SlowRepository(InMemorySecurityEventRepository):
    """Blocks writes until released, to exercise the write timeout."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self._delay = delay
        self.release = threading.Event()

    def add(self, payload):
        self.release.wait(self._delay)
        return super().add(payload)


CONTACT = "contact-form"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def contact_policy():
    return RateLimitPolicy(
        category=CONTACT,
        max_requests=5,
        window_seconds=3600,
        warn_at=4,
        escalation_threshold=3,
        escalation_factor=10,
        max_penalty_seconds=7 * 86400,
    )


@pytest.fixture
def policies(contact_policy):
    return {
        CONTACT: contact_policy,
        "api": RateLimitPolicy(category="api", max_requests=100, window_seconds=900, warn_at=80),
        "admin": RateLimitPolicy(category="admin", max_requests=60, window_seconds=60, warn_at=45),
    }


@pytest.fixture
def engine(policies, clock):
    return RateLimitEngine(policies, idle_ttl_seconds=7200, max_records=1000, clock=clock)


@pytest.fixture
def memory_repo():
    return InMemorySecurityEventRepository()


@pytest.fixture
def sqlite_repo():
    """SQLAlchemy repository over an in-memory SQLite database."""
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    return SqlAlchemySecurityEventRepository(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def event_logger(memory_repo):
    return SecurityEventLogger(memory_repo, timeout_seconds=2.0)


@pytest.fixture
def failing_logger():
    return SecurityEventLogger(FailingRepository(), timeout_seconds=1.0)


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
