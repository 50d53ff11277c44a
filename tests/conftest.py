"""
Shared fixtures: a controllable clock, isolated settings, and stores /
limiters / services built against both the in-memory and SQLite backends.
"""
import pytest
from fastapi.testclient import TestClient

from login_guard.config import Settings
from login_guard.db import make_engine, make_session_factory
from login_guard.main import app, get_service
from login_guard.ratelimit import InMemoryRateLimiter, SqlRateLimiter
from login_guard.storage import InMemoryStore, SqlSessionStore
from login_guard.verification import RequestContext, VerificationService

DESKTOP = RequestContext(ip="203.0.113.10", user_agent="desktop-browser")
MOBILE = RequestContext(ip="198.51.100.7", user_agent="mobile-browser")


class FakeClock:
    def __init__(self, start: int = 1_700_000_000):
        self.t = start

    def now(self) -> int:
        return self.t

    def advance(self, seconds: int) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        _env_file=None,
        SESSION_TTL_SECONDS=900,
        SESSION_RATE_MAX_ATTEMPTS=5,
        SESSION_RATE_WINDOW_MINUTES=15,
        MOBILE_RATE_MAX_ATTEMPTS=5,
        MOBILE_RATE_WINDOW_MINUTES=15,
        WRONG_ANSWER_RATE_MAX_ATTEMPTS=3,
        WRONG_ANSWER_RATE_WINDOW_MINUTES=15,
        MAX_WRONG_ANSWERS_PER_SESSION=2,
        STRICT_IP_BINDING=False,
        IP_ALLOWLIST=[],
        TRUST_PROXY_HEADERS=False,
        DATABASE_URL="",
        AUDIT_ENABLED=True,
        AUDIT_DIR=str(tmp_path / "audit"),
    )


@pytest.fixture
def sql_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'guard.db'}")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def backend(request):
    return request.param


@pytest.fixture
def store(backend, clock, request):
    if backend == "memory":
        return InMemoryStore(clock)
    return SqlSessionStore(request.getfixturevalue("sql_factory"), clock)


@pytest.fixture
def limiter(backend, clock, request):
    if backend == "memory":
        return InMemoryRateLimiter(clock)
    return SqlRateLimiter(request.getfixturevalue("sql_factory"), clock)


@pytest.fixture
def service(store, limiter, cfg, clock):
    return VerificationService(store, limiter, cfg, clock)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
