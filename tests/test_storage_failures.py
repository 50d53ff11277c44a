"""
An unreachable database must deny every action with StorageUnavailable
(HTTP 503), never fall through to "allowed".
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from login_guard.db import make_engine
from login_guard.errors import StorageUnavailable
from login_guard.main import app, get_service
from login_guard.ratelimit import ActionType, SqlRateLimiter
from login_guard.storage import SqlSessionStore
from login_guard.verification import VerificationService

from conftest import DESKTOP, MOBILE

TOKEN = "a" * 64


@pytest.fixture
def broken_factory(tmp_path):
    # sqlite cannot create a file inside a directory that does not exist
    engine = make_engine(f"sqlite:///{tmp_path / 'missing' / 'guard.db'}")
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def broken_service(broken_factory, cfg, clock):
    return VerificationService(
        SqlSessionStore(broken_factory, clock),
        SqlRateLimiter(broken_factory, clock),
        cfg,
        clock,
    )


def test_create_session_fails_closed(broken_service):
    with pytest.raises(StorageUnavailable):
        broken_service.create_session(DESKTOP)


def test_assign_challenge_fails_closed(broken_service):
    with pytest.raises(StorageUnavailable):
        broken_service.assign_challenge(TOKEN, MOBILE)


def test_submit_answer_fails_closed(broken_service):
    with pytest.raises(StorageUnavailable):
        broken_service.submit_answer(TOKEN, "1234", DESKTOP)


def test_limiter_never_allows_when_unreachable(broken_factory, clock):
    limiter = SqlRateLimiter(broken_factory, clock)

    with pytest.raises(StorageUnavailable):
        limiter.check(DESKTOP.ip, ActionType.SESSION_CREATION, 5, 900)
    with pytest.raises(StorageUnavailable):
        limiter.peek(DESKTOP.ip, ActionType.WRONG_ANSWER, 3, 900)


def test_http_create_returns_503(broken_service):
    app.dependency_overrides[get_service] = lambda: broken_service
    try:
        r = TestClient(app).post("/sessions")
    finally:
        app.dependency_overrides.clear()

    assert r.status_code == 503
    assert r.json()["detail"]["error"] == "storage_unavailable"
