import pytest
from pydantic import ValidationError

from login_guard.config import Settings


def _settings(**kw):
    return Settings(_env_file=None, **kw)


def test_defaults():
    s = _settings()
    assert s.SESSION_TTL_SECONDS == 900
    assert s.STRICT_IP_BINDING is False
    assert s.IP_ALLOWLIST == []
    assert s.mobile_verify_base == "http://127.0.0.1:8081/verify"


def test_allowlist_accepts_comma_separated_addresses():
    s = _settings(IP_ALLOWLIST="10.0.0.1, 0:0:0:0:0:0:0:1,")
    assert s.IP_ALLOWLIST == ["10.0.0.1", "::1"]


@pytest.mark.parametrize("bad", ["10.0.0.0/24", "example.com", "10.0.0.256"])
def test_allowlist_rejects_non_addresses(bad):
    with pytest.raises(ValidationError):
        _settings(IP_ALLOWLIST=[bad])


def test_allowlist_from_environment(monkeypatch):
    monkeypatch.setenv("IP_ALLOWLIST", "192.0.2.1,192.0.2.2")
    monkeypatch.setenv("STRICT_IP_BINDING", "1")
    s = _settings()
    assert s.IP_ALLOWLIST == ["192.0.2.1", "192.0.2.2"]
    assert s.STRICT_IP_BINDING is True


def test_origin_is_normalized():
    s = _settings(ORIGIN=" HTTPS://Login.Example.COM:8443/ ", MOBILE_VERIFY_PATH="m/verify")
    assert s.ORIGIN == "https://login.example.com:8443"
    assert s.mobile_verify_base == "https://login.example.com:8443/m/verify"


def test_origin_requires_http_scheme():
    with pytest.raises(ValidationError):
        _settings(ORIGIN="ftp://example.com")


@pytest.mark.parametrize("field", ["SESSION_TTL_SECONDS", "WRONG_ANSWER_RATE_MAX_ATTEMPTS"])
def test_limits_must_be_positive(field):
    with pytest.raises(ValidationError):
        _settings(**{field: 0})


@pytest.mark.parametrize("raw,expected", [("true", True), ("0", False), ("off", False), ("yes", True)])
def test_flags_parse_loosely(raw, expected):
    assert _settings(STRICT_IP_BINDING=raw).STRICT_IP_BINDING is expected
