import ipaddress
from typing import Annotated
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    # where the phone lands after scanning; the page itself belongs to the host
    ORIGIN: str = "http://127.0.0.1:8081"
    MOBILE_VERIFY_PATH: str = "/verify"

    SESSION_TTL_SECONDS: int = 900

    # three independent (max attempts, window) pairs
    SESSION_RATE_MAX_ATTEMPTS: int = 10
    SESSION_RATE_WINDOW_MINUTES: int = 15
    MOBILE_RATE_MAX_ATTEMPTS: int = 5
    MOBILE_RATE_WINDOW_MINUTES: int = 15
    WRONG_ANSWER_RATE_MAX_ATTEMPTS: int = 3
    WRONG_ANSWER_RATE_WINDOW_MINUTES: int = 15

    # wrong picks allowed on a single session before it must be restarted
    MAX_WRONG_ANSWERS_PER_SESSION: int = 2

    # refuse the mobile step when phone and desktop share an address
    STRICT_IP_BINDING: bool = False
    IP_ALLOWLIST: Annotated[list[str], NoDecode] = []

    # honour X-Forwarded-For (only behind a proxy you control)
    TRUST_PROXY_HEADERS: bool = False

    # empty -> in-process stores (single worker only)
    DATABASE_URL: str = ""

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    # client-side poll ceiling, handed to the desktop on session creation
    POLL_INTERVAL_SECONDS: int = 2
    POLL_MAX_ATTEMPTS: int = 150

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN must be an absolute http(s) origin reachable by the phone.

        Normalization:
          - strip whitespace
          - strip trailing slash
          - require http/https
          - require hostname
          - lowercase hostname

        Note: we preserve an optional port if present.
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("MOBILE_VERIFY_PATH")
    @classmethod
    def normalize_verify_path(cls, v: str) -> str:
        v = (v or "").strip() or "/verify"
        if "://" in v:
            raise ValueError("MOBILE_VERIFY_PATH must be a path, not a URL")
        return "/" + v.lstrip("/")

    @field_validator(
        "SESSION_TTL_SECONDS",
        "SESSION_RATE_MAX_ATTEMPTS",
        "SESSION_RATE_WINDOW_MINUTES",
        "MOBILE_RATE_MAX_ATTEMPTS",
        "MOBILE_RATE_WINDOW_MINUTES",
        "WRONG_ANSWER_RATE_MAX_ATTEMPTS",
        "WRONG_ANSWER_RATE_WINDOW_MINUTES",
        "MAX_WRONG_ANSWERS_PER_SESSION",
        "POLL_INTERVAL_SECONDS",
        "POLL_MAX_ATTEMPTS",
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("STRICT_IP_BINDING", "TRUST_PROXY_HEADERS", "AUDIT_ENABLED", mode="before")
    @classmethod
    def normalize_flag(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return False

    @field_validator("IP_ALLOWLIST", mode="before")
    @classmethod
    def normalize_allowlist(cls, v):
        """
        Accepts a list or a comma-separated string ("10.0.0.1, ::1").

        Only single, well-formed addresses are allowed; networks and host
        names are rejected so a typo never silently widens the list.
        """
        if v is None:
            return []
        if isinstance(v, str):
            v = [p for p in v.split(",")]

        out = []
        for raw in v:
            item = str(raw).strip()
            if not item:
                continue
            try:
                out.append(str(ipaddress.ip_address(item)))
            except ValueError:
                raise ValueError(f"IP_ALLOWLIST entry is not an IP address: {item!r}")
        return out

    @property
    def mobile_verify_base(self) -> str:
        return self.ORIGIN.rstrip("/") + self.MOBILE_VERIFY_PATH


settings = Settings()
