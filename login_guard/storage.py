"""
login_guard/storage.py

Verification session records and the two stores that hold them.

Contract shared by both stores:
  - create(origin_ip, origin_agent, ttl_seconds) -> token
  - get(token) -> session | None        (None once now >= expires_at)
  - conditional_update(token, expected, ...) -> UpdateResult
  - sweep_expired() -> rows deleted

conditional_update is the only write path. It applies a mutation only while
the stored status is one of `expected`, so two requests racing on the same
token can never both win: one sees OK, the other CONFLICT (or NOT_FOUND if
the session expired in between).
"""

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .clock import system_clock
from .db import VerificationSessionRow
from .errors import StorageUnavailable

log = logging.getLogger(__name__)

# 32 bytes -> 64 hex chars, 256 bits of entropy
TOKEN_BYTES = 32
MAX_CREATE_RETRIES = 5


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def looks_like_token(value: str) -> bool:
    return (
        isinstance(value, str)
        and len(value) == TOKEN_BYTES * 2
        and all(c in "0123456789abcdef" for c in value)
    )


class SessionStatus(str, Enum):
    PENDING = "pending"
    NUMBER_ASSIGNED = "number_assigned"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    USED = "used"
    # never stored; reported for tokens that are gone
    EXPIRED = "expired"


class UpdateResult(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass
class VerificationSession:
    token: str
    status: SessionStatus
    origin_ip: Optional[str]
    origin_agent: Optional[str]
    created_at: int
    expires_at: int
    challenge_code: Optional[str] = None
    choices: Optional[List[str]] = None
    wrong_attempts: int = 0

    def is_expired(self, now: int) -> bool:
        # evaluated on every read, never cached
        return now >= self.expires_at


def _expected_set(expected) -> set:
    if isinstance(expected, (str, SessionStatus)):
        expected = [expected]
    return {SessionStatus(s) for s in expected}


def _require_mutation(status, challenge_code, choices, add_wrong_attempt) -> None:
    if status is None and challenge_code is None and choices is None and not add_wrong_attempt:
        raise ValueError("conditional_update called without a mutation")


class InMemoryStore:
    """Process-local store. Safe across threads, not across workers."""

    def __init__(self, clock=system_clock):
        self.clock = clock
        self.sessions: Dict[str, VerificationSession] = {}
        self._lock = threading.Lock()

    def create(self, origin_ip: Optional[str], origin_agent: Optional[str], ttl_seconds: int) -> str:
        with self._lock:
            now = self.clock.now()
            for _ in range(MAX_CREATE_RETRIES):
                token = generate_token()
                existing = self.sessions.get(token)
                if existing is None or existing.is_expired(now):
                    break
                log.warning("token collision on create, retrying")
            else:
                raise StorageUnavailable()

            self.sessions[token] = VerificationSession(
                token=token,
                status=SessionStatus.PENDING,
                origin_ip=origin_ip,
                origin_agent=origin_agent,
                created_at=now,
                expires_at=now + int(ttl_seconds),
            )
            return token

    def get(self, token: str) -> Optional[VerificationSession]:
        with self._lock:
            sess = self.sessions.get(token)
            if sess is None or sess.is_expired(self.clock.now()):
                return None
            return replace(sess)

    def conditional_update(
        self,
        token: str,
        expected: Iterable[SessionStatus],
        *,
        status: Optional[SessionStatus] = None,
        challenge_code: Optional[str] = None,
        choices: Optional[List[str]] = None,
        add_wrong_attempt: bool = False,
        max_wrong_attempts: Optional[int] = None,
    ) -> UpdateResult:
        _require_mutation(status, challenge_code, choices, add_wrong_attempt)
        expected = _expected_set(expected)

        with self._lock:
            sess = self.sessions.get(token)
            if sess is None or sess.is_expired(self.clock.now()):
                return UpdateResult.NOT_FOUND

            if sess.status not in expected:
                return UpdateResult.CONFLICT
            if challenge_code is not None and sess.challenge_code is not None:
                return UpdateResult.CONFLICT
            if choices is not None and sess.choices is not None:
                return UpdateResult.CONFLICT
            if max_wrong_attempts is not None and sess.wrong_attempts >= max_wrong_attempts:
                return UpdateResult.CONFLICT

            if status is not None:
                sess.status = SessionStatus(status)
            if challenge_code is not None:
                sess.challenge_code = challenge_code
            if choices is not None:
                sess.choices = list(choices)
            if add_wrong_attempt:
                sess.wrong_attempts += 1
            return UpdateResult.OK

    def sweep_expired(self) -> int:
        with self._lock:
            now = self.clock.now()
            dead = [k for k, s in self.sessions.items() if s.is_expired(now)]
            for k in dead:
                self.sessions.pop(k, None)
            return len(dead)


def _row_to_session(row: VerificationSessionRow) -> VerificationSession:
    return VerificationSession(
        token=row.token,
        status=SessionStatus(row.status),
        origin_ip=row.origin_ip,
        origin_agent=row.origin_agent,
        created_at=int(row.created_at),
        expires_at=int(row.expires_at),
        challenge_code=row.challenge_code,
        choices=row.choices.split(",") if row.choices else None,
        wrong_attempts=int(row.wrong_attempts or 0),
    )


class SqlSessionStore:
    """
    Durable store on SQLAlchemy.

    Each mutation is one `UPDATE ... WHERE token = :t AND status IN (...)`;
    the database serialises concurrent writers and `rowcount` tells us who won.
    """

    def __init__(self, session_factory, clock=system_clock):
        self._db = session_factory
        self.clock = clock

    def create(self, origin_ip: Optional[str], origin_agent: Optional[str], ttl_seconds: int) -> str:
        now = self.clock.now()
        for _ in range(MAX_CREATE_RETRIES):
            token = generate_token()
            try:
                with self._db.begin() as db:
                    db.add(
                        VerificationSessionRow(
                            token=token,
                            status=SessionStatus.PENDING.value,
                            origin_ip=origin_ip,
                            origin_agent=origin_agent,
                            created_at=now,
                            expires_at=now + int(ttl_seconds),
                            wrong_attempts=0,
                        )
                    )
                return token
            except IntegrityError:
                log.warning("token collision on create, retrying")
            except SQLAlchemyError as e:
                log.error("session store unavailable on create: %s", e)
                raise StorageUnavailable() from e
        raise StorageUnavailable()

    def get(self, token: str) -> Optional[VerificationSession]:
        now = self.clock.now()
        try:
            with self._db() as db:
                row = db.execute(
                    select(VerificationSessionRow).where(
                        VerificationSessionRow.token == token,
                        VerificationSessionRow.expires_at > now,
                    )
                ).scalar_one_or_none()
                return _row_to_session(row) if row is not None else None
        except SQLAlchemyError as e:
            log.error("session store unavailable on get: %s", e)
            raise StorageUnavailable() from e

    def conditional_update(
        self,
        token: str,
        expected: Iterable[SessionStatus],
        *,
        status: Optional[SessionStatus] = None,
        challenge_code: Optional[str] = None,
        choices: Optional[List[str]] = None,
        add_wrong_attempt: bool = False,
        max_wrong_attempts: Optional[int] = None,
    ) -> UpdateResult:
        _require_mutation(status, challenge_code, choices, add_wrong_attempt)
        expected = _expected_set(expected)
        now = self.clock.now()
        Row = VerificationSessionRow

        values = {}
        if status is not None:
            values["status"] = SessionStatus(status).value
        if challenge_code is not None:
            values["challenge_code"] = challenge_code
        if choices is not None:
            values["choices"] = ",".join(choices)
        if add_wrong_attempt:
            values["wrong_attempts"] = Row.wrong_attempts + 1

        stmt = update(Row).where(
            Row.token == token,
            Row.expires_at > now,
            Row.status.in_([s.value for s in expected]),
        )
        if challenge_code is not None:
            stmt = stmt.where(Row.challenge_code.is_(None))
        if choices is not None:
            stmt = stmt.where(Row.choices.is_(None))
        if max_wrong_attempts is not None:
            stmt = stmt.where(Row.wrong_attempts < max_wrong_attempts)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            with self._db.begin() as db:
                if db.execute(stmt).rowcount == 1:
                    return UpdateResult.OK
                still_there = db.execute(
                    select(Row.id).where(Row.token == token, Row.expires_at > now)
                ).first()
        except SQLAlchemyError as e:
            log.error("session store unavailable on update: %s", e)
            raise StorageUnavailable() from e

        return UpdateResult.CONFLICT if still_there else UpdateResult.NOT_FOUND

    def sweep_expired(self) -> int:
        now = self.clock.now()
        try:
            with self._db.begin() as db:
                res = db.execute(
                    delete(VerificationSessionRow)
                    .where(VerificationSessionRow.expires_at <= now)
                    .execution_options(synchronize_session=False)
                )
                return int(res.rowcount or 0)
        except SQLAlchemyError as e:
            log.error("session store unavailable on sweep: %s", e)
            raise StorageUnavailable() from e
