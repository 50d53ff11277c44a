"""
login_guard/ratelimit.py

Per-(origin, action) attempt counters with a window that restarts once it
has elapsed.

check():
  - no counter, or window elapsed  -> counter = 1, window_start = now, allowed
  - count < max_attempts           -> count += 1, allowed
  - otherwise                      -> denied, retry after the window ends
                                      (whole minutes, at least one)

A denied check changes nothing, so callers must consult the limiter before
they touch any session state.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .clock import system_clock
from .db import RateLimitCounterRow
from .errors import StorageUnavailable

log = logging.getLogger(__name__)

UNKNOWN_IDENTITY = "unknown"
MAX_INSERT_RACES = 3


class ActionType(str, Enum):
    SESSION_CREATION = "session_creation"
    MOBILE_CHALLENGE = "mobile_challenge"
    WRONG_ANSWER = "wrong_answer"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: int = 0

    @property
    def retry_after_minutes(self) -> int:
        return self.retry_after_seconds // 60


ALLOWED = RateDecision(True, 0)


@dataclass
class RateLimitCounter:
    identity: str
    action: ActionType
    attempt_count: int
    window_start: int
    last_attempt_at: int


def _identity(identity: Optional[str]) -> str:
    return (identity or "").strip() or UNKNOWN_IDENTITY


def _retry_after(window_start: int, window_seconds: int, now: int) -> int:
    remaining = window_start + window_seconds - now
    return max(60, (remaining // 60) * 60)


def _window_elapsed(window_start: int, window_seconds: int, now: int) -> bool:
    return now >= window_start + window_seconds


class InMemoryRateLimiter:
    def __init__(self, clock=system_clock):
        self.clock = clock
        self.counters: Dict[Tuple[str, ActionType], RateLimitCounter] = {}
        self._lock = threading.Lock()

    def check(self, identity: Optional[str], action: ActionType, max_attempts: int, window_seconds: int) -> RateDecision:
        key = (_identity(identity), ActionType(action))
        with self._lock:
            now = self.clock.now()
            c = self.counters.get(key)

            if c is None or _window_elapsed(c.window_start, window_seconds, now):
                self.counters[key] = RateLimitCounter(key[0], key[1], 1, now, now)
                return ALLOWED

            if c.attempt_count < max_attempts:
                c.attempt_count += 1
                c.last_attempt_at = now
                return ALLOWED

            return RateDecision(False, _retry_after(c.window_start, window_seconds, now))

    def peek(self, identity: Optional[str], action: ActionType, max_attempts: int, window_seconds: int) -> RateDecision:
        """Would the next attempt be refused? Records nothing."""
        key = (_identity(identity), ActionType(action))
        with self._lock:
            now = self.clock.now()
            c = self.counters.get(key)
            if c is None or _window_elapsed(c.window_start, window_seconds, now):
                return ALLOWED
            if c.attempt_count < max_attempts:
                return ALLOWED
            return RateDecision(False, _retry_after(c.window_start, window_seconds, now))

    def get_counter(self, identity: Optional[str], action: ActionType) -> Optional[RateLimitCounter]:
        with self._lock:
            return self.counters.get((_identity(identity), ActionType(action)))

    def reset(self, identity: Optional[str], action: ActionType) -> None:
        with self._lock:
            self.counters.pop((_identity(identity), ActionType(action)), None)

    def sweep(self, older_than_seconds: int) -> int:
        with self._lock:
            cutoff = self.clock.now() - older_than_seconds
            dead = [k for k, c in self.counters.items() if c.window_start <= cutoff]
            for k in dead:
                self.counters.pop(k, None)
            return len(dead)


class SqlRateLimiter:
    """
    Same algorithm on SQLAlchemy.

    Each branch is a single conditional statement (restart-if-elapsed,
    increment-if-under-limit, insert-if-absent) so concurrent workers never
    lose or double an increment.
    """

    def __init__(self, session_factory, clock=system_clock):
        self._db = session_factory
        self.clock = clock

    def _key(self, identity: Optional[str], action: ActionType):
        Row = RateLimitCounterRow
        return (Row.identity == _identity(identity), Row.action == ActionType(action).value)

    def check(self, identity: Optional[str], action: ActionType, max_attempts: int, window_seconds: int) -> RateDecision:
        Row = RateLimitCounterRow
        key = self._key(identity, action)
        now = self.clock.now()

        try:
            for _ in range(MAX_INSERT_RACES):
                with self._db.begin() as db:
                    restarted = db.execute(
                        update(Row)
                        .where(*key, Row.window_start <= now - window_seconds)
                        .values(attempt_count=1, window_start=now, last_attempt_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if restarted.rowcount:
                        return ALLOWED

                    bumped = db.execute(
                        update(Row)
                        .where(
                            *key,
                            Row.window_start > now - window_seconds,
                            Row.attempt_count < max_attempts,
                        )
                        .values(attempt_count=Row.attempt_count + 1, last_attempt_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if bumped.rowcount:
                        return ALLOWED

                    row = db.execute(select(Row).where(*key)).scalar_one_or_none()
                    if row is not None:
                        return RateDecision(False, _retry_after(int(row.window_start), window_seconds, now))

                try:
                    with self._db.begin() as db:
                        db.add(
                            Row(
                                identity=_identity(identity),
                                action=ActionType(action).value,
                                attempt_count=1,
                                window_start=now,
                                last_attempt_at=now,
                            )
                        )
                    return ALLOWED
                except IntegrityError:
                    # another worker created it first; go round again
                    continue
        except SQLAlchemyError as e:
            log.error("rate limiter unavailable: %s", e)
            raise StorageUnavailable() from e

        raise StorageUnavailable()

    def peek(self, identity: Optional[str], action: ActionType, max_attempts: int, window_seconds: int) -> RateDecision:
        row = self.get_counter(identity, action)
        now = self.clock.now()
        if row is None or _window_elapsed(row.window_start, window_seconds, now):
            return ALLOWED
        if row.attempt_count < max_attempts:
            return ALLOWED
        return RateDecision(False, _retry_after(row.window_start, window_seconds, now))

    def get_counter(self, identity: Optional[str], action: ActionType) -> Optional[RateLimitCounter]:
        try:
            with self._db() as db:
                row = db.execute(
                    select(RateLimitCounterRow).where(*self._key(identity, action))
                ).scalar_one_or_none()
                if row is None:
                    return None
                return RateLimitCounter(
                    identity=row.identity,
                    action=ActionType(row.action),
                    attempt_count=int(row.attempt_count),
                    window_start=int(row.window_start),
                    last_attempt_at=int(row.last_attempt_at),
                )
        except SQLAlchemyError as e:
            log.error("rate limiter unavailable: %s", e)
            raise StorageUnavailable() from e

    def reset(self, identity: Optional[str], action: ActionType) -> None:
        try:
            with self._db.begin() as db:
                db.execute(
                    delete(RateLimitCounterRow)
                    .where(*self._key(identity, action))
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            log.error("rate limiter unavailable: %s", e)
            raise StorageUnavailable() from e

    def sweep(self, older_than_seconds: int) -> int:
        cutoff = self.clock.now() - older_than_seconds
        try:
            with self._db.begin() as db:
                res = db.execute(
                    delete(RateLimitCounterRow)
                    .where(RateLimitCounterRow.window_start <= cutoff)
                    .execution_options(synchronize_session=False)
                )
                return int(res.rowcount or 0)
        except SQLAlchemyError as e:
            log.error("rate limiter unavailable: %s", e)
            raise StorageUnavailable() from e
