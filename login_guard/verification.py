"""
login_guard/verification.py

The verification state machine.

    pending --(mobile opens link)--> number_assigned --(mobile)--> confirmed --(desktop picks code)--> used
                                                     |
                                                     +--(mobile)--> cancelled

A session is also "expired" once now >= expires_at; that is decided at read
time by the store and reported to callers as NotFound.

Guards around each transition (rate limits, IP binding, attempt caps) are
checked here, before the store is asked to write. Every write goes through
store.conditional_update, so a concurrent actor that got there first shows up
as a CONFLICT and is reported as InvalidTransition.

No request state lives on the service: the token and the caller's
RequestContext are passed into every call.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from . import audit, challenge
from .clock import system_clock
from .config import Settings
from .errors import InvalidTransition, NotFound, RateLimited, SecurityPolicyFailed
from .ip_binding import is_ip_binding_satisfied
from .ratelimit import ActionType, RateDecision, RateLimitPolicy
from .storage import SessionStatus, UpdateResult, VerificationSession, looks_like_token

log = logging.getLogger(__name__)

MOBILE_DECISIONS = (SessionStatus.CONFIRMED, SessionStatus.CANCELLED)


@dataclass(frozen=True)
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AnswerResult:
    correct: bool
    attempts_remaining: int = 0


def policies_from_settings(cfg: Settings) -> Dict[ActionType, RateLimitPolicy]:
    return {
        ActionType.SESSION_CREATION: RateLimitPolicy(
            cfg.SESSION_RATE_MAX_ATTEMPTS, cfg.SESSION_RATE_WINDOW_MINUTES * 60
        ),
        ActionType.MOBILE_CHALLENGE: RateLimitPolicy(
            cfg.MOBILE_RATE_MAX_ATTEMPTS, cfg.MOBILE_RATE_WINDOW_MINUTES * 60
        ),
        ActionType.WRONG_ANSWER: RateLimitPolicy(
            cfg.WRONG_ANSWER_RATE_MAX_ATTEMPTS, cfg.WRONG_ANSWER_RATE_WINDOW_MINUTES * 60
        ),
    }


class VerificationService:
    def __init__(self, store, limiter, cfg: Settings, clock=system_clock):
        self.store = store
        self.limiter = limiter
        self.settings = cfg
        self.policies = policies_from_settings(cfg)
        self.clock = clock

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _audit(self, result: str, reason: str, ctx: RequestContext, token: Optional[str] = None, **extra) -> None:
        if not self.settings.AUDIT_ENABLED:
            return
        event = {
            **audit.build_common(now=self.clock.now(), token=token, request_ip=ctx.ip, user_agent=ctx.user_agent),
            "result": result,
            "reason": reason,
            **extra,
        }
        try:
            audit.append_event(event, directory=self.settings.AUDIT_DIR)
        except OSError:
            # the state change is already committed; losing the log line must
            # not turn it into a 500
            log.exception("audit write failed for %s/%s", result, reason)

    def require_session(self, token: str) -> VerificationSession:
        sess = self.store.get(token) if looks_like_token(token) else None
        if sess is None:
            raise NotFound()
        return sess

    def _limit(self, action: ActionType, ctx: RequestContext, token: Optional[str] = None) -> None:
        policy = self.policies[action]
        decision = self.limiter.check(ctx.ip, action, policy.max_attempts, policy.window_seconds)
        if not decision.allowed:
            self._audit("denied", "rate_limited", ctx, token, action=action.value)
            raise RateLimited(decision.retry_after_seconds)

    @staticmethod
    def _check_write(res: UpdateResult) -> None:
        if res == UpdateResult.NOT_FOUND:
            raise NotFound()
        if res == UpdateResult.CONFLICT:
            raise InvalidTransition()

    def _attempts_left(self, sess: VerificationSession) -> int:
        return max(0, self.settings.MAX_WRONG_ANSWERS_PER_SESSION - sess.wrong_attempts)

    def verify_url(self, token: str) -> str:
        return f"{self.settings.mobile_verify_base}?token={token}"

    # -------------------------------------------------------------------------
    # Desktop: create
    # -------------------------------------------------------------------------
    def create_session(self, ctx: RequestContext) -> VerificationSession:
        self._limit(ActionType.SESSION_CREATION, ctx)

        token = self.store.create(ctx.ip, ctx.user_agent, self.settings.SESSION_TTL_SECONDS)
        sess = self.store.get(token)
        if sess is None:
            # expired between insert and read
            raise NotFound()

        self._audit("issued", "session_created", ctx, token, expires_at=sess.expires_at)
        return sess

    # -------------------------------------------------------------------------
    # Mobile: open link, then confirm or cancel
    # -------------------------------------------------------------------------
    def assign_challenge(self, token: str, ctx: RequestContext) -> str:
        sess = self.require_session(token)
        if sess.status != SessionStatus.PENDING:
            raise InvalidTransition()

        self._limit(ActionType.MOBILE_CHALLENGE, ctx, token)

        if not is_ip_binding_satisfied(
            sess.origin_ip,
            ctx.ip,
            strict=self.settings.STRICT_IP_BINDING,
            allowlist=self.settings.IP_ALLOWLIST,
        ):
            self._audit("denied", "ip_binding", ctx, token)
            raise SecurityPolicyFailed()

        code = challenge.random_code()
        self._check_write(
            self.store.conditional_update(
                token,
                {SessionStatus.PENDING},
                status=SessionStatus.NUMBER_ASSIGNED,
                challenge_code=code,
            )
        )

        self._audit("assigned", "challenge_assigned", ctx, token)
        return code

    def decide(self, token: str, status, ctx: RequestContext) -> None:
        try:
            status = SessionStatus(status)
        except ValueError:
            raise InvalidTransition()
        if status not in MOBILE_DECISIONS:
            raise InvalidTransition()

        self.require_session(token)
        self._check_write(
            self.store.conditional_update(token, {SessionStatus.NUMBER_ASSIGNED}, status=status)
        )
        self._audit(status.value, "mobile_decision", ctx, token)

    # -------------------------------------------------------------------------
    # Desktop: poll, fetch choices, answer
    # -------------------------------------------------------------------------
    def poll(self, token: str) -> str:
        sess = self.store.get(token) if looks_like_token(token) else None
        if sess is None:
            return SessionStatus.EXPIRED.value
        return sess.status.value

    def challenge_choices(self, token: str) -> List[str]:
        sess = self.require_session(token)
        if sess.status != SessionStatus.CONFIRMED or self._attempts_left(sess) == 0:
            raise InvalidTransition()

        if sess.choices:
            return list(sess.choices)

        # Generated once and pinned, so repeated fetches cannot be intersected.
        choices = challenge.generate(sess.challenge_code)
        res = self.store.conditional_update(token, {SessionStatus.CONFIRMED}, choices=choices)
        if res == UpdateResult.OK:
            return choices
        if res == UpdateResult.NOT_FOUND:
            raise NotFound()

        # lost a race with a concurrent fetch; theirs is the one that counts
        sess = self.require_session(token)
        if sess.status != SessionStatus.CONFIRMED or not sess.choices:
            raise InvalidTransition()
        return list(sess.choices)

    def submit_answer(self, token: str, code: str, ctx: RequestContext) -> AnswerResult:
        sess = self.require_session(token)
        if sess.status != SessionStatus.CONFIRMED:
            raise InvalidTransition()

        cap = self.settings.MAX_WRONG_ANSWERS_PER_SESSION
        if sess.wrong_attempts >= cap:
            raise InvalidTransition("Too many incorrect attempts. Please start over.")

        policy = self.policies[ActionType.WRONG_ANSWER]
        blocked = self.limiter.peek(ctx.ip, ActionType.WRONG_ANSWER, policy.max_attempts, policy.window_seconds)
        if not blocked.allowed:
            self._audit("denied", "rate_limited", ctx, token, action=ActionType.WRONG_ANSWER.value)
            raise RateLimited(blocked.retry_after_seconds)

        expected = sess.challenge_code or ""
        if challenge.is_code(code) and hmac.compare_digest(code, expected):
            self._check_write(
                self.store.conditional_update(
                    token,
                    {SessionStatus.CONFIRMED},
                    status=SessionStatus.USED,
                    max_wrong_attempts=cap,
                )
            )
            # legitimate user made it through; drop the friction they built up
            self.limiter.reset(ctx.ip, ActionType.WRONG_ANSWER)
            self.limiter.reset(ctx.ip, ActionType.SESSION_CREATION)
            self._audit("approved", "challenge_answered", ctx, token)
            return AnswerResult(correct=True)

        self._check_write(
            self.store.conditional_update(
                token,
                {SessionStatus.CONFIRMED},
                add_wrong_attempt=True,
                max_wrong_attempts=cap,
            )
        )
        self._audit("denied", "wrong_answer", ctx, token)

        self._limit(ActionType.WRONG_ANSWER, ctx, token)
        return AnswerResult(correct=False, attempts_remaining=max(0, cap - sess.wrong_attempts - 1))

    def record_wrong_answer(self, ctx: RequestContext) -> RateDecision:
        """Count one failed guess against the caller's address (all sessions)."""
        policy = self.policies[ActionType.WRONG_ANSWER]
        decision = self.limiter.check(ctx.ip, ActionType.WRONG_ANSWER, policy.max_attempts, policy.window_seconds)
        if not decision.allowed:
            self._audit("denied", "rate_limited", ctx, action=ActionType.WRONG_ANSWER.value)
        return decision

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    def sweep(self) -> Tuple[int, int]:
        longest = max(p.window_seconds for p in self.policies.values())
        sessions = self.store.sweep_expired()
        counters = self.limiter.sweep(longest)
        log.info("sweep removed %d sessions and %d rate counters", sessions, counters)
        return sessions, counters
