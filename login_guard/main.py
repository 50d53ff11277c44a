# login_guard/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the VerificationService.
#   - It MUST NOT make state decisions itself (those live in verification.py).
#   - It builds a RequestContext per request; nothing request-scoped is ever
#     stored on a module global.
#
# Key modules / responsibilities:
#   - config.py        : environment-driven settings
#   - storage.py       : session records + in-memory / SQL stores
#   - ratelimit.py     : per-(address, action) counters
#   - challenge.py     : 4-digit codes + decoy sets
#   - ip_binding.py    : optional same-address rejection
#   - verification.py  : the state machine
#   - audit.py         : append-only audit log (security telemetry, forensics)
#
# Who calls what:
#   desktop : POST /sessions, GET /sessions/{t}/qr.svg, GET /sessions/{t}/poll,
#             GET /sessions/{t}/challenge, POST /sessions/{t}/answer
#   mobile  : GET /sessions/{t}, POST /sessions/{t}/status
#   either  : POST /rate-limit/wrong-answer
#
# WARNING (DEPLOYMENT):
# - With DATABASE_URL unset the stores are in-process dicts: they are NOT
#   shared across Uvicorn workers or nodes. Set DATABASE_URL for anything but a
#   single worker.
# -----------------------------------------------------------------------------

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .clock import system_clock
from .config import Settings, settings
from .db import make_engine, make_session_factory
from .errors import VerificationError
from .models import (
    AnswerSubmission,
    ChallengeView,
    MobileView,
    PollView,
    RateLimitView,
    SessionCreated,
    StatusUpdate,
)
from .qr import make_verify_qr_svg_bytes
from .ratelimit import InMemoryRateLimiter, SqlRateLimiter
from .storage import InMemoryStore, SqlSessionStore
from .verification import RequestContext, VerificationService

log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Service wiring
# -----------------------------------------------------------------------------
def build_service(cfg: Settings, clock=system_clock) -> VerificationService:
    if cfg.DATABASE_URL:
        factory = make_session_factory(make_engine(cfg.DATABASE_URL))
        return VerificationService(SqlSessionStore(factory, clock), SqlRateLimiter(factory, clock), cfg, clock)

    log.warning("DATABASE_URL not set; using in-process stores (single worker only)")
    return VerificationService(InMemoryStore(clock), InMemoryRateLimiter(clock), cfg, clock)


_service: VerificationService | None = None


def get_service() -> VerificationService:
    global _service
    if _service is None:
        _service = build_service(settings)
    return _service


def _client_ip(request: Request, cfg: Settings) -> str | None:
    if cfg.TRUST_PROXY_HEADERS:
        # Only the last hop was written by our proxy; anything left of it came
        # from the client and can be forged.
        fwd = request.headers.get("x-forwarded-for", "")
        hops = [h.strip() for h in fwd.split(",") if h.strip()]
        if hops:
            return hops[-1]
    return request.client.host if request.client else None


def request_context(request: Request, service: VerificationService = Depends(get_service)) -> RequestContext:
    return RequestContext(
        ip=_client_ip(request, service.settings),
        user_agent=request.headers.get("user-agent"),
    )


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
app = FastAPI(
    title="Login Guard",
    version="0.1.0",
)


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError):
    headers = {}
    retry = getattr(exc, "retry_after_seconds", None)
    if retry is not None:
        headers["Retry-After"] = str(retry)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail()}, headers=headers)


@app.get("/health")
def health():
    return {"ok": True}


# -----------------------------------------------------------------------------
# Desktop
# -----------------------------------------------------------------------------
@app.post("/sessions", response_model=SessionCreated)
def create_session(
    ctx: RequestContext = Depends(request_context),
    service: VerificationService = Depends(get_service),
):
    sess = service.create_session(ctx)
    return SessionCreated(
        token=sess.token,
        expiresAt=sess.expires_at,
        verifyUrl=service.verify_url(sess.token),
        pollIntervalSeconds=service.settings.POLL_INTERVAL_SECONDS,
        maxPolls=service.settings.POLL_MAX_ATTEMPTS,
    )


@app.get("/sessions/{token}/qr.svg")
def session_qr_svg(token: str, service: VerificationService = Depends(get_service)):
    sess = service.require_session(token)
    svg_bytes = make_verify_qr_svg_bytes(service.verify_url(sess.token))
    return Response(content=svg_bytes, media_type="image/svg+xml")


@app.get("/sessions/{token}/poll", response_model=PollView)
def poll_session(token: str, service: VerificationService = Depends(get_service)):
    # Always 200: a vanished token reads as {"status": "expired"} so the
    # desktop's polling loop can stop cleanly.
    return PollView(status=service.poll(token))


@app.get("/sessions/{token}/challenge", response_model=ChallengeView)
def session_challenge(token: str, service: VerificationService = Depends(get_service)):
    return ChallengeView(choices=service.challenge_choices(token))


@app.post("/sessions/{token}/answer")
def session_answer(
    token: str,
    body: AnswerSubmission,
    ctx: RequestContext = Depends(request_context),
    service: VerificationService = Depends(get_service),
):
    result = service.submit_answer(token, body.code, ctx)
    if result.correct:
        return {"success": True}
    return {"success": False, "attemptsRemaining": result.attempts_remaining}


# -----------------------------------------------------------------------------
# Mobile
# -----------------------------------------------------------------------------
@app.get("/sessions/{token}", response_model=MobileView)
def open_session(
    token: str,
    ctx: RequestContext = Depends(request_context),
    service: VerificationService = Depends(get_service),
):
    # Opening the link is what assigns the code, so the code is handed out
    # exactly once, to whoever opened it first.
    code = service.assign_challenge(token, ctx)
    return MobileView(status="number_assigned", challengeCode=code)


@app.post("/sessions/{token}/status")
def update_session_status(
    token: str,
    body: StatusUpdate,
    ctx: RequestContext = Depends(request_context),
    service: VerificationService = Depends(get_service),
):
    service.decide(token, body.status, ctx)
    return {"success": True}


# -----------------------------------------------------------------------------
# Throttling
# -----------------------------------------------------------------------------
@app.post("/rate-limit/wrong-answer", response_model=RateLimitView)
def record_wrong_answer(
    ctx: RequestContext = Depends(request_context),
    service: VerificationService = Depends(get_service),
):
    decision = service.record_wrong_answer(ctx)
    return RateLimitView(allowed=decision.allowed, retryAfterMinutes=decision.retry_after_minutes)
