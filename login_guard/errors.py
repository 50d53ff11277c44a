"""
login_guard/errors.py

Error taxonomy for the verification flow.

Every error carries the HTTP status it maps to plus a short, user-safe
message. Messages never name internal states ("confirmed", "used", ...):
a stale or replayed session is always just "please start over", and an
expired token is indistinguishable from one that never existed.
"""

from typing import Any, Dict


class VerificationError(Exception):
    status_code = 400
    error = "bad_request"
    message = "Request could not be processed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def detail(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message}


class NotFound(VerificationError):
    status_code = 404
    error = "not_found"
    message = "Invalid or expired verification code."


class InvalidTransition(VerificationError):
    status_code = 409
    error = "invalid_session"
    message = "Invalid session. Please start over."


class RateLimited(VerificationError):
    status_code = 429
    error = "rate_limited"
    message = "Too many attempts. Please wait before trying again."

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        super().__init__(message)
        self.retry_after_seconds = int(retry_after_seconds)

    @property
    def retry_after_minutes(self) -> int:
        return max(1, self.retry_after_seconds // 60)

    def detail(self) -> Dict[str, Any]:
        out = super().detail()
        out["retryAfterMinutes"] = self.retry_after_minutes
        return out


class SecurityPolicyFailed(VerificationError):
    status_code = 403
    error = "not_authorized"
    message = "Verification must be completed from a separate device and network."


class StorageUnavailable(VerificationError):
    # Fail closed: the action is denied, never silently allowed.
    status_code = 503
    error = "storage_unavailable"
    message = "Verification is temporarily unavailable. Please try again."
