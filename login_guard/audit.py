"""
login_guard/audit.py

Tamper-evident verification audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <AUDIT_DIR>/verification_audit.state
- Uses file locking (flock) to keep chain consistent across workers.
- Session tokens are bearer secrets; only their SHA3-256 reference is logged.
"""

from __future__ import annotations

import json
import os
import time
import hashlib
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

from .config import settings


LOG_NAME = "verification_audit.jsonl"
STATE_NAME = "verification_audit.state"
LOCK_NAME = "verification_audit.lock"

GENESIS_HASH = "0" * 64  # 32 bytes hex


# -----------------------------------------------------------------------------
# Paths
# -----------------------------------------------------------------------------
def audit_dir(directory: Optional[Path | str] = None) -> Path:
    return Path(directory if directory is not None else settings.AUDIT_DIR)


def audit_log_path(directory: Optional[Path | str] = None) -> Path:
    return audit_dir(directory) / LOG_NAME


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Produce deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def token_ref(token: str) -> str:
    """Stable, non-reversible handle for a token in logs."""
    return _sha3_256_hex(token.encode("utf-8"))[:32]


def _read_last_hash_unlocked(state_path: Path) -> str:
    """
    Read last hash from the state file. Caller must hold lock.
    Returns GENESIS_HASH if state missing/empty.
    """
    try:
        if not state_path.exists():
            return GENESIS_HASH
        s = state_path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        bytes.fromhex(s)
        return s.lower()
    except (OSError, ValueError):
        return GENESIS_HASH


# -----------------------------------------------------------------------------
# Public helpers used by verification.py
# -----------------------------------------------------------------------------
def build_common(
    *,
    now: Optional[int] = None,
    token: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {"ts": now if now is not None else int(time.time())}

    if token:
        out["token_ref"] = token_ref(token)
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    return out


def append_event(event: Dict[str, Any], directory: Optional[Path | str] = None) -> str:
    """
    Append one event to the audit log with hash chaining.

    The function:
    - locks the lock file
    - reads prev hash
    - computes next hash over canonical event (excluding hash fields)
    - writes JSONL line containing prev_hash + hash
    - updates state file

    Returns the new chain head.
    """
    base = audit_dir(directory)
    base.mkdir(parents=True, exist_ok=True)
    state_path = base / STATE_NAME

    # We lock a dedicated lock file so it works even if log/state don't exist yet.
    with open(base / LOCK_NAME, "a+", encoding="utf-8") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            prev_hash = _read_last_hash_unlocked(state_path)

            # Never allow callers to inject their own chain fields.
            e = dict(event)
            e.pop("prev_hash", None)
            e.pop("hash", None)

            next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

            stored = dict(e)
            stored["prev_hash"] = prev_hash
            stored["hash"] = next_hash

            with open(base / LOG_NAME, "ab") as f:
                f.write(_canonical_json_bytes(stored) + b"\n")
                f.flush()
                os.fsync(f.fileno())

            state_path.write_text(next_hash + "\n", encoding="utf-8")
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    return next_hash


# -----------------------------------------------------------------------------
# Verification utility (also exposed as `login-guard verify-audit`)
# -----------------------------------------------------------------------------
def verify_log_chain(path: Optional[Path] = None) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid, False otherwise.
    """
    path = Path(path) if path is not None else audit_log_path()
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        with open(path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))

                if obj.get("prev_hash") != prev:
                    return False

                obj2 = dict(obj)
                obj2.pop("prev_hash", None)
                line_hash = obj2.pop("hash", None)

                expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
                if expect != line_hash:
                    return False

                prev = line_hash

        return True
    except (OSError, ValueError, AttributeError):
        return False
