#!/usr/bin/env python3
"""
login_guard/cli.py — operator commands.

  login-guard sweep                 delete expired sessions and stale rate counters
  login-guard verify-audit [LOG]    check the audit log hash chain
  login-guard serve [--host --port] run the API under uvicorn

`sweep` is meant to be called from the host's scheduler (cron, systemd timer).

Exit codes:
- 0: OK
- 1: Verification failed / command error
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import audit
from .config import settings
from .errors import StorageUnavailable


def _cmd_sweep(args) -> int:
    from .main import build_service

    try:
        sessions, counters = build_service(settings).sweep()
    except StorageUnavailable as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    print("OK")
    print(f"sessions_deleted={sessions}")
    print(f"counters_deleted={counters}")
    return 0


def _cmd_verify_audit(args) -> int:
    path = args.log or audit.audit_log_path()
    if audit.verify_log_chain(path):
        print("OK")
        print(f"log={path}")
        return 0

    print("FAIL", file=sys.stderr)
    print(f"hash chain broken: {path}", file=sys.stderr)
    return 1


def _cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("login_guard.main:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="login-guard", description="Login Guard maintenance commands.")
    sub = p.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("sweep", help="Delete expired sessions and stale rate-limit counters.")
    sp.set_defaults(func=_cmd_sweep)

    vp = sub.add_parser("verify-audit", help="Verify the audit log hash chain.")
    vp.add_argument(
        "log",
        type=Path,
        nargs="?",
        default=None,
        help="Path to audit JSONL file (default: <AUDIT_DIR>/verification_audit.jsonl)",
    )
    vp.set_defaults(func=_cmd_verify_audit)

    rp = sub.add_parser("serve", help="Run the HTTP API.")
    rp.add_argument("--host", default="127.0.0.1")
    rp.add_argument("--port", type=int, default=8081)
    rp.set_defaults(func=_cmd_serve)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
