"""
login_guard/ip_binding.py

Optional "two devices, two networks" policy for the mobile step.

Evaluated in order:
  1) strict mode off                      -> allowed
  2) mobile address in the allow-list     -> allowed
  3) desktop and mobile addresses differ  -> allowed
  4) same address                         -> rejected
"""

import ipaddress
from typing import Iterable, Optional

from .errors import SecurityPolicyFailed


def normalize_ip(value: Optional[str]) -> str:
    """Canonical text form; unparsable input is compared as-is."""
    value = (value or "").strip()
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return value


def is_ip_binding_satisfied(
    origin_ip: Optional[str],
    mobile_ip: Optional[str],
    *,
    strict: bool,
    allowlist: Iterable[str] = (),
) -> bool:
    if not strict:
        return True

    mobile = normalize_ip(mobile_ip)
    if mobile and mobile in {normalize_ip(a) for a in allowlist}:
        return True

    return normalize_ip(origin_ip) != mobile


def check_ip_binding(
    origin_ip: Optional[str],
    mobile_ip: Optional[str],
    *,
    strict: bool,
    allowlist: Iterable[str] = (),
) -> None:
    if not is_ip_binding_satisfied(origin_ip, mobile_ip, strict=strict, allowlist=allowlist):
        raise SecurityPolicyFailed()
