"""Login risk heuristics and client network identification.

``client_ip`` is the only place the requester's address is derived; login,
the risk check and the audit log all go through it so they agree.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from ipaddress import ip_address
from typing import Mapping, Optional, Tuple

DEFAULT_MAX_LOGIN_AGE = timedelta(days=30)
UNKNOWN_IP = "unknown"

# Precedence for proxy headers; X-Forwarded-For contributes its first entry.
_PROXY_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")


def is_high_risk(
    last_ip: Optional[str],
    last_login_at: Optional[datetime],
    current_ip: str,
    now: datetime,
    max_login_age: timedelta = DEFAULT_MAX_LOGIN_AGE,
) -> bool:
    """Decide whether a credential-valid login needs step-up verification.

    High risk when there is no previous login, when the address differs from
    the last one (exact match), or when the last login is older than
    ``max_login_age``.
    """
    if last_login_at is None:
        return True
    if last_ip != current_ip:
        return True
    return now - last_login_at > max_login_age


def _valid_ip(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    candidate = candidate.strip()
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def client_ip(
    headers: Mapping[str, str], peer: Optional[str], *, trust_proxy_headers: bool = True
) -> str:
    """Resolve the requester's IP from proxy headers, falling back to the socket peer.

    Malformed header values are skipped rather than trusted.
    """
    if trust_proxy_headers:
        for name in _PROXY_HEADERS:
            raw = headers.get(name)
            if not raw:
                continue
            if name == "x-forwarded-for":
                raw = raw.split(",")[0]
            resolved = _valid_ip(raw)
            if resolved:
                return resolved
    return _valid_ip(peer) or peer or UNKNOWN_IP


def mask_ip(ip: Optional[str]) -> str:
    """Coarsen an address for display: ``203.0.*.*`` or ``2001:db8:*:*``."""
    if not ip or ip == UNKNOWN_IP:
        return UNKNOWN_IP
    parts = ip.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.*.*"
    if ":" in ip:
        return ":".join(ip.split(":")[:2]) + ":*:*"
    return ip


# Order matters: Edge and Chrome user agents also mention Safari, iOS mentions Mac.
_BROWSERS = (
    ("Edge", re.compile(r"Edg(e|A|iOS)?/")),
    ("Chrome", re.compile(r"Chrome/|CriOS/")),
    ("Firefox", re.compile(r"Firefox/|FxiOS/")),
    ("Safari", re.compile(r"Safari/")),
)
_SYSTEMS = (
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("Android", re.compile(r"Android")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Macintosh|Mac OS X")),
    ("Linux", re.compile(r"Linux")),
)


def parse_browser_info(user_agent: Optional[str]) -> Tuple[str, str]:
    """Return a coarse ``(browser, os)`` pair for audit display."""
    ua = user_agent or ""
    browser = next((name for name, pattern in _BROWSERS if pattern.search(ua)), "Unknown")
    system = next((name for name, pattern in _SYSTEMS if pattern.search(ua)), "Unknown")
    return browser, system
