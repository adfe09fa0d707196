"""
Logging helpers shared by the mail_auth modules.

Why: Secrets must never reach log sinks beyond a short correlation prefix, and
security-relevant events (failed logins, rate-limit hits, rejected states)
should be machine-readable for alerting.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Optional

logger = logging.getLogger("homemail.mail_auth")
security_logger = logging.getLogger("homemail.security")

REDACT_PREFIX_LEN = 8


def redact(value: Optional[str]) -> str:
    """Return a short, non-reversible prefix of a secret for log correlation."""
    if not value:
        return "<none>"
    return f"{value[:REDACT_PREFIX_LEN]}..."


def hash_ip(ip: Optional[str]) -> str:
    if not ip:
        return "unknown"
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()[:16]


def security_event(event: str, *, ip: Optional[str] = None, **fields: Any) -> None:
    """Emit one JSON line on the security logger.

    The client IP is hashed; callers pass secrets through `redact()` first.
    """
    entry: dict[str, Any] = {"ts": time.time(), "event": event, "ip_hash": hash_ip(ip)}
    entry.update(fields)
    security_logger.info(json.dumps(entry, default=str))
