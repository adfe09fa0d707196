"""
Stateless, encrypted session cookies.

Why: After either OAuth flow succeeds the browser receives one opaque cookie
that carries `{session_id, account_id, email, expires_at}`. The payload is
sealed with AES-GCM (see `crypto.Sealer`), so the server needs no session
table and every request re-validates identity from the cookie alone.

Security: Rotating `SESSION_SECRET` invalidates all sessions at once. Any
decrypt or parse failure yields "no session", never an exception.
"""
from __future__ import annotations

import json
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from .crypto import Sealer

SESSION_COOKIE_NAME = "mail_session"
SESSION_TTL_SECONDS = 7 * 24 * 3600


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    account_id: str
    email: str
    expires_at: int  # epoch ms


class SessionManager:
    def __init__(self, sealer: Sealer, *, ttl_seconds: int = SESSION_TTL_SECONDS, clock_ms: Callable[[], int] = _now_ms):
        self._sealer = sealer
        self.ttl_seconds = ttl_seconds
        self._clock_ms = clock_ms

    def create_session(self, account_id: str, email: str) -> tuple[SessionRecord, str]:
        """Mint a session and return it together with the sealed cookie value."""
        rec = SessionRecord(
            session_id=f"sess_{secrets.token_urlsafe(32)}",
            account_id=account_id,
            email=email,
            expires_at=self._clock_ms() + self.ttl_seconds * 1000,
        )
        payload = json.dumps(asdict(rec), separators=(",", ":")).encode("utf-8")
        return rec, self._sealer.seal(payload)

    def get_session(self, cookie_value: Optional[str]) -> Optional[SessionRecord]:
        """Return the session for a cookie value, or None when absent, tampered or expired.

        Callers clear the cookie when a value was present but None is returned.
        """
        raw = self._sealer.open(cookie_value)
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
            rec = SessionRecord(
                session_id=str(data["session_id"]),
                account_id=str(data["account_id"]),
                email=str(data["email"]),
                expires_at=int(data["expires_at"]),
            )
        except (ValueError, KeyError, TypeError):
            return None
        if rec.expires_at <= self._clock_ms():
            return None
        return rec
