"""
OAuth state and token stores on top of a pluggable key-value backend.

Why: Both stores are the only shared persisted state of the auth core. They
receive their backend at construction time (in-memory for dev/tests, Postgres
for production, see `stores_db.py`) instead of reaching for module globals.

Security:
- A state is consumed through the backend's atomic `take`; a replayed or
  expired state both come back as None.
- Token secrets never appear in `repr()` and can be sealed at rest.
- Provisional token records expire after 5 minutes, so an interrupted
  identity lookup cannot leave tokens under a correlation id indefinitely.
"""
from __future__ import annotations

import hashlib
import json
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Optional, Protocol

from .audit import hash_ip, logger, redact
from .crypto import Sealer
from .errors import StorageError

STATE_TTL_SECONDS = 600
PROVISIONAL_TTL_SECONDS = 300
AUTHORIZE_DEDUP_SECONDS = 5
DEVICE_GRANT_MAX_SECONDS = 900

STATE_PREFIX = "oauth_state:"
RECENT_PREFIX = "oauth_recent:"
TOKEN_PREFIX = "oauth_token:"
PENDING_PREFIX = "oauth_pending:"
DEVICE_PREFIX = "oauth_device:"


def _now_ms() -> int:
    return int(time.time() * 1000)


class KeyValueBackend(Protocol):
    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def take(self, key: str) -> Optional[str]:
        """Atomically read and delete; expired or missing keys return None."""
        ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def purge_expired(self) -> int: ...


class MemoryBackend:
    """Dict guarded by a lock. Not shared across processes."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def take(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
            for k in doomed:
                del self._data[k]
            return len(doomed)


class _Codec:
    """JSON encoding with optional AEAD sealing of the stored value."""

    def __init__(self, sealer: Optional[Sealer]):
        self._sealer = sealer

    def dumps(self, data: dict) -> str:
        text = json.dumps(data, separators=(",", ":"))
        if self._sealer is None:
            return text
        return self._sealer.seal(text.encode("utf-8"))

    def loads(self, raw: Optional[str]) -> Optional[dict]:
        if raw is None:
            return None
        if self._sealer is not None:
            opened = self._sealer.open(raw)
            if opened is None:
                logger.warning("Stored value failed authentication; treating as absent")
                return None
            raw = opened
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stored value is not valid JSON; treating as absent")
            return None
        return data if isinstance(data, dict) else None


class StateStore:
    """One-time `state -> code_verifier` bindings with a fixed TTL."""

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        sealer: Optional[Sealer] = None,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._backend = backend
        self._codec = _Codec(sealer)
        self.ttl_seconds = ttl_seconds
        self._clock_ms = clock_ms

    def store(
        self,
        state: str,
        code_verifier: str,
        *,
        client_ip: Optional[str] = None,
        authorization_url: Optional[str] = None,
    ) -> None:
        if not state or not code_verifier:
            raise StorageError(detail="state and code_verifier required")
        now = self._clock_ms()
        record = {"code_verifier": code_verifier, "created_at": now}
        self._backend.put(STATE_PREFIX + state, self._codec.dumps(record), self.ttl_seconds)
        if client_ip and authorization_url:
            recent = {"state": state, "authorization_url": authorization_url, "created_at": now}
            self._backend.put(RECENT_PREFIX + hash_ip(client_ip), self._codec.dumps(recent), AUTHORIZE_DEDUP_SECONDS)
        logger.debug("Stored OAuth state %s", redact(state))

    def consume(self, state: Optional[str]) -> Optional[str]:
        """Return the verifier bound to `state` exactly once, else None."""
        if not state:
            return None
        data = self._codec.loads(self._backend.take(STATE_PREFIX + state))
        if not data:
            return None
        created_at = data.get("created_at")
        if isinstance(created_at, int) and created_at + self.ttl_seconds * 1000 <= self._clock_ms():
            return None
        verifier = data.get("code_verifier")
        return verifier if isinstance(verifier, str) and verifier else None

    def recent_authorization_url(self, client_ip: Optional[str]) -> Optional[str]:
        """Authorization URL of a still pending state started by `client_ip` moments ago.

        Lets a double-clicked login button reuse the first redirect instead of
        creating a second state.
        """
        if not client_ip:
            return None
        recent = self._codec.loads(self._backend.get(RECENT_PREFIX + hash_ip(client_ip)))
        if not recent:
            return None
        created_at = recent.get("created_at")
        if not isinstance(created_at, int) or created_at + AUTHORIZE_DEDUP_SECONDS * 1000 <= self._clock_ms():
            return None
        state = recent.get("state")
        if not isinstance(state, str) or self._backend.get(STATE_PREFIX + state) is None:
            return None
        url = recent.get("authorization_url")
        return url if isinstance(url, str) else None


class DeviceGrantStore:
    """Poll parameters the authorization server issued with a device code.

    The key is a digest of the device code, so the code itself is never a
    backend key. Records expire with the grant.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        sealer: Optional[Sealer] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self._backend = backend
        self._codec = _Codec(sealer)
        self._clock_ms = clock_ms

    @staticmethod
    def _key(device_code: str) -> str:
        return DEVICE_PREFIX + hashlib.sha256(device_code.encode("utf-8")).hexdigest()

    def remember(self, device_code: str, interval: int, expires_in: int) -> None:
        ttl = max(1, min(int(expires_in), DEVICE_GRANT_MAX_SECONDS))
        record = {"interval": int(interval), "expires_at": self._clock_ms() + ttl * 1000}
        self._backend.put(self._key(device_code), self._codec.dumps(record), ttl)

    def lookup(self, device_code: Optional[str]) -> Optional[tuple[int, int]]:
        """Return `(interval, remaining_seconds)` for a live grant, else None."""
        if not device_code:
            return None
        data = self._codec.loads(self._backend.get(self._key(device_code)))
        if not data:
            return None
        interval, expires_at = data.get("interval"), data.get("expires_at")
        if not isinstance(interval, int) or not isinstance(expires_at, int):
            return None
        remaining = (expires_at - self._clock_ms()) // 1000
        return (interval, remaining) if remaining > 0 else None


@dataclass
class TokenRecord:
    account_id: str
    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[int] = None  # epoch ms; None means non-expiring
    scopes: tuple[str, ...] = ()
    issued_at: Optional[int] = None

    def is_expired(self, now_ms: int, skew_ms: int = 0) -> bool:
        return self.expires_at is not None and self.expires_at <= now_ms + skew_ms

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "access_token": self.access_token,
            "token_type": self.token_type,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scopes": list(self.scopes),
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Optional["TokenRecord"]:
        if not isinstance(data.get("access_token"), str) or not data.get("account_id"):
            return None
        expires_at = data.get("expires_at")
        return cls(
            account_id=str(data["account_id"]),
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token") or None,
            expires_at=int(expires_at) if expires_at is not None else None,
            scopes=tuple(data.get("scopes") or ()),
            issued_at=data.get("issued_at"),
        )


class TokenStore:
    """Per-account token records; the only component that persists token secrets."""

    def __init__(self, backend: KeyValueBackend, *, sealer: Optional[Sealer] = None):
        self._backend = backend
        self._codec = _Codec(sealer)

    def save_token(self, account_id: str, record: TokenRecord) -> None:
        if not account_id:
            raise StorageError(detail="account_id required")
        if record.account_id != account_id:
            record = replace(record, account_id=account_id)
        self._backend.put(TOKEN_PREFIX + account_id, self._codec.dumps(record.to_dict()))
        logger.info("Saved token for account %s", account_id)

    def get_token(self, account_id: str) -> Optional[TokenRecord]:
        if not account_id:
            return None
        data = self._codec.loads(self._backend.get(TOKEN_PREFIX + account_id))
        return TokenRecord.from_dict(data) if data else None

    def delete_token(self, account_id: str) -> None:
        if account_id:
            self._backend.delete(TOKEN_PREFIX + account_id)

    def clear_all(self) -> int:
        return self._backend.delete_prefix(TOKEN_PREFIX) + self._backend.delete_prefix(PENDING_PREFIX)

    # Two-phase commit for tokens whose account id is not known yet.

    def save_provisional(self, record: TokenRecord) -> str:
        """Park `record` under a fresh correlation id that expires on its own."""
        correlation_id = secrets.token_urlsafe(16)
        data = {**record.to_dict(), "account_id": correlation_id}
        self._backend.put(PENDING_PREFIX + correlation_id, self._codec.dumps(data), PROVISIONAL_TTL_SECONDS)
        return correlation_id

    def promote(self, correlation_id: str, account_id: str) -> TokenRecord:
        """Re-key a provisional record under the resolved account id."""
        data = self._codec.loads(self._backend.take(PENDING_PREFIX + correlation_id))
        if not data:
            raise StorageError(detail="provisional token missing or expired")
        record = TokenRecord.from_dict({**data, "account_id": account_id})
        if record is None:
            raise StorageError(detail="provisional token unreadable")
        self.save_token(account_id, record)
        return record

    def discard_provisional(self, correlation_id: str) -> None:
        self._backend.delete(PENDING_PREFIX + correlation_id)
