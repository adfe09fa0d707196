"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend, put `backend/` on sys.path, and
provide a scripted fake authorization/mail server so no test touches the
network.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

# Ensure modules in backend/ are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


AS_BASE = "http://stalwart:8080"
PUBLIC_URL = "https://mail.example.org"
DISCOVERY_URL = f"{AS_BASE}/.well-known/oauth-authorization-server"
TOKEN_URL = f"{AS_BASE}/auth/token"
DEVICE_URL = f"{AS_BASE}/auth/device"
AUTHORIZE_URL = f"{AS_BASE}/authorize/code"
JMAP_SESSION_URL = f"{AS_BASE}/.well-known/jmap"

DISCOVERY_DOC = {
    "issuer": AS_BASE,
    "authorization_endpoint": AUTHORIZE_URL,
    "token_endpoint": TOKEN_URL,
    "device_authorization_endpoint": DEVICE_URL,
}

JMAP_SESSION_DOC = {
    "accounts": {
        "acc-42": {"name": "alice@example.org", "isPersonal": True},
        "acc-7": {"name": "shared@example.org", "isPersonal": False},
    },
    "primaryAccounts": {"urn:ietf:params:jmap:mail": "acc-42"},
}


class FakeResponse:
    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self._body = body

    def json(self):
        if isinstance(self._body, (dict, list)):
            return self._body
        raise ValueError("not json")


class FakeAuthServer:
    """Scripted stand-in for `requests.get`/`requests.post`.

    `on(method, url, *responses)` queues responses; the last one repeats.
    A response is `(status, body)`, an exception instance to raise, or a
    callable `(data, headers) -> (status, body)`.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.calls: list[dict] = []

    def on(self, method: str, url: str, *responses) -> "FakeAuthServer":
        self.routes[(method, url)] = list(responses)
        return self

    def calls_to(self, url: str, method: Optional[str] = None) -> list[dict]:
        return [c for c in self.calls if c["url"] == url and (method is None or c["method"] == method)]

    def _dispatch(self, method: str, url: str, data=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "data": data, "headers": headers, "timeout": timeout})
        queue = self.routes.get((method, url))
        if not queue:
            return FakeResponse(404, {"error": "not_found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(data, headers)
        status, body = item
        return FakeResponse(status, body)

    def get(self, url, headers=None, timeout=None):
        return self._dispatch("GET", url, headers=headers, timeout=timeout)

    def post(self, url, data=None, headers=None, timeout=None):
        return self._dispatch("POST", url, data=data, headers=headers, timeout=timeout)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def ms(self) -> int:
        return int(self.now * 1000)

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch):
    """Keep host environment toggles from leaking into the suite."""
    for var in ("WEBMAIL_ENV", "WEBMAIL_TRUST_PROXY", "RATE_LIMIT_IP_WHITELIST", "RATE_LIMIT_IP_BLACKLIST"):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def oauth_env() -> dict:
    return {
        "AUTH_SERVER_BASE_URL": AS_BASE,
        "AUTH_SERVER_PUBLIC_URL": PUBLIC_URL,
        "OAUTH_CLIENT_ID": "webmail",
        "OAUTH_REDIRECT_URI": f"{PUBLIC_URL}/api/auth/oauth/callback",
        "SESSION_SECRET": "test-secret-that-is-long-enough-0123456789",
    }


@pytest.fixture
def fake_as(monkeypatch: pytest.MonkeyPatch) -> FakeAuthServer:
    server = FakeAuthServer()
    server.on("GET", DISCOVERY_URL, (200, DISCOVERY_DOC))
    server.on("GET", JMAP_SESSION_URL, (200, JMAP_SESSION_DOC))
    # Patch the requests alias used by the transport module
    monkeypatch.setattr("mail_auth.transport.http.get", server.get)
    monkeypatch.setattr("mail_auth.transport.http.post", server.post)
    return server


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def recording_sleep(sleeps: list, clock: FakeClock) -> Callable[[float], None]:
    """Sleep stand-in that records the duration and advances the fake clock."""

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    return _sleep
