"""
Authorization Code + PKCE flow tests (core, no HTTP layer).

Focus:
- authorize builds an S256 URL whose state is the one that was stored
- callback with an unknown state fails before the token endpoint is hit
- successful exchange persists tokens under the mail account with the
  computed expiry and mints a session
- config, rate limit, rejected code and failed identity lookup paths
"""
from __future__ import annotations

import time
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from mail_auth.authcode import AuthorizationCodeFlow
from mail_auth.config import load_oauth_config
from mail_auth.crypto import Sealer
from mail_auth.discovery import DiscoveryClient
from mail_auth.errors import (
    AuthenticationFailed,
    ConfigurationError,
    RateLimited,
    StateInvalid,
    TokenExchangeFailed,
    ValidationError,
)
from mail_auth.identity import JMAPSessionClient
from mail_auth.ratelimit import RateLimiter
from mail_auth.sessions import SessionManager
from mail_auth.stores import PENDING_PREFIX, MemoryBackend, StateStore, TokenStore
from mail_auth.tokens import TokenEndpointClient

AS = "https://as"
AS_DISCOVERY = f"{AS}/.well-known/oauth-authorization-server"
AS_TOKEN = f"{AS}/token"
AS_JMAP = f"{AS}/.well-known/jmap"
CLIENT_IP = "198.51.100.23"

ENV = {
    "AUTH_SERVER_BASE_URL": AS,
    "AUTH_SERVER_PUBLIC_URL": "https://mail.example.org",
    "OAUTH_CLIENT_ID": "webmail",
    "OAUTH_REDIRECT_URI": "https://mail.example.org/api/auth/oauth/callback",
}


class _Harness:
    def __init__(self, env=None):
        self.cfg = load_oauth_config(env or ENV)
        self.backend = MemoryBackend()
        sealer = Sealer("unit-test-secret", purpose="store")
        # public_url=None: the test authorization server is used as-is
        self.discovery = DiscoveryClient(AS_DISCOVERY)
        self.state_store = StateStore(self.backend, sealer=sealer)
        self.token_store = TokenStore(self.backend, sealer=sealer)
        self.sessions = SessionManager(Sealer("unit-test-secret"))
        self.limiter = RateLimiter()
        self.flow = AuthorizationCodeFlow(
            self.cfg,
            discovery=self.discovery,
            state_store=self.state_store,
            token_store=self.token_store,
            token_client=TokenEndpointClient(
                self.discovery, client_id=self.cfg.client_id or "", redirect_uri=self.cfg.redirect_uri
            ),
            identity=JMAPSessionClient(AS),
            sessions=self.sessions,
            limiter=self.limiter,
        )


@pytest.fixture
def as_server(fake_as):
    fake_as.on("GET", AS_DISCOVERY, (200, {"issuer": AS, "authorization_endpoint": f"{AS}/authorize", "token_endpoint": AS_TOKEN}))
    fake_as.on(
        "GET",
        AS_JMAP,
        (200, {"accounts": {"acc-42": {"name": "alice@example.org"}}, "primaryAccounts": {"urn:ietf:params:jmap:mail": "acc-42"}}),
    )
    fake_as.on("POST", AS_TOKEN, (200, {"access_token": "at-1", "token_type": "Bearer", "refresh_token": "rt-1", "expires_in": 3600}))
    return fake_as


@pytest.fixture
def harness(as_server) -> _Harness:
    return _Harness()


def test_authorize_url_carries_stored_state(harness, monkeypatch):
    stored = {}
    original = harness.state_store.store

    def spy(state, verifier, **kwargs):
        stored["state"] = state
        stored["verifier"] = verifier
        return original(state, verifier, **kwargs)

    monkeypatch.setattr(harness.state_store, "store", spy)
    url = harness.flow.start(CLIENT_IP)

    parts = urlsplit(url)
    qs = parse_qs(parts.query)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == f"{AS}/authorize"
    assert qs["code_challenge_method"] == ["S256"]
    assert qs["state"] == [stored["state"]]
    assert stored["verifier"] not in url


def test_unknown_state_never_reaches_token_endpoint(harness, as_server):
    with pytest.raises(StateInvalid):
        harness.flow.complete("some-code", "abc", CLIENT_IP)
    assert as_server.calls_to(AS_TOKEN) == []


def test_exchange_persists_tokens_with_expiry(harness, as_server):
    url = harness.flow.start(CLIENT_IP)
    state = parse_qs(urlsplit(url).query)["state"][0]

    before = int(time.time() * 1000)
    login = harness.flow.complete("the-code", state, CLIENT_IP)

    assert login.account.account_id == "acc-42"
    rec = harness.token_store.get_token("acc-42")
    assert rec.access_token == "at-1"
    assert rec.refresh_token == "rt-1"
    assert abs(rec.expires_at - (before + 3_600_000)) < 1000
    assert harness.sessions.get_session(login.cookie_value).account_id == "acc-42"

    sent = as_server.calls_to(AS_TOKEN)[0]["data"]
    assert sent["code"] == "the-code"
    assert sent["grant_type"] == "authorization_code"
    jmap = as_server.calls_to(AS_JMAP)[0]
    assert jmap["headers"]["Authorization"] == "Bearer at-1"


def test_state_cannot_be_replayed(harness):
    url = harness.flow.start(CLIENT_IP)
    state = parse_qs(urlsplit(url).query)["state"][0]
    harness.flow.complete("the-code", state, CLIENT_IP)
    with pytest.raises(StateInvalid):
        harness.flow.complete("the-code", state, CLIENT_IP)


@pytest.mark.parametrize("code,state", [("", "s"), ("c", ""), (None, None)])
def test_missing_parameters(harness, code, state):
    with pytest.raises(ValidationError) as exc:
        harness.flow.complete(code, state, CLIENT_IP)
    assert exc.value.code == "missing_parameters"


def test_double_click_reuses_pending_url(harness):
    first = harness.flow.start(CLIENT_IP)
    second = harness.flow.start(CLIENT_IP)
    assert first == second
    assert harness.flow.start("198.51.100.99") != first


def test_missing_config_lists_env_names(as_server):
    h = _Harness({"AUTH_SERVER_BASE_URL": AS})
    with pytest.raises(ConfigurationError) as exc:
        h.flow.start(CLIENT_IP)
    assert exc.value.missing == ["AUTH_SERVER_PUBLIC_URL", "OAUTH_CLIENT_ID", "OAUTH_REDIRECT_URI"]
    assert as_server.calls_to(AS_DISCOVERY) == []


def test_authorize_rate_limited(harness):
    for i in range(20):
        harness.limiter.check(CLIENT_IP, "oauth_authorize")
    with pytest.raises(RateLimited) as exc:
        harness.flow.start(CLIENT_IP)
    assert exc.value.reset_at > 0


@pytest.mark.parametrize(
    "response",
    [(400, {"error": "invalid_grant", "error_description": "code used"}), requests.ConnectionError("down")],
)
def test_rejected_exchange(harness, as_server, response):
    url = harness.flow.start(CLIENT_IP)
    state = parse_qs(urlsplit(url).query)["state"][0]
    as_server.on("POST", AS_TOKEN, response)
    with pytest.raises(TokenExchangeFailed):
        harness.flow.complete("bad", state, CLIENT_IP)
    assert harness.token_store.get_token("acc-42") is None


def test_identity_rejection_leaves_no_tokens(harness, as_server):
    url = harness.flow.start(CLIENT_IP)
    state = parse_qs(urlsplit(url).query)["state"][0]
    as_server.on("GET", AS_JMAP, (401, {}))
    with pytest.raises(AuthenticationFailed):
        harness.flow.complete("the-code", state, CLIENT_IP)
    assert not [k for k in harness.backend._data if k.startswith(PENDING_PREFIX)]
    assert harness.token_store.get_token("acc-42") is None
