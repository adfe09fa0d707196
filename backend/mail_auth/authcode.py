"""
Authorization Code + PKCE flow orchestration.

Why: The web adapter only translates HTTP to these two calls:

- `start(client_ip)` returns the URL the browser is redirected to.
- `complete(code, state, client_ip)` validates the one-time state, exchanges
  the code, resolves the mail account and mints the session.

Security:
- No extra CSRF cookie on `start`: PKCE plus the one-time server-side state
  already bind the callback to this authorization request.
- An unknown, replayed or expired state fails before the token endpoint is
  contacted, with one indistinguishable `invalid_state` error.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from . import transport
from .accounts import LoginResult, finish_login
from .audit import logger, redact, security_event
from .config import OAuthConfig
from .discovery import DiscoveryClient
from .errors import RateLimited, StateInvalid, TokenExchangeFailed, ValidationError
from .identity import MailIdentityProvider
from .pkce import build_authorization_url, generate_code_challenge, generate_code_verifier, generate_state
from .ratelimit import RateLimiter
from .sessions import SessionManager
from .stores import StateStore, TokenStore
from .tokens import TokenEndpointClient, token_record_from_response


def _now_ms() -> int:
    return int(time.time() * 1000)


class AuthorizationCodeFlow:
    def __init__(
        self,
        cfg: OAuthConfig,
        *,
        discovery: DiscoveryClient,
        state_store: StateStore,
        token_store: TokenStore,
        token_client: TokenEndpointClient,
        identity: MailIdentityProvider,
        sessions: SessionManager,
        limiter: Optional[RateLimiter] = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.cfg = cfg
        self.discovery = discovery
        self.state_store = state_store
        self.token_store = token_store
        self.token_client = token_client
        self.identity = identity
        self.sessions = sessions
        self.limiter = limiter
        self._clock_ms = clock_ms

    def start(self, client_ip: Optional[str] = None) -> str:
        self.cfg.require_authorization_code()
        if self.limiter is not None and client_ip:
            verdict = self.limiter.check(client_ip, "oauth_authorize")
            if not verdict.allowed:
                raise RateLimited(reset_at=verdict.reset_at, blocked_until=verdict.blocked_until)

        pending = self.state_store.recent_authorization_url(client_ip)
        if pending:
            logger.info("Reusing pending authorization request for repeated authorize")
            return pending

        endpoint = self.discovery.discover().require("authorization_endpoint")
        verifier = generate_code_verifier()
        state = generate_state()
        url = build_authorization_url(
            endpoint,
            client_id=self.cfg.client_id,
            redirect_uri=self.cfg.redirect_uri,
            scopes=self.cfg.scopes,
            state=state,
            code_challenge=generate_code_challenge(verifier),
        )
        self.state_store.store(state, verifier, client_ip=client_ip, authorization_url=url)
        logger.info("Authorization requested, state=%s", redact(state))
        return url

    def complete(self, code: Optional[str], state: Optional[str], client_ip: Optional[str] = None) -> LoginResult:
        if not code or not state:
            raise ValidationError(code="missing_parameters", detail="code and state are required")

        verifier = self.state_store.consume(state)
        if verifier is None:
            logger.warning("Callback with unknown or expired state %s", redact(state))
            security_event("state_rejected", ip=client_ip)
            raise StateInvalid()

        self.cfg.require_authorization_code()
        try:
            resp = self.token_client.exchange_authorization_code(code=code, code_verifier=verifier)
        except transport.RequestError as exc:
            logger.warning("Token endpoint unreachable: %s", exc.__class__.__name__)
            security_event("login_failed", ip=client_ip, method="authorization_code", reason="network")
            raise TokenExchangeFailed(detail="token endpoint unreachable") from exc
        if not resp.ok:
            logger.warning("Token exchange rejected: HTTP %s %s", resp.status_code, resp.error)
            security_event("login_failed", ip=client_ip, method="authorization_code", reason=resp.error)
            raise TokenExchangeFailed(detail=resp.error_description or resp.error)

        record = token_record_from_response(
            resp.body, "pending", now_ms=self._clock_ms(), default_scopes=self.cfg.scopes
        )
        return finish_login(
            self.token_store,
            self.identity,
            self.sessions,
            record,
            method="authorization_code",
            client_ip=client_ip,
        )
