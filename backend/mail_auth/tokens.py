"""
Token endpoint client and the implicit refresh policy.

Why: Both OAuth flows and every later mail-server call need the token
endpoint. The grants are posted form-encoded through `transport.http_post`
(5 s timeout). Responses are returned as `TokenResponse` so each caller
decides what an error means for its state machine.

Security: Token values never enter log lines; error descriptions from the
authorization server are passed through as-is because they are
server-authored and secret free.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from . import transport
from .audit import logger, security_event
from .discovery import DiscoveryClient
from .errors import AuthenticationFailed
from .stores import TokenRecord, TokenStore

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
REFRESH_SKEW_MS = 30_000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TokenResponse:
    status_code: int
    body: dict

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and isinstance(self.body.get("access_token"), str)

    @property
    def error(self) -> Optional[str]:
        err = self.body.get("error")
        if isinstance(err, str) and err:
            return err
        return None if self.ok else "server_error"

    @property
    def error_description(self) -> Optional[str]:
        desc = self.body.get("error_description")
        return desc if isinstance(desc, str) else None


class TokenEndpointClient:
    def __init__(self, discovery: DiscoveryClient, *, client_id: str, redirect_uri: Optional[str] = None):
        self.discovery = discovery
        self.client_id = client_id
        self.redirect_uri = redirect_uri

    def _post(self, data: dict) -> TokenResponse:
        endpoint = self.discovery.discover().token_endpoint
        resp = transport.http_post(endpoint, data=data)
        return TokenResponse(status_code=resp.status_code, body=transport.json_or_empty(resp))

    def exchange_authorization_code(self, *, code: str, code_verifier: str) -> TokenResponse:
        return self._post(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri or "",
                "client_id": self.client_id,
                "code_verifier": code_verifier,
            }
        )

    def refresh(self, refresh_token: str) -> TokenResponse:
        return self._post(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
            }
        )

    def poll_device_code(self, device_code: str) -> TokenResponse:
        return self._post(
            {
                "grant_type": DEVICE_CODE_GRANT,
                "device_code": device_code,
                "client_id": self.client_id,
            }
        )


def token_record_from_response(
    body: dict,
    account_id: str,
    *,
    now_ms: int,
    previous: Optional[TokenRecord] = None,
    default_scopes: Iterable[str] = (),
) -> TokenRecord:
    """Build a `TokenRecord` from a successful token response.

    `expires_in` becomes an absolute epoch-ms `expires_at`. A refresh response
    that omits `refresh_token` or `scope` keeps the previous values.
    """
    expires_in = body.get("expires_in")
    try:
        expires_at = now_ms + int(expires_in) * 1000 if expires_in is not None else None
    except (TypeError, ValueError):
        expires_at = None
    scope = body.get("scope")
    if isinstance(scope, str) and scope.strip():
        scopes = tuple(scope.split())
    elif previous is not None:
        scopes = previous.scopes
    else:
        scopes = tuple(default_scopes)
    refresh_token = body.get("refresh_token") or (previous.refresh_token if previous else None)
    return TokenRecord(
        account_id=account_id,
        access_token=body["access_token"],
        token_type=body.get("token_type") or "Bearer",
        refresh_token=refresh_token,
        expires_at=expires_at,
        scopes=scopes,
        issued_at=now_ms,
    )


def has_valid_token(store: TokenStore, account_id: str, *, now_ms: Optional[int] = None) -> bool:
    rec = store.get_token(account_id)
    if rec is None:
        return False
    return not rec.is_expired(now_ms if now_ms is not None else _now_ms())


def ensure_fresh_token(
    store: TokenStore,
    account_id: str,
    client: TokenEndpointClient,
    *,
    clock_ms: Callable[[], int] = _now_ms,
    skew_ms: int = REFRESH_SKEW_MS,
) -> TokenRecord:
    """Return a live token for `account_id`, refreshing it when it expired.

    Policy:
    - expired without refresh token: record deleted, re-authorization needed
    - refresh rejected with `invalid_grant`: record deleted
    - any other refresh failure (network, 5xx, other errors): record kept
    All failures raise `AuthenticationFailed`.
    """
    rec = store.get_token(account_id)
    if rec is None:
        raise AuthenticationFailed(code="not_authenticated")
    now = clock_ms()
    if not rec.is_expired(now, skew_ms):
        return rec

    if not rec.refresh_token:
        logger.info("Token expired for account %s and no refresh token is available", account_id)
        store.delete_token(account_id)
        raise AuthenticationFailed(code="token_expired")

    try:
        resp = client.refresh(rec.refresh_token)
    except transport.RequestError as exc:
        logger.warning("Token refresh for %s failed: %s", account_id, exc.__class__.__name__)
        security_event("token_refresh_failed", account_id=account_id, reason="network")
        raise AuthenticationFailed(code="token_refresh_failed") from exc

    if resp.ok:
        fresh = token_record_from_response(resp.body, account_id, now_ms=clock_ms(), previous=rec)
        store.save_token(account_id, fresh)
        return fresh

    security_event("token_refresh_failed", account_id=account_id, reason=resp.error, status=resp.status_code)
    if resp.error == "invalid_grant":
        store.delete_token(account_id)
    raise AuthenticationFailed(code="token_refresh_failed", detail=resp.error_description)
