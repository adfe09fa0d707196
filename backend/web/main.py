"homemail auth BFF"
from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

import anyio
import anyio.to_thread
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mail_auth.authcode import AuthorizationCodeFlow
from mail_auth.config import OAuthConfig, auth_mode, load_oauth_config, password_login_enabled
from mail_auth.crypto import Sealer
from mail_auth.device_flow import DeviceFlowClient
from mail_auth.discovery import DiscoveryClient
from mail_auth.errors import MailAuthError
from mail_auth.identity import JMAPSessionClient, MailIdentityProvider
from mail_auth.ratelimit import RateLimiter
from mail_auth.sessions import SESSION_COOKIE_NAME, SessionManager, SessionRecord
from mail_auth.stores import DeviceGrantStore, KeyValueBackend, MemoryBackend, StateStore, TokenStore
from mail_auth.tokens import TokenEndpointClient, has_valid_token

from web import config as _cfg
from web.auth_utils import NO_STORE, clear_session_cookie, client_ip, error_response, services
from web.routes.auth import auth_router
from web.routes.security import _is_same_origin


def _under_pytest() -> bool:
    return "pytest" in sys.modules or bool(os.getenv("PYTEST_CURRENT_TEST"))


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via WEBMAIL_ENABLE_DOTENV (default true outside pytest).
    """
    if _under_pytest():
        return False
    flag = (os.getenv("WEBMAIL_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    from dotenv import load_dotenv

    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

# --- App & Settings Setup -------------------------------------------------------

class AuthSettings:
    def __init__(self) -> None:
        self._env_override: str | None = None

    @property
    def environment(self) -> str:
        if self._env_override is not None:
            return self._env_override
        return os.getenv("WEBMAIL_ENV", "dev").lower()

    def override_environment(self, env: str | None) -> None:
        """Override environment for tests (e.g., "prod"), or reset with None."""
        self._env_override = env


logger = logging.getLogger("homemail.web")
SETTINGS = AuthSettings()
SWEEP_INTERVAL_SECONDS = 300


@dataclass
class AuthServices:
    """Everything the routes need, built once from the environment."""

    cfg: OAuthConfig
    backend: KeyValueBackend
    discovery: DiscoveryClient
    state_store: StateStore
    token_store: TokenStore
    token_client: TokenEndpointClient
    identity: MailIdentityProvider
    sessions: SessionManager
    limiter: RateLimiter
    auth_code: AuthorizationCodeFlow
    device_flow: DeviceFlowClient
    device_grants: DeviceGrantStore
    poll_limiter: Optional[anyio.CapacityLimiter] = None  # created on first poll, inside the event loop


def _store_backend(cfg: OAuthConfig) -> KeyValueBackend:
    if cfg.store_backend == "db" and not _under_pytest():
        from mail_auth.stores_db import DBKeyValueBackend

        backend = DBKeyValueBackend(cfg.database_url or "")
        backend.ensure_schema()
        return backend
    return MemoryBackend()


def build_services(
    environ: Mapping[str, str] | None = None,
    *,
    backend: Optional[KeyValueBackend] = None,
    identity: Optional[MailIdentityProvider] = None,
    limiter: Optional[RateLimiter] = None,
    device_sleep: Optional[Callable[[float], None]] = None,
) -> AuthServices:
    cfg = load_oauth_config(environ)
    backend = backend if backend is not None else _store_backend(cfg)
    store_sealer = Sealer(cfg.session_secret, purpose="store")
    discovery = DiscoveryClient.from_config(cfg)
    state_store = StateStore(backend, sealer=store_sealer)
    token_store = TokenStore(backend, sealer=store_sealer)
    token_client = TokenEndpointClient(discovery, client_id=cfg.client_id or "", redirect_uri=cfg.redirect_uri)
    identity = identity or JMAPSessionClient(cfg.base_url)
    sessions = SessionManager(Sealer(cfg.session_secret, purpose="session"))
    limiter = limiter if limiter is not None else RateLimiter.from_env(environ)
    return AuthServices(
        cfg=cfg,
        backend=backend,
        discovery=discovery,
        state_store=state_store,
        token_store=token_store,
        token_client=token_client,
        identity=identity,
        sessions=sessions,
        limiter=limiter,
        auth_code=AuthorizationCodeFlow(
            cfg,
            discovery=discovery,
            state_store=state_store,
            token_store=token_store,
            token_client=token_client,
            identity=identity,
            sessions=sessions,
            limiter=limiter,
        ),
        device_flow=DeviceFlowClient(
            discovery,
            token_client,
            client_id=cfg.client_id or "",
            scopes=cfg.scopes,
            public_url=cfg.public_url,
            internal_host_markers=cfg.internal_host_markers,
            sleep=device_sleep,
        ),
        device_grants=DeviceGrantStore(backend, sealer=store_sealer),
    )


def sweep_expired(svc: AuthServices) -> tuple[int, int]:
    """Drop lapsed rate-limit windows and expired store keys.

    Returns `(windows, keys)` removed. Keys that are never read again (abandoned
    states, dedup entries, provisional tokens) would otherwise stay forever in
    the in-memory backend.
    """
    windows = svc.limiter.cleanup()
    keys = svc.backend.purge_expired()
    if windows or keys:
        logger.info("Expiry sweep removed %s rate-limit windows and %s store keys", windows, keys)
    return windows, keys


async def _periodic_sweep(app: FastAPI) -> None:
    while True:
        await anyio.sleep(SWEEP_INTERVAL_SECONDS)
        try:
            await anyio.to_thread.run_sync(sweep_expired, app.state.services)
        except MailAuthError as exc:
            # Storage outages are retried on the next tick.
            logger.warning("Expiry sweep failed: %s", exc.code)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with anyio.create_task_group() as tg:
        tg.start_soon(_periodic_sweep, app)
        yield
        tg.cancel_scope.cancel()
    logger.info("Expiry sweep stopped")


app = FastAPI(
    title="homemail auth",
    description="OAuth 2.1 BFF for the webmail client",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.services = build_services()

# --- Error Mapping & Middleware -----------------------------------------------

@app.exception_handler(MailAuthError)
async def mail_auth_error_handler(request: Request, exc: MailAuthError):
    log = logger.error if exc.http_status >= 500 else logger.info
    log("%s %s failed: %s", request.method, request.url.path, exc.code)
    return error_response(exc)


@app.middleware("http")
async def session_context(request: Request, call_next):
    """Expose the validated session (or None) and drop cookies that no longer validate."""
    svc = services(request)
    raw = request.cookies.get(SESSION_COOKIE_NAME)
    rec: Optional[SessionRecord] = svc.sessions.get_session(raw) if raw else None
    request.state.session = rec
    response = await call_next(request)
    if raw and rec is None and SESSION_COOKIE_NAME not in response.headers.get("set-cookie", ""):
        clear_session_cookie(response, use_https=svc.cfg.use_https)
    return response

# --- Security Headers Middleware ----------------------------------------------

@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    # Support Origin/Referer fallback in CSRF checks without leaking cross-site
    # paths: strict-origin-when-cross-origin.
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if SETTINGS.environment == "prod":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


app.include_router(auth_router)


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers=NO_STORE)


@app.get("/api/auth/me")
async def get_me(request: Request):
    rec: Optional[SessionRecord] = getattr(request.state, "session", None)
    if rec is None:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=NO_STORE)
    exp_iso = datetime.fromtimestamp(rec.expires_at / 1000, tz=timezone.utc).isoformat(timespec="seconds")
    return JSONResponse(
        {
            "id": rec.account_id,
            "email": rec.email,
            "displayName": rec.email.split("@")[0],
            "expiresAt": exp_iso,
            "tokenValid": has_valid_token(services(request).token_store, rec.account_id),
        },
        headers=NO_STORE,
    )


@app.post("/api/auth/logout")
async def logout(request: Request):
    """Delete the account's token record and the session cookie."""
    if not _is_same_origin(request):
        return JSONResponse({"error": "invalid_origin"}, status_code=403, headers=NO_STORE)
    svc = services(request)
    rec: Optional[SessionRecord] = getattr(request.state, "session", None)
    if rec is not None:
        svc.token_store.delete_token(rec.account_id)
        logger.info("Logout for account %s from %s", rec.account_id, client_ip(request))
    resp = JSONResponse({"success": True}, headers=NO_STORE)
    clear_session_cookie(resp, use_https=svc.cfg.use_https)
    return resp


@app.get("/api/auth/config")
async def get_auth_config(request: Request):
    # Safe to expose: no secrets, only informs the UI which login options to show.
    cfg = services(request).cfg
    return JSONResponse(
        {"authMode": auth_mode(cfg), "passwordLoginEnabled": password_login_enabled(cfg)},
        headers=NO_STORE,
    )
