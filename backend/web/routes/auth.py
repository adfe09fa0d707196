"""
OAuth-related FastAPI routes (router-only module).

Why:
    Keep the OAuth endpoints in a dedicated router; the flows themselves live
    in `mail_auth` and are reached through `request.app.state.services`, so
    tests can swap the wiring without monkeypatching module globals.

Notes:
    - Blocking work (discovery, token endpoint, identity lookup) runs in the
      threadpool; device poll loops run on their own capacity limiter.
    - Every response carries `Cache-Control: private, no-store`; errors raised
      by the core are mapped to JSON by the app's exception handler.
"""

from __future__ import annotations

import logging
import threading
import time

import anyio
import anyio.to_thread
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from mail_auth.accounts import LoginResult, finish_login
from mail_auth.audit import redact, security_event
from mail_auth.device_flow import PollResult, poll_window
from mail_auth.errors import AuthenticationFailed, MailAuthError, RateLimited, ValidationError
from mail_auth.tokens import token_record_from_response

from web.auth_utils import NO_STORE, client_ip, services, set_session_cookie
from web.routes.security import _is_same_origin


auth_router = APIRouter(tags=["Auth"])  # explicit paths, no prefix
logger = logging.getLogger("homemail.web.auth")

DISCONNECT_CHECK_SECONDS = 0.5
# Poll loops hold a worker thread for minutes; keep them off the shared pool.
POLL_CONCURRENCY = 8


def _forbidden_origin() -> JSONResponse:
    return JSONResponse({"error": "invalid_origin"}, status_code=403, headers=NO_STORE)


def _enforce_rate_limit(request: Request, action: str) -> None:
    verdict = services(request).limiter.check(client_ip(request), action)
    if not verdict.allowed:
        raise RateLimited(reset_at=verdict.reset_at, blocked_until=verdict.blocked_until)


def _with_session_cookie(request: Request, response, login: LoginResult):
    svc = services(request)
    set_session_cookie(
        response,
        login.cookie_value,
        use_https=svc.cfg.use_https,
        max_age=svc.sessions.ttl_seconds,
    )
    return response


@auth_router.get("/api/auth/oauth/authorize")
async def oauth_authorize(request: Request):
    """
    Start the Authorization Code + PKCE flow and redirect to the authorization server.

    Behavior:
        - 302 to the discovered authorization endpoint (public host).
        - 429 JSON with `resetAt`/`blockedUntil` when the client IP is limited.
        - 500 `config_invalid` when public URL, client id or redirect URI is missing.
    Permissions:
        Public.
    """
    url = await run_in_threadpool(services(request).auth_code.start, client_ip(request))
    return RedirectResponse(url=url, status_code=302, headers=dict(NO_STORE))


async def _complete_callback(request: Request, code: str | None, state: str | None, error: str | None) -> LoginResult:
    _enforce_rate_limit(request, "oauth_token")
    svc = services(request)
    if error:
        # Burn the state so the authorization request cannot be resumed.
        await run_in_threadpool(svc.state_store.consume, state)
        logger.info("Authorization server returned error=%s", error)
        raise AuthenticationFailed(code="access_denied" if error == "access_denied" else "authorization_failed")
    return await run_in_threadpool(svc.auth_code.complete, code, state, client_ip(request))


@auth_router.get("/api/auth/oauth/callback")
async def oauth_callback(request: Request, code: str | None = None, state: str | None = None, error: str | None = None):
    """
    Redirect target of the authorization server.

    Success sets the session cookie and redirects to the app root. Unknown,
    replayed or expired states yield 400 `invalid_state`; a rejected code
    yields 401 `token_exchange_failed`.
    """
    login = await _complete_callback(request, code, state, error)
    resp = RedirectResponse(url="/", status_code=302, headers=dict(NO_STORE))
    return _with_session_cookie(request, resp, login)


@auth_router.post("/api/auth/oauth/callback")
async def oauth_callback_post(request: Request):
    """Same as the GET callback for clients that relay `code`/`state` as JSON."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    params = request.query_params
    login = await _complete_callback(
        request,
        body.get("code") or params.get("code"),
        body.get("state") or params.get("state"),
        body.get("error") or params.get("error"),
    )
    resp = JSONResponse({"success": True, "account": login.summary()}, headers=dict(NO_STORE))
    return _with_session_cookie(request, resp, login)


@auth_router.post("/api/auth/oauth/device-code")
async def oauth_device_code(request: Request):
    """
    Request a device code for the Device Authorization Grant.

    Security: Same-origin only; limited with the `oauth_token` class.
    """
    if not _is_same_origin(request):
        return _forbidden_origin()
    _enforce_rate_limit(request, "oauth_token")
    svc = services(request)
    svc.cfg.require_device_flow()
    code = await run_in_threadpool(svc.device_flow.request_device_code)
    await run_in_threadpool(svc.device_grants.remember, code.device_code, code.interval, code.expires_in)
    logger.info("Device code issued, user_code=%s", code.user_code)
    return JSONResponse(code.to_client(), headers=dict(NO_STORE))


def _poll_limiter(request: Request) -> anyio.CapacityLimiter:
    svc = services(request)
    if svc.poll_limiter is None:
        svc.poll_limiter = anyio.CapacityLimiter(POLL_CONCURRENCY)
    return svc.poll_limiter


@auth_router.post("/api/auth/oauth/poll")
async def oauth_poll(request: Request):
    """
    Poll the token endpoint until the user approves the device code.

    Behavior:
        - Runs the bounded poll loop in a worker thread; a client disconnect
          cancels it so the authorization server's budget is not burnt.
        - Success binds the tokens to the resolved account and sets the
          session cookie: `{success: true, account}`.
        - Otherwise `{success: false, error, errorDescription, retry}` (200).
    Security:
        Same-origin only; limited with the `oauth_poll` class independent of
        the server-side interval. `interval` and `expiresIn` from the body
        never undercut the interval or outlast the lifetime issued with the
        device code (5 s and 900 s bounds for codes this process did not
        issue). At most `POLL_CONCURRENCY` loops run at once.
    """
    if not _is_same_origin(request):
        return _forbidden_origin()
    _enforce_rate_limit(request, "oauth_poll")
    svc = services(request)
    svc.cfg.require_device_flow()

    try:
        body = await request.json()
    except ValueError:
        body = {}
    device_code = body.get("deviceCode") if isinstance(body, dict) else None
    if not isinstance(device_code, str) or not device_code:
        raise ValidationError(code="missing_parameters", detail="deviceCode is required")
    issued = await run_in_threadpool(svc.device_grants.lookup, device_code)
    interval, expires_in = poll_window(body.get("interval"), body.get("expiresIn"), issued)
    ip = client_ip(request)

    cancel = threading.Event()

    async def _watch_disconnect() -> None:
        while not cancel.is_set():
            if await request.is_disconnected():
                logger.info("Client went away; cancelling poll for %s", redact(device_code))
                cancel.set()
                return
            await anyio.sleep(DISCONNECT_CHECK_SECONDS)

    # Task groups wrap errors in ExceptionGroup; keep core errors out of it.
    outcome: PollResult | MailAuthError
    async with anyio.create_task_group() as tg:
        tg.start_soon(_watch_disconnect)
        try:
            outcome = await anyio.to_thread.run_sync(
                svc.device_flow.poll_for_token,
                device_code,
                interval,
                expires_in,
                cancel,
                limiter=_poll_limiter(request),
            )
        except MailAuthError as exc:
            outcome = exc
        finally:
            cancel.set()
            tg.cancel_scope.cancel()
    if isinstance(outcome, MailAuthError):
        raise outcome
    result = outcome

    security_event("device_flow_finished", ip=ip, success=result.success, error=result.error)
    if not result.success:
        return JSONResponse(
            {
                "success": False,
                "error": result.error,
                "errorDescription": result.error_description,
                "retry": result.retry,
            },
            headers=dict(NO_STORE),
        )

    record = token_record_from_response(
        result.token, "pending", now_ms=int(time.time() * 1000), default_scopes=svc.cfg.scopes
    )
    login = await run_in_threadpool(
        finish_login,
        svc.token_store,
        svc.identity,
        svc.sessions,
        record,
        method="device_code",
        client_ip=ip,
    )
    resp = JSONResponse({"success": True, "account": login.summary()}, headers=dict(NO_STORE))
    return _with_session_cookie(request, resp, login)
