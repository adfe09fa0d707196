"""
Shared authentication utilities for the web adapter.

Why:
    Keep cookie policy and client-IP derivation in one place so the routes
    and the app module cannot drift apart.

Design:
    The helpers are small and mostly pure: callers pass the flag or request
    they care about and receive plain values back.
"""

from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from mail_auth.errors import ConfigurationError, MailAuthError, RateLimited
from mail_auth.sessions import SESSION_COOKIE_NAME

if TYPE_CHECKING:  # pragma: no cover
    from web.main import AuthServices


def trust_proxy() -> bool:
    return (os.getenv("WEBMAIL_TRUST_PROXY", "false") or "").strip().lower() == "true"


def cookie_opts(use_https: bool) -> dict:
    """Return cookie flags for the session cookie.

    Returns a mapping with keys:
      - secure: only when the app is served over HTTPS (USE_HTTPS)
      - samesite: "lax"  # top-level redirect back from the authorization server must carry it
    """
    return {"secure": bool(use_https), "samesite": "lax"}


def client_ip(request: Request) -> str:
    """Best-effort client IP used for rate limiting and audit events.

    Forwarded headers are honored only when WEBMAIL_TRUST_PROXY=true; otherwise
    a client could pick its own rate-limit bucket.
    """
    if trust_proxy():
        forwarded = request.headers.get("x-forwarded-for") or ""
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


NO_STORE = {"Cache-Control": "private, no-store"}


def services(request: Request) -> "AuthServices":
    return request.app.state.services


def set_session_cookie(response: Response, value: str, *, use_https: bool, max_age: int) -> None:
    opts = cookie_opts(use_https)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=value,
        httponly=True,
        secure=opts["secure"],
        samesite=opts["samesite"],
        path="/",
        max_age=max_age,
    )


def clear_session_cookie(response: Response, *, use_https: bool) -> None:
    opts = cookie_opts(use_https)
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=opts["secure"],
        samesite=opts["samesite"],
    )


def error_response(exc: MailAuthError) -> JSONResponse:
    """Map a core error to its JSON body; details never include secrets."""
    body: dict = {"error": exc.code}
    headers = dict(NO_STORE)
    if exc.detail:
        body["errorDescription"] = exc.detail
    if isinstance(exc, ConfigurationError) and exc.missing:
        body["missing"] = exc.missing
    if isinstance(exc, RateLimited):
        body["resetAt"] = exc.reset_at
        body["blockedUntil"] = exc.blocked_until
        retry_at = exc.blocked_until or exc.reset_at
        headers["Retry-After"] = str(max(1, (retry_at - int(time.time() * 1000) + 999) // 1000))
    return JSONResponse(body, status_code=exc.http_status, headers=headers)
