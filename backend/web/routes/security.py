"""
Shared web security helpers (FastAPI-agnostic utilities for routes).

Contains the same-origin check used by the state-changing OAuth endpoints
(device code, poll, logout). Keeping a single implementation avoids security
drift.
"""
from __future__ import annotations

from urllib.parse import urlparse

from fastapi import Request

from web.auth_utils import trust_proxy


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    return scheme, p.hostname.lower(), int(p.port or _default_port(scheme))


def _server_origin(request: Request) -> tuple[str, str, int]:
    scheme = (request.url.scheme or "http").lower()
    host = (request.url.hostname or "").lower()
    port = int(request.url.port) if request.url.port else _default_port(scheme)
    if not trust_proxy():
        return scheme, host, port

    xf_proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip()
    xf_host = (request.headers.get("x-forwarded-host") or "").split(",")[0].strip()
    scheme = (xf_proto or scheme).lower()
    if xf_host:
        if ":" in xf_host:
            host_only, port_str = xf_host.rsplit(":", 1)
            host = host_only.lower()
            port = int(port_str) if port_str.isdigit() else _default_port(scheme)
        else:
            host = xf_host.lower()
            port = _default_port(scheme)
    xf_port = (request.headers.get("x-forwarded-port") or "").split(",")[0].strip()
    if xf_port.isdigit():
        port = int(xf_port)
    return scheme, host, port


def _is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow to not break non-browser clients.
    Proxy awareness: Only trust X-Forwarded-* when WEBMAIL_TRUST_PROXY=true.
    """
    candidate = request.headers.get("origin") or request.headers.get("referer")
    if not candidate:
        return True
    try:
        return _parse_origin(candidate) == _server_origin(request)
    except ValueError:
        return False
