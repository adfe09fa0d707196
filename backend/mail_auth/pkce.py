"""
PKCE (RFC 7636) parameter generation and authorization URL building.

Why: Keep the cryptographic helpers pure and framework independent so they can
be unit tested in isolation and reused by both OAuth flows.

Security: Verifier and state come from `secrets` (CSPRNG). Only the verifier is
ever persisted (keyed by state); the challenge is derived on demand.
"""
from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import InvalidEndpoint

VERIFIER_BYTES = 32  # 43 chars base64url
STATE_BYTES = 16  # 128 bits


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """Return a 43-char base64url verifier (unreserved charset only)."""
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 challenge: BASE64URL(SHA256(ASCII(verifier)))."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_state() -> str:
    return _b64url(secrets.token_bytes(STATE_BYTES))


def build_authorization_url(
    endpoint: str,
    *,
    client_id: str,
    redirect_uri: str,
    scopes: Iterable[str],
    state: str,
    code_challenge: str,
) -> str:
    """Return `endpoint` with the authorization-code + PKCE query parameters.

    Existing query parameters on the endpoint are preserved; ours win on
    conflicts. Raises `InvalidEndpoint` unless the endpoint is an absolute
    http(s) URL.
    """
    try:
        parts = urlsplit(endpoint)
    except ValueError as exc:
        raise InvalidEndpoint(detail="unparseable authorization endpoint") from exc
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidEndpoint(detail="authorization endpoint must be an absolute http(s) URL")

    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params.update(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
    )
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))
