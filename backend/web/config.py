"""
Configuration and startup security checks for the webmail auth BFF.

Why: A mail client that holds users' OAuth tokens must not be deployed with
development defaults. This module provides a single guard that enforces
minimal production safety constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

from mail_auth.config import DEFAULT_SESSION_SECRET

MIN_SECRET_LENGTH = 32


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - SESSION_SECRET must be set, not the shipped placeholder, and long enough.
    - AUTH_SERVER_PUBLIC_URL and OAUTH_REDIRECT_URI must use https.
    - STORE_BACKEND=db needs DATABASE_URL, which must not disable TLS.
    """

    env = os.getenv("WEBMAIL_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Session key material
    secret = (os.getenv("SESSION_SECRET") or "").strip()
    if not secret or secret == DEFAULT_SESSION_SECRET:
        raise SystemExit("Refusing to start: SESSION_SECRET is unset or the default placeholder in production.")
    if len(secret) < MIN_SECRET_LENGTH:
        raise SystemExit(
            f"Refusing to start: SESSION_SECRET must be at least {MIN_SECRET_LENGTH} characters in production."
        )

    # 2) Browser-facing OAuth URLs must use HTTPS
    for var_name in ("AUTH_SERVER_PUBLIC_URL", "OAUTH_REDIRECT_URI"):
        val = (os.getenv(var_name) or "").strip().lower()
        if val.startswith("http://"):
            raise SystemExit(f"Refusing to start: {var_name} must use https in production (got http).")

    # 3) Persistent stores
    backend = (os.getenv("STORE_BACKEND") or "memory").strip().lower()
    dsn = os.getenv("DATABASE_URL", "")
    if backend == "db" and not dsn:
        raise SystemExit("Refusing to start: STORE_BACKEND=db requires DATABASE_URL.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
