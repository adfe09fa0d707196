"""
Environment-driven configuration for the OAuth BFF core.

Why: Read the environment once into an immutable object that the flows receive
explicitly. Loading is lenient (so the app can boot and serve `/health`), but
each flow calls `require()` before it starts so a missing value fails fast
with `ConfigurationError` instead of leaking an internal default downstream.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError

DEFAULT_BASE_URL = "http://stalwart:8080"
DEFAULT_SCOPES = (
    "urn:ietf:params:jmap:core",
    "urn:ietf:params:jmap:mail",
    "offline_access",
)
DEFAULT_SESSION_SECRET = "default-secret-key-change-in-production"
WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"

AUTH_MODES = ("basic", "bearer", "oauth")

_ENV_NAMES = {
    "public_url": "AUTH_SERVER_PUBLIC_URL",
    "client_id": "OAUTH_CLIENT_ID",
    "redirect_uri": "OAUTH_REDIRECT_URI",
    "base_url": "AUTH_SERVER_BASE_URL",
    "database_url": "DATABASE_URL",
}


def _truthy(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def _split(raw: Optional[str], sep: str) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(sep) if part.strip())


@dataclass(frozen=True)
class OAuthConfig:
    base_url: str  # internal (server-to-server), e.g. http://stalwart:8080
    public_url: Optional[str]  # browser-facing, e.g. https://mail.example.org
    client_id: Optional[str]
    redirect_uri: Optional[str]
    discovery_url: Optional[str] = None  # explicit override
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    internal_host_markers: tuple[str, ...] = ("stalwart",)
    session_secret: str = DEFAULT_SESSION_SECRET
    use_https: bool = False
    store_backend: str = "memory"
    database_url: Optional[str] = None
    auth_mode: str = "basic"
    password_login: Optional[bool] = None

    def require(self, *names: str) -> None:
        """Raise `ConfigurationError` listing the env vars of missing settings.

        Only variable names are reported, never values.
        """
        missing = [_ENV_NAMES.get(n, n.upper()) for n in names if not getattr(self, n, None)]
        if missing:
            raise ConfigurationError(missing=missing, detail="OAuth configuration incomplete")

    def require_authorization_code(self) -> None:
        self.require("public_url", "client_id", "redirect_uri")

    def require_device_flow(self) -> None:
        self.require("client_id")

    @property
    def usable_discovery_override(self) -> Optional[str]:
        # Placeholder values shipped in sample env files are ignored.
        if self.discovery_url and "example.com" not in self.discovery_url:
            return self.discovery_url
        return None


def load_oauth_config(environ: Mapping[str, str] | None = None) -> OAuthConfig:
    env = os.environ if environ is None else environ
    mode = (env.get("AUTH_MODE") or "basic").strip().lower()
    if mode not in AUTH_MODES:
        mode = "basic"
    raw_pwd = env.get("FEATURE_PASSWORD_LOGIN")
    raw_scopes = env.get("OAUTH_SCOPES")
    return OAuthConfig(
        base_url=(env.get("AUTH_SERVER_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
        public_url=(env.get("AUTH_SERVER_PUBLIC_URL") or "").rstrip("/") or None,
        client_id=env.get("OAUTH_CLIENT_ID") or None,
        redirect_uri=env.get("OAUTH_REDIRECT_URI") or None,
        discovery_url=env.get("OAUTH_DISCOVERY_URL") or None,
        scopes=_split(raw_scopes, " ") if raw_scopes else DEFAULT_SCOPES,
        internal_host_markers=_split(env.get("INTERNAL_HOST_MARKERS", "stalwart"), ",") or ("stalwart",),
        session_secret=env.get("SESSION_SECRET") or DEFAULT_SESSION_SECRET,
        use_https=_truthy(env.get("USE_HTTPS")),
        store_backend=(env.get("STORE_BACKEND") or "memory").strip().lower(),
        database_url=env.get("DATABASE_URL") or None,
        auth_mode=mode,
        password_login=None if raw_pwd is None else raw_pwd.strip().lower() == "true",
    )


def auth_mode(cfg: OAuthConfig) -> str:
    return cfg.auth_mode


def password_login_enabled(cfg: OAuthConfig) -> bool:
    """Password login UI is on by default, off in `oauth` mode unless forced."""
    if cfg.password_login is not None:
        return cfg.password_login
    return cfg.auth_mode != "oauth"
