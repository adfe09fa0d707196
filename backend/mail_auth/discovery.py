"""
Authorization-server metadata discovery (RFC 8414) with a small TTL cache.

Why: Endpoints are never hardcoded. The BFF and the browser may reach the
authorization server through different network paths, so the module makes the
internal/public distinction explicit:

- Discovery itself is fetched from the internal base URL when that URL is
  recognizably internal (loopback, private network, container hostname),
  otherwise from the public URL.
- The authorization endpoint is what the *browser* opens, so an internal host
  in it is rewritten to the public URL. Server-side endpoints (token, device
  authorization) are kept as discovered.

`is_internal_url` is a pure predicate so the heuristic can be unit tested.
"""
from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from . import transport
from .audit import logger
from .config import WELL_KNOWN_PATH, OAuthConfig
from .errors import ConfigurationError, DiscoveryMalformed, DiscoveryUnavailable

CACHE_TTL_SECONDS = 3600
LOOPBACK_NAMES = frozenset({"localhost", "localhost.localdomain", "ip6-localhost"})


def is_internal_host(hostname: str, markers: Iterable[str] = ("stalwart",)) -> bool:
    host = (hostname or "").strip().lower().strip("[]")
    if not host:
        return False
    if host in LOOPBACK_NAMES:
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None:
        return ip.is_private or ip.is_loopback or ip.is_link_local
    if any(m and m.lower() in host for m in markers):
        return True
    # Single-label names are container/service names on an internal network.
    return "." not in host


def is_internal_url(url: str, markers: Iterable[str] = ("stalwart",)) -> bool:
    """Return True when `url` points at loopback, a private network or a known internal host."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return False
    return is_internal_host(host, markers)


def _well_known(base: str) -> str:
    return f"{base.rstrip('/')}{WELL_KNOWN_PATH}"


def select_discovery_url(cfg: OAuthConfig) -> str:
    """Pick the discovery URL the BFF process should fetch.

    An explicit override wins, except when it is public while the configured
    base URL is internal: the server-side fetch then goes to the internal
    address.
    """
    base_internal = bool(cfg.base_url) and is_internal_url(cfg.base_url, cfg.internal_host_markers)
    override = cfg.usable_discovery_override
    if override:
        if base_internal and not is_internal_url(override, cfg.internal_host_markers):
            return _well_known(cfg.base_url)
        return override
    if base_internal:
        return _well_known(cfg.base_url)
    if cfg.public_url:
        return _well_known(cfg.public_url)
    if cfg.base_url:
        return _well_known(cfg.base_url)
    raise ConfigurationError(missing=["AUTH_SERVER_PUBLIC_URL"], detail="Discovery URL not configured")


def to_public_url(url: Optional[str], public_url: Optional[str], markers: Iterable[str] = ("stalwart",)) -> Optional[str]:
    """Rewrite scheme/host/port of an internal URL to the public base; keep path and query."""
    if not url or not public_url or not is_internal_url(url, markers):
        return url
    src = urlsplit(url)
    pub = urlsplit(public_url)
    if not pub.scheme or not pub.netloc:
        return url
    return urlunsplit((pub.scheme, pub.netloc, src.path, src.query, src.fragment))


@dataclass(frozen=True)
class AuthServerMetadata:
    issuer: str
    token_endpoint: str
    authorization_endpoint: Optional[str] = None
    device_authorization_endpoint: Optional[str] = None

    def require(self, name: str) -> str:
        value = getattr(self, name, None)
        if not value:
            raise DiscoveryMalformed(detail=f"{name} missing in discovery document")
        return value


def parse_metadata(doc: dict) -> AuthServerMetadata:
    if not isinstance(doc, dict):
        raise DiscoveryMalformed(detail="discovery document is not a JSON object")
    for required in ("issuer", "token_endpoint"):
        if not isinstance(doc.get(required), str) or not doc.get(required):
            raise DiscoveryMalformed(detail=f"{required} missing in discovery document")

    def _opt(key: str) -> Optional[str]:
        val = doc.get(key)
        return val if isinstance(val, str) and val else None

    return AuthServerMetadata(
        issuer=doc["issuer"],
        token_endpoint=doc["token_endpoint"],
        authorization_endpoint=_opt("authorization_endpoint"),
        device_authorization_endpoint=_opt("device_authorization_endpoint"),
    )


class DiscoveryClient:
    """Fetch and cache one authorization server's metadata document."""

    def __init__(
        self,
        discovery_url: str,
        *,
        public_url: Optional[str] = None,
        internal_host_markers: Iterable[str] = ("stalwart",),
        ttl_seconds: int = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.discovery_url = discovery_url.rstrip("/")
        self.public_url = public_url
        self.markers = tuple(internal_host_markers)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[AuthServerMetadata] = None
        self._expires_at = 0.0

    @classmethod
    def from_config(cls, cfg: OAuthConfig, **kwargs) -> "DiscoveryClient":
        return cls(
            select_discovery_url(cfg),
            public_url=cfg.public_url,
            internal_host_markers=cfg.internal_host_markers,
            **kwargs,
        )

    def discover(self) -> AuthServerMetadata:
        now = self._clock()
        with self._lock:
            if self._cached is not None and self._expires_at > now:
                return self._cached

        logger.info("Discovery fetch: %s", self.discovery_url)
        try:
            resp = transport.http_get(self.discovery_url)
        except transport.RequestError as exc:
            logger.warning("Discovery network error for %s: %s", self.discovery_url, exc.__class__.__name__)
            raise DiscoveryUnavailable(detail="authorization server unreachable") from exc
        if resp.status_code != 200:
            logger.warning("Discovery failed for %s: HTTP %s", self.discovery_url, resp.status_code)
            raise DiscoveryUnavailable(detail=f"discovery returned HTTP {resp.status_code}")
        try:
            doc = resp.json()
        except ValueError as exc:
            raise DiscoveryMalformed(detail="discovery document is not JSON") from exc

        meta = parse_metadata(doc)
        browser_auth = to_public_url(meta.authorization_endpoint, self.public_url, self.markers)
        if browser_auth != meta.authorization_endpoint:
            logger.info("Authorization endpoint rewritten to public host: %s", browser_auth)
            meta = AuthServerMetadata(
                issuer=meta.issuer,
                token_endpoint=meta.token_endpoint,
                authorization_endpoint=browser_auth,
                device_authorization_endpoint=meta.device_authorization_endpoint,
            )

        with self._lock:
            self._cached = meta
            self._expires_at = now + self.ttl_seconds
        return meta

    def clear_cache(self) -> None:
        with self._lock:
            self._cached = None
            self._expires_at = 0.0
