"""
Device Authorization Grant (RFC 8628) client.

Why: Input-constrained clients (and the webmail's "sign in on another device"
option) obtain tokens by showing a user code and polling the token endpoint.
The poll loop is an explicit bounded iteration:

- never faster than the server interval; `slow_down` adds 5 s for the rest of
  the loop (capped at 60 s)
- stops at `expires_in` with a retryable `expired_token` result
- network errors count as `authorization_pending`
- cancellation via a `threading.Event`, which also wakes a pending sleep

Clock and sleep are injectable so tests run without real delays.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from . import transport
from .audit import logger, redact, security_event
from .discovery import DiscoveryClient, to_public_url
from .errors import AuthenticationFailed, DiscoveryMalformed, DiscoveryUnavailable, PollCancelled
from .tokens import TokenEndpointClient

DEFAULT_INTERVAL_SECONDS = 5
DEFAULT_EXPIRES_IN_SECONDS = 600
SLOW_DOWN_INCREMENT_SECONDS = 5
MAX_INTERVAL_SECONDS = 60
MAX_POLL_SECONDS = 900

TERMINAL_ERRORS = ("access_denied", "expired_token")


@dataclass(frozen=True)
class DeviceCode:
    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str]
    expires_in: int
    interval: int

    def to_client(self) -> dict:
        return {
            "deviceCode": self.device_code,
            "userCode": self.user_code,
            "verificationUri": self.verification_uri,
            "verificationUriComplete": self.verification_uri_complete,
            "expiresIn": self.expires_in,
            "interval": self.interval,
        }


@dataclass(frozen=True)
class PollResult:
    success: bool
    token: Optional[dict] = field(default=None, repr=False)
    error: Optional[str] = None
    error_description: Optional[str] = None
    retry: bool = False


def _positive_int(value, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def poll_window(
    interval, expires_in, issued: Optional[tuple[int, int]] = None
) -> tuple[int, int]:
    """Bound client-supplied poll parameters by what the server issued.

    `issued` is `(interval, remaining_seconds)` of a known grant. Without it
    the defaults are the floor and `MAX_POLL_SECONDS` the ceiling.
    """
    floor, ceiling = DEFAULT_INTERVAL_SECONDS, MAX_POLL_SECONDS
    if issued is not None:
        floor = max(issued[0], 1)
        ceiling = min(issued[1], MAX_POLL_SECONDS)
    interval = min(max(_positive_int(interval, floor), floor), MAX_INTERVAL_SECONDS)
    expires_in = min(_positive_int(expires_in, ceiling), ceiling)
    return interval, expires_in


class DeviceFlowClient:
    def __init__(
        self,
        discovery: DiscoveryClient,
        token_client: TokenEndpointClient,
        *,
        client_id: str,
        scopes: Iterable[str],
        public_url: Optional[str] = None,
        internal_host_markers: Iterable[str] = ("stalwart",),
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.discovery = discovery
        self.token_client = token_client
        self.client_id = client_id
        self.scopes = tuple(scopes)
        self.public_url = public_url
        self.markers = tuple(internal_host_markers)
        self._clock = clock
        self._sleep = sleep
        self._active: set[threading.Event] = set()
        self._active_lock = threading.Lock()

    def request_device_code(self) -> DeviceCode:
        endpoint = self.discovery.discover().require("device_authorization_endpoint")
        data = {"client_id": self.client_id}
        if self.scopes:
            data["scope"] = " ".join(self.scopes)
        try:
            resp = transport.http_post(endpoint, data=data)
        except transport.RequestError as exc:
            logger.warning("Device authorization endpoint unreachable: %s", exc.__class__.__name__)
            raise DiscoveryUnavailable(detail="device authorization endpoint unreachable") from exc
        body = transport.json_or_empty(resp)
        if not 200 <= resp.status_code < 300:
            logger.warning("Device code request failed: HTTP %s %s", resp.status_code, body.get("error"))
            raise DiscoveryUnavailable(code="device_code_request_failed", detail=body.get("error_description"))
        if not all(isinstance(body.get(k), str) and body.get(k) for k in ("device_code", "user_code", "verification_uri")):
            raise DiscoveryMalformed(detail="device code response is missing required fields")

        complete = body.get("verification_uri_complete")
        return DeviceCode(
            device_code=body["device_code"],
            user_code=body["user_code"],
            verification_uri=to_public_url(body["verification_uri"], self.public_url, self.markers),
            verification_uri_complete=to_public_url(complete, self.public_url, self.markers)
            if isinstance(complete, str) else None,
            expires_in=_positive_int(body.get("expires_in"), DEFAULT_EXPIRES_IN_SECONDS),
            interval=_positive_int(body.get("interval"), DEFAULT_INTERVAL_SECONDS),
        )

    def _wait(self, seconds: float, cancel_event: threading.Event) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            cancel_event.wait(seconds)
        if cancel_event.is_set():
            raise PollCancelled()

    def poll_for_token(
        self,
        device_code: str,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        expires_in: int = DEFAULT_EXPIRES_IN_SECONDS,
        cancel_event: Optional[threading.Event] = None,
    ) -> PollResult:
        """Poll until approval, denial, expiry or cancellation.

        Raises `PollCancelled` when `cancel_event` is set (or `cancel()` is
        called); every other outcome is returned as a `PollResult`.
        """
        event = cancel_event or threading.Event()
        with self._active_lock:
            self._active.add(event)
        try:
            return self._poll(device_code, _positive_int(interval, DEFAULT_INTERVAL_SECONDS),
                              _positive_int(expires_in, DEFAULT_EXPIRES_IN_SECONDS), event)
        finally:
            with self._active_lock:
                self._active.discard(event)

    def _poll(self, device_code: str, interval: int, expires_in: int, event: threading.Event) -> PollResult:
        deadline = self._clock() + expires_in
        logger.info("Polling for device code %s every %ss", redact(device_code), interval)
        while True:
            if event.is_set():
                raise PollCancelled()
            if self._clock() >= deadline:
                return PollResult(False, error="expired_token", error_description="Device code has expired", retry=True)

            try:
                resp = self.token_client.poll_device_code(device_code)
            except transport.RequestError as exc:
                logger.info("Device poll network error (%s); treating as pending", exc.__class__.__name__)
                self._wait(interval, event)
                continue

            if resp.ok:
                token_type = resp.body.get("token_type")
                if not isinstance(token_type, str) or token_type.lower() != "bearer":
                    return PollResult(
                        False,
                        error="invalid_request",
                        error_description=f"Unsupported token type: {token_type}",
                    )
                return PollResult(True, token=resp.body)

            error = resp.error
            if error == "authorization_pending":
                self._wait(interval, event)
                continue
            if error == "slow_down":
                interval = min(interval + SLOW_DOWN_INCREMENT_SECONDS, MAX_INTERVAL_SECONDS)
                logger.info("Authorization server asked to slow down; interval now %ss", interval)
                self._wait(interval, event)
                continue
            if error in TERMINAL_ERRORS:
                return PollResult(False, error=error, error_description=resp.error_description)
            if 200 <= resp.status_code < 300:
                return PollResult(
                    False,
                    error="invalid_request",
                    error_description="Invalid token response: missing access_token",
                )
            return PollResult(False, error=error, error_description=resp.error_description, retry=True)

    def authorize_device(self, on_progress: Optional[Callable[[str, str], None]] = None) -> dict:
        """Request a device code and poll to completion; returns the token response body.

        `on_progress(status, message)` receives `pending` with the user code,
        then `authorized` or `error`.
        """
        code = self.request_device_code()
        if on_progress:
            on_progress("pending", f"Visit {code.verification_uri} and enter code {code.user_code}")
        result = self.poll_for_token(code.device_code, code.interval, code.expires_in)
        security_event("device_flow_finished", success=result.success, error=result.error)
        if not result.success:
            if on_progress:
                on_progress("error", result.error_description or result.error or "error")
            raise AuthenticationFailed(code=result.error or "authentication_failed", detail=result.error_description)
        if on_progress:
            on_progress("authorized", "Authorization successful")
        return result.token

    def cancel(self) -> None:
        """Abort every poll loop currently running on this client."""
        with self._active_lock:
            events = list(self._active)
        for event in events:
            event.set()
