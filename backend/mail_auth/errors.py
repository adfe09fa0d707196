"""
Error taxonomy for the mail_auth bounded context.

Why: The web adapter maps failures to HTTP responses without inspecting
messages. Every error carries a stable machine `code` (used in JSON bodies and
logs) and an `http_status` class, so the mapping lives in one place.

Security: Messages never contain secrets. State/verifier mismatches and
expiries share one code (`invalid_state`) so callers cannot tell replay from
expiry.
"""
from __future__ import annotations

from typing import Optional


class MailAuthError(Exception):
    """Base class; `code` is safe to return to clients."""

    code = "auth_error"
    http_status = 500

    def __init__(self, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(code or self.code)
        if code:
            self.code = code
        self.detail = detail


class ConfigurationError(MailAuthError):
    code = "config_invalid"
    http_status = 500

    def __init__(self, missing: list[str] | None = None, detail: Optional[str] = None):
        super().__init__(detail=detail)
        self.missing = list(missing or [])


class DiscoveryError(MailAuthError):
    code = "discovery_failed"
    http_status = 502


class DiscoveryUnavailable(DiscoveryError):
    code = "discovery_unavailable"


class DiscoveryMalformed(DiscoveryError):
    code = "discovery_malformed"


class ValidationError(MailAuthError):
    code = "invalid_request"
    http_status = 400


class StateInvalid(ValidationError):
    code = "invalid_state"


class InvalidEndpoint(ValidationError):
    code = "invalid_endpoint"


class RateLimited(MailAuthError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, reset_at: int, blocked_until: Optional[int] = None):
        super().__init__()
        self.reset_at = reset_at
        self.blocked_until = blocked_until


class AuthenticationFailed(MailAuthError):
    code = "authentication_failed"
    http_status = 401


class TokenExchangeFailed(AuthenticationFailed):
    code = "token_exchange_failed"


class NoAccountFound(AuthenticationFailed):
    code = "no_account_found"


class TransientPollError(MailAuthError):
    """Device flow "keep polling" signal; retried by design until expiry."""

    code = "authorization_pending"
    http_status = 200


class PollCancelled(MailAuthError):
    code = "poll_cancelled"
    http_status = 499


class StorageError(MailAuthError):
    code = "storage_error"
    http_status = 500
