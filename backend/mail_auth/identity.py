"""
Mail-server identity lookup after a successful token exchange.

Why: The account id that keys the token store is assigned by the mail server
and only knowable with a valid token. `MailIdentityProvider` is the seam; the
default JMAP implementation reads the session resource
(`/.well-known/jmap`, RFC 8620) with the bearer token.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from . import transport
from .audit import logger
from .errors import AuthenticationFailed, DiscoveryUnavailable, NoAccountFound

JMAP_MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"
JMAP_SESSION_PATH = "/.well-known/jmap"


@dataclass(frozen=True)
class AccountInfo:
    account_id: str
    name: str
    primary: bool = False


@dataclass(frozen=True)
class IdentityDocument:
    accounts: Dict[str, AccountInfo] = field(default_factory=dict)
    primary_account_id: Optional[str] = None


class MailIdentityProvider(Protocol):
    def fetch_identity(self, access_token: str) -> IdentityDocument: ...


def select_primary_account(identity: IdentityDocument) -> AccountInfo:
    """Pick the designated primary account, else the first one reported.

    Raises `NoAccountFound` when the server reports no accounts.
    """
    if not identity.accounts:
        raise NoAccountFound()
    if identity.primary_account_id and identity.primary_account_id in identity.accounts:
        return identity.accounts[identity.primary_account_id]
    for info in identity.accounts.values():
        if info.primary:
            return info
    return next(iter(identity.accounts.values()))


def parse_jmap_session(doc: dict) -> IdentityDocument:
    raw_accounts = doc.get("accounts") if isinstance(doc, dict) else None
    primary_map = doc.get("primaryAccounts") if isinstance(doc, dict) else None
    primary_id = None
    if isinstance(primary_map, dict):
        candidate = primary_map.get(JMAP_MAIL_CAPABILITY)
        primary_id = candidate if isinstance(candidate, str) else None

    accounts: Dict[str, AccountInfo] = {}
    if isinstance(raw_accounts, dict):
        for account_id, info in raw_accounts.items():
            info = info if isinstance(info, dict) else {}
            name = info.get("name") if isinstance(info.get("name"), str) else ""
            accounts[account_id] = AccountInfo(
                account_id=account_id,
                name=name or account_id,
                primary=bool(info.get("isPrimary")) or account_id == primary_id,
            )
    return IdentityDocument(accounts=accounts, primary_account_id=primary_id)


class JMAPSessionClient:
    """`MailIdentityProvider` reading the JMAP session resource."""

    def __init__(self, base_url: str):
        self.session_url = f"{base_url.rstrip('/')}{JMAP_SESSION_PATH}"

    def fetch_identity(self, access_token: str) -> IdentityDocument:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            resp = transport.http_get(self.session_url, headers=headers)
        except transport.RequestError as exc:
            logger.warning("JMAP session request failed: %s", exc.__class__.__name__)
            raise DiscoveryUnavailable(detail="mail server unreachable") from exc
        if resp.status_code in (401, 403):
            raise AuthenticationFailed(detail="mail server rejected the access token")
        if resp.status_code != 200:
            raise DiscoveryUnavailable(detail=f"JMAP session returned HTTP {resp.status_code}")
        return parse_jmap_session(transport.json_or_empty(resp))
