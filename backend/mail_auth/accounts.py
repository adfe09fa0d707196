"""
Bind freshly issued tokens to the mail account they belong to.

Why: Both flows end the same way: persist the tokens, learn the account id
from the mail server, mint a session. The account id is unknown until the
token works, so the record is first parked under a provisional correlation id
and re-keyed once the identity is known. A failed lookup discards the parked
record immediately; anything else is caught by the provisional TTL.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .audit import logger, security_event
from .identity import AccountInfo, MailIdentityProvider, select_primary_account
from .sessions import SessionManager, SessionRecord
from .stores import TokenRecord, TokenStore


@dataclass(frozen=True)
class LoginResult:
    account: AccountInfo
    session: SessionRecord
    cookie_value: str

    def summary(self) -> dict:
        return {"accountId": self.account.account_id, "email": self.account.name}


def bind_account(store: TokenStore, identity: MailIdentityProvider, record: TokenRecord) -> AccountInfo:
    correlation_id = store.save_provisional(record)
    try:
        account = select_primary_account(identity.fetch_identity(record.access_token))
    except Exception:
        store.discard_provisional(correlation_id)
        raise
    store.promote(correlation_id, account.account_id)
    return account


def finish_login(
    store: TokenStore,
    identity: MailIdentityProvider,
    sessions: SessionManager,
    record: TokenRecord,
    *,
    method: str,
    client_ip: Optional[str] = None,
) -> LoginResult:
    try:
        account = bind_account(store, identity, record)
    except Exception as exc:
        security_event("login_failed", ip=client_ip, method=method, reason=getattr(exc, "code", "error"))
        raise
    session, cookie_value = sessions.create_session(account.account_id, account.name)
    logger.info("OAuth login via %s for account %s", method, account.account_id)
    security_event("login_succeeded", ip=client_ip, method=method, account_id=account.account_id)
    return LoginResult(account=account, session=session, cookie_value=cookie_value)
