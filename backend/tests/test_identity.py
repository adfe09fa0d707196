"""
Mail-server identity lookup tests.

Focus:
- JMAP session parsing and primary-account selection
- bearer token forwarded; 401 vs. outage mapped to distinct errors
"""
from __future__ import annotations

import pytest
import requests

from conftest import AS_BASE, JMAP_SESSION_URL
from mail_auth.errors import AuthenticationFailed, DiscoveryUnavailable, NoAccountFound
from mail_auth.identity import (
    AccountInfo,
    IdentityDocument,
    JMAPSessionClient,
    parse_jmap_session,
    select_primary_account,
)


def test_parse_jmap_session_marks_primary():
    doc = parse_jmap_session(
        {
            "accounts": {"a1": {"name": "alice@example.org"}, "a2": {}},
            "primaryAccounts": {"urn:ietf:params:jmap:mail": "a1"},
        }
    )
    assert doc.primary_account_id == "a1"
    assert doc.accounts["a1"].primary is True
    assert doc.accounts["a2"].name == "a2"


def test_select_prefers_designated_primary():
    doc = IdentityDocument(
        accounts={"a": AccountInfo("a", "a@x"), "b": AccountInfo("b", "b@x")},
        primary_account_id="b",
    )
    assert select_primary_account(doc).account_id == "b"


def test_select_falls_back_to_primary_flag_then_first():
    flagged = IdentityDocument(accounts={"a": AccountInfo("a", "a@x"), "b": AccountInfo("b", "b@x", primary=True)})
    assert select_primary_account(flagged).account_id == "b"

    plain = IdentityDocument(accounts={"a": AccountInfo("a", "a@x"), "b": AccountInfo("b", "b@x")})
    assert select_primary_account(plain).account_id == "a"


def test_select_without_accounts_raises():
    with pytest.raises(NoAccountFound):
        select_primary_account(IdentityDocument())
    with pytest.raises(NoAccountFound):
        select_primary_account(parse_jmap_session({"accounts": {}}))


def test_fetch_identity_sends_bearer(fake_as):
    doc = JMAPSessionClient(AS_BASE).fetch_identity("tok-123")
    assert select_primary_account(doc).account_id == "acc-42"
    headers = fake_as.calls_to(JMAP_SESSION_URL)[0]["headers"]
    assert headers["Authorization"] == "Bearer tok-123"


@pytest.mark.parametrize("status", [401, 403])
def test_fetch_identity_rejected_token(fake_as, status):
    fake_as.on("GET", JMAP_SESSION_URL, (status, {}))
    with pytest.raises(AuthenticationFailed):
        JMAPSessionClient(AS_BASE).fetch_identity("tok")


@pytest.mark.parametrize("response", [(502, {}), requests.ConnectionError("down")])
def test_fetch_identity_outage(fake_as, response):
    fake_as.on("GET", JMAP_SESSION_URL, response)
    with pytest.raises(DiscoveryUnavailable):
        JMAPSessionClient(AS_BASE).fetch_identity("tok")
