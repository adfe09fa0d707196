"""
Outbound HTTP calls to the authorization and mail servers.

Why: A single, small indirection over `requests` keeps timeouts consistent and
gives tests one place to monkeypatch (`mail_auth.transport.http.post`).
"""
from __future__ import annotations

from typing import Dict, Optional

# Small indirection to ease monkeypatching in tests
import requests as http

HTTP_TIMEOUT_SECONDS = 5

RequestError = http.RequestException


def http_get(url: str, headers: Optional[Dict[str, str]] = None):
    return http.get(url, headers=headers or {"Accept": "application/json"}, timeout=HTTP_TIMEOUT_SECONDS)


def http_post(url: str, data: Dict[str, str], headers: Optional[Dict[str, str]] = None):
    hdrs = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
    if headers:
        hdrs.update(headers)
    return http.post(url, data=data, headers=hdrs, timeout=HTTP_TIMEOUT_SECONDS)


def json_or_empty(resp) -> dict:
    """Decode a JSON object body, returning {} for non-JSON or non-object bodies."""
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
