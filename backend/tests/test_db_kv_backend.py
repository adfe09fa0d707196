"""
Unit-style tests for DBKeyValueBackend using a fake psycopg driver.

Rationale: Keep CI/self-contained runs green without a real Postgres.
We simulate the subset of psycopg used by the backend to validate SQL flow,
TTL handling and the single-statement consume. No network or external DB
required.
"""

from __future__ import annotations

import time
import types

import pytest

from mail_auth.crypto import Sealer
from mail_auth.errors import StorageError
from mail_auth.stores import StateStore, TokenRecord, TokenStore


class _FakeError(Exception):
    pass


class _FakeCursor:
    def __init__(self, db: dict, log: list):
        self._db = db
        self._log = log
        self._row = None
        self.rowcount = 0

    def _live(self, key):
        item = self._db.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.time():
            return None
        return value

    def execute(self, sql: str, params: tuple | list = ()):
        self._log.append(sql)
        sql_low = " ".join(sql.lower().split())
        self._row = None
        self.rowcount = 0
        if sql_low.startswith("create table"):
            return
        if sql_low.startswith("insert into"):
            key, value, ttl, _ = params
            self._db[key] = (value, time.time() + ttl if ttl is not None else None)
            self.rowcount = 1
        elif sql_low.startswith("select value"):
            value = self._live(params[0])
            self._row = (value,) if value is not None else None
        elif sql_low.startswith("delete") and "returning value" in sql_low:
            value = self._live(params[0])
            if value is not None:
                del self._db[params[0]]
                self._row = (value,)
        elif sql_low.startswith("delete") and "key like" in sql_low:
            prefix = params[0][:-1].replace("\\_", "_").replace("\\%", "%").replace("\\\\", "\\")
            doomed = [k for k in self._db if k.startswith(prefix)]
            for k in doomed:
                del self._db[k]
            self.rowcount = len(doomed)
        elif sql_low.startswith("delete") and "expires_at <= now()" in sql_low:
            now = time.time()
            doomed = [k for k, (_, exp) in self._db.items() if exp is not None and exp <= now]
            for k in doomed:
                del self._db[k]
            self.rowcount = len(doomed)
        elif sql_low.startswith("delete"):
            self.rowcount = 1 if self._db.pop(params[0], None) is not None else 0
        else:
            raise AssertionError(f"Unexpected SQL: {sql}")

    def fetchone(self):
        return self._row

    # context manager protocol
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _FakeConn:
    def __init__(self, db: dict, log: list):
        self._db = db
        self._log = log

    def cursor(self):
        return _FakeCursor(self._db, self._log)

    # context manager protocol
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _install_fake_psycopg(monkeypatch: pytest.MonkeyPatch, target_module, *, fail: bool = False):
    fake_db: dict = {}
    log: list = []

    def fake_connect(dsn: str, autocommit: bool | None = None):  # signature-compatible
        if fail:
            raise _FakeError("connection refused")
        return _FakeConn(fake_db, log)

    monkeypatch.setattr(target_module, "HAVE_PSYCOPG", True, raising=False)
    fake_psycopg = types.SimpleNamespace(connect=fake_connect, Error=_FakeError)
    monkeypatch.setattr(target_module, "psycopg", fake_psycopg, raising=False)
    return fake_db, log


@pytest.fixture
def db_backend(monkeypatch: pytest.MonkeyPatch):
    from mail_auth import stores_db as mod

    fake_db, log = _install_fake_psycopg(monkeypatch, mod)
    backend = mod.DBKeyValueBackend(dsn="fake://dsn")
    backend.ensure_schema()
    return backend, fake_db, log


def test_put_get_take_roundtrip(db_backend):
    backend, fake_db, log = db_backend
    backend.put("oauth_state:s1", "v1", 600)
    assert backend.get("oauth_state:s1") == "v1"
    assert backend.take("oauth_state:s1") == "v1"
    assert backend.take("oauth_state:s1") is None
    assert "oauth_state:s1" not in fake_db


def test_take_is_a_single_delete_returning_statement(db_backend):
    backend, _, log = db_backend
    backend.put("k", "v", 60)
    log.clear()
    backend.take("k")
    assert len(log) == 1
    assert log[0].lower().startswith("delete from oauth_kv")
    assert "returning value" in log[0].lower()


def test_expired_rows_are_invisible_and_purged(db_backend):
    backend, fake_db, _ = db_backend
    backend.put("gone", "v", -1)
    backend.put("keep", "v")
    assert backend.get("gone") is None
    assert backend.take("gone") is None
    assert backend.purge_expired() == 1
    assert set(fake_db) == {"keep"}


def test_delete_prefix_escapes_like_wildcards(db_backend):
    backend, fake_db, _ = db_backend
    backend.put("oauth_token:a", "1")
    backend.put("oauth_token:b", "2")
    backend.put("oauthXtoken:c", "3")
    assert backend.delete_prefix("oauth_token:") == 2
    assert set(fake_db) == {"oauthXtoken:c"}


def test_state_store_on_db_backend_consumes_once(db_backend):
    backend, _, _ = db_backend
    store = StateStore(backend, sealer=Sealer("unit-test-secret", purpose="store"))
    store.store("state-db", "verifier-db")
    assert store.consume("state-db") == "verifier-db"
    assert store.consume("state-db") is None


def test_token_store_on_db_backend(db_backend):
    backend, _, _ = db_backend
    store = TokenStore(backend)
    store.save_token("acc-1", TokenRecord(account_id="acc-1", access_token="at"))
    assert store.get_token("acc-1").access_token == "at"
    store.delete_token("acc-1")
    assert store.get_token("acc-1") is None


def test_driver_errors_become_storage_error(monkeypatch: pytest.MonkeyPatch):
    from mail_auth import stores_db as mod

    _install_fake_psycopg(monkeypatch, mod, fail=True)
    backend = mod.DBKeyValueBackend(dsn="fake://dsn")
    with pytest.raises(StorageError):
        backend.get("k")


def test_invalid_table_name_rejected(monkeypatch: pytest.MonkeyPatch):
    from mail_auth import stores_db as mod

    _install_fake_psycopg(monkeypatch, mod)
    with pytest.raises(ValueError):
        mod.DBKeyValueBackend(dsn="fake://dsn", table="kv; drop table users")


def test_missing_dsn_rejected(monkeypatch: pytest.MonkeyPatch):
    from mail_auth import stores_db as mod

    _install_fake_psycopg(monkeypatch, mod)
    with pytest.raises(RuntimeError):
        mod.DBKeyValueBackend(dsn="")
