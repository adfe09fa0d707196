"""
Postgres-backed key-value backend for the OAuth state and token stores.

Why: The in-memory backend is lost on restart and not shared between workers.
This backend keeps state and token records in one small table so any worker
can complete a callback that another worker started.

Expected schema (see `CREATE_TABLE_SQL`):

    create table oauth_kv (
        key text primary key,
        value text not null,
        expires_at timestamptz null
    );

Security:
- `take` is a single `DELETE ... RETURNING` statement. Postgres row locking
  guarantees that only one of two concurrent callers receives the row, which
  gives the state store its exactly-once consume.
- Values arrive already sealed when the stores are configured with a sealer.

Note: This module uses psycopg3. It is imported only when enabled via
`STORE_BACKEND=db`. Tests use a fake psycopg module.
"""
from __future__ import annotations

import re
from typing import Optional

try:
    import psycopg
    HAVE_PSYCOPG = True
except ImportError:  # pragma: no cover - optional in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .audit import logger
from .errors import StorageError

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

CREATE_TABLE_SQL = (
    "create table if not exists {table} ("
    "key text primary key, value text not null, expires_at timestamptz null)"
)


class DBKeyValueBackend:
    """Key-value backend on a single Postgres table.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string.
    table:
        Table name, optionally schema-qualified. Validated against a strict
        identifier pattern because it is interpolated into SQL.
    """

    def __init__(self, dsn: str, table: str = "oauth_kv") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBKeyValueBackend")
        if not dsn:
            raise RuntimeError("No database DSN provided for DBKeyValueBackend")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._dsn = dsn
        self._table = table

    def _execute(self, sql: str, params: tuple = (), *, fetch: bool = False):
        try:
            with psycopg.connect(self._dsn, autocommit=True) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    if fetch:
                        return cur.fetchone()
                    return cur.rowcount
        except psycopg.Error as exc:
            logger.error("oauth_kv %s failed: %s", sql.split(" ", 1)[0], exc.__class__.__name__)
            raise StorageError(detail="key-value backend unavailable") from exc

    def ensure_schema(self) -> None:
        self._execute(CREATE_TABLE_SQL.format(table=self._table))

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._execute(
            f"insert into {self._table} (key, value, expires_at) "
            f"values (%s, %s, case when %s::int is null then null else now() + make_interval(secs => %s::int) end) "
            f"on conflict (key) do update set value = excluded.value, expires_at = excluded.expires_at",
            (key, value, ttl_seconds, ttl_seconds),
        )

    def get(self, key: str) -> Optional[str]:
        row = self._execute(
            f"select value from {self._table} "
            f"where key = %s and (expires_at is null or expires_at > now())",
            (key,),
            fetch=True,
        )
        return row[0] if row else None

    def take(self, key: str) -> Optional[str]:
        row = self._execute(
            f"delete from {self._table} where key = %s "
            f"and (expires_at is null or expires_at > now()) returning value",
            (key,),
            fetch=True,
        )
        return row[0] if row else None

    def delete(self, key: str) -> None:
        self._execute(f"delete from {self._table} where key = %s", (key,))

    def delete_prefix(self, prefix: str) -> int:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return int(self._execute(f"delete from {self._table} where key like %s", (escaped + "%",)) or 0)

    def purge_expired(self) -> int:
        return int(
            self._execute(f"delete from {self._table} where expires_at is not null and expires_at <= now()") or 0
        )
