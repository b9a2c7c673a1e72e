"""
Database-backed KeyedStore for production use (Postgres).

Why: In-memory maps are not durable and do not work across instances. This
store keeps each document in a `jsonb` column and implements the atomic
operations as single conditional statements, so concurrent writers on
different nodes still see exactly one winner.

Expected table layout (one table per store)::

    create table public.invitations (
        key text primary key,
        doc jsonb not null,
        updated_at timestamptz not null default now()
    );

Same shape for `public.educator_requests`, `public.educator_request_pending`
and `public.accounts`.

Note: This module uses psycopg3. It is imported only when enabled via
`STORE_BACKEND=db`. Tests use the in-memory store or a fake driver.
"""
from __future__ import annotations

import os
import re
from typing import List, Optional

try:
    import psycopg
    from psycopg import sql as pgsql
    from psycopg.types.json import Jsonb
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    pgsql = None  # type: ignore
    Jsonb = None  # type: ignore
    HAVE_PSYCOPG = False


_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")


class DBKeyedStore:
    """Postgres-backed keyed document store.

    Parameters
    ----------
    table:
        Fully qualified table name, e.g. `public.invitations`.
    dsn:
        Psycopg3 connection string. Defaults to `DATABASE_URL`.
    """

    def __init__(self, table: str, dsn: str | None = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBKeyedStore")
        self._dsn = dsn or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBKeyedStore")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._table = table

    def _schema_and_name(self) -> tuple[str, str]:
        if "." in self._table:
            schema, name = self._table.split(".", 1)
        else:
            schema, name = "public", self._table
        return schema, name

    def _sql(self, template: str):
        """Compose `template` with the table identifier ({} placeholder)."""
        schema, name = self._schema_and_name()
        return pgsql.SQL(template).format(pgsql.Identifier(schema, name))

    def get(self, key: str) -> Optional[dict]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(self._sql("select doc from {} where key = %s"), (key,))
                row = cur.fetchone()
        if not row:
            return None
        return dict(row[0]) if isinstance(row[0], dict) else None

    def put(self, key: str, doc: dict) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._sql(
                        "insert into {} (key, doc) values (%s, %s) "
                        "on conflict (key) do update set doc = excluded.doc, updated_at = now()"
                    ),
                    (key, Jsonb(doc)),
                )

    def insert_if_absent(self, key: str, doc: dict) -> bool:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._sql("insert into {} (key, doc) values (%s, %s) on conflict (key) do nothing"),
                    (key, Jsonb(doc)),
                )
                return cur.rowcount == 1

    def compare_and_swap(self, key: str, expected: dict, new: dict) -> bool:
        # jsonb equality is structural, so key order in `expected` is irrelevant.
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._sql("update {} set doc = %s, updated_at = now() where key = %s and doc = %s"),
                    (Jsonb(new), key, Jsonb(expected)),
                )
                return cur.rowcount == 1

    def delete(self, key: str) -> bool:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(self._sql("delete from {} where key = %s"), (key,))
                return cur.rowcount == 1

    def values(self) -> List[dict]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(self._sql("select doc from {} order by key"))
                rows = cur.fetchall() or []
        return [dict(r[0]) for r in rows if isinstance(r[0], dict)]
