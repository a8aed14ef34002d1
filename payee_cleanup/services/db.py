"""Lightweight DB helper that prefers Postgres when DATABASE_URL is set, falls back to SQLite."""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Tuple

try:
    import psycopg  # type: ignore
except ImportError:  # pragma: no cover
    psycopg = None

DB_ERRORS: Tuple[type, ...] = (sqlite3.Error,)
if psycopg is not None:  # pragma: no cover
    DB_ERRORS = DB_ERRORS + (psycopg.Error,)

# Seconds a SQLite writer waits on a locked database before failing.
SQLITE_BUSY_TIMEOUT = float(os.getenv("PAYEE_CLEANUP_SQLITE_TIMEOUT", "30"))


def _row_as_dict(cursor, row) -> Optional[dict]:
    if not row:
        return None
    return {col[0]: value for col, value in zip(cursor.description, row)}


class Transaction:
    """Cursor wrapper bound to one open transaction."""

    def __init__(self, db: "DB", cursor) -> None:
        self._db = db
        self._cur = cursor

    def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        self._cur.execute(self._db._prepare(sql), params)
        return self._cur.rowcount

    def fetchone_dict(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[dict]:
        self._cur.execute(self._db._prepare(sql), params)
        return _row_as_dict(self._cur, self._cur.fetchone())


class DB:
    def __init__(self, sqlite_path: str = "payee_cleanup.sqlite3", dsn: Optional[str] = None) -> None:
        self.dsn = dsn if dsn is not None else os.getenv("DATABASE_URL")
        self.sqlite_path = sqlite_path
        scheme = (self.dsn or "").strip().lower()
        self.use_postgres = bool(
            psycopg
            and (scheme.startswith("postgres://") or scheme.startswith("postgresql://"))
        )

    @contextmanager
    def connect(self):
        if self.use_postgres:
            conn = psycopg.connect(self.dsn)  # type: ignore
            try:
                yield conn
            finally:
                conn.close()
        else:
            conn = sqlite3.connect(self.sqlite_path, timeout=SQLITE_BUSY_TIMEOUT)
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Run several statements as one unit. SQLite takes the write lock up
        front (BEGIN IMMEDIATE) so read-modify-write sequences cannot interleave.
        """
        with self.connect() as conn:
            if not self.use_postgres:
                conn.isolation_level = None
                conn.execute("BEGIN IMMEDIATE")
            cur = conn.cursor()
            try:
                yield Transaction(self, cur)
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        """Run one statement in its own transaction and return the affected row count."""
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare(sql), params)
            conn.commit()
            return cur.rowcount

    def fetchall_dict(self, sql: str, params: Tuple[Any, ...] = ()) -> List[dict]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare(sql), params)
            return [_row_as_dict(cur, row) for row in cur.fetchall()]

    def fetchone_dict(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[dict]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare(sql), params)
            return _row_as_dict(cur, cur.fetchone())

    def _prepare(self, sql: str) -> str:
        """Normalize placeholders between SQLite (?) and Postgres (%s)."""
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql
