"""
Backing store for work items.

Tables:
  work_items  — one row per task submission (UNIQUE transaction_signature)
  users       — identities owned by the session collaborator (read-only here)
  sessions    — session ids owned by the session collaborator (read-only here)

Two interchangeable backends implement ``Database.execute(sql, params)``:
a local SQLite file and a remote Postgres server. Which one is used is
decided once at startup by ``connect()``.

Every state change is a single conditional statement
(``UPDATE ... WHERE id = ? AND status = ? RETURNING *``) so the guard and
the write cannot be split by a concurrent caller.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import psycopg2
import psycopg2.extras

import config
from features.work_items.models import (
    CompletedFields,
    PaidFields,
    WorkItem,
    WorkItemStatus,
    utcnow_iso,
)

log = logging.getLogger(__name__)


class IntegrityViolation(Exception):
    """A uniqueness or foreign-key constraint rejected the statement."""


@dataclass
class QueryResult:
    rows: list[dict] = field(default_factory=list)
    rowcount: int = 0

    def first(self) -> dict | None:
        return self.rows[0] if self.rows else None


# ── Backends ──────────────────────────────────────────────────────────

class Database:
    """Minimal SQL interface the store is written against.

    Statements use ``?`` placeholders; backends translate as needed.
    """

    name = "abstract"
    schema_sql = ""

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        raise NotImplementedError

    def init_schema(self) -> None:
        for statement in self.schema_sql.split(";"):
            if statement.strip():
                self.execute(statement)

    def close(self) -> None:
        pass


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    email           TEXT UNIQUE NOT NULL,
    password_hash   TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id              TEXT PRIMARY KEY,
    user_id         INTEGER NOT NULL REFERENCES users(id),
    expires_at      TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_items (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id                 INTEGER REFERENCES users(id),
    email                   TEXT NOT NULL,
    max_minutes             INTEGER NOT NULL,
    task_description        TEXT NOT NULL,
    cost_usd                REAL NOT NULL,
    expected_sol            REAL,
    cost_sol                REAL,
    payment_address         TEXT NOT NULL,
    transaction_signature   TEXT UNIQUE,
    status                  TEXT NOT NULL DEFAULT 'pending_payment',
    created_at              TEXT NOT NULL,
    paid_at                 TEXT,
    started_at              TEXT,
    completed_at            TEXT,
    result                  TEXT
);

CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);
CREATE INDEX IF NOT EXISTS idx_work_items_user ON work_items(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)
"""


class SqliteDatabase(Database):
    """Local-file backend. One autocommit connection per thread."""

    name = "sqlite"
    schema_sql = SQLITE_SCHEMA

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        conn = self._conn()
        try:
            cur = conn.execute(sql, tuple(params))
            rows = [dict(r) for r in cur.fetchall()]
        except sqlite3.IntegrityError as e:
            raise IntegrityViolation(str(e)) from e
        rowcount = len(rows) if rows else max(cur.rowcount, 0)
        return QueryResult(rows=rows, rowcount=rowcount)

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id              BIGSERIAL PRIMARY KEY,
    email           TEXT UNIQUE NOT NULL,
    password_hash   TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id              TEXT PRIMARY KEY,
    user_id         BIGINT NOT NULL REFERENCES users(id),
    expires_at      TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_items (
    id                      BIGSERIAL PRIMARY KEY,
    user_id                 BIGINT REFERENCES users(id),
    email                   TEXT NOT NULL,
    max_minutes             INTEGER NOT NULL,
    task_description        TEXT NOT NULL,
    cost_usd                DOUBLE PRECISION NOT NULL,
    expected_sol            DOUBLE PRECISION,
    cost_sol                DOUBLE PRECISION,
    payment_address         TEXT NOT NULL,
    transaction_signature   TEXT UNIQUE,
    status                  TEXT NOT NULL DEFAULT 'pending_payment',
    created_at              TEXT NOT NULL,
    paid_at                 TEXT,
    started_at              TEXT,
    completed_at            TEXT,
    result                  TEXT
);

CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);
CREATE INDEX IF NOT EXISTS idx_work_items_user ON work_items(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)
"""


class PostgresDatabase(Database):
    """Remote backend over psycopg2 (simple single-connection reuse)."""

    name = "postgres"
    schema_sql = POSTGRES_SCHEMA

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._pool: list[Any] = []
        self._lock = threading.Lock()

    def _get_conn(self):
        if self._pool:
            conn = self._pool[0]
            if not conn.closed:
                return conn
            self._pool.clear()

        conn = psycopg2.connect(self.dsn)
        conn.autocommit = True
        self._pool.append(conn)
        return conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        with self._lock:
            conn = self._get_conn()
            cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                cur.execute(sql.replace("?", "%s"), tuple(params))
                rows = [dict(r) for r in cur.fetchall()] if cur.description else []
                return QueryResult(rows=rows, rowcount=max(cur.rowcount, 0))
            except psycopg2.IntegrityError as e:
                raise IntegrityViolation(str(e)) from e
            finally:
                cur.close()

    def close(self) -> None:
        for conn in self._pool:
            conn.close()
        self._pool.clear()


def connect(database_url: str | None = None, db_path: Path | str | None = None) -> Database:
    """Pick the backend from configuration."""
    url = config.DATABASE_URL if database_url is None else database_url
    if url.startswith(("postgres://", "postgresql://")):
        log.info("Using Postgres store")
        return PostgresDatabase(url)
    path = db_path or (url.removeprefix("sqlite:///") if url else config.DB_PATH)
    log.info("Using SQLite store at %s", path)
    return SqliteDatabase(path)


# ── Work item store ───────────────────────────────────────────────────

class WorkItemStore:
    """Durable work-item records; the single source of truth for status."""

    def __init__(self, db: Database):
        self.db = db

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        try:
            self.db.init_schema()
            log.info("Database schema initialized (%s)", self.db.name)
        except Exception as e:
            log.error("Failed to initialize database: %s", e)
            raise

    def _one(self, result: QueryResult) -> WorkItem | None:
        row = result.first()
        return WorkItem.from_row(row) if row else None

    def _many(self, result: QueryResult) -> list[WorkItem]:
        return [WorkItem.from_row(r) for r in result.rows]

    # Creation and reads

    def insert(
        self,
        email: str,
        max_minutes: int,
        task_description: str,
        cost_usd: float,
        payment_address: str,
        user_id: int | None = None,
    ) -> WorkItem:
        result = self.db.execute(
            """
            INSERT INTO work_items (
                user_id, email, max_minutes, task_description,
                cost_usd, payment_address, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (user_id, email, max_minutes, task_description, cost_usd,
             payment_address, WorkItemStatus.PENDING_PAYMENT.value, utcnow_iso()),
        )
        item = self._one(result)
        if item is None:
            raise RuntimeError("INSERT into work_items returned no row")
        return item

    def get(self, item_id: int) -> WorkItem | None:
        return self._one(self.db.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)))

    def list_paid(self) -> list[WorkItem]:
        """Paid items in the order they were paid (the work queue)."""
        return self._many(self.db.execute(
            "SELECT * FROM work_items WHERE status = ? ORDER BY paid_at ASC, id ASC",
            (WorkItemStatus.PAID.value,),
        ))

    def list_by_user(self, user_id: int) -> list[WorkItem]:
        return self._many(self.db.execute(
            "SELECT * FROM work_items WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        ))

    def list_by_user_and_statuses(self, user_id: int, statuses: Sequence[WorkItemStatus]) -> list[WorkItem]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        return self._many(self.db.execute(
            f"SELECT * FROM work_items WHERE user_id = ? AND status IN ({placeholders}) "
            "ORDER BY created_at DESC, id DESC",
            (user_id, *[WorkItemStatus(s).value for s in statuses]),
        ))

    def is_transaction_used(self, tx_id: str) -> bool:
        return self.db.execute(
            "SELECT id FROM work_items WHERE transaction_signature = ?", (tx_id,)
        ).first() is not None

    # Conditional writes: each returns the updated item, or None when the guard failed

    def set_expected_amount(self, item_id: int, amount: float) -> WorkItem | None:
        return self._one(self.db.execute(
            "UPDATE work_items SET expected_sol = ? WHERE id = ? AND expected_sol IS NULL RETURNING *",
            (amount, item_id),
        ))

    def mark_paid(self, item_id: int, fields: PaidFields) -> WorkItem | None:
        """Raises IntegrityViolation if the transaction is already recorded elsewhere."""
        return self._one(self.db.execute(
            """
            UPDATE work_items
               SET status = ?, transaction_signature = ?, cost_sol = ?, paid_at = ?
             WHERE id = ? AND status = ?
            RETURNING *
            """,
            (WorkItemStatus.PAID.value, fields.tx_id, fields.amount, fields.paid_at,
             item_id, WorkItemStatus.PENDING_PAYMENT.value),
        ))

    def mark_processing(self, item_id: int, started_at: str) -> WorkItem | None:
        return self._one(self.db.execute(
            "UPDATE work_items SET status = ?, started_at = ? WHERE id = ? AND status = ? RETURNING *",
            (WorkItemStatus.PROCESSING.value, started_at, item_id, WorkItemStatus.PAID.value),
        ))

    def mark_finished(self, item_id: int, fields: CompletedFields) -> WorkItem | None:
        status = WorkItemStatus.COMPLETED if fields.success else WorkItemStatus.FAILED
        return self._one(self.db.execute(
            """
            UPDATE work_items
               SET status = ?, completed_at = ?, result = ?
             WHERE id = ? AND status = ?
            RETURNING *
            """,
            (status.value, fields.completed_at, fields.result.to_json(),
             item_id, WorkItemStatus.PROCESSING.value),
        ))

    def delete_pending(self, item_id: int) -> bool:
        result = self.db.execute(
            "DELETE FROM work_items WHERE id = ? AND status = ? RETURNING id",
            (item_id, WorkItemStatus.PENDING_PAYMENT.value),
        )
        return result.first() is not None
