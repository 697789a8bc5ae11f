"""
Shared fixtures: a throwaway SQLite store per test, signed-in users, and
in-process stand-ins for the price feed and the ledger.
"""

from __future__ import annotations

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from features.payments.ledger import IncomingTransfer  # noqa: E402
from features.users import UserIdentity  # noqa: E402
from features.work_items import WorkItemLifecycle, WorkItemStore  # noqa: E402
from features.work_items.db import SqliteDatabase  # noqa: E402


class FakeOracle:
    def __init__(self, rate: float = 100.0):
        self.rate = rate

    def get_rate(self) -> float:
        return self.rate


class FakeLedger:
    def __init__(self, transfers: list[IncomingTransfer] | None = None, balance: float = 0.0):
        self.transfers = transfers or []
        self.balance = balance
        self.fail = False

    def incoming_transfers(self, address, limit=None):
        if self.fail:
            raise ConnectionError("ledger unreachable")
        yield from self.transfers[: limit or len(self.transfers)]

    def get_balance(self, address):
        if self.fail:
            raise ConnectionError("ledger unreachable")
        return self.balance


@pytest.fixture
def db(tmp_path):
    database = SqliteDatabase(tmp_path / "test.db")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return WorkItemStore(db)


@pytest.fixture
def lifecycle(store):
    return WorkItemLifecycle(store)


@pytest.fixture
def make_user(db):
    """Insert a user with a live session; returns ``(identity, session_id)``."""

    def _make(email: str | None = None, expires_in: timedelta = timedelta(days=7)):
        email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
        now = datetime.now(timezone.utc)
        row = db.execute(
            "INSERT INTO users (email, password_hash, created_at) VALUES (?, ?, ?) RETURNING id",
            (email, "x", now.isoformat()),
        ).first()
        session_id = uuid.uuid4().hex
        db.execute(
            "INSERT INTO sessions (id, user_id, expires_at, created_at) VALUES (?, ?, ?, ?)",
            (session_id, row["id"], (now + expires_in).isoformat(), now.isoformat()),
        )
        return UserIdentity(id=int(row["id"]), email=email), session_id

    return _make


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def ledger():
    return FakeLedger()
