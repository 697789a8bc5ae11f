"""
Session lookup — resolves a session cookie to a UserIdentity.

Registration, login and cookie issuance belong to the presentation layer;
this module only reads the ``sessions`` and ``users`` tables it writes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from features.users.models import UserIdentity
from features.work_items.db import Database

log = logging.getLogger(__name__)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class StoreSessionResolver:
    def __init__(self, db: Database):
        self.db = db

    def resolve(self, session_id: str | None) -> UserIdentity | None:
        if not session_id:
            return None
        row = self.db.execute(
            """
            SELECT s.expires_at, u.id AS user_id, u.email
              FROM sessions s JOIN users u ON u.id = s.user_id
             WHERE s.id = ?
            """,
            (session_id,),
        ).first()
        if row is None:
            return None
        try:
            expired = _parse_ts(row["expires_at"]) < datetime.now(timezone.utc)
        except ValueError:
            log.warning("Unparseable session expiry for user %s", row["user_id"])
            return None
        if expired:
            return None
        return UserIdentity(id=int(row["user_id"]), email=row["email"])
