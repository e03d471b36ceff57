"""
TTL key/value store backed by the cache_entries table.

Values are JSON. An entry is readable until expires_at; refreshed_at is
kept separately so the scheduler can gate refreshes on the last successful
fetch even after the value itself has expired.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from ..clock import Clock, from_iso, to_iso, utcnow
from ..db_utils import Database

logger = logging.getLogger(__name__)

MEMBERS_KEY = "daoip2:members"
PROPOSALS_KEY = "daoip2:proposals"
ACTIVITY_KEY = "daoip2:activity"
ROLES_KEY = "sb:roles"
GROUPS_KEY = "sb:groups"
DAO_KEY = "daoip2:dao"


class AggregateCache:
    """Keyed JSON values with per-entry TTL."""

    def __init__(self, db: Database, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def get(self, key: str) -> Any | None:
        """Live value for key, or None when absent or expired."""
        row = self.db.fetch_one(
            "SELECT value FROM cache_entries WHERE cache_key = %s AND expires_at > %s",
            (key, to_iso(self.clock())),
        )
        return json.loads(row["value"]) if row else None

    def put(self, key: str, value: Any, ttl_seconds: int, expires_in: int | None = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl_seconds: Freshness budget recorded with the entry
            expires_in: Seconds until the value stops being served (defaults to ttl_seconds)
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_seconds if expires_in is None else expires_in)
        self.db.execute(
            """
            INSERT INTO cache_entries (cache_key, value, refreshed_at, ttl_seconds, expires_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (cache_key) DO UPDATE SET
                value = excluded.value,
                refreshed_at = excluded.refreshed_at,
                ttl_seconds = excluded.ttl_seconds,
                expires_at = excluded.expires_at
            """,
            (key, json.dumps(value), to_iso(now), ttl_seconds, to_iso(expires_at)),
        )

    def last_refreshed(self, key: str) -> datetime | None:
        row = self.db.fetch_one("SELECT refreshed_at FROM cache_entries WHERE cache_key = %s", (key,))
        return from_iso(row["refreshed_at"]) if row else None

    def delete(self, key: str) -> bool:
        cursor = self.db.execute("DELETE FROM cache_entries WHERE cache_key = %s", (key,))
        return cursor.rowcount > 0

    def entries(self) -> list[dict[str, Any]]:
        """Entry metadata (no values), for status output."""
        now = to_iso(self.clock())
        rows = self.db.fetch_all(
            "SELECT cache_key, refreshed_at, ttl_seconds, expires_at FROM cache_entries ORDER BY cache_key"
        )
        for row in rows:
            row["live"] = row["expires_at"] > now
        return rows

