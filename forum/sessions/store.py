"""SQLite-backed session store sharing the storage connection pool."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from forum.storage.errors import translate_error
from forum.storage.models import format_ts, utcnow
from forum.storage.pool import ConnectionPool

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "session"
DEFAULT_TTL_SECONDS = 86400

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SessionStore:
    """Session records in a ``(sid, sess, expire)`` table.

    The table layout matches what express/connect style session stores use,
    so an authentication layer can read it without translation. ``sess`` holds
    the JSON-encoded session data and ``expire`` the UTC expiry.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        table: str = DEFAULT_TABLE,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        create_table_if_missing: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid session table name: {table!r}")
        self.pool = pool
        self.table = table
        self.ttl_seconds = ttl_seconds
        self.create_table_if_missing = create_table_if_missing
        self._clock = clock

    async def initialize(self) -> None:
        """Create the session table and its expiry index when configured to."""
        if not self.create_table_if_missing:
            return
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""CREATE TABLE IF NOT EXISTS {self.table} (
                           sid    TEXT PRIMARY KEY,
                           sess   TEXT NOT NULL,
                           expire TEXT NOT NULL
                       )"""
                )
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{self.table}_expire "
                    f"ON {self.table}(expire)"
                )
            except sqlite3.Error as e:
                raise translate_error(e) from e
        logger.info("Session table ready: %s", self.table)

    def _expiry(self, max_age: Optional[int]) -> str:
        seconds = self.ttl_seconds if max_age is None else max_age
        return format_ts(self._clock() + timedelta(seconds=seconds))

    async def get(self, sid: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(
                    f"SELECT sess FROM {self.table} WHERE sid = ? AND expire > ?",
                    (sid, format_ts(self._clock())),
                )
                row = await cursor.fetchone()
            except sqlite3.Error as e:
                raise translate_error(e) from e
        if row is None:
            return None
        try:
            return json.loads(row["sess"])
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable session %s", sid)
            return None

    async def set(
        self, sid: str, data: Dict[str, Any], max_age: Optional[int] = None
    ) -> None:
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""INSERT INTO {self.table} (sid, sess, expire) VALUES (?, ?, ?)
                        ON CONFLICT(sid) DO UPDATE SET
                            sess=excluded.sess,
                            expire=excluded.expire""",
                    (sid, json.dumps(data), self._expiry(max_age)),
                )
            except sqlite3.Error as e:
                raise translate_error(e) from e

    async def touch(self, sid: str, max_age: Optional[int] = None) -> bool:
        """Push back a session's expiry. Returns False if the sid is unknown."""
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(
                    f"UPDATE {self.table} SET expire = ? WHERE sid = ?",
                    (self._expiry(max_age), sid),
                )
            except sqlite3.Error as e:
                raise translate_error(e) from e
            return cursor.rowcount > 0

    async def destroy(self, sid: str) -> None:
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(f"DELETE FROM {self.table} WHERE sid = ?", (sid,))
            except sqlite3.Error as e:
                raise translate_error(e) from e

    async def length(self) -> int:
        """Count live (unexpired) sessions."""
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(
                    f"SELECT COUNT(*) FROM {self.table} WHERE expire > ?",
                    (format_ts(self._clock()),),
                )
                row = await cursor.fetchone()
            except sqlite3.Error as e:
                raise translate_error(e) from e
        return row[0] if row else 0

    async def clear(self) -> None:
        async with self.pool.acquire() as conn:
            try:
                await conn.execute(f"DELETE FROM {self.table}")
            except sqlite3.Error as e:
                raise translate_error(e) from e

    async def prune(self) -> int:
        """Delete expired sessions. Returns how many were removed."""
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(
                    f"DELETE FROM {self.table} WHERE expire <= ?",
                    (format_ts(self._clock()),),
                )
            except sqlite3.Error as e:
                raise translate_error(e) from e
            pruned = cursor.rowcount
        if pruned:
            logger.info("Pruned %d expired session(s)", pruned)
        return pruned
