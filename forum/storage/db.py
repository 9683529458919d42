"""SQLite implementation of the storage gateway."""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
)

import aiosqlite

from forum.storage.base import Storage
from forum.storage.errors import (
    StorageError,
    TransactionFailure,
    translate_error,
)
from forum.storage.models import (
    Comment,
    Event,
    NewComment,
    NewEvent,
    NewPost,
    NewStatistics,
    NewUser,
    Post,
    Statistics,
    User,
    format_ts,
    utcnow,
)
from forum.storage.pool import ConnectionPool

if TYPE_CHECKING:
    from forum.sessions.base import SessionPersistence

logger = logging.getLogger(__name__)

DEFAULT_POSTS_LIMIT = 10
DEFAULT_EVENTS_LIMIT = 5
DEFAULT_HISTORY_LIMIT = 30
ACTIVE_WINDOW_DAYS = 30

COUNTED_TABLES = ("users", "posts", "comments", "events", "statistics")


def _check_non_negative(**values: int) -> None:
    for name, value in values.items():
        if value < 0:
            raise ValueError(f"{name} must be non-negative, got {value}")


class DatabaseStorage(Storage):
    """Storage gateway over a shared ``ConnectionPool``.

    Each operation borrows one pooled connection and returns it when done.
    The only multi-statement unit is ``create_comment``, which runs inside
    ``BEGIN IMMEDIATE`` so concurrent counter increments are serialized.

    Usage:
        pool = ConnectionPool("data/forum.db")
        await pool.open()
        storage = DatabaseStorage(pool, session_store=SessionStore(pool))
        # ... use storage ...
        await storage.close()
    """

    def __init__(
        self,
        pool: ConnectionPool,
        session_store: Optional["SessionPersistence"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pool = pool
        self._session_store = session_store
        self._clock = clock

    @property
    def session_store(self) -> "SessionPersistence":
        if self._session_store is None:
            raise RuntimeError("Storage was created without a session store")
        return self._session_store

    async def close(self) -> None:
        """Close the underlying pool (shared with the session store)."""
        await self.pool.close()

    async def __aenter__(self) -> DatabaseStorage:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # --- Query helpers ---

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(sql, params)
                row = await cursor.fetchone()
            except sqlite3.Error as e:
                raise translate_error(e) from e
        return dict(row) if row else None

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(sql, params)
                rows = await cursor.fetchall()
            except sqlite3.Error as e:
                raise translate_error(e) from e
        return [dict(r) for r in rows]

    async def _insert(self, table: str, sql: str, params: Sequence[Any]) -> Dict[str, Any]:
        """Run an INSERT and read the new row back on the same connection."""
        async with self.pool.acquire() as conn:
            try:
                cursor = await conn.execute(sql, params)
                row = await _select_by_id(conn, table, cursor.lastrowid)
            except sqlite3.Error as e:
                raise translate_error(e) from e
        if row is None:
            raise StorageError(f"Inserted {table} row could not be read back")
        return row

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow a connection and hold SQLite's write lock until commit."""
        async with self.pool.acquire() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise translate_error(e) from e
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    # --- Users ---

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_row(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        """Exact match under the column's BINARY collation (case-sensitive)."""
        row = await self._fetchone(
            "SELECT * FROM users WHERE username = ?", (username,)
        )
        return User.from_row(row) if row else None

    async def create_user(self, user: NewUser) -> User:
        row = await self._insert(
            "users",
            """INSERT INTO users
               (username, password, display_name, email, avatar_url, bio)
               VALUES (?, ?, ?, ?, ?, ?)""",
            user.to_row(),
        )
        logger.info("Created user %d (%s)", row["id"], row["username"])
        return User.from_row(row)

    # --- Posts ---

    async def create_post(self, post: NewPost) -> Post:
        row = await self._insert(
            "posts",
            """INSERT INTO posts (user_id, title, content, image_url)
               VALUES (?, ?, ?, ?)""",
            post.to_row(),
        )
        return Post.from_row(row)

    async def get_posts(
        self, limit: int = DEFAULT_POSTS_LIMIT, offset: int = 0
    ) -> List[Post]:
        """Page through posts newest first; id breaks created_at ties."""
        _check_non_negative(limit=limit, offset=offset)
        if limit == 0:
            return []

        t0 = time.monotonic()
        rows = await self._fetchall(
            """SELECT * FROM posts
               ORDER BY created_at DESC, id DESC
               LIMIT ? OFFSET ?""",
            (limit, offset),
        )
        logger.debug(
            "get_posts(limit=%d, offset=%d): %d rows in %.3fs",
            limit, offset, len(rows), time.monotonic() - t0,
        )
        return [Post.from_row(r) for r in rows]

    async def get_post_by_id(self, post_id: int) -> Optional[Post]:
        row = await self._fetchone("SELECT * FROM posts WHERE id = ?", (post_id,))
        return Post.from_row(row) if row else None

    async def get_user_posts(self, user_id: int) -> List[Post]:
        rows = await self._fetchall(
            """SELECT * FROM posts WHERE user_id = ?
               ORDER BY created_at DESC, id DESC""",
            (user_id,),
        )
        return [Post.from_row(r) for r in rows]

    # --- Comments ---

    async def create_comment(self, comment: NewComment) -> Comment:
        """Insert a comment and increment ``posts.comments`` atomically.

        The increment is evaluated by SQLite (``comments = comments + 1``) inside
        the same transaction as the insert. Either both statements commit or
        neither does.

        Raises ForeignKeyViolation if the post or user does not exist, and
        TransactionFailure if the increment or the commit fails after the
        insert went through.
        """
        try:
            async with self._transaction() as conn:
                try:
                    cursor = await conn.execute(
                        "INSERT INTO comments (post_id, user_id, content) VALUES (?, ?, ?)",
                        comment.to_row(),
                    )
                except sqlite3.Error as e:
                    raise translate_error(e) from e
                comment_id = cursor.lastrowid

                try:
                    cursor = await conn.execute(
                        "UPDATE posts SET comments = comments + 1 WHERE id = ?",
                        (comment.post_id,),
                    )
                    if cursor.rowcount != 1:
                        raise TransactionFailure(
                            f"Comment counter for post {comment.post_id} was not incremented"
                        )
                    row = await _select_by_id(conn, "comments", comment_id)
                except sqlite3.Error as e:
                    raise TransactionFailure(
                        f"Comment counter for post {comment.post_id} failed: {e}"
                    ) from e
        except TransactionFailure:
            logger.exception("Comment on post %d rolled back", comment.post_id)
            raise
        except sqlite3.Error as e:
            # Only COMMIT failures reach here; statement errors are translated above
            logger.exception("Comment on post %d rolled back", comment.post_id)
            raise TransactionFailure(
                f"Comment on post {comment.post_id} could not be committed: {e}"
            ) from e

        if row is None:
            raise StorageError("Inserted comments row could not be read back")
        return Comment.from_row(row)

    async def get_post_comments(self, post_id: int) -> List[Comment]:
        rows = await self._fetchall(
            """SELECT * FROM comments WHERE post_id = ?
               ORDER BY created_at DESC, id DESC""",
            (post_id,),
        )
        return [Comment.from_row(r) for r in rows]

    # --- Events ---

    async def create_event(self, event: NewEvent) -> Event:
        row = await self._insert(
            "events",
            """INSERT INTO events (title, description, location, event_date, created_by)
               VALUES (?, ?, ?, ?, ?)""",
            event.to_row(),
        )
        return Event.from_row(row)

    async def get_events(self, limit: int = DEFAULT_EVENTS_LIMIT) -> List[Event]:
        _check_non_negative(limit=limit)
        if limit == 0:
            return []
        rows = await self._fetchall(
            "SELECT * FROM events ORDER BY event_date ASC, id ASC LIMIT ?",
            (limit,),
        )
        return [Event.from_row(r) for r in rows]

    # --- Statistics ---

    async def get_statistics(self) -> Optional[Statistics]:
        row = await self._fetchone(
            """SELECT * FROM statistics
               ORDER BY last_updated DESC, id DESC
               LIMIT 1"""
        )
        return Statistics.from_row(row) if row else None

    async def record_statistics(self, stats: NewStatistics) -> Statistics:
        row = await self._insert(
            "statistics",
            """INSERT INTO statistics
               (total_members, active_members, total_posts, total_comments,
                total_events, extra, last_updated)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            stats.to_row(last_updated=self._clock()),
        )
        logger.info("Recorded statistics snapshot %d", row["id"])
        return Statistics.from_row(row)

    async def get_statistics_history(
        self, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> List[Statistics]:
        """Recorded snapshots, newest first."""
        _check_non_negative(limit=limit)
        if limit == 0:
            return []
        rows = await self._fetchall(
            """SELECT * FROM statistics
               ORDER BY last_updated DESC, id DESC
               LIMIT ?""",
            (limit,),
        )
        return [Statistics.from_row(r) for r in rows]

    # --- Maintenance ---

    async def count_rows(self) -> Dict[str, int]:
        """Row count per entity table."""
        counts: Dict[str, int] = {}
        async with self.pool.acquire() as conn:
            try:
                for table in COUNTED_TABLES:
                    cursor = await conn.execute(f"SELECT COUNT(*) FROM {table}")
                    row = await cursor.fetchone()
                    counts[table] = row[0] if row else 0
            except sqlite3.Error as e:
                raise translate_error(e) from e
        return counts

    async def compute_statistics(self) -> NewStatistics:
        """Derive a statistics payload from the current table contents.

        Active members are distinct users who posted or commented within the
        last ``ACTIVE_WINDOW_DAYS`` days.
        """
        counts = await self.count_rows()
        since = format_ts(self._clock() - timedelta(days=ACTIVE_WINDOW_DAYS))
        row = await self._fetchone(
            """SELECT COUNT(*) AS active FROM (
                   SELECT user_id FROM posts WHERE created_at >= ?
                   UNION
                   SELECT user_id FROM comments WHERE created_at >= ?
               )""",
            (since, since),
        )
        upcoming = await self._fetchone(
            "SELECT COUNT(*) AS upcoming FROM events WHERE event_date >= ?",
            (format_ts(self._clock()),),
        )
        return NewStatistics(
            total_members=counts["users"],
            active_members=row["active"] if row else 0,
            total_posts=counts["posts"],
            total_comments=counts["comments"],
            total_events=counts["events"],
            extra={"upcoming_events": upcoming["upcoming"] if upcoming else 0},
        )


async def _select_by_id(
    conn: aiosqlite.Connection, table: str, row_id: Optional[int]
) -> Optional[Dict[str, Any]]:
    cursor = await conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
    row = await cursor.fetchone()
    return dict(row) if row else None
