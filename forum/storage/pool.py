"""Bounded pool of aiosqlite connections with scoped acquisition."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import aiosqlite

from forum.storage.errors import ConnectionFailure

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5
DEFAULT_ACQUIRE_TIMEOUT = 10.0
DEFAULT_BUSY_TIMEOUT = 5.0


class ConnectionPool:
    """Fixed-size pool of SQLite connections shared by storage and sessions.

    Connections run in autocommit mode (``isolation_level=None``); callers
    that need atomicity issue ``BEGIN IMMEDIATE`` themselves. Every
    connection uses WAL, enforces foreign keys and waits ``busy_timeout``
    seconds for competing writers.

    Usage:
        pool = ConnectionPool("data/forum.db", size=5)
        await pool.open()
        async with pool.acquire() as conn:
            ...
        await pool.close()
    """

    def __init__(
        self,
        db_path: str,
        size: int = DEFAULT_POOL_SIZE,
        acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.db_path = db_path
        self.size = size
        self.acquire_timeout = acquire_timeout
        self.busy_timeout = busy_timeout
        self._connections: List[aiosqlite.Connection] = []
        self._idle: Optional[asyncio.Queue] = None

    @property
    def is_open(self) -> bool:
        return self._idle is not None

    async def open(self) -> None:
        """Open ``size`` connections and apply pragmas to each."""
        if self.is_open:
            return
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        idle: asyncio.Queue = asyncio.Queue()
        try:
            for _ in range(self.size):
                conn = await self._connect()
                self._connections.append(conn)
                idle.put_nowait(conn)
        except (sqlite3.Error, OSError) as e:
            await self._close_all()
            raise ConnectionFailure(f"Cannot open {self.db_path}: {e}") from e

        self._idle = idle
        logger.info("Connection pool opened: %s (size=%d)", self.db_path, self.size)

    async def _connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
        )
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
        return conn

    async def close(self) -> None:
        """Close every connection. Further acquisitions fail."""
        if not self.is_open:
            return
        self._idle = None
        await self._close_all()
        logger.info("Connection pool closed: %s", self.db_path)

    async def _close_all(self) -> None:
        for conn in self._connections:
            try:
                await conn.close()
            except sqlite3.Error as e:
                logger.warning("Error closing connection: %s", e)
        self._connections = []

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow a connection for the duration of the block.

        The connection goes back to the pool on every exit path. A transaction
        left open by the block is rolled back first.
        """
        idle = self._idle
        if idle is None:
            raise ConnectionFailure("Connection pool is not open")
        getter = asyncio.ensure_future(idle.get())
        try:
            done, _ = await asyncio.wait({getter}, timeout=self.acquire_timeout)
        except asyncio.CancelledError:
            _abandon(idle, getter)
            raise
        if not done:
            _abandon(idle, getter)
            raise ConnectionFailure(
                f"No connection available within {self.acquire_timeout}s "
                f"(pool size {self.size})"
            )
        conn = getter.result()

        try:
            yield conn
        finally:
            if conn.in_transaction:
                try:
                    await conn.rollback()
                except sqlite3.Error as e:
                    logger.warning("Rollback on release failed: %s", e)
            idle.put_nowait(conn)


def _abandon(idle: asyncio.Queue, getter: asyncio.Future) -> None:
    """Cancel a pending get. A connection it still obtains goes back to ``idle``."""

    def _requeue(task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is None:
            idle.put_nowait(task.result())

    getter.add_done_callback(_requeue)
    getter.cancel()
