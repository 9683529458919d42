"""Build the process-wide storage gateway from configuration."""

from __future__ import annotations

import logging
import sqlite3

from forum.config import StorageConfig
from forum.sessions.store import SessionStore
from forum.storage.db import DatabaseStorage
from forum.storage.errors import translate_error
from forum.storage.migrations import apply_migrations
from forum.storage.pool import ConnectionPool

logger = logging.getLogger(__name__)


async def open_storage(config: StorageConfig) -> DatabaseStorage:
    """Migrate the schema, open the shared pool and attach the session store.

    Call once at startup. The returned storage owns the pool; ``close()`` it
    on shutdown. An unreachable database raises ``ConnectionFailure``.
    """
    # Schema changes run on a plain sqlite3 connection before the pool opens
    try:
        version = apply_migrations(config.db_path)
    except (sqlite3.Error, OSError) as e:
        raise translate_error(e) from e

    pool = ConnectionPool(
        config.db_path,
        size=config.pool_size,
        acquire_timeout=config.acquire_timeout,
        busy_timeout=config.busy_timeout,
    )
    await pool.open()

    sessions = SessionStore(
        pool,
        table=config.session_table,
        ttl_seconds=config.session_ttl_seconds,
        create_table_if_missing=config.create_session_table,
    )
    try:
        await sessions.initialize()
    except Exception:
        await pool.close()
        raise

    logger.info("Storage ready: %s (schema v%d)", config.db_path, version)
    return DatabaseStorage(pool, session_store=sessions)
