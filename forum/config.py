"""YAML configuration with environment overrides."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from forum.sessions.store import DEFAULT_TABLE, DEFAULT_TTL_SECONDS
from forum.storage.pool import (
    DEFAULT_ACQUIRE_TIMEOUT,
    DEFAULT_BUSY_TIMEOUT,
    DEFAULT_POOL_SIZE,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "data/forum.db"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


@dataclass
class StorageConfig:
    """Everything needed to open the storage gateway once per process."""

    db_path: str = DEFAULT_DB_PATH
    pool_size: int = DEFAULT_POOL_SIZE
    acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    session_table: str = DEFAULT_TABLE
    session_ttl_seconds: int = DEFAULT_TTL_SECONDS
    create_session_table: bool = True

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> StorageConfig:
        """Build from a parsed config file (``storage`` and ``sessions`` sections)."""
        storage = cfg.get("storage") or {}
        sessions = cfg.get("sessions") or {}
        return cls(
            db_path=str(storage.get("db_path", DEFAULT_DB_PATH)),
            pool_size=int(storage.get("pool_size", DEFAULT_POOL_SIZE)),
            acquire_timeout=float(storage.get("acquire_timeout", DEFAULT_ACQUIRE_TIMEOUT)),
            busy_timeout=float(storage.get("busy_timeout", DEFAULT_BUSY_TIMEOUT)),
            session_table=str(sessions.get("table", DEFAULT_TABLE)),
            session_ttl_seconds=int(sessions.get("ttl_seconds", DEFAULT_TTL_SECONDS)),
            create_session_table=bool(sessions.get("create_table_if_missing", True)),
        )

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> StorageConfig:
        """Let FORUM_DB_PATH / FORUM_POOL_SIZE win over file values."""
        env = os.environ if environ is None else environ
        if env.get("FORUM_DB_PATH"):
            self.db_path = env["FORUM_DB_PATH"]
        if env.get("FORUM_POOL_SIZE"):
            self.pool_size = int(env["FORUM_POOL_SIZE"])
        return self


def _resolve_env(value: Any) -> Any:
    """Substitute ${ENV_VAR} in string values, recursively."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    return value


def load_config(path: str = DEFAULT_CONFIG_PATH) -> StorageConfig:
    """Load the YAML config. A missing file yields the defaults."""
    config_path = Path(path)
    if not config_path.exists():
        logger.debug("Config %s not found, using defaults", path)
        return StorageConfig().apply_env()

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return StorageConfig.from_dict(_resolve_env(raw)).apply_env()
