"""Storage layer - SQLite gateway with pooled connections and versioned schema."""

from forum.storage.base import Storage
from forum.storage.db import DatabaseStorage
from forum.storage.errors import (
    ConnectionFailure,
    ConstraintViolation,
    ForeignKeyViolation,
    StorageError,
    TransactionFailure,
    UniqueConstraintViolation,
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
)
from forum.storage.pool import ConnectionPool

__all__ = [
    "Storage",
    "DatabaseStorage",
    "ConnectionPool",
    "StorageError",
    "ConstraintViolation",
    "UniqueConstraintViolation",
    "ForeignKeyViolation",
    "ConnectionFailure",
    "TransactionFailure",
    "User",
    "NewUser",
    "Post",
    "NewPost",
    "Comment",
    "NewComment",
    "Event",
    "NewEvent",
    "Statistics",
    "NewStatistics",
]
