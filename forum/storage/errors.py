"""Typed storage errors and translation from sqlite3 driver exceptions."""

from __future__ import annotations

import sqlite3

# Driver messages that mean the database itself could not be reached or used.
_CONNECTION_MARKERS = (
    "database is locked",
    "unable to open database",
    "disk i/o error",
    "database disk image is malformed",
    "cannot operate on a closed database",
)


class StorageError(Exception):
    """Base class for every failure surfaced by the storage layer."""


class ConstraintViolation(StorageError):
    """An integrity constraint rejected the write."""


class UniqueConstraintViolation(ConstraintViolation):
    """A unique column (e.g. users.username) already holds the value."""


class ForeignKeyViolation(ConstraintViolation):
    """A referenced row (user, post) does not exist."""


class ConnectionFailure(StorageError):
    """Pool exhausted or closed, or the database file is unreachable."""


class TransactionFailure(StorageError):
    """A multi-statement unit could not be committed and was rolled back."""


def translate_error(exc: BaseException) -> StorageError:
    """Map a sqlite3 exception to the storage error taxonomy."""
    if isinstance(exc, StorageError):
        return exc

    message = str(exc)
    lowered = message.lower()

    if isinstance(exc, sqlite3.IntegrityError):
        if "unique constraint failed" in lowered:
            return UniqueConstraintViolation(message)
        if "foreign key constraint failed" in lowered:
            return ForeignKeyViolation(message)
        return ConstraintViolation(message)

    if isinstance(exc, (sqlite3.OperationalError, sqlite3.ProgrammingError)):
        if any(marker in lowered for marker in _CONNECTION_MARKERS):
            return ConnectionFailure(message)

    if isinstance(exc, (ConnectionError, OSError)):
        return ConnectionFailure(message)

    return StorageError(message)
