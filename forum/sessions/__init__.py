"""Session persistence over the shared storage pool."""

from forum.sessions.base import SessionPersistence
from forum.sessions.store import SessionStore

__all__ = ["SessionPersistence", "SessionStore"]
