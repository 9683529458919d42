"""Storage interface: every read and write the application performs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from forum.sessions.base import SessionPersistence
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


class Storage(ABC):
    """Abstract gateway over users, posts, comments, events and statistics.

    Lookups of a single record return None on a miss, list queries return an
    empty list. Store failures are raised as ``forum.storage.errors``
    subclasses.
    """

    @property
    @abstractmethod
    def session_store(self) -> "SessionPersistence":
        """Session persistence sharing this storage's connection pool."""
        ...

    # --- Users ---

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional["User"]:
        ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional["User"]:
        ...

    @abstractmethod
    async def create_user(self, user: "NewUser") -> "User":
        """Insert a user. Raises UniqueConstraintViolation on a taken username."""
        ...

    # --- Posts ---

    @abstractmethod
    async def create_post(self, post: "NewPost") -> "Post":
        ...

    @abstractmethod
    async def get_posts(self, limit: int = 10, offset: int = 0) -> List["Post"]:
        """Page through posts, newest first."""
        ...

    @abstractmethod
    async def get_post_by_id(self, post_id: int) -> Optional["Post"]:
        ...

    @abstractmethod
    async def get_user_posts(self, user_id: int) -> List["Post"]:
        ...

    # --- Comments ---

    @abstractmethod
    async def create_comment(self, comment: "NewComment") -> "Comment":
        """Insert a comment and bump its post's counter as one transaction."""
        ...

    @abstractmethod
    async def get_post_comments(self, post_id: int) -> List["Comment"]:
        ...

    # --- Events ---

    @abstractmethod
    async def create_event(self, event: "NewEvent") -> "Event":
        ...

    @abstractmethod
    async def get_events(self, limit: int = 5) -> List["Event"]:
        """Events ordered by date, soonest first."""
        ...

    # --- Statistics ---

    @abstractmethod
    async def get_statistics(self) -> Optional["Statistics"]:
        """The most recently recorded statistics snapshot."""
        ...

    @abstractmethod
    async def record_statistics(self, stats: "NewStatistics") -> "Statistics":
        """Append a statistics snapshot stamped with the current time."""
        ...

    async def update_statistics(self, stats: "NewStatistics") -> "Statistics":
        """Alias of record_statistics. Appends, never updates in place."""
        return await self.record_statistics(stats)
