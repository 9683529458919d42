"""Data models for the forum storage layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional, Union


@dataclass
class User:
    """A registered member account."""

    id: int
    username: str
    password: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> User:
        return cls(
            id=row["id"],
            username=row["username"],
            password=row["password"],
            display_name=row.get("display_name"),
            email=row.get("email"),
            avatar_url=row.get("avatar_url"),
            bio=row.get("bio"),
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class NewUser:
    """Registration input. The password is expected to be hashed already."""

    username: str
    password: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None

    def to_row(self) -> tuple:
        return (
            self.username,
            self.password,
            self.display_name,
            self.email,
            self.avatar_url,
            self.bio,
        )


@dataclass
class Post:
    """A post with its denormalized comment counter."""

    id: int
    user_id: int
    content: str
    title: Optional[str] = None
    image_url: Optional[str] = None
    comments: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Post:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row.get("title"),
            content=row["content"],
            image_url=row.get("image_url"),
            comments=row.get("comments") or 0,
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class NewPost:
    user_id: int
    content: str
    title: Optional[str] = None
    image_url: Optional[str] = None

    def to_row(self) -> tuple:
        return (self.user_id, self.title, self.content, self.image_url)


@dataclass
class Comment:
    """A comment on a post. Immutable once written."""

    id: int
    post_id: int
    user_id: int
    content: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Comment:
        return cls(
            id=row["id"],
            post_id=row["post_id"],
            user_id=row["user_id"],
            content=row["content"],
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class NewComment:
    post_id: int
    user_id: int
    content: str

    def to_row(self) -> tuple:
        return (self.post_id, self.user_id, self.content)


@dataclass
class Event:
    """A scheduled community event."""

    id: int
    title: str
    event_date: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Event:
        return cls(
            id=row["id"],
            title=row["title"],
            event_date=_parse_ts(row["event_date"]) or datetime.min.replace(tzinfo=timezone.utc),
            description=row.get("description"),
            location=row.get("location"),
            created_by=row.get("created_by"),
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class NewEvent:
    """Event input. ``event_date`` may be a datetime, a date or an ISO string."""

    title: str
    event_date: Union[datetime, date, str]
    description: Optional[str] = None
    location: Optional[str] = None
    created_by: Optional[int] = None

    def to_row(self) -> tuple:
        return (
            self.title,
            self.description,
            self.location,
            format_ts(self.event_date),
            self.created_by,
        )


@dataclass
class Statistics:
    """One snapshot of site-wide metrics. Rows are appended, never updated."""

    id: int
    last_updated: datetime
    total_members: int = 0
    active_members: int = 0
    total_posts: int = 0
    total_comments: int = 0
    total_events: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Statistics:
        return cls(
            id=row["id"],
            last_updated=_parse_ts(row["last_updated"]) or datetime.min.replace(tzinfo=timezone.utc),
            total_members=row.get("total_members") or 0,
            active_members=row.get("active_members") or 0,
            total_posts=row.get("total_posts") or 0,
            total_comments=row.get("total_comments") or 0,
            total_events=row.get("total_events") or 0,
            extra=_parse_json(row.get("extra")) or {},
        )


@dataclass
class NewStatistics:
    """Statistics payload. There is no timestamp field: the store stamps it."""

    total_members: int = 0
    active_members: int = 0
    total_posts: int = 0
    total_comments: int = 0
    total_events: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_row(self, last_updated: datetime) -> tuple:
        return (
            self.total_members,
            self.active_members,
            self.total_posts,
            self.total_comments,
            self.total_events,
            json.dumps(self.extra) if self.extra else None,
            format_ts(last_updated),
        )


# --- Helpers ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(val: Union[datetime, date, str]) -> str:
    """Normalize a timestamp to fixed-width ISO-8601 UTC text.

    Fixed width keeps lexicographic order equal to chronological order, which
    the ORDER BY clauses rely on. Naive values are taken as UTC.
    """
    if isinstance(val, str):
        parsed = _parse_ts(val)
        if parsed is None:
            raise ValueError(f"Unparseable timestamp: {val!r}")
        val = parsed
    if not isinstance(val, datetime):
        val = datetime.combine(val, time.min)
    if val.tzinfo is None:
        val = val.replace(tzinfo=timezone.utc)
    return val.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None. Naive results are taken as UTC."""
    if val is None:
        return None
    if isinstance(val, datetime):
        parsed = val
    else:
        try:
            from dateutil.parser import isoparse
            parsed = isoparse(str(val))
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_json(val: Any) -> Optional[Dict[str, Any]]:
    """Parse a JSON string or return None."""
    if val is None:
        return None
    if isinstance(val, dict):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return None
