"""Tests for the storage layer: schema, gateway operations, models, errors."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from forum.config import StorageConfig
from forum.factory import open_storage
from forum.storage.db import DatabaseStorage
from forum.storage.errors import (
    ConnectionFailure,
    ConstraintViolation,
    ForeignKeyViolation,
    StorageError,
    TransactionFailure,
    UniqueConstraintViolation,
    translate_error,
)
from forum.storage.migrations import apply_migrations, get_current_version, reset_database
from forum.storage.models import (
    NewComment,
    NewEvent,
    NewPost,
    NewStatistics,
    NewUser,
    Post,
    Statistics,
    format_ts,
)


# --- Fixtures ---

@pytest.fixture
def tmp_db(tmp_path):
    """Return a path to a temporary database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def storage(tmp_db):
    """Return an opened DatabaseStorage with its session store."""
    s = await open_storage(StorageConfig(db_path=tmp_db, pool_size=4))
    yield s
    await s.close()


def make_user(username: str = "alice", **kwargs) -> NewUser:
    return NewUser(username=username, password="pbkdf2$hash", **kwargs)


async def make_post(storage, user_id: int, n: int = 0) -> Post:
    return await storage.create_post(
        NewPost(user_id=user_id, title=f"Post {n}", content=f"Body of post {n}")
    )


# --- Schema & Migration Tests ---

class TestMigrations:
    def test_apply_migrations_creates_tables(self, tmp_db):
        version = apply_migrations(tmp_db)
        assert version == 2

        conn = sqlite3.connect(tmp_db)
        tables = {
            r[0]
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        conn.close()

        assert {"users", "posts", "comments", "events", "statistics", "schema_version"} <= tables

    def test_idempotent_migrations(self, tmp_db):
        v1 = apply_migrations(tmp_db)
        v2 = apply_migrations(tmp_db)
        assert v1 == v2

    def test_creates_missing_parent_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "data" / "forum.db"
        assert apply_migrations(str(db_path)) == 2
        assert db_path.exists()

    def test_reset_on_fresh_path(self, tmp_path):
        db_path = tmp_path / "fresh" / "forum.db"
        assert reset_database(str(db_path)) == 2

    def test_get_current_version_without_schema(self, tmp_db):
        conn = sqlite3.connect(tmp_db)
        assert get_current_version(conn) == 0
        conn.close()

    def test_reset_database(self, tmp_db):
        apply_migrations(tmp_db)
        conn = sqlite3.connect(tmp_db)
        conn.execute(
            "INSERT INTO users (username, password) VALUES (?, ?)", ("bob", "x")
        )
        conn.commit()
        conn.close()

        assert reset_database(tmp_db) == 2

        conn = sqlite3.connect(tmp_db)
        count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        conn.close()
        assert count == 0

    def test_wal_mode_enabled(self, tmp_db):
        apply_migrations(tmp_db)
        conn = sqlite3.connect(tmp_db)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode == "wal"


# --- Model Tests ---

class TestModels:
    def test_format_ts_is_fixed_width_utc(self):
        naive = format_ts(datetime(2025, 1, 1, 12, 0))
        aware = format_ts(datetime(2025, 1, 1, 13, 0, tzinfo=timezone(timedelta(hours=1))))
        assert naive == aware == "2025-01-01T12:00:00.000000+00:00"

    def test_format_ts_accepts_dates_and_strings(self):
        assert format_ts(date(2025, 3, 1)) == "2025-03-01T00:00:00.000000+00:00"
        assert format_ts("2025-03-01T08:30:00Z") == "2025-03-01T08:30:00.000000+00:00"

    def test_format_ts_rejects_garbage(self):
        with pytest.raises(ValueError):
            format_ts("next tuesday-ish")

    def test_new_statistics_has_no_timestamp_field(self):
        stats = NewStatistics(total_members=3)
        assert not hasattr(stats, "last_updated")
        row = stats.to_row(datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert row[-1] == "2025-01-01T00:00:00.000000+00:00"

    def test_statistics_from_row_parses_extra(self):
        stats = Statistics.from_row({
            "id": 1,
            "last_updated": "2025-01-01T00:00:00.000000+00:00",
            "total_members": 5,
            "extra": '{"upcoming_events": 2}',
        })
        assert stats.extra == {"upcoming_events": 2}
        assert stats.last_updated.tzinfo is not None


# --- Error Translation Tests ---

class TestErrors:
    def test_unique(self):
        err = translate_error(sqlite3.IntegrityError("UNIQUE constraint failed: users.username"))
        assert isinstance(err, UniqueConstraintViolation)

    def test_foreign_key(self):
        err = translate_error(sqlite3.IntegrityError("FOREIGN KEY constraint failed"))
        assert isinstance(err, ForeignKeyViolation)

    def test_other_integrity(self):
        err = translate_error(sqlite3.IntegrityError("NOT NULL constraint failed: posts.content"))
        assert type(err) is ConstraintViolation

    def test_locked_is_connection_failure(self):
        err = translate_error(sqlite3.OperationalError("database is locked"))
        assert isinstance(err, ConnectionFailure)

    def test_unknown_operational_error(self):
        err = translate_error(sqlite3.OperationalError("no such table: nope"))
        assert type(err) is StorageError

    def test_storage_error_passes_through(self):
        original = TransactionFailure("boom")
        assert translate_error(original) is original


# --- User Tests ---

class TestUsers:
    @pytest.mark.asyncio
    async def test_create_and_get_user(self, storage):
        user = await storage.create_user(make_user(display_name="Alice"))
        assert user.id > 0
        assert user.created_at is not None

        fetched = await storage.get_user(user.id)
        assert fetched == user

    @pytest.mark.asyncio
    async def test_get_user_missing(self, storage):
        assert await storage.get_user(999) is None

    @pytest.mark.asyncio
    async def test_get_user_by_username(self, storage):
        user = await storage.create_user(make_user())
        assert await storage.get_user_by_username("alice") == user
        assert await storage.get_user_by_username("nobody") is None

    @pytest.mark.asyncio
    async def test_username_is_case_sensitive(self, storage):
        await storage.create_user(make_user("alice"))
        assert await storage.get_user_by_username("ALICE") is None
        other = await storage.create_user(make_user("Alice"))
        assert other.username == "Alice"

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, storage):
        await storage.create_user(make_user())
        with pytest.raises(UniqueConstraintViolation):
            await storage.create_user(make_user())

        counts = await storage.count_rows()
        assert counts["users"] == 1


# --- Post Tests ---

class TestPosts:
    @pytest.mark.asyncio
    async def test_create_post_defaults(self, storage):
        user = await storage.create_user(make_user())
        post = await make_post(storage, user.id)
        assert post.id > 0
        assert post.comments == 0
        assert post.user_id == user.id
        assert post.created_at is not None

    @pytest.mark.asyncio
    async def test_create_post_unknown_user(self, storage):
        with pytest.raises(ForeignKeyViolation):
            await storage.create_post(NewPost(user_id=42, content="orphan"))

    @pytest.mark.asyncio
    async def test_get_post_by_id(self, storage):
        user = await storage.create_user(make_user())
        post = await make_post(storage, user.id)
        assert await storage.get_post_by_id(post.id) == post
        assert await storage.get_post_by_id(post.id + 100) is None

    @pytest.mark.asyncio
    async def test_get_posts_newest_first_default_limit(self, storage):
        user = await storage.create_user(make_user())
        created = [await make_post(storage, user.id, i) for i in range(12)]

        page = await storage.get_posts()
        assert len(page) == 10
        assert [p.id for p in page] == [p.id for p in reversed(created)][:10]

    @pytest.mark.asyncio
    async def test_pages_are_stable_and_disjoint(self, storage):
        user = await storage.create_user(make_user())
        created = [await make_post(storage, user.id, i) for i in range(25)]

        first = await storage.get_posts(limit=10, offset=0)
        again = await storage.get_posts(limit=10, offset=0)
        assert first == again

        pages = [await storage.get_posts(limit=10, offset=o) for o in (0, 10, 20)]
        ids = [p.id for page in pages for p in page]
        assert len(ids) == len(set(ids)) == 25
        assert ids == sorted((p.id for p in created), reverse=True)

    @pytest.mark.asyncio
    async def test_limit_zero_returns_empty(self, storage):
        user = await storage.create_user(make_user())
        await make_post(storage, user.id)
        assert await storage.get_posts(limit=0) == []

    @pytest.mark.asyncio
    async def test_negative_paging_rejected(self, storage):
        with pytest.raises(ValueError):
            await storage.get_posts(limit=-1)
        with pytest.raises(ValueError):
            await storage.get_posts(offset=-5)

    @pytest.mark.asyncio
    async def test_offset_past_end(self, storage):
        user = await storage.create_user(make_user())
        await make_post(storage, user.id)
        assert await storage.get_posts(limit=10, offset=50) == []

    @pytest.mark.asyncio
    async def test_get_user_posts(self, storage):
        alice = await storage.create_user(make_user("alice"))
        bob = await storage.create_user(make_user("bob"))
        a1 = await make_post(storage, alice.id, 1)
        await make_post(storage, bob.id, 2)
        a2 = await make_post(storage, alice.id, 3)

        posts = await storage.get_user_posts(alice.id)
        assert [p.id for p in posts] == [a2.id, a1.id]

    @pytest.mark.asyncio
    async def test_get_user_posts_unknown_user(self, storage):
        assert await storage.get_user_posts(12345) == []


# --- Comment Tests ---

class TestComments:
    @pytest.mark.asyncio
    async def test_alice_scenario(self, storage):
        alice = await storage.create_user(make_user("alice"))
        post = await make_post(storage, alice.id)
        c1 = await storage.create_comment(
            NewComment(post_id=post.id, user_id=alice.id, content="first")
        )
        c2 = await storage.create_comment(
            NewComment(post_id=post.id, user_id=alice.id, content="second")
        )

        refreshed = await storage.get_post_by_id(post.id)
        assert refreshed is not None
        assert refreshed.comments == 2
        assert await storage.get_post_comments(post.id) == [c2, c1]

    @pytest.mark.asyncio
    async def test_sequential_comments_keep_counter(self, storage):
        user = await storage.create_user(make_user())
        post = await make_post(storage, user.id)
        for i in range(7):
            await storage.create_comment(
                NewComment(post_id=post.id, user_id=user.id, content=f"c{i}")
            )
        refreshed = await storage.get_post_by_id(post.id)
        assert refreshed.comments == 7

    @pytest.mark.asyncio
    async def test_concurrent_comments_keep_counter(self, storage):
        user = await storage.create_user(make_user())
        post = await make_post(storage, user.id)

        await asyncio.gather(*[
            storage.create_comment(
                NewComment(post_id=post.id, user_id=user.id, content=f"c{i}")
            )
            for i in range(20)
        ])

        refreshed = await storage.get_post_by_id(post.id)
        assert refreshed.comments == 20
        assert len(await storage.get_post_comments(post.id)) == 20

    @pytest.mark.asyncio
    async def test_counter_only_touches_target_post(self, storage):
        user = await storage.create_user(make_user())
        p1 = await make_post(storage, user.id, 1)
        p2 = await make_post(storage, user.id, 2)
        await storage.create_comment(NewComment(post_id=p1.id, user_id=user.id, content="x"))

        assert (await storage.get_post_by_id(p1.id)).comments == 1
        assert (await storage.get_post_by_id(p2.id)).comments == 0

    @pytest.mark.asyncio
    async def test_comment_on_missing_post(self, storage):
        user = await storage.create_user(make_user())
        with pytest.raises(ForeignKeyViolation):
            await storage.create_comment(
                NewComment(post_id=999, user_id=user.id, content="lost")
            )
        assert (await storage.count_rows())["comments"] == 0

    @pytest.mark.asyncio
    async def test_failed_increment_rolls_back_comment(self, storage, tmp_db):
        user = await storage.create_user(make_user())
        post = await make_post(storage, user.id)

        conn = sqlite3.connect(tmp_db)
        conn.execute(
            """CREATE TRIGGER freeze_counter BEFORE UPDATE OF comments ON posts
               BEGIN SELECT RAISE(ABORT, 'counter frozen'); END"""
        )
        conn.commit()
        conn.close()

        with pytest.raises(TransactionFailure):
            await storage.create_comment(
                NewComment(post_id=post.id, user_id=user.id, content="doomed")
            )

        assert await storage.get_post_comments(post.id) == []
        assert (await storage.get_post_by_id(post.id)).comments == 0

    @pytest.mark.asyncio
    async def test_no_comments_is_empty(self, storage):
        user = await storage.create_user(make_user())
        post = await make_post(storage, user.id)
        assert await storage.get_post_comments(post.id) == []
        assert await storage.get_post_comments(404) == []


# --- Event Tests ---

class TestEvents:
    @pytest.mark.asyncio
    async def test_create_event(self, storage):
        event = await storage.create_event(
            NewEvent(title="Meetup", event_date=datetime(2025, 5, 1, 18, 30), location="Hall")
        )
        assert event.id > 0
        assert event.event_date == datetime(2025, 5, 1, 18, 30, tzinfo=timezone.utc)
        assert event.location == "Hall"

    @pytest.mark.asyncio
    async def test_events_sorted_by_date(self, storage):
        for d in (date(2025, 3, 1), date(2025, 1, 1), date(2025, 2, 1)):
            await storage.create_event(NewEvent(title=d.isoformat(), event_date=d))

        events = await storage.get_events(3)
        assert [e.event_date.date() for e in events] == [
            date(2025, 1, 1),
            date(2025, 2, 1),
            date(2025, 3, 1),
        ]

    @pytest.mark.asyncio
    async def test_event_order_across_timezones(self, storage):
        tokyo = timezone(timedelta(hours=9))
        await storage.create_event(
            NewEvent(title="later", event_date=datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc))
        )
        # 08:00 in Tokyo is 23:00 UTC the day before
        await storage.create_event(
            NewEvent(title="earlier", event_date=datetime(2025, 1, 1, 8, 0, tzinfo=tokyo))
        )
        events = await storage.get_events()
        assert [e.title for e in events] == ["earlier", "later"]

    @pytest.mark.asyncio
    async def test_default_limit_is_five(self, storage):
        for i in range(8):
            await storage.create_event(
                NewEvent(title=f"e{i}", event_date=datetime(2025, 1, 1 + i))
            )
        assert len(await storage.get_events()) == 5

    @pytest.mark.asyncio
    async def test_negative_limit_rejected(self, storage):
        with pytest.raises(ValueError):
            await storage.get_events(-1)

    @pytest.mark.asyncio
    async def test_no_events(self, storage):
        assert await storage.get_events() == []

    @pytest.mark.asyncio
    async def test_limit_zero_returns_empty(self, storage):
        await storage.create_event(NewEvent(title="Meetup", event_date=date(2025, 5, 1)))
        assert await storage.get_events(0) == []


# --- Statistics Tests ---

class TestStatistics:
    @pytest.mark.asyncio
    async def test_empty(self, storage):
        assert await storage.get_statistics() is None
        assert await storage.get_statistics_history() == []

    @pytest.mark.asyncio
    async def test_latest_wins_and_history_kept(self, storage):
        before = datetime.now(timezone.utc)
        for k in range(1, 4):
            await storage.record_statistics(NewStatistics(total_members=k, total_posts=k * 10))

        latest = await storage.get_statistics()
        assert latest is not None
        assert latest.total_members == 3
        assert latest.total_posts == 30
        assert latest.last_updated >= before

        history = await storage.get_statistics_history()
        assert [s.total_members for s in history] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_update_statistics_appends(self, storage):
        first = await storage.update_statistics(NewStatistics(total_members=1))
        second = await storage.update_statistics(NewStatistics(total_members=2))
        assert second.id != first.id
        assert (await storage.count_rows())["statistics"] == 2
        assert (await storage.get_statistics()).id == second.id

    @pytest.mark.asyncio
    async def test_timestamp_comes_from_store_clock(self, storage):
        fixed = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)
        clocked = DatabaseStorage(storage.pool, clock=lambda: fixed)
        recorded = await clocked.record_statistics(
            NewStatistics(total_members=9, extra={"last_updated": "1999-01-01"})
        )
        assert recorded.last_updated == fixed
        assert recorded.extra == {"last_updated": "1999-01-01"}

    @pytest.mark.asyncio
    async def test_extra_round_trip(self, storage):
        recorded = await storage.record_statistics(
            NewStatistics(active_members=4, extra={"top_tags": ["python", "sqlite"]})
        )
        latest = await storage.get_statistics()
        assert latest == recorded
        assert latest.extra["top_tags"] == ["python", "sqlite"]


# --- Maintenance Tests ---

class TestMaintenance:
    @pytest.mark.asyncio
    async def test_count_rows(self, storage):
        counts = await storage.count_rows()
        assert counts == {"users": 0, "posts": 0, "comments": 0, "events": 0, "statistics": 0}

    @pytest.mark.asyncio
    async def test_compute_statistics(self, storage):
        alice = await storage.create_user(make_user("alice"))
        bob = await storage.create_user(make_user("bob"))
        await storage.create_user(make_user("carol"))
        post = await make_post(storage, alice.id)
        await storage.create_comment(NewComment(post_id=post.id, user_id=bob.id, content="hi"))
        await storage.create_event(
            NewEvent(title="future", event_date=datetime.now(timezone.utc) + timedelta(days=3))
        )
        await storage.create_event(NewEvent(title="past", event_date=date(2001, 1, 1)))

        stats = await storage.compute_statistics()
        assert stats.total_members == 3
        assert stats.active_members == 2
        assert stats.total_posts == 1
        assert stats.total_comments == 1
        assert stats.total_events == 2
        assert stats.extra == {"upcoming_events": 1}
