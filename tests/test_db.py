"""Tests for the db module (schema, versioned upserts, change log, sync state)."""

import sqlite3

import pytest

from notevault.db import (
    bulk_upsert_external,
    get_change_log_high_water,
    get_changes_since,
    get_connection,
    get_delta,
    get_external,
    get_calendar_events,
    get_journal,
    get_journal_by_date,
    get_journal_conflicts,
    get_journal_history,
    get_journal_range,
    get_news_articles,
    get_research_articles,
    get_stats,
    get_sync_state,
    hash_content,
    init_db,
    mark_journal_synced,
    set_sync_state,
    upsert_external,
    upsert_journal,
)
from notevault.errors import IngestValidationError, StorageFailure
from notevault.models import ChangeOperation


class TestConnection:
    def test_get_connection(self, temp_data_dir):
        conn = get_connection()
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()

    def test_init_db_creates_tables(self, temp_data_dir):
        init_db()
        conn = get_connection()
        try:
            tables = {
                r[0] for r in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }
        finally:
            conn.close()
        for name in ("change_log", "journal_entries", "journal_history", "calendar_events",
                     "news_articles", "research_articles", "sync_state"):
            assert name in tables

    def test_init_db_idempotent(self, temp_data_dir):
        init_db()
        init_db()

    def test_unopenable_database_raises_storage_failure(self, temp_data_dir, monkeypatch):
        import notevault.db as db_module

        # A directory where the database file should be
        bad_path = temp_data_dir / "not_a_file"
        bad_path.mkdir()
        monkeypatch.setattr(db_module, "DB_PATH", bad_path)
        with pytest.raises(StorageFailure):
            get_connection()


class TestHash:
    def test_stable_sha256(self):
        assert hash_content("hello") == (
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        )

    def test_differs_on_whitespace(self):
        assert hash_content("a\n") != hash_content("a")


class TestJournalUpsert:
    def test_insert_creates_version_one(self, conn):
        result = upsert_journal(conn, "2024-03-01", "2024-03-01", "Hello", now=1000)
        assert result.version == 1
        assert result.operation == ChangeOperation.CREATE

        entry = get_journal(conn, "2024-03-01")
        assert entry.content == "Hello"
        assert entry.version == 1
        assert entry.created_at == entry.updated_at == 1000
        assert entry.synced_at is None
        assert entry.conflict_snapshot is None
        assert entry.content_hash == hash_content("Hello")
        assert get_journal_history(conn, "2024-03-01") == []

    def test_update_bumps_version_and_keeps_history(self, conn):
        upsert_journal(conn, "2024-03-01", "2024-03-01", "v1", {"mood": "ok"}, now=1000)
        upsert_journal(conn, "2024-03-01", "2024-03-01", "v2", now=2000)
        result = upsert_journal(conn, "2024-03-01", "2024-03-01", "v3", now=3000)

        assert result.version == 3
        assert result.operation == ChangeOperation.UPDATE
        history = get_journal_history(conn, "2024-03-01")
        assert [h.version for h in history] == [1, 2]
        assert [h.content for h in history] == ["v1", "v2"]
        # History row timestamp is when the replaced version was written
        assert [h.created_at for h in history] == [1000, 2000]
        assert history[0].frontmatter == {"mood": "ok"}
        assert history[0].content_hash == hash_content("v1")

        entry = get_journal(conn, "2024-03-01")
        assert entry.content == "v3"
        assert entry.updated_at == 3000
        assert entry.created_at == 1000

    def test_update_with_same_content_still_versions(self, conn):
        upsert_journal(conn, "d", "2024-01-01", "same", now=1)
        result = upsert_journal(conn, "d", "2024-01-01", "same", now=2)
        assert result.version == 2
        assert len(get_journal_history(conn, "d")) == 1

    def test_conflict_snapshot_stored_but_not_logged(self, conn):
        upsert_journal(conn, "2024-03-01", "2024-03-01", "store", now=1000)
        upsert_journal(
            conn, "2024-03-01", "2024-03-01", "file", conflict_snapshot="store", now=2000
        )
        entry = get_journal(conn, "2024-03-01")
        assert entry.is_conflicted
        assert entry.conflict_snapshot == "store"

        changes = get_changes_since(conn, "journal", 0)
        assert changes[-1].operation == ChangeOperation.UPDATE
        assert changes[-1].data == {"date": "2024-03-01", "content": "file", "frontmatter": None}
        assert "store" not in str(changes[-1].data)

    def test_plain_upsert_clears_conflict(self, conn):
        upsert_journal(conn, "d", "2024-01-01", "a", conflict_snapshot="b", now=1)
        upsert_journal(conn, "d", "2024-01-01", "a", now=2)
        assert get_journal(conn, "d").conflict_snapshot is None

    def test_frontmatter_round_trip(self, conn):
        fm = {"tags": ["work", "daily"], "rating": 4, "meta": {"nested": True}}
        upsert_journal(conn, "d", "2024-01-01", "x", fm, now=1)
        assert get_journal(conn, "d").frontmatter == fm

    def test_non_json_frontmatter_values_become_strings(self, conn):
        from datetime import date

        upsert_journal(conn, "d", "2024-01-01", "x", {"created": date(2024, 1, 1)}, now=1)
        assert get_journal(conn, "d").frontmatter == {"created": "2024-01-01"}

    def test_empty_frontmatter_stored_as_none(self, conn):
        upsert_journal(conn, "d", "2024-01-01", "x", {}, now=1)
        assert get_journal(conn, "d").frontmatter is None

    def test_failed_update_rolls_back_history(self, conn):
        upsert_journal(conn, "d", "2024-01-01", "v1", now=1)
        conn.execute("""
            CREATE TRIGGER fail_update BEFORE UPDATE ON journal_entries
            BEGIN SELECT RAISE(ABORT, 'disk on fire'); END;
        """)
        conn.commit()
        with pytest.raises(StorageFailure):
            upsert_journal(conn, "d", "2024-01-01", "v2", now=2)
        assert get_journal_history(conn, "d") == []
        assert get_journal(conn, "d").version == 1
        assert len(get_changes_since(conn, "journal", 0)) == 1


class TestJournalQueries:
    def test_lookups(self, conn):
        upsert_journal(conn, "2024-03-01", "2024-03-01", "x", now=1)
        assert get_journal_by_date(conn, "2024-03-01").id == "2024-03-01"
        assert get_journal(conn, "2024-03-02") is None
        assert get_journal_by_date(conn, "2024-03-02") is None

    def test_range_inclusive_and_ordered(self, conn):
        for day in ("2024-03-03", "2024-03-01", "2024-03-05", "2024-03-02"):
            upsert_journal(conn, day, day, day, now=1)
        entries = get_journal_range(conn, "2024-03-01", "2024-03-03")
        assert [e.date for e in entries] == ["2024-03-01", "2024-03-02", "2024-03-03"]

    def test_conflicts_listing(self, conn):
        upsert_journal(conn, "2024-03-01", "2024-03-01", "x", now=1)
        upsert_journal(conn, "2024-03-02", "2024-03-02", "y", conflict_snapshot="z", now=1)
        assert [e.id for e in get_journal_conflicts(conn)] == ["2024-03-02"]

    def test_mark_synced_no_version_bump(self, conn):
        upsert_journal(conn, "d", "2024-01-01", "x", now=1)
        assert mark_journal_synced(conn, "d", now=50) is True
        assert mark_journal_synced(conn, "d", now=60) is True
        entry = get_journal(conn, "d")
        assert entry.synced_at == 60
        assert entry.version == 1
        assert len(get_changes_since(conn, "journal", 0)) == 1

    def test_mark_synced_missing(self, conn):
        assert mark_journal_synced(conn, "nope", now=1) is False


class TestChangeLog:
    def _seed(self, conn):
        for i, ts in enumerate((1000, 2000, 3000, 4000)):
            upsert_journal(conn, f"2024-01-0{i + 1}", f"2024-01-0{i + 1}", "x", now=ts)

    def test_changes_since_is_exclusive(self, conn):
        self._seed(conn)
        changes = get_changes_since(conn, "journal", 2000)
        assert [c.created_at for c in changes] == [3000, 4000]

    def test_delta_half_open_window(self, conn):
        self._seed(conn)
        changes = get_delta(conn, "journal", 1000, 3000)
        assert [c.created_at for c in changes] == [2000, 3000]

    def test_adjacent_windows_partition_the_log(self, conn):
        self._seed(conn)
        upsert_journal(conn, "2024-01-02", "2024-01-02", "y", now=3000)
        full = get_changes_since(conn, "journal", 0)
        pieces = get_delta(conn, "journal", 0, 2000) + get_delta(conn, "journal", 2000, 4000)
        assert [c.id for c in pieces] == [c.id for c in full]
        assert len({c.id for c in pieces}) == len(pieces)

    def test_filtered_by_entity_type(self, conn):
        self._seed(conn)
        upsert_external(conn, "news", {"id": "n1", "title": "T", "source": "S"}, now=2500)
        assert all(c.entity_type == "journal" for c in get_changes_since(conn, "journal", 0))
        news = get_changes_since(conn, "news", 0)
        assert len(news) == 1
        assert news[0].entity_id == "n1"

    def test_high_water(self, conn):
        assert get_change_log_high_water(conn, "journal") == 0
        self._seed(conn)
        last = get_changes_since(conn, "journal", 0)[-1]
        assert get_change_log_high_water(conn, "journal") == last.id


class TestExternalRecords:
    def test_upsert_and_overwrite(self, conn):
        first = upsert_external(
            conn, "news", {"id": "n1", "title": "Old", "source": "wire"}, now=1000
        )
        second = upsert_external(
            conn, "news", {"id": "n1", "title": "New", "source": "wire"}, now=2000
        )
        assert (first.version, second.version) == (1, 2)
        record = get_external(conn, "news", "n1")
        assert record["title"] == "New"
        assert record["version"] == 2
        assert record["fetched_at"] == 2000
        ops = [c.operation for c in get_changes_since(conn, "news", 0)]
        assert ops == [ChangeOperation.CREATE, ChangeOperation.UPDATE]

    def test_research_json_columns_round_trip(self, conn):
        upsert_external(conn, "research", {
            "id": "2401.00001", "title": "Paper",
            "authors": ["A. One", "B. Two"], "categories": ["cs.LG"],
        }, now=1)
        record = get_external(conn, "research", "2401.00001")
        assert record["authors"] == ["A. One", "B. Two"]
        assert record["categories"] == ["cs.LG"]

    def test_calendar_listing_by_window(self, conn):
        bulk_upsert_external(conn, "calendar", [
            {"id": "e1", "summary": "A", "start_time": 5000, "all_day": True},
            {"id": "e2", "summary": "B", "start_time": 1000},
            {"id": "e3", "summary": "C", "start_time": 9000},
        ], now=1)
        events = get_calendar_events(conn, 0, 9000)
        assert [e["id"] for e in events] == ["e2", "e1"]
        assert events[1]["all_day"] is True

    def test_bulk_is_all_or_nothing(self, conn):
        conn.execute("""
            CREATE TRIGGER reject_bad BEFORE INSERT ON news_articles
            WHEN NEW.id = 'bad'
            BEGIN SELECT RAISE(ABORT, 'rejected'); END;
        """)
        conn.commit()
        records = [
            {"id": "ok1", "title": "T", "source": "S"},
            {"id": "bad", "title": "T", "source": "S"},
            {"id": "ok2", "title": "T", "source": "S"},
        ]
        with pytest.raises(StorageFailure):
            bulk_upsert_external(conn, "news", records, now=1)
        assert get_external(conn, "news", "ok1") is None
        assert get_changes_since(conn, "news", 0) == []

    def test_invalid_record_rejected(self, conn):
        with pytest.raises(IngestValidationError) as exc:
            upsert_external(conn, "news", {"id": "n1", "source": "S"}, now=1)
        assert exc.value.record_id == "n1"
        assert exc.value.kind == "news"

    def test_unknown_kind(self, conn):
        with pytest.raises(ValueError):
            upsert_external(conn, "weather", {"id": "x"}, now=1)

    def test_news_and_research_listing(self, conn):
        bulk_upsert_external(conn, "news", [
            {"id": "n1", "title": "T1", "source": "S", "category": "tech", "published_at": 1},
            {"id": "n2", "title": "T2", "source": "S", "category": "world", "published_at": 2},
        ], now=10)
        assert [n["id"] for n in get_news_articles(conn)] == ["n2", "n1"]
        assert [n["id"] for n in get_news_articles(conn, category="tech")] == ["n1"]
        assert get_research_articles(conn) == []


class TestSyncState:
    def test_missing(self, conn):
        assert get_sync_state(conn, "journal") is None

    def test_set_and_keep_prior_values(self, conn):
        set_sync_state(conn, "journal", version=7, metadata={"synced": 3}, now=1000)
        state = set_sync_state(conn, "journal", now=2000)
        assert state.last_sync == 2000
        assert state.last_version == 7
        assert state.metadata == {"synced": 3}

    def test_overwrite(self, conn):
        set_sync_state(conn, "news", version=1, metadata={"a": 1}, now=1)
        state = set_sync_state(conn, "news", version=2, metadata={"b": 2}, now=2)
        assert state.last_version == 2
        assert state.metadata == {"b": 2}


class TestStats:
    def test_counts(self, conn):
        upsert_journal(conn, "d", "2024-01-01", "a", now=1)
        upsert_journal(conn, "d", "2024-01-01", "b", conflict_snapshot="c", now=2)
        upsert_external(conn, "news", {"id": "n1", "title": "T", "source": "S"}, now=3)
        stats = get_stats(conn)
        assert stats["journal_entries"] == 1
        assert stats["journal_conflicts"] == 1
        assert stats["journal_history_rows"] == 1
        assert stats["change_log_rows"] == 3
        assert stats["external_records"]["news"] == 1
