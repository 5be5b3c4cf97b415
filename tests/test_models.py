"""Tests for Pydantic data models."""

import pytest
from pydantic import ValidationError

from notevault.models import (
    CalendarEvent,
    ChangeLogRecord,
    ChangeOperation,
    EntityType,
    ExternalKind,
    IngestResult,
    JournalEntry,
    NewsArticle,
    ResearchArticle,
    ResolutionChoice,
    SyncResult,
    VaultDocument,
)


def _entry(**overrides):
    fields = dict(
        id="2024-03-01", date="2024-03-01", content="x", content_hash="h",
        created_at=1, updated_at=1,
    )
    fields.update(overrides)
    return JournalEntry(**fields)


class TestJournalEntry:
    def test_defaults(self):
        entry = _entry()
        assert entry.version == 1
        assert entry.synced_at is None
        assert entry.frontmatter is None
        assert not entry.is_conflicted

    def test_conflicted_when_snapshot_present(self):
        assert _entry(conflict_snapshot="older").is_conflicted
        # An empty snapshot is still a pending conflict
        assert _entry(conflict_snapshot="").is_conflicted

    def test_requires_hash(self):
        with pytest.raises(ValidationError):
            JournalEntry(id="d", date="d", content="x", created_at=1, updated_at=1)


class TestEnums:
    def test_string_values(self):
        assert EntityType("journal") == EntityType.JOURNAL
        assert ChangeOperation.UPDATE.value == "update"

    def test_external_kinds_are_entity_types(self):
        assert {k.value for k in ExternalKind} < {t.value for t in EntityType}

    def test_resolution_choices(self):
        assert ResolutionChoice("store") == ResolutionChoice.STORE
        assert ResolutionChoice("file") == ResolutionChoice.FILE
        with pytest.raises(ValueError):
            ResolutionChoice("both")


class TestChangeLogRecord:
    def test_operation_coerced(self):
        record = ChangeLogRecord(
            id=1, entity_type="journal", entity_id="2024-03-01",
            operation="create", version=1, created_at=5,
        )
        assert record.operation == ChangeOperation.CREATE
        assert record.created_by == "system"


class TestExternalModels:
    def test_calendar_defaults(self):
        event = CalendarEvent(id="e1")
        assert event.summary == ""
        assert event.all_day is False
        assert event.source == "google"

    def test_calendar_requires_id(self):
        with pytest.raises(ValidationError):
            CalendarEvent(id="")

    def test_news_requires_title_and_source(self):
        with pytest.raises(ValidationError):
            NewsArticle(id="n1", title="t")
        with pytest.raises(ValidationError):
            NewsArticle(id="n1", source="wire")

    def test_research_lists_default_empty(self):
        article = ResearchArticle(id="2401.00001", title="Paper")
        assert article.authors == []
        assert article.categories == []


class TestResults:
    def test_sync_result_counts_start_at_zero(self):
        assert SyncResult().model_dump() == {
            "synced": 0, "conflicts": 0, "errors": 0, "skipped": 0, "duration_ms": 0,
        }

    def test_ingest_result_kind(self):
        result = IngestResult(kind="news")
        assert result.kind == ExternalKind.NEWS
        assert result.errors == []

    def test_vault_document_frontmatter_default(self):
        assert VaultDocument(path="a.md", content="").frontmatter == {}
