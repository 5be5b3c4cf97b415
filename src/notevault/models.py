"""Pydantic data models for notevault."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# --- Enums ---

class EntityType(str, Enum):
    JOURNAL = "journal"
    NEWS = "news"
    CALENDAR = "calendar"
    RESEARCH = "research"


class ExternalKind(str, Enum):
    NEWS = "news"
    CALENDAR = "calendar"
    RESEARCH = "research"


class ChangeOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ResolutionChoice(str, Enum):
    STORE = "store"
    FILE = "file"


# --- Change log ---

class ChangeLogRecord(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    operation: ChangeOperation
    version: int
    data: Any = None
    created_at: int = Field(description="Milliseconds since epoch")
    created_by: str = "system"


class UpsertResult(BaseModel):
    id: str
    version: int
    operation: ChangeOperation


# --- Journal ---

class JournalEntry(BaseModel):
    id: str = Field(description="ISO date, also the primary id")
    date: str
    content: str
    frontmatter: Optional[dict[str, Any]] = None
    version: int = 1
    content_hash: str
    created_at: int
    updated_at: int
    synced_at: Optional[int] = None
    conflict_snapshot: Optional[str] = Field(
        default=None,
        description="Content preserved while a conflict is pending",
    )

    @property
    def is_conflicted(self) -> bool:
        return self.conflict_snapshot is not None


class JournalHistoryRecord(BaseModel):
    id: int
    entry_id: str
    version: int
    content: str
    frontmatter: Optional[dict[str, Any]] = None
    content_hash: Optional[str] = None
    created_at: int


# --- External records (single writer: the fetchers) ---

class CalendarEvent(BaseModel):
    id: str = Field(..., min_length=1, description="Provider event id")
    calendar_id: Optional[str] = None
    summary: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    all_day: bool = False
    recurrence: Optional[list[str]] = None
    transparency: Optional[str] = None
    source: str = "google"


class NewsArticle(BaseModel):
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    summary: Optional[str] = None
    url: Optional[str] = None
    source: str = Field(..., min_length=1)
    category: Optional[str] = None
    published_at: Optional[int] = None
    fetched_at: Optional[int] = None
    cluster_id: Optional[str] = None
    rank: Optional[int] = None
    content: Optional[str] = None


class ResearchArticle(BaseModel):
    id: str = Field(..., min_length=1, description="arXiv id or DOI")
    title: str = Field(..., min_length=1)
    authors: list[str] = Field(default_factory=list)
    abstract: Optional[str] = None
    url: Optional[str] = None
    published_at: Optional[int] = None
    fetched_at: Optional[int] = None
    categories: list[str] = Field(default_factory=list)
    rank: Optional[int] = None


# --- Sync bookkeeping ---

class SyncState(BaseModel):
    source: str
    last_sync: int
    last_version: int = 0
    metadata: Optional[dict[str, Any]] = None


class SyncResult(BaseModel):
    synced: int = 0
    conflicts: int = 0
    errors: int = 0
    skipped: int = 0
    duration_ms: int = 0


class IngestResult(BaseModel):
    kind: ExternalKind
    received: int = 0
    accepted: int = 0
    dropped: int = 0
    errors: list[str] = Field(default_factory=list)


# --- Agenda ---

class AgendaItem(BaseModel):
    summary: str = "Untitled"
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None


# --- Vault collaborator ---

class VaultFile(BaseModel):
    name: str
    path: str = Field(description="Vault-relative, '/'-separated")


class VaultDocument(BaseModel):
    path: str
    content: str
    frontmatter: dict[str, Any] = Field(default_factory=dict)


class FileStats(BaseModel):
    modified_ms: int
    size: int = 0
