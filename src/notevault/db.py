"""SQLite database initialization, schema, and versioned entity CRUD.

Every mutation appends to the immutable ``change_log`` table. Journal
entries additionally keep a full ``journal_history``: the current row is
copied there immediately before each update, inside the same transaction.
External records (calendar, news, research) are single-writer and are
simply overwritten with a version bump.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Union

from pydantic import BaseModel, ValidationError

from .config import DB_BUSY_TIMEOUT_MS, DB_PATH, DEFAULT_LIST_LIMIT, ensure_data_dirs
from .errors import IngestValidationError, StorageFailure
from .models import (
    CalendarEvent,
    ChangeLogRecord,
    ChangeOperation,
    ExternalKind,
    JournalEntry,
    JournalHistoryRecord,
    NewsArticle,
    ResearchArticle,
    SyncState,
    UpsertResult,
)

logger = logging.getLogger(__name__)


def get_connection() -> sqlite3.Connection:
    """Open a database connection (WAL, foreign keys on)."""
    ensure_data_dirs()
    try:
        conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_MS / 1000)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={DB_BUSY_TIMEOUT_MS}")
    except sqlite3.Error as e:
        raise StorageFailure(f"Cannot open database at {DB_PATH}: {e}") from e
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create any missing tables and indexes on an open connection."""
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    except sqlite3.Error as e:
        raise StorageFailure(f"Schema initialization failed: {e}") from e


def init_db() -> None:
    """Initialize the database schema."""
    conn = get_connection()
    try:
        ensure_schema(conn)
    finally:
        conn.close()


SCHEMA_SQL = """
-- Append-only change log, source of the delta feed
CREATE TABLE IF NOT EXISTS change_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT,
    created_at INTEGER NOT NULL,
    created_by TEXT NOT NULL DEFAULT 'system'
);

CREATE INDEX IF NOT EXISTS idx_change_log_entity ON change_log(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_change_log_created_at ON change_log(created_at);

-- Journal entries (id = ISO date)
CREATE TABLE IF NOT EXISTS journal_entries (
    id TEXT PRIMARY KEY,
    date TEXT NOT NULL UNIQUE,
    content TEXT NOT NULL,
    frontmatter TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    hash TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    synced_at INTEGER,
    conflict_version TEXT
);

CREATE INDEX IF NOT EXISTS idx_journal_updated ON journal_entries(updated_at);

-- One row per replaced journal version
CREATE TABLE IF NOT EXISTS journal_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    content TEXT NOT NULL,
    frontmatter TEXT,
    hash TEXT,
    created_at INTEGER NOT NULL,
    FOREIGN KEY (entry_id) REFERENCES journal_entries(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_journal_history_entry ON journal_history(entry_id, version);

-- Calendar events
CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    calendar_id TEXT,
    summary TEXT NOT NULL DEFAULT '',
    description TEXT,
    location TEXT,
    start_time INTEGER,
    end_time INTEGER,
    all_day INTEGER NOT NULL DEFAULT 0,
    recurrence TEXT,
    transparency TEXT,
    source TEXT NOT NULL DEFAULT 'google',
    version INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calendar_start ON calendar_events(start_time);

-- News articles
CREATE TABLE IF NOT EXISTS news_articles (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    summary TEXT,
    url TEXT,
    source TEXT NOT NULL,
    category TEXT,
    published_at INTEGER,
    fetched_at INTEGER NOT NULL,
    cluster_id TEXT,
    rank INTEGER,
    content TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_news_published ON news_articles(published_at);
CREATE INDEX IF NOT EXISTS idx_news_category ON news_articles(category);

-- Research articles (arXiv papers, etc.)
CREATE TABLE IF NOT EXISTS research_articles (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    authors TEXT NOT NULL DEFAULT '[]',
    abstract TEXT,
    url TEXT,
    published_at INTEGER,
    fetched_at INTEGER NOT NULL,
    categories TEXT NOT NULL DEFAULT '[]',
    rank INTEGER,
    version INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_research_published ON research_articles(published_at);

-- Per entity type sync bookkeeping
CREATE TABLE IF NOT EXISTS sync_state (
    source TEXT PRIMARY KEY,
    last_sync INTEGER NOT NULL,
    last_version INTEGER NOT NULL DEFAULT 0,
    metadata TEXT
);
"""


# --- Helpers ---

def now_ms() -> int:
    """Return current time in milliseconds since epoch."""
    return int(time.time() * 1000)


def hash_content(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 content. Used for equality checks."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load_json(text: Optional[str], default: Any = None) -> Any:
    if text is None or text == "":
        return default
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise StorageFailure(f"Corrupt JSON field in store: {e}") from e


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.rollback()
    except sqlite3.Error:
        logger.warning("Rollback failed", exc_info=True)


@contextmanager
def _transaction(conn: sqlite3.Connection, action: str) -> Iterator[sqlite3.Connection]:
    """Run a block as one atomic write. sqlite errors become StorageFailure."""
    try:
        if not conn.in_transaction:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        _rollback(conn)
        raise StorageFailure(f"{action} failed: {e}") from e
    except BaseException:
        _rollback(conn)
        raise


@contextmanager
def _reading(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StorageFailure(f"{action} failed: {e}") from e


# --- Change log ---

def _log_change(
    conn: sqlite3.Connection,
    entity_type: str,
    entity_id: str,
    operation: ChangeOperation,
    version: int,
    data: Any,
    now: int,
) -> None:
    conn.execute(
        """INSERT INTO change_log (entity_type, entity_id, operation, version, data, created_at)
        VALUES (?, ?, ?, ?, ?, ?)""",
        (entity_type, entity_id, operation.value, version, _dump_json(data), now),
    )


def _parse_change_row(row: sqlite3.Row) -> ChangeLogRecord:
    return ChangeLogRecord(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        operation=ChangeOperation(row["operation"]),
        version=row["version"],
        data=_load_json(row["data"]),
        created_at=row["created_at"],
        created_by=row["created_by"],
    )


def get_changes_since(
    conn: sqlite3.Connection, entity_type: str, since_ms: int
) -> list[ChangeLogRecord]:
    """Change-log rows for an entity type with created_at > since_ms, ascending."""
    with _reading(f"read changes for {entity_type}"):
        rows = conn.execute(
            """SELECT * FROM change_log
            WHERE entity_type = ? AND created_at > ?
            ORDER BY created_at ASC, id ASC""",
            (entity_type, since_ms),
        ).fetchall()
    return [_parse_change_row(row) for row in rows]


def get_delta(
    conn: sqlite3.Connection, entity_type: str, start_ms: int, end_ms: int
) -> list[ChangeLogRecord]:
    """Change-log rows with created_at in (start_ms, end_ms], ascending."""
    with _reading(f"read delta for {entity_type}"):
        rows = conn.execute(
            """SELECT * FROM change_log
            WHERE entity_type = ? AND created_at > ? AND created_at <= ?
            ORDER BY created_at ASC, id ASC""",
            (entity_type, start_ms, end_ms),
        ).fetchall()
    return [_parse_change_row(row) for row in rows]


def get_change_log_high_water(conn: sqlite3.Connection, entity_type: str) -> int:
    """Highest change-log id recorded for an entity type (0 if none)."""
    with _reading(f"read change log high-water for {entity_type}"):
        row = conn.execute(
            "SELECT COALESCE(MAX(id), 0) FROM change_log WHERE entity_type = ?",
            (entity_type,),
        ).fetchone()
    return int(row[0])


# --- Journal CRUD ---

def _parse_journal_row(row: sqlite3.Row) -> JournalEntry:
    return JournalEntry(
        id=row["id"],
        date=row["date"],
        content=row["content"],
        frontmatter=_load_json(row["frontmatter"]),
        version=row["version"],
        content_hash=row["hash"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        synced_at=row["synced_at"],
        conflict_snapshot=row["conflict_version"],
    )


def upsert_journal(
    conn: sqlite3.Connection,
    entry_id: str,
    date: str,
    content: str,
    frontmatter: Optional[dict[str, Any]] = None,
    conflict_snapshot: Optional[str] = None,
    now: Optional[int] = None,
) -> UpsertResult:
    """Insert or update a journal entry with version tracking.

    An update first copies the current row into journal_history, then bumps
    the version. Both writes and the change-log append form one transaction.
    The change-log payload is the logical entry (date, content, frontmatter);
    the conflict snapshot is never logged.
    """
    now = now if now is not None else now_ms()
    content_hash = hash_content(content)
    frontmatter = frontmatter or None
    frontmatter_json = _dump_json(frontmatter)
    payload = {"date": date, "content": content, "frontmatter": frontmatter}

    with _transaction(conn, f"upsert journal {entry_id}"):
        existing = conn.execute(
            "SELECT * FROM journal_entries WHERE id = ?", (entry_id,)
        ).fetchone()

        if existing is None:
            conn.execute(
                """INSERT INTO journal_entries
                (id, date, content, frontmatter, version, hash, created_at, updated_at, conflict_version)
                VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?)""",
                (entry_id, date, content, frontmatter_json, content_hash,
                 now, now, conflict_snapshot),
            )
            _log_change(conn, "journal", entry_id, ChangeOperation.CREATE, 1, payload, now)
            return UpsertResult(id=entry_id, version=1, operation=ChangeOperation.CREATE)

        conn.execute(
            """INSERT INTO journal_history (entry_id, version, content, frontmatter, hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (entry_id, existing["version"], existing["content"],
             existing["frontmatter"], existing["hash"], existing["updated_at"]),
        )
        new_version = existing["version"] + 1
        conn.execute(
            """UPDATE journal_entries
            SET content = ?, frontmatter = ?, version = ?, hash = ?, updated_at = ?,
                conflict_version = ?
            WHERE id = ?""",
            (content, frontmatter_json, new_version, content_hash, now,
             conflict_snapshot, entry_id),
        )
        _log_change(conn, "journal", entry_id, ChangeOperation.UPDATE, new_version, payload, now)
        return UpsertResult(id=entry_id, version=new_version, operation=ChangeOperation.UPDATE)


def get_journal(conn: sqlite3.Connection, entry_id: str) -> Optional[JournalEntry]:
    with _reading(f"read journal {entry_id}"):
        row = conn.execute(
            "SELECT * FROM journal_entries WHERE id = ?", (entry_id,)
        ).fetchone()
    return _parse_journal_row(row) if row else None


def get_journal_by_date(conn: sqlite3.Connection, date: str) -> Optional[JournalEntry]:
    with _reading(f"read journal for {date}"):
        row = conn.execute(
            "SELECT * FROM journal_entries WHERE date = ?", (date,)
        ).fetchone()
    return _parse_journal_row(row) if row else None


def get_journal_history(
    conn: sqlite3.Connection, entry_id: str
) -> list[JournalHistoryRecord]:
    """All replaced versions of an entry, ascending by version."""
    with _reading(f"read history for {entry_id}"):
        rows = conn.execute(
            "SELECT * FROM journal_history WHERE entry_id = ? ORDER BY version ASC",
            (entry_id,),
        ).fetchall()
    return [
        JournalHistoryRecord(
            id=row["id"],
            entry_id=row["entry_id"],
            version=row["version"],
            content=row["content"],
            frontmatter=_load_json(row["frontmatter"]),
            content_hash=row["hash"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


def get_journal_range(
    conn: sqlite3.Connection, start_date: str, end_date: str
) -> list[JournalEntry]:
    """Entries with start_date <= date <= end_date, ordered by date."""
    with _reading(f"read journal range {start_date}..{end_date}"):
        rows = conn.execute(
            """SELECT * FROM journal_entries
            WHERE date >= ? AND date <= ?
            ORDER BY date ASC""",
            (start_date, end_date),
        ).fetchall()
    return [_parse_journal_row(row) for row in rows]


def get_journal_conflicts(conn: sqlite3.Connection) -> list[JournalEntry]:
    """Entries carrying a pending conflict snapshot."""
    with _reading("read journal conflicts"):
        rows = conn.execute(
            """SELECT * FROM journal_entries
            WHERE conflict_version IS NOT NULL
            ORDER BY date ASC"""
        ).fetchall()
    return [_parse_journal_row(row) for row in rows]


def mark_journal_synced(
    conn: sqlite3.Connection, entry_id: str, now: Optional[int] = None
) -> bool:
    """Set synced_at without bumping the version. Returns True if found."""
    now = now if now is not None else now_ms()
    with _transaction(conn, f"mark journal {entry_id} synced"):
        cursor = conn.execute(
            "UPDATE journal_entries SET synced_at = ? WHERE id = ?", (now, entry_id)
        )
    return cursor.rowcount > 0


# --- External records ---

# kind -> (table, model, columns stored as JSON)
_EXTERNAL_TABLES: dict[ExternalKind, tuple[str, type[BaseModel], tuple[str, ...]]] = {
    ExternalKind.CALENDAR: ("calendar_events", CalendarEvent, ("recurrence",)),
    ExternalKind.NEWS: ("news_articles", NewsArticle, ()),
    ExternalKind.RESEARCH: ("research_articles", ResearchArticle, ("authors", "categories")),
}


def _table_for(kind: Union[ExternalKind, str]) -> tuple[ExternalKind, str, type[BaseModel], tuple[str, ...]]:
    try:
        kind = ExternalKind(kind)
    except ValueError:
        raise ValueError(
            f"Unknown external kind '{kind}'. "
            f"Must be one of: {[k.value for k in ExternalKind]}"
        )
    table, model, json_columns = _EXTERNAL_TABLES[kind]
    return kind, table, model, json_columns


def coerce_external(kind: Union[ExternalKind, str], record: Any) -> BaseModel:
    """Validate a raw record into the model for its kind."""
    kind, _, model, _ = _table_for(kind)
    if isinstance(record, model):
        return record
    try:
        return model.model_validate(record)
    except ValidationError as e:
        record_id = record.get("id") if isinstance(record, dict) else None
        raise IngestValidationError(
            f"Invalid {kind.value} record {record_id!r}: {e.error_count()} validation error(s)",
            kind=kind.value,
            record_id=record_id,
        ) from e


def _upsert_external_row(
    conn: sqlite3.Connection,
    kind: ExternalKind,
    record: BaseModel,
    now: int,
) -> UpsertResult:
    """Overwrite-with-version-bump for one record. Caller owns the transaction."""
    _, table, _, json_columns = _table_for(kind)
    values = record.model_dump(mode="json")
    if "fetched_at" in values and values["fetched_at"] is None:
        values["fetched_at"] = now
    row_values = {
        col: (_dump_json(val) if col in json_columns else val)
        for col, val in values.items()
    }
    record_id = values["id"]

    existing = conn.execute(
        f"SELECT version FROM {table} WHERE id = ?", (record_id,)
    ).fetchone()

    if existing:
        version = existing["version"] + 1
        cols = [c for c in row_values if c != "id"]
        set_clause = ", ".join(f"{c} = ?" for c in cols)
        conn.execute(
            f"UPDATE {table} SET {set_clause}, version = ?, updated_at = ? WHERE id = ?",
            [row_values[c] for c in cols] + [version, now, record_id],
        )
        operation = ChangeOperation.UPDATE
    else:
        version = 1
        cols = list(row_values)
        placeholders = ", ".join("?" for _ in cols)
        conn.execute(
            f"""INSERT INTO {table} ({', '.join(cols)}, version, created_at, updated_at)
            VALUES ({placeholders}, 1, ?, ?)""",
            [row_values[c] for c in cols] + [now, now],
        )
        operation = ChangeOperation.CREATE

    _log_change(conn, kind.value, record_id, operation, version, values, now)
    return UpsertResult(id=record_id, version=version, operation=operation)


def upsert_external(
    conn: sqlite3.Connection,
    kind: Union[ExternalKind, str],
    record: Any,
    now: Optional[int] = None,
) -> UpsertResult:
    """Insert or overwrite one external record, bumping its version."""
    kind, _, _, _ = _table_for(kind)
    model = coerce_external(kind, record)
    now = now if now is not None else now_ms()
    with _transaction(conn, f"upsert {kind.value} {model.id}"):
        return _upsert_external_row(conn, kind, model, now)


def bulk_upsert_external(
    conn: sqlite3.Connection,
    kind: Union[ExternalKind, str],
    records: list[Any],
    now: Optional[int] = None,
) -> list[UpsertResult]:
    """Upsert a batch atomically: either every record lands or none do."""
    kind, _, _, _ = _table_for(kind)
    models = [coerce_external(kind, r) for r in records]
    now = now if now is not None else now_ms()
    with _transaction(conn, f"bulk upsert {len(models)} {kind.value} records"):
        return [_upsert_external_row(conn, kind, m, now) for m in models]


def _parse_external_row(kind: ExternalKind, row: sqlite3.Row) -> dict:
    _, _, _, json_columns = _table_for(kind)
    record = dict(row)
    for col in json_columns:
        record[col] = _load_json(record.get(col))
    if kind == ExternalKind.CALENDAR:
        record["all_day"] = bool(record["all_day"])
    return record


def get_external(
    conn: sqlite3.Connection, kind: Union[ExternalKind, str], record_id: str
) -> Optional[dict]:
    kind, table, _, _ = _table_for(kind)
    with _reading(f"read {kind.value} {record_id}"):
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
    return _parse_external_row(kind, row) if row else None


def get_calendar_events(
    conn: sqlite3.Connection, start_ms: int, end_ms: int
) -> list[dict]:
    """Calendar events starting in [start_ms, end_ms), ordered by start."""
    with _reading("read calendar events"):
        rows = conn.execute(
            """SELECT * FROM calendar_events
            WHERE start_time >= ? AND start_time < ?
            ORDER BY start_time ASC""",
            (start_ms, end_ms),
        ).fetchall()
    return [_parse_external_row(ExternalKind.CALENDAR, row) for row in rows]


def get_news_articles(
    conn: sqlite3.Connection,
    category: Optional[str] = None,
    since: Optional[int] = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[dict]:
    conditions = []
    params: list = []
    if category:
        conditions.append("category = ?")
        params.append(category)
    if since:
        conditions.append("fetched_at > ?")
        params.append(since)
    where = "WHERE " + " AND ".join(conditions) if conditions else ""
    params.append(limit)
    with _reading("read news articles"):
        rows = conn.execute(
            f"SELECT * FROM news_articles {where} ORDER BY published_at DESC, rank ASC LIMIT ?",
            params,
        ).fetchall()
    return [_parse_external_row(ExternalKind.NEWS, row) for row in rows]


def get_research_articles(
    conn: sqlite3.Connection,
    since: Optional[int] = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[dict]:
    params: list = []
    where = ""
    if since:
        where = "WHERE fetched_at > ?"
        params.append(since)
    params.append(limit)
    with _reading("read research articles"):
        rows = conn.execute(
            f"SELECT * FROM research_articles {where} ORDER BY published_at DESC, rank ASC LIMIT ?",
            params,
        ).fetchall()
    return [_parse_external_row(ExternalKind.RESEARCH, row) for row in rows]


# --- Sync state ---

def get_sync_state(conn: sqlite3.Connection, source: str) -> Optional[SyncState]:
    with _reading(f"read sync state for {source}"):
        row = conn.execute(
            "SELECT * FROM sync_state WHERE source = ?", (source,)
        ).fetchone()
    if not row:
        return None
    return SyncState(
        source=row["source"],
        last_sync=row["last_sync"],
        last_version=row["last_version"],
        metadata=_load_json(row["metadata"]),
    )


def set_sync_state(
    conn: sqlite3.Connection,
    source: str,
    version: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[int] = None,
) -> SyncState:
    """Record a completed sync. Fields left as None keep their prior values."""
    now = now if now is not None else now_ms()
    with _transaction(conn, f"update sync state for {source}"):
        existing = conn.execute(
            "SELECT * FROM sync_state WHERE source = ?", (source,)
        ).fetchone()
        if existing:
            conn.execute(
                """UPDATE sync_state SET last_sync = ?, last_version = ?, metadata = ?
                WHERE source = ?""",
                (
                    now,
                    version if version is not None else existing["last_version"],
                    _dump_json(metadata) if metadata is not None else existing["metadata"],
                    source,
                ),
            )
        else:
            conn.execute(
                """INSERT INTO sync_state (source, last_sync, last_version, metadata)
                VALUES (?, ?, ?, ?)""",
                (source, now, version or 0, _dump_json(metadata)),
            )
    return get_sync_state(conn, source)


# --- Stats ---

def get_stats(conn: sqlite3.Connection) -> dict:
    with _reading("read stats"):
        journal_count = conn.execute("SELECT COUNT(*) FROM journal_entries").fetchone()[0]
        conflict_count = conn.execute(
            "SELECT COUNT(*) FROM journal_entries WHERE conflict_version IS NOT NULL"
        ).fetchone()[0]
        history_count = conn.execute("SELECT COUNT(*) FROM journal_history").fetchone()[0]
        change_count = conn.execute("SELECT COUNT(*) FROM change_log").fetchone()[0]
        external_counts = {
            kind.value: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for kind, (table, _, _) in _EXTERNAL_TABLES.items()
        }

    db_size_mb = 0.0
    try:
        db_size_mb = DB_PATH.stat().st_size / (1024 * 1024)
    except OSError:
        pass

    return {
        "journal_entries": journal_count,
        "journal_conflicts": conflict_count,
        "journal_history_rows": history_count,
        "change_log_rows": change_count,
        "external_records": external_counts,
        "db_size_mb": round(db_size_mb, 2),
    }
