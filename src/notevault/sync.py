"""Journal reconciliation between the vault files and the entity store.

One pass walks the journal folder, applies the per-entry transition for each
daily note, then writes out store entries that have no file yet. Only one
pass runs at a time per orchestrator; a pass requested while another is in
flight is dropped and the next scheduled tick picks up the work.

Per-entry policy (content hashes differ):
  file newer, no store edits since last sync  -> store adopts the file
  file not newer                              -> file is overwritten from the store
  file newer and store edited since last sync -> conflict: store keeps the file
      content as primary and the previous store content as the snapshot;
      the entry is left alone by later passes until resolved.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Iterator, Optional, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .agenda import day_bounds_ms, prepare_agenda_items
from .db import (
    ensure_schema,
    get_calendar_events,
    get_change_log_high_water,
    get_changes_since,
    get_connection,
    get_delta,
    get_journal,
    get_journal_conflicts,
    get_journal_history,
    get_journal_range,
    get_sync_state,
    hash_content,
    mark_journal_synced,
    now_ms,
    set_sync_state,
    upsert_journal,
)
from .errors import ResolutionError, StorageFailure, VaultIOFailure
from .ingest import ingest_external
from .journal import (
    build_agenda_section,
    date_from_path,
    entry_id_for_date,
    is_nested_format,
    path_for_date,
    template_with_agenda,
    upsert_agenda_section,
)
from .models import (
    ChangeLogRecord,
    EntityType,
    IngestResult,
    JournalEntry,
    JournalHistoryRecord,
    ResolutionChoice,
    SyncResult,
    UpsertResult,
    VaultFile,
)
from .vault import VaultBackend

logger = logging.getLogger(__name__)

# Per-file outcomes
SYNCED = "synced"
CONFLICT = "conflict"
UNCHANGED = "unchanged"
SKIPPED = "skipped"

SYNC_JOB_ID = "journal_sync"


class SyncOrchestrator:
    """Runs reconciliation passes and exposes the delta/conflict API."""

    def __init__(
        self,
        vault: VaultBackend,
        connect: Callable[[], sqlite3.Connection] = get_connection,
        clock: Callable[[], int] = now_ms,
        journal_folder: Optional[str] = None,
        date_format: Optional[str] = None,
    ) -> None:
        config.init()
        self.vault = vault
        self._connect = connect
        self._clock = clock
        self.journal_folder = config.JOURNAL_FOLDER if journal_folder is None else journal_folder
        self.date_format = date_format or config.JOURNAL_DATE_FORMAT
        self._pass_lock = threading.Lock()
        self._entry_locks: dict[str, threading.Lock] = {}
        self._entry_locks_guard = threading.Lock()
        self._schema_ready = False
        self._scheduler: Optional[BackgroundScheduler] = None

    # --- Plumbing ---

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            if not self._schema_ready:
                ensure_schema(conn)
                self._schema_ready = True
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _entry_lock(self, entry_id: str) -> Iterator[None]:
        """Serialize all writes to one journal id."""
        with self._entry_locks_guard:
            lock = self._entry_locks.setdefault(entry_id, threading.Lock())
        with lock:
            yield

    def _path_for(self, entry_date: Union[date, str]) -> str:
        return path_for_date(entry_date, self.journal_folder, self.date_format)

    @property
    def is_syncing(self) -> bool:
        return self._pass_lock.locked()

    # --- Passes ---

    def run_sync(self) -> Optional[SyncResult]:
        """Guarded entry point for timer and on-demand passes.

        Returns None when another pass is already running.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Sync already in progress, dropping request")
            return None
        try:
            return self.sync_journal()
        finally:
            self._pass_lock.release()

    def sync_journal(self) -> SyncResult:
        """One full reconciliation pass over the journal folder."""
        started = time.monotonic()
        result = SyncResult()
        logger.info("Starting journal sync (%s)", self.journal_folder or "vault root")

        try:
            with self._connection() as conn:
                files = self.vault.list_files(
                    self.journal_folder, recursive=is_nested_format(self.date_format)
                )
                seen = self._sync_files(conn, files, result)
                self._sync_store_only(conn, seen, result)

                result.duration_ms = int((time.monotonic() - started) * 1000)
                set_sync_state(
                    conn,
                    "journal",
                    version=get_change_log_high_water(conn, "journal"),
                    metadata={
                        "synced": result.synced,
                        "conflicts": result.conflicts,
                        "errors": result.errors,
                    },
                    now=self._clock(),
                )
        except StorageFailure as e:
            logger.error("Journal sync aborted: %s", e)
            raise
        except VaultIOFailure as e:
            logger.error("Journal sync aborted, cannot list %s: %s", self.journal_folder, e)
            raise

        logger.info(
            "Journal sync complete: %d synced, %d conflicts, %d errors, %d skipped (%dms)",
            result.synced, result.conflicts, result.errors, result.skipped, result.duration_ms,
        )
        return result

    def _tally(self, result: SyncResult, outcome: str) -> None:
        if outcome == SYNCED:
            result.synced += 1
        elif outcome == CONFLICT:
            result.conflicts += 1
        elif outcome == SKIPPED:
            result.skipped += 1

    def _sync_files(
        self, conn: sqlite3.Connection, files: list[VaultFile], result: SyncResult
    ) -> set[str]:
        """File-driven sweep. Returns the ids of every dated file found."""
        seen: set[str] = set()
        for file in files:
            entry_date = date_from_path(file.path, self.date_format)
            if entry_date is None:
                logger.debug("Skipping non-date file: %s", file.name)
                result.skipped += 1
                continue

            entry_id = entry_id_for_date(entry_date)
            seen.add(entry_id)
            try:
                with self._entry_lock(entry_id):
                    outcome = self._reconcile_file(conn, file, entry_id)
            except VaultIOFailure as e:
                logger.error("Error syncing journal file %s: %s", file.path, e, exc_info=True)
                result.errors += 1
                continue
            self._tally(result, outcome)
        return seen

    def _reconcile_file(self, conn: sqlite3.Connection, file: VaultFile, entry_id: str) -> str:
        doc = self.vault.read_file(file.path)
        if doc is None:
            return SKIPPED
        stats = self.vault.get_stats(file.path)
        file_modified = stats.modified_ms if stats else self._clock()

        entry = get_journal(conn, entry_id)
        if entry is None:
            now = self._clock()
            upsert_journal(conn, entry_id, entry_id, doc.content, doc.frontmatter, now=now)
            mark_journal_synced(conn, entry_id, now=now)
            logger.debug("Created store entry for %s", entry_id)
            return SYNCED

        if entry.is_conflicted:
            logger.debug("Skipping %s: conflict pending", entry_id)
            return SKIPPED

        if hash_content(doc.content) == entry.content_hash:
            mark_journal_synced(conn, entry_id, now=self._clock())
            return UNCHANGED

        if file_modified > entry.updated_at:
            if entry.synced_at is not None and entry.updated_at > entry.synced_at:
                logger.warning("Conflict detected for %s", entry_id)
                upsert_journal(
                    conn, entry_id, entry.date, doc.content, doc.frontmatter,
                    conflict_snapshot=entry.content, now=self._clock(),
                )
                return CONFLICT

            now = self._clock()
            upsert_journal(conn, entry_id, entry.date, doc.content, doc.frontmatter, now=now)
            mark_journal_synced(conn, entry_id, now=now)
            logger.debug("Adopted file content for %s", entry_id)
            return SYNCED

        self.vault.write_file(file.path, entry.content, entry.frontmatter)
        mark_journal_synced(conn, entry_id, now=self._clock())
        logger.debug("Updated file from store for %s", entry_id)
        return SYNCED

    def _sync_store_only(
        self, conn: sqlite3.Connection, seen: set[str], result: SyncResult
    ) -> None:
        """Write out store entries that have no file (e.g. created through the API)."""
        for candidate in get_journal_range(conn, config.SYNC_RANGE_START, config.SYNC_RANGE_END):
            if candidate.id in seen:
                continue
            path = self._path_for(candidate.date)
            try:
                with self._entry_lock(candidate.id):
                    entry = get_journal(conn, candidate.id)
                    if entry is None:
                        continue
                    if entry.is_conflicted:
                        result.skipped += 1
                        continue
                    self.vault.write_file(path, entry.content, entry.frontmatter)
                    mark_journal_synced(conn, entry.id, now=self._clock())
            except VaultIOFailure as e:
                logger.error("Error creating journal file %s: %s", path, e, exc_info=True)
                result.errors += 1
                continue
            logger.debug("Created file from store for %s", candidate.id)
            result.synced += 1

    # --- Scheduling ---

    def start_periodic_sync(self, interval_seconds: Optional[int] = None) -> None:
        """Run a pass now and then every interval_seconds on a background thread."""
        interval = interval_seconds or config.SYNC_INTERVAL_SECONDS
        if self._scheduler is not None:
            self.stop_periodic_sync()

        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self.run_sync,
            IntervalTrigger(seconds=interval),
            id=SYNC_JOB_ID,
            name="Journal sync",
            coalesce=True,
            max_instances=1,
            next_run_time=datetime.now(),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Started periodic sync (interval: %ds)", interval)

    def stop_periodic_sync(self) -> None:
        """Cancel the timer. A pass already running is allowed to finish."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("Stopped periodic sync")

    # --- Delta / conflict API ---

    def get_delta(
        self, entity_type: str, since_ms: int, until_ms: Optional[int] = None
    ) -> list[ChangeLogRecord]:
        try:
            entity_type = EntityType(entity_type).value
        except ValueError:
            raise ValueError(
                f"Unknown entity type '{entity_type}'. "
                f"Must be one of: {[t.value for t in EntityType]}"
            ) from None
        with self._connection() as conn:
            if until_ms is None:
                return get_changes_since(conn, entity_type, since_ms)
            return get_delta(conn, entity_type, since_ms, until_ms)

    def get_conflicts(self) -> list[JournalEntry]:
        with self._connection() as conn:
            return get_journal_conflicts(conn)

    def resolve_conflict(
        self, entry_id: str, choice: Union[ResolutionChoice, str]
    ) -> JournalEntry:
        """Settle a pending conflict.

        ``store`` keeps the primary content, ``file`` promotes the snapshot.
        The file is written first; if that fails the conflict stays pending
        untouched. Otherwise the snapshot is cleared and the entry is marked
        synced. Invalid choices and entries without a pending conflict raise
        ResolutionError before anything is touched.
        """
        try:
            choice = ResolutionChoice(choice)
        except ValueError:
            raise ResolutionError(
                f"Invalid resolution choice {choice!r}. "
                f"Must be one of: {[c.value for c in ResolutionChoice]}"
            ) from None

        with self._entry_lock(entry_id), self._connection() as conn:
            entry = get_journal(conn, entry_id)
            if entry is None or not entry.is_conflicted:
                raise ResolutionError(f"No pending conflict for {entry_id}")

            content = entry.content if choice == ResolutionChoice.STORE else entry.conflict_snapshot
            self.vault.write_file(self._path_for(entry.date), content, entry.frontmatter)
            upsert_journal(conn, entry.id, entry.date, content, entry.frontmatter, now=self._clock())
            mark_journal_synced(conn, entry.id, now=self._clock())
            logger.info("Resolved conflict for %s using %s version", entry_id, choice.value)
            return get_journal(conn, entry.id)

    def get_history(self, entry_id: str) -> list[JournalHistoryRecord]:
        with self._connection() as conn:
            return get_journal_history(conn, entry_id)

    def get_entry(self, entry_date: Union[date, str]) -> Optional[JournalEntry]:
        with self._connection() as conn:
            return get_journal(conn, entry_id_for_date(entry_date))

    def get_range(self, start_date: str, end_date: str) -> list[JournalEntry]:
        with self._connection() as conn:
            return get_journal_range(conn, start_date, end_date)

    # --- Store-side writes ---

    def write_entry(
        self,
        entry_date: Union[date, str],
        content: str,
        frontmatter: Optional[dict[str, Any]] = None,
    ) -> UpsertResult:
        """Direct edit through the API. The next pass writes it to the vault."""
        entry_id = entry_id_for_date(entry_date)
        with self._entry_lock(entry_id), self._connection() as conn:
            existing = get_journal(conn, entry_id)
            if existing is not None and existing.is_conflicted:
                raise ResolutionError(f"Entry {entry_id} has a pending conflict; resolve it first")
            if frontmatter is None and existing is not None:
                frontmatter = existing.frontmatter
            return upsert_journal(conn, entry_id, entry_id, content, frontmatter, now=self._clock())

    def merge_agenda(self, entry_date: Union[date, str]) -> Optional[JournalEntry]:
        """Merge the day's stored calendar events into the entry's agenda block.

        Creates the entry (from the vault file if present, else from the
        template) when the store has none. Returns None for conflicted entries.
        """
        entry_id = entry_id_for_date(entry_date)
        day = date.fromisoformat(entry_id)
        start_ms, end_ms = day_bounds_ms(day)

        with self._entry_lock(entry_id), self._connection() as conn:
            items = prepare_agenda_items(get_calendar_events(conn, start_ms, end_ms))
            section = build_agenda_section(items)
            entry = get_journal(conn, entry_id)

            if entry is not None:
                if entry.is_conflicted:
                    logger.warning("Not merging agenda into %s: conflict pending", entry_id)
                    return None
                base, frontmatter = entry.content, entry.frontmatter
            else:
                doc = self.vault.read_file(self._path_for(day))
                if doc is not None:
                    base, frontmatter = doc.content, doc.frontmatter
                else:
                    base, frontmatter = None, None

            content = template_with_agenda(day, items) if base is None else upsert_agenda_section(base, section)
            if entry is not None and content == entry.content:
                return entry

            upsert_journal(conn, entry_id, entry_id, content, frontmatter, now=self._clock())
            logger.info("Merged %d agenda items into %s", len(items), entry_id)
            return get_journal(conn, entry_id)

    def ingest_external(self, kind: str, records: list[Any]) -> IngestResult:
        """Bulk ingest for fetchers. Independent of journal passes."""
        with self._connection() as conn:
            return ingest_external(conn, kind, records, now=self._clock())

    # --- Status ---

    def get_status(self) -> dict:
        with self._connection() as conn:
            states = {
                entity_type.value: get_sync_state(conn, entity_type.value)
                for entity_type in EntityType
            }
        return {
            "is_syncing": self.is_syncing,
            "periodic": self._scheduler is not None,
            "journal_folder": self.journal_folder,
            "sources": {
                name: state.model_dump() if state else None
                for name, state in states.items()
            },
        }
