"""MCP server entry point - sync, journal and ingest tools for notevault."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Optional

from fastmcp import FastMCP

from . import config
from .config import ensure_data_dirs
from .db import (
    get_calendar_events,
    get_connection,
    get_news_articles,
    get_research_articles,
    get_stats,
    init_db,
)

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("notevault")

# Initialize data directories and database
ensure_data_dirs()
init_db()

mcp = FastMCP(
    "NoteVault",
    instructions=(
        "NoteVault mirrors a markdown journal vault into a versioned store. "
        "Use these tools to run reconciliation passes, read delta feeds, "
        "inspect and resolve journal conflicts, and ingest external records."
    ),
)

_orchestrator = None


def _get_orchestrator():
    global _orchestrator
    if _orchestrator is None:
        from .sync import SyncOrchestrator
        from .vault import FileVault

        _orchestrator = SyncOrchestrator(FileVault(config.VAULT_PATH))
    return _orchestrator


def _error(tool: str, e: Exception) -> str:
    logger.error("%s failed: %s", tool, e, exc_info=True)
    return json.dumps({"error": str(e)})


# =============================================================================
# Sync Tools (6)
# =============================================================================

@mcp.tool()
def sync_run() -> str:
    """Run one journal reconciliation pass now.

    Returns counts of synced, conflicted, errored and skipped entries. If a
    pass is already running the request is dropped.
    """
    try:
        result = _get_orchestrator().run_sync()
        if result is None:
            return json.dumps({"status": "dropped", "reason": "sync already in progress"})
        return json.dumps({"status": "completed", **result.model_dump()})
    except Exception as e:
        return _error("sync_run", e)


@mcp.tool()
def sync_status() -> str:
    """Sync state per entity type, store stats, daemon health and recent sync runs."""
    from .daemon import get_daemon_status, get_recent_executions

    try:
        status = _get_orchestrator().get_status()
        conn = get_connection()
        try:
            status["store"] = get_stats(conn)
        finally:
            conn.close()
        status["daemon"] = get_daemon_status()
        status["recent_runs"] = get_recent_executions("journal_sync", limit=5)
        return json.dumps(status, default=str)
    except Exception as e:
        return _error("sync_status", e)


@mcp.tool()
def sync_delta(entity_type: str, since_ms: int = 0) -> str:
    """Change-log records for an entity type created after since_ms (epoch ms).

    Entity types: journal, news, calendar, research.
    """
    try:
        records = _get_orchestrator().get_delta(entity_type, since_ms)
        return json.dumps({
            "entity_type": entity_type,
            "count": len(records),
            "changes": [r.model_dump(mode="json") for r in records],
        })
    except Exception as e:
        return _error("sync_delta", e)


@mcp.tool()
def sync_delta_range(entity_type: str, start_ms: int, end_ms: int) -> str:
    """Change-log records with start_ms < created_at <= end_ms, oldest first."""
    try:
        records = _get_orchestrator().get_delta(entity_type, start_ms, end_ms)
        return json.dumps({
            "entity_type": entity_type,
            "count": len(records),
            "changes": [r.model_dump(mode="json") for r in records],
        })
    except Exception as e:
        return _error("sync_delta_range", e)


@mcp.tool()
def sync_conflicts() -> str:
    """Journal entries with a pending conflict, with both competing versions."""
    try:
        conflicts = _get_orchestrator().get_conflicts()
        return json.dumps({
            "count": len(conflicts),
            "conflicts": [
                {
                    "id": e.id,
                    "date": e.date,
                    "version": e.version,
                    "content": e.content,
                    "conflict_content": e.conflict_snapshot,
                    "updated_at": e.updated_at,
                    "synced_at": e.synced_at,
                }
                for e in conflicts
            ],
        })
    except Exception as e:
        return _error("sync_conflicts", e)


@mcp.tool()
def sync_resolve(entry_id: str, choice: str) -> str:
    """Resolve a journal conflict.

    choice: 'store' keeps the current primary content, 'file' promotes the
    preserved conflict content. The vault file is rewritten either way.
    """
    try:
        entry = _get_orchestrator().resolve_conflict(entry_id, choice)
        return json.dumps({
            "status": "resolved",
            "id": entry.id,
            "version": entry.version,
            "choice": choice,
        })
    except Exception as e:
        return _error("sync_resolve", e)


# =============================================================================
# Journal Tools (5)
# =============================================================================

@mcp.tool()
def journal_history(entry_id: str) -> str:
    """All prior versions of a journal entry, oldest first."""
    try:
        history = _get_orchestrator().get_history(entry_id)
        return json.dumps({
            "id": entry_id,
            "count": len(history),
            "history": [h.model_dump() for h in history],
        }, default=str)
    except Exception as e:
        return _error("journal_history", e)


@mcp.tool()
def journal_get(date: str) -> str:
    """Stored journal entry for an ISO date (YYYY-MM-DD)."""
    try:
        entry = _get_orchestrator().get_entry(date)
        if entry is None:
            return json.dumps({"error": f"No journal entry for {date}"})
        return json.dumps(entry.model_dump(), default=str)
    except Exception as e:
        return _error("journal_get", e)


@mcp.tool()
def journal_range(start_date: str, end_date: str) -> str:
    """Stored journal entries between two ISO dates, inclusive."""
    try:
        entries = _get_orchestrator().get_range(start_date, end_date)
        return json.dumps({
            "count": len(entries),
            "entries": [
                {"id": e.id, "date": e.date, "version": e.version,
                 "updated_at": e.updated_at, "conflicted": e.is_conflicted}
                for e in entries
            ],
        })
    except Exception as e:
        return _error("journal_range", e)


@mcp.tool()
def journal_write(
    date: str,
    content: str,
    frontmatter: Optional[dict[str, Any]] = None,
) -> str:
    """Write a journal entry to the store. The next sync pass updates the file."""
    try:
        result = _get_orchestrator().write_entry(date, content, frontmatter)
        return json.dumps(result.model_dump(mode="json"))
    except Exception as e:
        return _error("journal_write", e)


@mcp.tool()
def journal_agenda(date: str) -> str:
    """Merge the day's stored calendar events into the entry's Agenda section."""
    try:
        entry = _get_orchestrator().merge_agenda(date)
        if entry is None:
            return json.dumps({"status": "skipped", "reason": "conflict pending"})
        return json.dumps({"status": "merged", "id": entry.id,
                           "version": entry.version, "content": entry.content})
    except Exception as e:
        return _error("journal_agenda", e)


# =============================================================================
# External Record Tools (2)
# =============================================================================

@mcp.tool()
def ingest_records(kind: str, records: list[dict[str, Any]]) -> str:
    """Bulk ingest external records. kind: news, calendar, research.

    Malformed records are dropped and reported; the rest land atomically.
    """
    try:
        result = _get_orchestrator().ingest_external(kind, records)
        return json.dumps(result.model_dump(mode="json"))
    except Exception as e:
        return _error("ingest_records", e)


@mcp.tool()
def external_list(
    kind: str,
    category: Optional[str] = None,
    since: Optional[int] = None,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
    limit: int = config.DEFAULT_LIST_LIMIT,
) -> str:
    """List stored external records.

    calendar: events starting in [start_ms, end_ms).
    news: optional category and since (fetched_at, epoch ms).
    research: optional since.
    """
    try:
        conn = get_connection()
        try:
            if kind == "calendar":
                if start_ms is None or end_ms is None:
                    return json.dumps({"error": "calendar listing needs start_ms and end_ms"})
                records = get_calendar_events(conn, start_ms, end_ms)
            elif kind == "news":
                records = get_news_articles(conn, category=category, since=since, limit=limit)
            elif kind == "research":
                records = get_research_articles(conn, since=since, limit=limit)
            else:
                return json.dumps({
                    "error": f"Unknown kind '{kind}'. Must be one of: {config.EXTERNAL_KINDS}"
                })
        finally:
            conn.close()
        return json.dumps({"kind": kind, "count": len(records), "records": records})
    except Exception as e:
        return _error("external_list", e)


def main():
    """Run the MCP server."""
    logger.info("NoteVault MCP server starting...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
