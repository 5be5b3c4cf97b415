"""notevault daemon -- long-running APScheduler process for periodic sync.

Hosts the journal reconciliation pass on an interval trigger. Every job run
is recorded in daemon_execution_log and a heartbeat is written to the
single-row daemon_state table so the tool surface can report status.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sqlite3
from typing import Callable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .config import DAEMON_HEARTBEAT_INTERVAL, DAEMON_PID_FILE, ensure_data_dirs
from .db import get_connection, now_ms
from .errors import StorageFailure
from .vault import VaultBackend

logger = logging.getLogger(__name__)


def _ensure_daemon_tables(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS daemon_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            pid INTEGER,
            started_at INTEGER,
            last_heartbeat INTEGER,
            modules TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'stopped'
        );

        CREATE TABLE IF NOT EXISTS daemon_execution_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            module_name TEXT NOT NULL,
            started_at INTEGER NOT NULL,
            finished_at INTEGER,
            status TEXT NOT NULL DEFAULT 'running',
            result_summary TEXT,
            error_message TEXT,
            duration_ms INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_daemon_exec_module
            ON daemon_execution_log(module_name, started_at);
    """)
    conn.commit()


class DaemonManager:
    """Manages the notevault daemon lifecycle and scheduled modules."""

    def __init__(self) -> None:
        self.scheduler = BlockingScheduler()
        self._modules: dict[str, dict] = {}
        self._running = False
        self._pid = os.getpid()

    def register_module(
        self,
        name: str,
        func: Callable,
        trigger: CronTrigger | IntervalTrigger,
        description: str = "",
        misfire_grace_time: int | None = 300,
    ) -> None:
        """Register a scheduled module with the daemon.

        Jobs are coalesced and never overlap: a run that comes due while the
        previous one is still going is skipped.
        """
        wrapped = self._wrap_with_logging(name, func)
        self._modules[name] = {
            "func": wrapped,
            "trigger": trigger,
            "description": description,
        }
        self.scheduler.add_job(
            wrapped,
            trigger=trigger,
            id=name,
            name=name,
            replace_existing=True,
            misfire_grace_time=misfire_grace_time,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Registered module: %s (%s)", name, description)

    def _wrap_with_logging(self, module_name: str, func: Callable) -> Callable:
        """Wrap a module function to log execution to daemon_execution_log."""
        def wrapper():
            started = now_ms()
            row_id = None
            try:
                conn = get_connection()
                try:
                    _ensure_daemon_tables(conn)
                    cur = conn.execute(
                        """INSERT INTO daemon_execution_log (module_name, started_at, status)
                        VALUES (?, ?, 'running')""",
                        (module_name, started),
                    )
                    row_id = cur.lastrowid
                    conn.commit()
                finally:
                    conn.close()
            except (sqlite3.Error, StorageFailure):
                # Bookkeeping failure must never prevent execution
                logger.warning("Could not record start of %s", module_name, exc_info=True)

            status = "success"
            error_msg = ""
            result = None
            try:
                result = func()
            except Exception as e:
                status = "error"
                error_msg = str(e)[:500]
                logger.error("Module %s failed: %s", module_name, e, exc_info=True)

            finished = now_ms()
            summary = str(result)[:200] if isinstance(result, dict) else ""

            if row_id is not None:
                try:
                    conn = get_connection()
                    try:
                        conn.execute(
                            """UPDATE daemon_execution_log SET
                            finished_at=?, status=?, result_summary=?,
                            error_message=?, duration_ms=?
                            WHERE id=?""",
                            (finished, status, summary, error_msg, finished - started, row_id),
                        )
                        conn.commit()
                    finally:
                        conn.close()
                except (sqlite3.Error, StorageFailure):
                    logger.warning("Could not record end of %s", module_name, exc_info=True)
            return result

        return wrapper

    def _write_status(self, status: str, heartbeat_only: bool = False) -> None:
        """Upsert the daemon_state row."""
        now = now_ms()
        module_names = json.dumps(list(self._modules.keys()))
        try:
            conn = get_connection()
        except StorageFailure as e:
            logger.error("State write failed: %s", e)
            return
        try:
            _ensure_daemon_tables(conn)
            if heartbeat_only:
                conn.execute(
                    """INSERT INTO daemon_state (id, pid, started_at, last_heartbeat, modules, status)
                    VALUES (1, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        last_heartbeat = excluded.last_heartbeat,
                        modules = excluded.modules,
                        status = excluded.status""",
                    (self._pid, now, now, module_names, status),
                )
            else:
                conn.execute(
                    """INSERT INTO daemon_state (id, pid, started_at, last_heartbeat, modules, status)
                    VALUES (1, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        pid = excluded.pid,
                        started_at = excluded.started_at,
                        last_heartbeat = excluded.last_heartbeat,
                        modules = excluded.modules,
                        status = excluded.status""",
                    (self._pid, now, now, module_names, status),
                )
            conn.commit()
        except sqlite3.Error as e:
            logger.error("State write failed: %s", e)
        finally:
            conn.close()

    def _write_heartbeat(self) -> None:
        self._write_status("running", heartbeat_only=True)

    def _handle_shutdown(self, signum: int, frame) -> None:
        """Graceful shutdown on SIGTERM/SIGINT. The running job finishes first."""
        logger.info("Received signal %s, shutting down...", signum)
        self.scheduler.shutdown(wait=True)
        self._cleanup()

    def _cleanup(self) -> None:
        """Ensure stopped state is written on exit."""
        if not self._running:
            return
        self._running = False
        self._write_status("stopped")
        DAEMON_PID_FILE.unlink(missing_ok=True)
        logger.info("Daemon stopped.")

    def start(self) -> None:
        """Start the daemon: write PID, register heartbeat, start scheduler."""
        ensure_data_dirs()

        status = get_daemon_status()
        if status["process_alive"] and status["pid"] != self._pid:
            logger.error(
                "STARTUP REFUSED: daemon_state shows alive PID %d, we are PID %d.",
                status["pid"], self._pid,
            )
            return

        DAEMON_PID_FILE.write_text(str(self._pid))
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

        self.scheduler.add_job(
            self._write_heartbeat,
            trigger=IntervalTrigger(seconds=DAEMON_HEARTBEAT_INTERVAL),
            id="_heartbeat",
            name="Daemon heartbeat",
            replace_existing=True,
        )

        self._running = True
        self._write_status("running")
        logger.info("Daemon started (pid=%d, modules=%s)", self._pid, self.modules)

        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Scheduler stopped by interrupt/exit.")
        finally:
            self._cleanup()

    @property
    def modules(self) -> list[str]:
        return list(self._modules.keys())


def _is_pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


def get_daemon_status() -> dict:
    """Read current daemon status from the DB."""
    conn = get_connection()
    try:
        _ensure_daemon_tables(conn)
        row = conn.execute("SELECT * FROM daemon_state WHERE id = 1").fetchone()
        if not row:
            return {
                "status": "stopped",
                "pid": None,
                "started_at": None,
                "last_heartbeat": None,
                "modules": [],
                "process_alive": False,
            }
        pid = row["pid"]
        alive = _is_pid_alive(pid) if pid else False
        return {
            "status": row["status"] if alive else "stopped",
            "pid": pid,
            "started_at": row["started_at"],
            "last_heartbeat": row["last_heartbeat"],
            "modules": json.loads(row["modules"]) if row["modules"] else [],
            "process_alive": alive,
        }
    finally:
        conn.close()


def get_recent_executions(module_name: Optional[str] = None, limit: int = 20) -> list[dict]:
    """Most recent job runs, newest first."""
    conn = get_connection()
    try:
        _ensure_daemon_tables(conn)
        if module_name:
            rows = conn.execute(
                """SELECT * FROM daemon_execution_log WHERE module_name = ?
                ORDER BY started_at DESC, id DESC LIMIT ?""",
                (module_name, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM daemon_execution_log ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def build_daemon(vault: Optional[VaultBackend] = None) -> DaemonManager:
    """Build a DaemonManager with the journal sync registered.

    Imports are deferred so the sync stack only loads when the daemon runs.
    """
    from .sync import SyncOrchestrator
    from .vault import FileVault

    config.init()
    dm = DaemonManager()
    if not config.SYNC_ENABLED:
        logger.info("Sync disabled (NOTEVAULT_SYNC_ENABLED), no modules registered")
        return dm

    orchestrator = SyncOrchestrator(vault or FileVault(config.VAULT_PATH))

    def journal_sync() -> dict:
        result = orchestrator.run_sync()
        if result is None:
            return {"status": "dropped"}
        return result.model_dump()

    dm.register_module(
        "journal_sync",
        journal_sync,
        IntervalTrigger(seconds=config.SYNC_INTERVAL_SECONDS),
        "Journal vault <-> store reconciliation",
    )
    return dm
