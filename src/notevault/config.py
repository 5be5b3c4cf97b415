"""Paths, constants, and data directory setup."""

import logging
import os
from pathlib import Path

# Base directories
PROJECT_ROOT = Path(__file__).parent.parent.parent


def _load_env() -> None:
    """Load .env file from project root if present. Existing env vars take priority."""
    env_file = PROJECT_ROOT / ".env"
    if not env_file.exists():
        return
    with open(env_file) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            if not os.environ.get(key):
                os.environ[key] = value


_env_initialized = False


def init() -> None:
    """Load .env and set env-dependent constants. Safe to call multiple times."""
    global _env_initialized
    if _env_initialized:
        return
    _load_env()
    _init_env_vars()
    _env_initialized = True


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except (ValueError, TypeError):
        logging.getLogger(__name__).warning(
            "Invalid %s env var, defaulting to %d", name, default
        )
        return default


def _init_env_vars() -> None:
    """Read environment variables into module-level constants."""
    global VAULT_PATH, JOURNAL_FOLDER, JOURNAL_DATE_FORMAT
    global SYNC_ENABLED, SYNC_INTERVAL_SECONDS

    vault_path = os.environ.get("NOTEVAULT_VAULT_PATH", "")
    if vault_path:
        VAULT_PATH = Path(os.path.expanduser(vault_path))
    JOURNAL_FOLDER = os.environ.get("NOTEVAULT_JOURNAL_FOLDER", JOURNAL_FOLDER)
    JOURNAL_DATE_FORMAT = os.environ.get(
        "NOTEVAULT_JOURNAL_DATE_FORMAT", JOURNAL_DATE_FORMAT
    )
    SYNC_ENABLED = os.environ.get("NOTEVAULT_SYNC_ENABLED", "1") not in ("0", "false", "no")
    SYNC_INTERVAL_SECONDS = _int_env(
        "NOTEVAULT_SYNC_INTERVAL_SECONDS", SYNC_INTERVAL_SECONDS
    )


DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = DATA_DIR / "notevault.db"
DB_BUSY_TIMEOUT_MS = 10_000

# --- Vault ---
VAULT_PATH = Path(os.path.expanduser("~")) / "NoteVault"
JOURNAL_FOLDER = "Journal/Day"
JOURNAL_DATE_FORMAT = "%Y-%m-%d"  # placeholders: %Y, %m, %d

# --- Journal templates ---
AGENDA_HEADING = "## Agenda"
NOTES_HEADING = "## Notes"

# --- Sync ---
SYNC_ENABLED = True
SYNC_INTERVAL_SECONDS = 300  # 5 minutes between reconciliation passes
# "All time" window for the store-only sweep and conflict listing
SYNC_RANGE_START = "1900-01-01"
SYNC_RANGE_END = "2100-12-31"

# Entity types tracked in the change log and sync_state table
ENTITY_TYPES = ["journal", "news", "calendar", "research"]
EXTERNAL_KINDS = ["news", "calendar", "research"]

# --- External record listing defaults ---
DEFAULT_LIST_LIMIT = 100

# --- Daemon ---
DAEMON_PID_FILE = DATA_DIR / "daemon.pid"
DAEMON_LOG_FILE = DATA_DIR / "daemon.log"
DAEMON_HEARTBEAT_INTERVAL = 60  # seconds between heartbeat writes


def ensure_data_dirs() -> None:
    """Create all required data directories if they don't exist."""
    init()
    DATA_DIR.mkdir(parents=True, exist_ok=True)
