"""Shared test fixtures."""

from typing import Optional

import pytest

from notevault.errors import VaultIOFailure
from notevault.models import FileStats, VaultDocument, VaultFile


@pytest.fixture(autouse=True)
def temp_data_dir(monkeypatch, tmp_path):
    """Override data directories to use a temp dir for each test."""
    import notevault.config as config

    data_dir = tmp_path / "data"
    data_dir.mkdir()

    # Keep the developer's .env and NOTEVAULT_* vars out of the tests
    monkeypatch.setattr(config, "_env_initialized", True)

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "DB_PATH", data_dir / "notevault.db")
    monkeypatch.setattr(config, "VAULT_PATH", tmp_path / "vault")
    monkeypatch.setattr(config, "JOURNAL_FOLDER", "Journal/Day")
    monkeypatch.setattr(config, "JOURNAL_DATE_FORMAT", "%Y-%m-%d")
    monkeypatch.setattr(config, "SYNC_ENABLED", True)
    monkeypatch.setattr(config, "SYNC_INTERVAL_SECONDS", 300)

    # Also patch the db module's reference to DB_PATH
    import notevault.db as db_module
    monkeypatch.setattr(db_module, "DB_PATH", data_dir / "notevault.db")

    # Daemon paths (isolated to tmp_path)
    monkeypatch.setattr(config, "DAEMON_PID_FILE", data_dir / "daemon.pid")
    monkeypatch.setattr(config, "DAEMON_LOG_FILE", data_dir / "daemon.log")
    import notevault.daemon as daemon_mod
    monkeypatch.setattr(daemon_mod, "DAEMON_PID_FILE", data_dir / "daemon.pid")

    return data_dir


class FakeClock:
    """Injectable millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def set(self, value: int) -> None:
        self.now = value

    def advance(self, ms: int = 1_000) -> int:
        self.now += ms
        return self.now


class MemoryVault:
    """In-memory VaultBackend with controllable mtimes and failure injection."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.files: dict[str, dict] = {}
        self.fail_reads: set[str] = set()
        self.fail_writes: set[str] = set()
        self.writes: list[str] = []

    def put(self, path: str, content: str, frontmatter: Optional[dict] = None,
            mtime: Optional[int] = None) -> None:
        """Simulate a human edit at ``mtime`` (defaults to the clock)."""
        self.files[path] = {
            "content": content,
            "frontmatter": dict(frontmatter or {}),
            "mtime": self.clock() if mtime is None else mtime,
        }

    def content(self, path: str) -> Optional[str]:
        f = self.files.get(path)
        return f["content"] if f else None

    def list_files(self, folder: str, recursive: bool = False) -> list[VaultFile]:
        prefix = folder.rstrip("/") + "/" if folder else ""
        found = []
        for path in sorted(self.files):
            if not path.startswith(prefix) or not path.endswith(".md"):
                continue
            rest = path[len(prefix):]
            if not recursive and "/" in rest:
                continue
            found.append(VaultFile(name=rest.rsplit("/", 1)[-1], path=path))
        return found

    def read_file(self, path: str) -> Optional[VaultDocument]:
        if path in self.fail_reads:
            raise VaultIOFailure(f"Cannot read {path}", path=path)
        f = self.files.get(path)
        if f is None:
            return None
        return VaultDocument(path=path, content=f["content"], frontmatter=dict(f["frontmatter"]))

    def write_file(self, path: str, content: str, frontmatter: Optional[dict] = None) -> None:
        if path in self.fail_writes:
            raise VaultIOFailure(f"Cannot write {path}", path=path)
        self.put(path, content, frontmatter)
        self.writes.append(path)

    def create_file(self, path: str, content: str) -> None:
        if path in self.files:
            raise VaultIOFailure(f"File already exists: {path}", path=path)
        self.write_file(path, content)

    def get_stats(self, path: str) -> Optional[FileStats]:
        f = self.files.get(path)
        if f is None:
            return None
        return FileStats(modified_ms=f["mtime"], size=len(f["content"]))

    def exists(self, path: str) -> bool:
        return path in self.files


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_vault(clock):
    return MemoryVault(clock)


@pytest.fixture
def conn(temp_data_dir):
    """Open store connection on a freshly initialized schema."""
    from notevault.db import get_connection, init_db

    init_db()
    c = get_connection()
    yield c
    c.close()


@pytest.fixture
def orchestrator(memory_vault, clock):
    from notevault.sync import SyncOrchestrator

    orch = SyncOrchestrator(memory_vault, clock=clock)
    yield orch
    orch.stop_periodic_sync()


@pytest.fixture
def file_vault(tmp_path):
    from notevault.vault import FileVault

    root = tmp_path / "vault"
    root.mkdir()
    return FileVault(root)
