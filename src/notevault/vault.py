"""Vault collaborator: the file-tree side of the sync.

VaultBackend is the contract the orchestrator consumes. FileVault is the
filesystem implementation: markdown files under a root directory, with an
optional YAML frontmatter block. The note body is kept byte-for-byte (apart
from universal newline translation) so that hashes computed from a read
match what was written.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable

import frontmatter
import yaml

from .errors import VaultIOFailure
from .models import FileStats, VaultDocument, VaultFile

logger = logging.getLogger(__name__)

_YAML = frontmatter.YAMLHandler()
# Opening fence, metadata, closing fence plus exactly one line break
_FM_BLOCK = re.compile(r"\A---[ \t]*\r?\n(.*?\r?\n)?---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


@runtime_checkable
class VaultBackend(Protocol):
    """Contract for the file side of the sync.

    Paths are vault-relative and '/'-separated. Implementations raise
    VaultIOFailure for per-file I/O problems.
    """

    def list_files(self, folder: str, recursive: bool = False) -> list[VaultFile]:
        """Markdown files under ``folder``. Empty list if the folder is missing."""
        ...

    def read_file(self, path: str) -> Optional[VaultDocument]:
        """Body and frontmatter of a note, or None if it doesn't exist."""
        ...

    def write_file(
        self, path: str, content: str, frontmatter: Optional[dict[str, Any]] = None
    ) -> None:
        ...

    def create_file(self, path: str, content: str) -> None:
        """Create a new note. Fails if it already exists."""
        ...

    def get_stats(self, path: str) -> Optional[FileStats]:
        ...

    def exists(self, path: str) -> bool:
        ...


# --- Frontmatter ---

def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split raw note text into (metadata, body).

    A leading block that doesn't parse as a YAML mapping is treated as body.
    """
    if not text or not _YAML.detect(text):
        return {}, text
    match = _FM_BLOCK.match(text)
    if not match:
        return {}, text
    try:
        metadata = _YAML.load(match.group(1) or "")
    except yaml.YAMLError as e:
        logger.warning("Unparseable frontmatter, keeping it as body text: %s", e)
        return {}, text
    if not isinstance(metadata, dict):
        return {}, text
    return metadata, text[match.end():]


def join_frontmatter(content: str, metadata: Optional[dict[str, Any]]) -> str:
    """Inverse of split_frontmatter. No block is written for empty metadata."""
    if not metadata:
        return content
    return f"---\n{_YAML.export(metadata)}\n---\n{content}"


# --- Filesystem implementation ---

class FileVault:
    """Markdown vault rooted at a directory."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser().resolve()

    def __repr__(self) -> str:
        return f"FileVault({str(self.root)!r})"

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and not target.is_relative_to(self.root):
            raise VaultIOFailure(f"Path escapes vault root: {path}", path=path)
        return target

    def _relative(self, target: Path) -> str:
        return target.relative_to(self.root).as_posix()

    def list_files(self, folder: str, recursive: bool = False) -> list[VaultFile]:
        directory = self._resolve(folder)
        if not directory.is_dir():
            return []
        pattern = "**/*.md" if recursive else "*.md"
        try:
            found = sorted(p for p in directory.glob(pattern) if p.is_file())
        except OSError as e:
            raise VaultIOFailure(f"Cannot list {folder}: {e}", path=folder) from e
        return [VaultFile(name=p.name, path=self._relative(p)) for p in found]

    def read_file(self, path: str) -> Optional[VaultDocument]:
        target = self._resolve(path)
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise VaultIOFailure(f"Cannot read {path}: {e}", path=path) from e
        metadata, body = split_frontmatter(text)
        return VaultDocument(path=path, content=body, frontmatter=metadata)

    def write_file(
        self, path: str, content: str, frontmatter: Optional[dict[str, Any]] = None
    ) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(join_frontmatter(content, frontmatter), encoding="utf-8")
        except (OSError, yaml.YAMLError) as e:
            raise VaultIOFailure(f"Cannot write {path}: {e}", path=path) from e

    def create_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "x", encoding="utf-8") as f:
                f.write(content)
        except FileExistsError as e:
            raise VaultIOFailure(f"File already exists: {path}", path=path) from e
        except OSError as e:
            raise VaultIOFailure(f"Cannot create {path}: {e}", path=path) from e

    def get_stats(self, path: str) -> Optional[FileStats]:
        target = self._resolve(path)
        try:
            st = os.stat(target)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise VaultIOFailure(f"Cannot stat {path}: {e}", path=path) from e
        return FileStats(modified_ms=st.st_mtime_ns // 1_000_000, size=st.st_size)

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()
