"""Exception taxonomy for the sync engine."""

from __future__ import annotations

from typing import Optional


class NoteVaultError(Exception):
    """Base class for all notevault errors."""


class StorageFailure(NoteVaultError):
    """The entity store is unavailable or corrupt. Fatal for the current pass."""


class VaultIOFailure(NoteVaultError):
    """A single vault file could not be read or written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ResolutionError(NoteVaultError):
    """Invalid conflict resolution request (bad choice or nothing pending)."""


class IngestValidationError(NoteVaultError):
    """A malformed external record handed to bulk ingest."""

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.record_id = record_id
