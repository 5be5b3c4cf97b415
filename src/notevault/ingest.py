"""Bulk ingest entry points for external records (calendar, news, research).

Fetchers hand over raw dicts. Each record is validated on its own; malformed
ones are dropped and reported, the rest land in one atomic batch.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel

from .db import bulk_upsert_external, coerce_external, get_change_log_high_water, set_sync_state
from .errors import IngestValidationError
from .models import ExternalKind, IngestResult

logger = logging.getLogger(__name__)


def validate_record(kind: Union[ExternalKind, str], raw: Any) -> BaseModel:
    """Validate one raw record. Raises IngestValidationError."""
    if not isinstance(raw, (dict, BaseModel)):
        raise IngestValidationError(
            f"Expected a mapping for {kind} record, got {type(raw).__name__}",
            kind=str(getattr(kind, "value", kind)),
        )
    return coerce_external(kind, raw)


def ingest_external(
    conn: sqlite3.Connection,
    kind: Union[ExternalKind, str],
    records: Iterable[Any],
    now: Optional[int] = None,
) -> IngestResult:
    """Validate and bulk-upsert a batch of external records.

    Returns counts of received, accepted and dropped records. StorageFailure
    from the batch write propagates; nothing from the batch is committed then.
    """
    kind = ExternalKind(kind)
    records = list(records)
    result = IngestResult(kind=kind, received=len(records))
    if not records:
        return result

    valid = []
    for raw in records:
        try:
            valid.append(validate_record(kind, raw))
        except IngestValidationError as e:
            logger.warning("Dropping %s record: %s", kind.value, e)
            result.errors.append(str(e))
    result.dropped = len(records) - len(valid)

    if valid:
        bulk_upsert_external(conn, kind, valid, now=now)
        result.accepted = len(valid)
        set_sync_state(
            conn,
            kind.value,
            version=get_change_log_high_water(conn, kind.value),
            metadata={"received": result.received, "accepted": result.accepted,
                      "dropped": result.dropped},
            now=now,
        )

    logger.info(
        "Ingested %s: %d accepted, %d dropped", kind.value, result.accepted, result.dropped
    )
    return result
