"""Calendar event preparation for the daily agenda block.

Turns stored calendar events into the chronologically sorted AgendaItem list
that journal.build_agenda_section expects: availability markers are stripped
from summaries, free and tentative entries are dropped, and busy blocks that
shadow a "Meeting" placeholder at the same time are removed. The placeholder
itself is rendered as "#work".
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Optional, Union

from .models import AgendaItem, CalendarEvent

logger = logging.getLogger(__name__)

_MARKER_PAREN_RE = re.compile(r"\(\s*(Free|Busy|Tentative)\s*\)", re.IGNORECASE)
_MARKER_WORD_RE = re.compile(r"\b(Free|Busy|Tentative)\b", re.IGNORECASE)
_MULTISPACE_RE = re.compile(r"\s{2,}")
_LEADING_DASH_RE = re.compile(r"^[-–—]\s*")

_HIDDEN_AVAILABILITY = {"free", "tentative"}
MEETING_PLACEHOLDER = "meeting"
MEETING_LABEL = "#work"


def clean_summary(text: Optional[str]) -> str:
    """Strip Free/Busy/Tentative markers. Falls back to 'Untitled'."""
    text = str(text or "Untitled")
    text = _MARKER_PAREN_RE.sub("", text)
    text = _MARKER_WORD_RE.sub("", text)
    text = _MULTISPACE_RE.sub(" ", text)
    text = _LEADING_DASH_RE.sub("", text)
    return text.strip() or "Untitled"


def availability_for(event: dict[str, Any], summary: str) -> Optional[str]:
    """'free', 'busy', 'tentative' or None.

    An explicit availability wins, then the provider transparency flag, then
    a marker word in the raw summary or description.
    """
    if event.get("availability"):
        return str(event["availability"]).lower()

    transparency = str(event.get("transparency") or "").lower()
    if transparency == "transparent":
        return "free"
    if transparency == "opaque":
        return "busy"

    text = f"{summary or ''} {event.get('description') or ''}"
    match = _MARKER_WORD_RE.search(text)
    return match.group(1).lower() if match else None


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000)
    return datetime.fromisoformat(str(value))


def _sort_key(value: Optional[datetime]) -> float:
    return value.timestamp() if value is not None else float("-inf")


def _is_placeholder(item: AgendaItem) -> bool:
    return item.summary.strip().lower() == MEETING_PLACEHOLDER


def prepare_agenda_items(
    events: Iterable[Union[CalendarEvent, dict[str, Any]]],
) -> list[AgendaItem]:
    """Filter and sort calendar events into agenda entries."""
    normalized = []
    for event in events:
        if isinstance(event, CalendarEvent):
            event = event.model_dump()
        raw_summary = event.get("summary") or event.get("title") or "Untitled"
        start = _to_datetime(event.get("start", event.get("start_time")))
        end = _to_datetime(event.get("end", event.get("end_time"))) or start
        normalized.append((
            AgendaItem(
                summary=clean_summary(raw_summary),
                start=start,
                end=end,
                all_day=bool(event.get("all_day", event.get("allDay", False))),
                location=event.get("location") or None,
            ),
            availability_for(event, raw_summary),
        ))

    visible = [(item, avail) for item, avail in normalized if avail not in _HIDDEN_AVAILABILITY]
    meeting_slots = {
        (_sort_key(item.start), _sort_key(item.end))
        for item, _ in visible
        if _is_placeholder(item)
    }
    kept = []
    for item, avail in visible:
        if _is_placeholder(item):
            kept.append(item.model_copy(update={"summary": MEETING_LABEL}))
        elif avail == "busy" and (_sort_key(item.start), _sort_key(item.end)) in meeting_slots:
            continue
        else:
            kept.append(item)
    dropped = len(normalized) - len(kept)
    if dropped:
        logger.debug("Agenda: dropped %d of %d calendar events", dropped, len(normalized))
    return sorted(kept, key=lambda item: _sort_key(item.start))


def day_bounds_ms(day: date) -> tuple[int, int]:
    """Local-midnight window [start, end) for one day, in epoch milliseconds."""
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)
