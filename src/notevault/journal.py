"""Journal path and template resolution.

Pure functions: map a calendar date to a vault-relative markdown path and
back, render the daily note skeleton, and merge an agenda block into an
existing note body. No I/O happens here.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from pathlib import PurePosixPath
from typing import Iterable, Optional, Union

from . import config
from .models import AgendaItem

DateLike = Union[date, datetime, str]

_PLACEHOLDERS = {"%Y": r"(\d{4})", "%m": r"(\d{2})", "%d": r"(\d{2})"}
_PLACEHOLDER_SPLIT = re.compile(r"(%[Ymd])")

_AGENDA_HEADING_RE = re.compile(r"^##\s+Agenda\s*$")
_TOP_HEADING_RE = re.compile(r"^# ")
_SECTION_END_RE = re.compile(r"^#{1,2}\s")


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _folder(folder: Optional[str]) -> str:
    config.init()
    return config.JOURNAL_FOLDER if folder is None else folder


def _date_format(date_format: Optional[str]) -> str:
    config.init()
    return date_format or config.JOURNAL_DATE_FORMAT


# --- Paths ---

def format_date(value: DateLike, date_format: Optional[str] = None) -> str:
    """Render a date with the %Y/%m/%d placeholders of the journal format."""
    d = _as_date(value)
    return (
        _date_format(date_format)
        .replace("%Y", f"{d.year:04d}")
        .replace("%m", f"{d.month:02d}")
        .replace("%d", f"{d.day:02d}")
    )


def path_for_date(
    value: DateLike,
    folder: Optional[str] = None,
    date_format: Optional[str] = None,
) -> str:
    """Vault-relative path of the daily note, e.g. ``Journal/Day/2024-03-01.md``."""
    filename = format_date(value, date_format) + ".md"
    folder = _folder(folder)
    if not folder:
        return filename
    return str(PurePosixPath(folder) / filename)


def _format_regex(date_format: str) -> tuple[re.Pattern, list[str]]:
    parts = _PLACEHOLDER_SPLIT.split(date_format)
    pattern = []
    order = []
    for part in parts:
        if part in _PLACEHOLDERS:
            pattern.append(_PLACEHOLDERS[part])
            order.append(part)
        elif part:
            pattern.append(re.escape(part))
    return re.compile(r"(?:^|/)" + "".join(pattern) + r"\.md$"), order


def date_from_path(path: str, date_format: Optional[str] = None) -> Optional[date]:
    """Inverse of path_for_date. Returns None for anything that isn't a daily note."""
    if not path:
        return None
    regex, order = _format_regex(_date_format(date_format))
    if not {"%Y", "%m", "%d"} <= set(order):
        return None
    match = regex.search(path.replace("\\", "/"))
    if not match:
        return None
    values: dict[str, int] = {}
    for placeholder, group in zip(order, match.groups()):
        number = int(group)
        if values.setdefault(placeholder, number) != number:
            return None
    try:
        return date(values["%Y"], values["%m"], values["%d"])
    except ValueError:
        return None


def entry_id_for_date(value: DateLike) -> str:
    """Store id of a journal entry: the ISO date."""
    return _as_date(value).isoformat()


def is_nested_format(date_format: Optional[str] = None) -> bool:
    """True when the date format spans directories (e.g. ``%Y/%m/%d``)."""
    return "/" in _date_format(date_format)


# --- Templates ---

def heading_for_date(value: DateLike) -> str:
    """Long US-style date, e.g. ``Friday, March 1, 2024``."""
    d = _as_date(value)
    return f"{d:%A}, {d:%B} {d.day}, {d.year}"


def initial_template(value: DateLike) -> str:
    return f"# {heading_for_date(value)}\n\n"


def _format_start(start: datetime) -> str:
    if start.tzinfo is not None:
        start = start.astimezone()
    hour = start.hour % 12 or 12
    suffix = "AM" if start.hour < 12 else "PM"
    return f"{hour}:{start.minute:02d} {suffix}"


def build_agenda_section(events: Iterable[Union[AgendaItem, dict]]) -> str:
    """Render the ``## Agenda`` block. Empty string when there are no events.

    Events are emitted in the order given; callers sort and filter first.
    """
    items = [e if isinstance(e, AgendaItem) else AgendaItem.model_validate(e) for e in events]
    if not items:
        return ""

    lines = [f"{config.AGENDA_HEADING}\n", "\n"]
    for item in items:
        if item.all_day:
            time = "All day"
        elif item.start is not None:
            time = _format_start(item.start)
        else:
            time = ""
        line = f"- **{time}** {item.summary or 'Untitled'}"
        if item.location:
            line += f" _({item.location})_"
        lines.append(line + "\n")
    lines.append("\n")
    return "".join(lines)


def template_with_agenda(value: DateLike, events: Iterable[Union[AgendaItem, dict]]) -> str:
    """Heading, agenda (if any events) and an empty Notes section."""
    return initial_template(value) + build_agenda_section(events) + f"{config.NOTES_HEADING}\n\n"


def _is_blank(line: str) -> bool:
    return not line.strip()


def _find_agenda_span(lines: list[str]) -> Optional[tuple[int, int]]:
    """Line span of the existing agenda: its heading up to the next level 1-2
    heading or the end of the text."""
    for i, line in enumerate(lines):
        if not _AGENDA_HEADING_RE.match(line.rstrip("\r\n")):
            continue
        j = i + 1
        while j < len(lines) and not _SECTION_END_RE.match(lines[j]):
            j += 1
        return i, j
    return None


def _after_inserted_block(rest: list[str]) -> str:
    """Text that follows a newly inserted agenda.

    Body text right after the block would be read back as part of the agenda
    on the next upsert, so it is put under the Notes heading.
    """
    tail = "".join(rest)
    if rest and not _SECTION_END_RE.match(rest[0]):
        return f"{config.NOTES_HEADING}\n\n" + tail
    return tail


def upsert_agenda_section(content: str, section: str) -> str:
    """Replace the agenda section in place, else insert it after the first
    top-level heading, else prepend it.

    An existing section runs from its heading to the next ``#``/``##``
    heading or the end of the text. Applying the same section twice yields
    the same document as applying it once.
    """
    if not section:
        return content

    block = section.rstrip("\n") + "\n\n"
    lines = content.splitlines(keepends=True)

    span = _find_agenda_span(lines)
    if span is not None:
        start, end = span
        return "".join(lines[:start]) + block + "".join(lines[end:])

    for i, line in enumerate(lines):
        if _TOP_HEADING_RE.match(line):
            j = i + 1
            while j < len(lines) and _is_blank(lines[j]):
                j += 1
            head = line.rstrip("\r\n") + "\n\n"
            return "".join(lines[:i]) + head + block + _after_inserted_block(lines[j:])

    j = 0
    while j < len(lines) and _is_blank(lines[j]):
        j += 1
    return block + _after_inserted_block(lines[j:])
