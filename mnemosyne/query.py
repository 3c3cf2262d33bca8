"""
Filtering, searching and sorting for display.

Pure functions over item lists, as used by the feed and the CLI. The
storage layer already returns items in canonical order; these helpers
narrow and reorder that list for one view.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from .types import Item

DateRange = tuple[datetime, datetime]
DateRangeParser = Callable[[str], Optional[DateRange]]

FILTERS = ("all", "notes", "links", "images", "starred", "archived")
SORTS = ("date", "oldest", "starred", "type")

# Search terms that select a kind instead of matching text
KIND_KEYWORDS = {
    "image": "image", "images": "image", "photo": "image", "photos": "image",
    "note": "note", "notes": "note", "text": "note",
    "link": "link", "links": "link", "url": "link", "urls": "link",
}

_FILTER_KINDS = {"notes": "note", "links": "link", "images": "image"}


def parse_date_range(query: str) -> Optional[DateRange]:
    """
    Parse a date query into an inclusive UTC range, or None.

    Accepts:
    - ISO 8601 duration: P3D (3 days), P1W (1 week), PT1H (1 hour), P1DT12H
      (from now minus the duration, until now)
    - Day: 2024-01-15 or 2024/01/15
    - Month: 2024-01
    - Year: 2024
    """
    q = query.strip().upper()
    if not q:
        return None

    if q.startswith("P") and len(q) > 1:
        delta = _parse_duration(q)
        if delta is None:
            return None
        now = datetime.now(timezone.utc)
        return now - delta, now

    q = q.replace("/", "-")
    for fmt, step in (("%Y-%m-%d", "day"), ("%Y-%m", "month"), ("%Y", "year")):
        try:
            start = datetime.strptime(q, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
        if step == "day":
            end = start + timedelta(days=1)
        elif step == "month":
            end = start.replace(year=start.year + start.month // 12,
                                month=start.month % 12 + 1)
        else:
            end = start.replace(year=start.year + 1)
        return start, end - timedelta(microseconds=1)
    return None


def _parse_duration(duration_str: str) -> Optional[timedelta]:
    """ISO 8601 duration P[n]Y[n]M[n]W[n]DT[n]H[n]M[n]S; months/years approximate."""
    if not re.fullmatch(r"P(\d+[YMWD])*(T(\d+[HMS])+)?", duration_str):
        return None

    years = months = weeks = days = hours = minutes = seconds = 0

    # Split on T to separate date and time parts
    if "T" in duration_str:
        date_part, time_part = duration_str.split("T", 1)
    else:
        date_part, time_part = duration_str, ""

    for match in re.finditer(r"(\d+)([YMWD])", date_part[1:]):
        value, unit = int(match.group(1)), match.group(2)
        if unit == "Y":
            years = value
        elif unit == "M":
            months = value
        elif unit == "W":
            weeks = value
        elif unit == "D":
            days = value

    for match in re.finditer(r"(\d+)([HMS])", time_part):
        value, unit = int(match.group(1)), match.group(2)
        if unit == "H":
            hours = value
        elif unit == "M":
            minutes = value
        elif unit == "S":
            seconds = value

    total_days = years * 365 + months * 30 + weeks * 7 + days
    delta = timedelta(days=total_days, hours=hours, minutes=minutes, seconds=seconds)
    return delta or None


def _matches_text(item: Item, query: str) -> bool:
    fields = [item.content, item.title, item.note, item.kind]
    if any(f and query in f.lower() for f in fields):
        return True
    return any(query in t.lower() for t in item.tags)


def search(
    items: Iterable[Item],
    query: str,
    date_parser: Optional[DateRangeParser] = parse_date_range,
) -> list[Item]:
    """
    Search items.

    A kind keyword ("photos", "links", ...) selects by kind. Otherwise, if
    date_parser recognises the query, items created within the range are
    kept. Otherwise a case-insensitive substring match over content, title,
    note, tags and kind.
    """
    items = list(items)
    q = query.strip().lower()
    if not q:
        return items

    if q in KIND_KEYWORDS:
        kind = KIND_KEYWORDS[q]
        return [i for i in items if i.kind == kind]

    date_range = date_parser(q) if date_parser else None
    if date_range is not None:
        start, end = date_range
        return [i for i in items if start <= i.created <= end]

    return [i for i in items if _matches_text(i, q)]


def apply_filter(items: Iterable[Item], filter_by: str = "all") -> list[Item]:
    """Narrow items to one feed tab. 'all' hides archived items."""
    if filter_by not in FILTERS:
        raise ValueError(f"Unknown filter: {filter_by!r} (expected one of {', '.join(FILTERS)})")
    if filter_by in _FILTER_KINDS:
        kind = _FILTER_KINDS[filter_by]
        return [i for i in items if i.kind == kind]
    if filter_by == "starred":
        return [i for i in items if i.starred]
    if filter_by == "archived":
        return [i for i in items if i.archived]
    return [i for i in items if not i.archived]


def apply_sort(items: Iterable[Item], sort_by: str = "date") -> list[Item]:
    """Reorder items; pinned items always come first."""
    if sort_by not in SORTS:
        raise ValueError(f"Unknown sort: {sort_by!r} (expected one of {', '.join(SORTS)})")
    result = sorted(items, key=lambda i: i.created, reverse=(sort_by != "oldest"))
    if sort_by == "starred":
        result.sort(key=lambda i: not i.starred)
    elif sort_by == "type":
        result.sort(key=lambda i: i.kind)
    result.sort(key=lambda i: not i.pinned)
    return result


def view(
    items: Iterable[Item],
    *,
    filter_by: str = "all",
    sort_by: str = "date",
    query: str = "",
    date_parser: Optional[DateRangeParser] = parse_date_range,
) -> list[Item]:
    """Search, then filter, then sort: what one feed shows."""
    result = search(items, query, date_parser) if query else list(items)
    result = apply_filter(result, filter_by)
    return apply_sort(result, sort_by)
