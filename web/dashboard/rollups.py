"""
Chart aggregation for the dashboard: daily, ISO-weekly and monthly rollups
"""

import re
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

GRANULARITIES = ("day", "week", "month")
DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def parse_date(value: Any) -> Optional[date]:
    if not isinstance(value, str) or not DATE_PATTERN.fullmatch(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def visits_of(item: Dict[str, Any]) -> int:
    """Visits as a number; anything missing or odd counts as zero"""
    visits = item.get("visits")
    if isinstance(visits, bool) or not isinstance(visits, (int, float)):
        return 0
    return int(visits)


def bucket_key(day: str, granularity: str = "day") -> str:
    """
    Label of the bucket ``day`` falls into.

    Weeks use the ISO week-numbering year, so 2024-12-30 is ``2025-W01``
    and 2021-01-03 is ``2020-W53``.
    """
    parsed = parse_date(day)
    if parsed is None:
        raise ValueError(f"Not a YYYY-MM-DD date: {day!r}")

    if granularity == "day":
        return parsed.isoformat()
    if granularity == "week":
        iso_year, iso_week, _ = parsed.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if granularity == "month":
        return f"{parsed.year}-{parsed.month:02d}"
    raise ValueError(f"Unknown granularity: {granularity!r}")


def aggregate(items: Iterable[Dict[str, Any]], granularity: str = "day") -> List[Dict[str, Any]]:
    """Sum visits per bucket, oldest bucket first"""
    buckets: Dict[str, Dict[str, Any]] = {}
    for item in items:
        day = item.get("date")
        if parse_date(day) is None:
            continue
        key = bucket_key(day, granularity)
        bucket = buckets.setdefault(key, {"bucket": key, "start": day, "visits": 0, "days": 0})
        bucket["visits"] += visits_of(item)
        bucket["days"] += 1
        bucket["start"] = min(bucket["start"], day)

    return sorted(buckets.values(), key=lambda b: b["start"])


def filter_by_range(items: Iterable[Dict[str, Any]], start: Optional[str] = None,
                    end: Optional[str] = None) -> List[Dict[str, Any]]:
    """Inclusive date-range filter; bounds that are not valid dates are ignored"""
    start = start if parse_date(start) else None
    end = end if parse_date(end) else None
    result = []
    for item in items:
        day = item.get("date") or ""
        if start and day < start:
            continue
        if end and day > end:
            continue
        result.append(item)
    return result


def sort_items(items: Iterable[Dict[str, Any]], order: str = "asc") -> List[Dict[str, Any]]:
    return sorted(items, key=lambda item: item.get("date") or "", reverse=(order == "desc"))


def summarize(items: List[Dict[str, Any]]) -> Dict[str, int]:
    return {"rows": len(items), "total_visits": sum(visits_of(item) for item in items)}
