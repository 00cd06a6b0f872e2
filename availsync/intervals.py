from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Protocol

from availsync.models import Interval

MINUTES_PER_DAY = 24 * 60
TIME_OF_DAY_PATTERN = re.compile(r"^(\d{2}):(\d{2})(?::\d{2})?$")


class SupportsInterval(Protocol):
    start: datetime
    end: datetime


def overlaps(a: SupportsInterval, b: SupportsInterval) -> bool:
    return a.start < b.end and b.start < a.end


def overlap_seconds(a: SupportsInterval, b: SupportsInterval) -> float:
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    return max(0.0, (end - start).total_seconds())


def bounding_interval(items: Iterable[SupportsInterval]) -> Interval | None:
    collected = list(items)
    if not collected:
        return None
    return Interval(
        start=min(item.start for item in collected),
        end=max(item.end for item in collected),
    )


def to_local(value: datetime, tz: tzinfo = timezone.utc) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def weekday_index(value: datetime) -> int:
    # 0 = Sunday ... 6 = Saturday
    return value.isoweekday() % 7


def parse_time_of_day(value: str) -> int | None:
    matched = TIME_OF_DAY_PATTERN.match(str(value or "").strip())
    if not matched:
        return None
    hours = int(matched.group(1))
    minutes = int(matched.group(2))
    if hours == 24 and minutes == 0:
        return MINUTES_PER_DAY
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def format_time_of_day(minutes: int) -> str:
    if minutes >= MINUTES_PER_DAY:
        return "24:00"
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def weekly_window(target: SupportsInterval, tz: tzinfo = timezone.utc) -> tuple[int, str, str] | None:
    local_start = to_local(target.start, tz)
    local_end = to_local(target.end, tz)
    if local_end <= local_start:
        return None
    start_minutes = local_start.hour * 60 + local_start.minute
    if local_end.date() == local_start.date():
        end_minutes = local_end.hour * 60 + local_end.minute
    elif local_end.date() == local_start.date() + timedelta(days=1) and local_end.time() == time.min:
        end_minutes = MINUTES_PER_DAY
    else:
        return None
    if start_minutes >= end_minutes:
        return None
    return (
        weekday_index(local_start),
        format_time_of_day(start_minutes),
        format_time_of_day(end_minutes),
    )


def local_date_key(value: datetime, tz: tzinfo = timezone.utc) -> str:
    return to_local(value, tz).date().isoformat()


def local_slot_key(target: SupportsInterval, tz: tzinfo = timezone.utc) -> str:
    start = to_local(target.start, tz)
    end = to_local(target.end, tz)
    return f"{start:%H:%M}-{end:%H:%M}"


def normalize_manual_range(start: datetime, end: datetime, tz: tzinfo = timezone.utc) -> Interval:
    local_start = to_local(start, tz)
    local_end = to_local(end, tz)
    if local_start.date() == local_end.date() and local_end.time() == time.min and local_end <= local_start:
        local_end = local_end + timedelta(days=1)
    return Interval(
        start=local_start.astimezone(timezone.utc),
        end=local_end.astimezone(timezone.utc),
    )
