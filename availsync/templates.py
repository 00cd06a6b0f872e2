from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from availsync.intervals import MINUTES_PER_DAY, format_time_of_day, parse_time_of_day


@dataclass
class WeeklyRow:
    weekday: int
    start_minutes: int
    end_minutes: int
    availability: bool

    @property
    def start_time(self) -> str:
        return format_time_of_day(self.start_minutes)

    @property
    def end_time(self) -> str:
        return format_time_of_day(self.end_minutes)

    @property
    def key(self) -> tuple[int, str, str]:
        return (self.weekday, self.start_time, self.end_time)


def normalize_weekly_row(
    *,
    weekday: Any,
    start_time: str,
    end_time: str,
    availability: bool,
) -> WeeklyRow | None:
    if isinstance(weekday, bool) or not isinstance(weekday, int) or not 0 <= weekday <= 6:
        return None
    start_minutes = parse_time_of_day(start_time)
    end_minutes = parse_time_of_day(end_time)
    if start_minutes is None or end_minutes is None:
        return None
    if end_minutes == 0 and start_minutes > 0:
        end_minutes = MINUTES_PER_DAY
    if start_minutes >= end_minutes:
        return None
    return WeeklyRow(
        weekday=weekday,
        start_minutes=start_minutes,
        end_minutes=end_minutes,
        availability=bool(availability),
    )


def _covering(rows: list[WeeklyRow], start: int, end: int) -> list[WeeklyRow]:
    return [row for row in rows if row.start_minutes <= start and end <= row.end_minutes]


def compact_weekly_rows(
    *,
    existing_rows: Iterable[WeeklyRow],
    incoming_rows: Iterable[WeeklyRow],
) -> list[WeeklyRow]:
    existing = list(existing_rows)
    incoming = list(incoming_rows)
    result: list[WeeklyRow] = []
    for weekday in range(7):
        day_existing = [row for row in existing if row.weekday == weekday]
        day_incoming = [row for row in incoming if row.weekday == weekday]
        if not day_existing and not day_incoming:
            continue

        boundaries = sorted(
            {row.start_minutes for row in day_existing + day_incoming}
            | {row.end_minutes for row in day_existing + day_incoming}
        )
        merged: list[WeeklyRow] = []
        for start, end in zip(boundaries, boundaries[1:]):
            incoming_cover = _covering(day_incoming, start, end)
            if incoming_cover:
                availability = incoming_cover[-1].availability
            else:
                existing_cover = _covering(day_existing, start, end)
                if not existing_cover:
                    continue
                availability = all(row.availability for row in existing_cover)

            last = merged[-1] if merged else None
            if last is not None and last.end_minutes == start and last.availability == availability:
                last.end_minutes = end
                continue
            merged.append(
                WeeklyRow(weekday=weekday, start_minutes=start, end_minutes=end, availability=availability)
            )
        result.extend(merged)
    return result
