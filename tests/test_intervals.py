import unittest
from datetime import datetime, timedelta, timezone

from availsync.intervals import (
    bounding_interval,
    normalize_manual_range,
    overlaps,
    parse_time_of_day,
    weekly_window,
)
from availsync.models import Interval


def _iv(start_hour: int, end_hour: int, day: int = 2) -> Interval:
    return Interval(
        start=datetime(2026, 3, day, start_hour, tzinfo=timezone.utc),
        end=datetime(2026, 3, day, end_hour, tzinfo=timezone.utc),
    )


class OverlapTests(unittest.TestCase):
    def test_overlap_is_symmetric(self) -> None:
        pairs = [
            (_iv(9, 11), _iv(10, 12)),
            (_iv(9, 10), _iv(10, 11)),
            (_iv(9, 17), _iv(12, 13)),
            (_iv(9, 10), _iv(14, 15)),
        ]
        for a, b in pairs:
            self.assertEqual(overlaps(a, b), overlaps(b, a))

    def test_interval_overlaps_itself(self) -> None:
        self.assertTrue(overlaps(_iv(9, 10), _iv(9, 10)))

    def test_touching_endpoints_do_not_overlap(self) -> None:
        self.assertFalse(overlaps(_iv(9, 10), _iv(10, 11)))
        self.assertFalse(overlaps(_iv(10, 11), _iv(9, 10)))

    def test_containment_overlaps(self) -> None:
        self.assertTrue(overlaps(_iv(9, 17), _iv(12, 13)))

    def test_bounding_interval(self) -> None:
        self.assertIsNone(bounding_interval([]))
        window = bounding_interval([_iv(12, 13), _iv(9, 10), _iv(15, 18)])
        self.assertEqual(window, Interval(start=_iv(9, 10).start, end=_iv(15, 18).end))


class WeeklyWindowTests(unittest.TestCase):
    def test_monday_window_in_utc(self) -> None:
        self.assertEqual(weekly_window(_iv(9, 10)), (1, "09:00", "10:00"))

    def test_sunday_is_zero(self) -> None:
        self.assertEqual(weekly_window(_iv(9, 10, day=1)), (0, "09:00", "10:00"))

    def test_end_at_next_midnight_is_24(self) -> None:
        target = Interval(
            start=datetime(2026, 3, 2, 22, tzinfo=timezone.utc),
            end=datetime(2026, 3, 3, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(weekly_window(target), (1, "22:00", "24:00"))

    def test_multi_day_range_has_no_window(self) -> None:
        target = Interval(
            start=datetime(2026, 3, 2, 22, tzinfo=timezone.utc),
            end=datetime(2026, 3, 3, 2, tzinfo=timezone.utc),
        )
        self.assertIsNone(weekly_window(target))

    def test_window_uses_local_wall_clock(self) -> None:
        tokyo = timezone(timedelta(hours=9))
        target = Interval(
            start=datetime(2026, 3, 1, 23, tzinfo=timezone.utc),
            end=datetime(2026, 3, 2, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(weekly_window(target, tokyo), (1, "08:00", "09:00"))

    def test_parse_time_of_day(self) -> None:
        self.assertEqual(parse_time_of_day("09:30"), 570)
        self.assertEqual(parse_time_of_day("09:30:00"), 570)
        self.assertEqual(parse_time_of_day("24:00"), 1440)
        self.assertIsNone(parse_time_of_day("24:30"))
        self.assertIsNone(parse_time_of_day("9:30"))
        self.assertIsNone(parse_time_of_day(""))


class ManualRangeTests(unittest.TestCase):
    def test_same_day_midnight_end_rolls_to_next_day(self) -> None:
        normalized = normalize_manual_range(
            datetime(2026, 3, 2, 20, tzinfo=timezone.utc),
            datetime(2026, 3, 2, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(normalized.end, datetime(2026, 3, 3, 0, tzinfo=timezone.utc))

    def test_regular_range_is_unchanged(self) -> None:
        normalized = normalize_manual_range(
            datetime(2026, 3, 2, 9, tzinfo=timezone.utc),
            datetime(2026, 3, 2, 10, tzinfo=timezone.utc),
        )
        self.assertEqual(normalized, _iv(9, 10))


if __name__ == "__main__":
    unittest.main()
