import unittest

from availsync.conflicts import ConflictDetector, find_locked_dates
from availsync.errors import NotAuthenticatedError
from availsync.models import CandidateDate, FinalizedDate

from tests.store_fixtures import StoreTestCase, at


class FindLockedDatesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.dates = [
            CandidateDate(id="d1", start=at(2, 9), end=at(2, 10)),
            CandidateDate(id="d2", start=at(2, 10), end=at(2, 11)),
            CandidateDate(id="d3", start=at(3, 9), end=at(3, 10)),
        ]

    def test_overlapping_finalized_date_locks(self) -> None:
        finalized = [FinalizedDate(event_id="ev-b", event_date_id="b1", start=at(2, 9, 30), end=at(2, 10, 30))]
        self.assertEqual(find_locked_dates("ev-a", self.dates, finalized), {"d1", "d2"})

    def test_touching_finalized_date_does_not_lock(self) -> None:
        finalized = [FinalizedDate(event_id="ev-b", event_date_id="b1", start=at(2, 11), end=at(2, 12))]
        self.assertEqual(find_locked_dates("ev-a", self.dates, finalized), set())

    def test_own_finalized_dates_never_lock(self) -> None:
        finalized = [FinalizedDate(event_id="ev-a", event_date_id="d1", start=at(2, 9), end=at(2, 10))]
        self.assertEqual(find_locked_dates("ev-a", self.dates, finalized), set())

    def test_ignored_events_do_not_lock(self) -> None:
        finalized = [FinalizedDate(event_id="ev-b", event_date_id="b1", start=at(3, 9), end=at(3, 10))]
        self.assertEqual(find_locked_dates("ev-a", self.dates, finalized, ["ev-b"]), set())
        self.assertEqual(find_locked_dates("ev-a", self.dates, finalized), {"d3"})


class ConflictDetectorTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.detector = ConflictDetector(self.store)
        self.dates = self.add_event("ev-a", [("a1", at(5, 9), at(5, 10)), ("a2", at(6, 9), at(6, 10))])
        self.add_event("ev-b", [("b1", at(5, 9, 30), at(5, 10, 30))])
        self.store.add_finalized_date("ev-b", "b1")

    def test_only_linked_events_lock(self) -> None:
        self.assertEqual(self.detector.locked_dates("u1", "ev-a", self.dates), set())

        self.link("u1", "ev-b", "p-b")
        self.assertEqual(self.detector.locked_dates("u1", "ev-a", self.dates), {"a1"})

    def test_locks_are_isolated_per_owner(self) -> None:
        self.link("u2", "ev-b", "p-b2")
        self.assertEqual(self.detector.locked_dates("u1", "ev-a", self.dates), set())
        self.assertEqual(self.detector.locked_dates("u2", "ev-a", self.dates), {"a1"})

    def test_requires_owner(self) -> None:
        with self.assertRaises(NotAuthenticatedError):
            self.detector.locked_dates("", "ev-a", self.dates)


if __name__ == "__main__":
    unittest.main()
