import unittest

from availsync.errors import NotLinkedError
from availsync.models import (
    ScheduleBlock,
    ScheduleConfig,
    SyncPreviewDate,
    SyncPreviewEvent,
    SyncScope,
    UserEventLink,
)
from availsync.preferences import PreferenceStore
from availsync.sync_preview import SyncPreviewBuilder, applied_value, reconcile_after_apply, select_links

from tests.store_fixtures import StoreTestCase, at


def _row(date_id: str, current: bool, desired: bool, protected: bool = False) -> SyncPreviewDate:
    return SyncPreviewDate(
        event_date_id=date_id,
        start=at(2, 9),
        end=at(2, 10),
        current=current,
        desired=desired,
        is_protected=protected,
    )


class SelectLinksTests(unittest.TestCase):
    def setUp(self) -> None:
        self.links = [
            UserEventLink(owner_id="u1", event_id="ev-a", participant_id="pa"),
            UserEventLink(owner_id="u1", event_id="ev-b", participant_id="pb"),
            UserEventLink(owner_id="u1", event_id="ev-c", participant_id=None),
        ]

    def test_current_scope_selects_named_event(self) -> None:
        selected = select_links(self.links, SyncScope.CURRENT, "ev-b")
        self.assertEqual([link.event_id for link in selected], ["ev-b"])

    def test_all_scope_excludes_current_and_unlinked(self) -> None:
        selected = select_links(self.links, "all", "ev-a")
        self.assertEqual([link.event_id for link in selected], ["ev-b"])
        self.assertEqual([link.event_id for link in select_links(self.links, "all")], ["ev-a", "ev-b"])


class PreviewValueTests(unittest.TestCase):
    def test_changes_count_directions(self) -> None:
        event = SyncPreviewEvent(
            event_id="ev-a",
            dates=[
                _row("d1", current=True, desired=False),
                _row("d2", current=False, desired=True, protected=True),
                _row("d3", current=True, desired=True),
            ],
        )
        changes = event.changes
        self.assertEqual(changes.total, 2)
        self.assertEqual(changes.available_to_unavailable, 1)
        self.assertEqual(changes.unavailable_to_available, 1)
        self.assertEqual(changes.protected, 1)
        self.assertEqual(
            changes.total,
            changes.available_to_unavailable + changes.unavailable_to_available,
        )

    def test_selection_overrides_desired(self) -> None:
        row = _row("d1", current=True, desired=False)
        row.selected = True
        self.assertFalse(row.will_change)
        self.assertEqual(SyncPreviewEvent(event_id="ev-a", dates=[row]).changes.total, 0)

    def test_protected_rows_keep_current_unless_forced(self) -> None:
        row = _row("d1", current=False, desired=True, protected=True)
        self.assertFalse(applied_value(row, {}, overwrite_protected=False))
        self.assertFalse(applied_value(row, {"d1": True}, overwrite_protected=False))
        self.assertTrue(applied_value(row, {}, overwrite_protected=True))

    def test_reconcile_moves_applied_values_into_current(self) -> None:
        event = SyncPreviewEvent(
            event_id="ev-a",
            dates=[
                _row("d1", current=True, desired=False),
                _row("d2", current=False, desired=True, protected=True),
            ],
        )
        reconciled = reconcile_after_apply(event, {})

        self.assertEqual([row.current for row in reconciled.dates], [False, False])
        self.assertEqual(reconciled.changes.total, 1)
        self.assertEqual(event.dates[0].current, True)

        forced = reconcile_after_apply(event, {}, overwrite_protected=True)
        self.assertEqual(forced.changes.total, 0)


class SyncPreviewBuilderTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.builder = SyncPreviewBuilder(self.store, ScheduleConfig())
        self.preferences = PreferenceStore(self.store)
        self.add_event("ev-a", [("a1", at(2, 9), at(2, 10))], title="Alpha")
        self.add_event(
            "ev-b",
            [("b1", at(2, 9), at(2, 10)), ("b2", at(3, 9), at(3, 10)), ("b3", at(4, 9), at(4, 10))],
            title="Beta",
        )
        self.link("u1", "ev-a", "pa")
        self.link("u1", "ev-b", "pb")
        self.set_current("pa", "ev-a", {"a1": True})
        self.set_current("pb", "ev-b", {"b1": False, "b2": True, "b3": True})
        self.store.upsert_blocks(
            "u1",
            [
                ScheduleBlock(owner_id="u1", start=at(2, 9), end=at(2, 10), availability=True),
                ScheduleBlock(owner_id="u1", start=at(3, 9), end=at(3, 10), availability=False),
            ],
        )

    def test_preview_desired_values(self) -> None:
        events = self.builder.preview("u1", SyncScope.ALL, "ev-a")

        self.assertEqual([event.event_id for event in events], ["ev-b"])
        rows = {row.event_date_id: row for row in events[0].dates}
        self.assertEqual((rows["b1"].current, rows["b1"].desired), (False, True))
        self.assertEqual((rows["b2"].current, rows["b2"].desired), (True, False))
        # Unknown keeps current.
        self.assertEqual((rows["b3"].current, rows["b3"].desired), (True, True))
        self.assertEqual(events[0].changes.total, 2)

    def test_override_wins_and_is_protected(self) -> None:
        self.preferences.save_overrides("u1", "ev-b", ["b1"], [])

        events = self.builder.preview("u1", SyncScope.CURRENT, "ev-b")

        row = events[0].row("b1")
        self.assertFalse(row.desired)
        self.assertTrue(row.is_protected)
        self.assertFalse(row.will_change)

    def test_conflict_with_finalized_event_forces_unavailable(self) -> None:
        self.add_event("ev-c", [("c1", at(4, 9, 30), at(4, 11))], title="Gamma")
        self.store.add_finalized_date("ev-c", "c1")
        self.link("u1", "ev-c", "pc")

        events = self.builder.preview("u1", SyncScope.CURRENT, "ev-b")

        row = events[0].row("b3")
        self.assertFalse(row.desired)
        self.assertTrue(row.is_protected)

    def test_excluded_event_finalized_dates_do_not_lock(self) -> None:
        self.add_event("ev-c", [("c1", at(4, 9, 30), at(4, 11))], title="Gamma")
        self.store.add_finalized_date("ev-c", "c1")
        self.link("u1", "ev-c", "pc")

        events = self.builder.preview("u1", SyncScope.ALL, "ev-c")

        row = events[0].row("b3")
        self.assertTrue(row.desired)
        self.assertFalse(row.is_protected)

    def test_unchanged_events_omitted_by_default(self) -> None:
        events = self.builder.preview("u1", SyncScope.ALL)
        self.assertEqual([event.event_id for event in events], ["ev-b"])

        events = self.builder.preview("u1", SyncScope.ALL, include_unchanged=True)
        self.assertEqual([event.title for event in events], ["Alpha", "Beta"])

    def test_current_scope_requires_link(self) -> None:
        with self.assertRaises(NotLinkedError):
            self.builder.preview("u1", SyncScope.CURRENT, "ev-missing")

    def test_no_owner_yields_empty_preview(self) -> None:
        self.assertEqual(self.builder.preview(None), [])

    def test_preview_does_not_write(self) -> None:
        self.builder.preview("u1", SyncScope.ALL)
        self.assertEqual(self.current_of("pb"), {"b1": False, "b2": True, "b3": True})


if __name__ == "__main__":
    unittest.main()
