from datetime import datetime, timezone

from availsync.errors import NotAuthenticatedError, ValidationError
from availsync.models import BlockSource, CandidateDate, ScheduleConfig, TemplateSource
from availsync.preferences import PreferenceStore

from tests.store_fixtures import StoreTestCase, at


class PreferenceStoreTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.preferences = PreferenceStore(self.store, ScheduleConfig())
        self.dates = self.add_event(
            "ev-a",
            [
                ("d1", at(2, 9), at(2, 10)),
                ("d2", at(3, 9), at(3, 10)),
            ],
        )

    def test_upsert_blocks_is_idempotent(self) -> None:
        self.preferences.upsert_blocks("u1", "ev-a", self.dates, ["d1"])
        self.preferences.upsert_blocks("u1", "ev-a", self.dates, ["d1"])

        blocks = self.preferences.list_blocks("u1")
        self.assertEqual(len(blocks), 2)
        by_start = {block.start: block for block in blocks}
        self.assertTrue(by_start[at(2, 9)].availability)
        self.assertFalse(by_start[at(3, 9)].availability)
        self.assertTrue(all(block.source is BlockSource.EVENT for block in blocks))

    def test_upsert_blocks_replaces_value_for_same_range(self) -> None:
        self.preferences.upsert_blocks("u1", "ev-a", self.dates, ["d1"])
        self.preferences.upsert_blocks("u1", "ev-a", self.dates, ["d2"])

        by_start = {block.start: block.availability for block in self.preferences.list_blocks("u1")}
        self.assertEqual(by_start, {at(2, 9): False, at(3, 9): True})

    def test_upsert_blocks_skips_empty_ranges(self) -> None:
        dates = [CandidateDate(id="bad", start=at(2, 10), end=at(2, 10))]
        self.assertEqual(self.preferences.upsert_blocks("u1", "ev-a", dates, ["bad"]), 0)
        self.assertEqual(self.preferences.list_blocks("u1"), [])

    def test_writes_require_owner(self) -> None:
        with self.assertRaises(NotAuthenticatedError):
            self.preferences.upsert_blocks(None, "ev-a", self.dates, [])
        with self.assertRaises(NotAuthenticatedError):
            self.preferences.save_overrides("  ", "ev-a", ["d1"], [])

    def test_save_overrides_noop_when_empty(self) -> None:
        self.preferences.save_overrides("u1", "ev-a", ["d1"], [])
        self.assertEqual(self.preferences.save_overrides("u1", "ev-a", [], ["d1"]), 0)

        overrides = self.preferences.list_overrides("u1", "ev-a")
        self.assertEqual([(item.event_date_id, item.availability) for item in overrides], [("d1", False)])

    def test_save_overrides_clears_stale_entries_for_event(self) -> None:
        self.add_event("ev-b", [("b1", at(4, 9), at(4, 10))])
        self.preferences.save_overrides("u1", "ev-a", ["d1", "d2"], ["d2"])
        self.preferences.save_overrides("u1", "ev-b", ["b1"], ["b1"])
        self.preferences.save_overrides("u1", "ev-a", ["d2"], [])

        overrides = self.preferences.list_overrides("u1", "ev-a")
        self.assertEqual([(item.event_date_id, item.availability) for item in overrides], [("d2", False)])
        self.assertEqual(len(self.preferences.list_overrides("u1", "ev-b")), 1)

    def test_create_manual_template_validates_input(self) -> None:
        with self.assertRaisesRegex(ValidationError, "weekday"):
            self.preferences.create_manual_template(
                "u1", weekday=7, start_time="09:00", end_time="10:00", availability=True
            )
        with self.assertRaisesRegex(ValidationError, "earlier"):
            self.preferences.create_manual_template(
                "u1", weekday=1, start_time="10:00", end_time="09:00", availability=True
            )

    def test_create_manual_template_accepts_midnight_end(self) -> None:
        template = self.preferences.create_manual_template(
            "u1", weekday=5, start_time="22:00", end_time="00:00", availability=False
        )
        self.assertEqual(template.key, (5, "22:00", "24:00"))

        stored = self.preferences.list_templates("u1")
        self.assertEqual(len(stored), 1)
        self.assertIs(stored[0].source, TemplateSource.MANUAL)
        self.assertTrue(self.preferences.remove_template("u1", stored[0].id))
        self.assertFalse(self.preferences.remove_template("u1", stored[0].id))

    def test_weekly_templates_are_compacted(self) -> None:
        self.preferences.save_weekly_templates(
            "u1",
            [
                {"weekday": 1, "start_time": "09:00", "end_time": "12:00", "availability": True},
                {"weekday": 1, "start_time": "12:00", "end_time": "18:00", "availability": True},
            ],
        )
        self.preferences.save_weekly_templates(
            "u1",
            [{"weekday": 1, "start_time": "10:00", "end_time": "11:00", "availability": False}],
        )

        rows = [(item.start_time, item.end_time, item.availability) for item in self.preferences.list_templates("u1")]
        self.assertEqual(
            rows,
            [
                ("09:00", "10:00", True),
                ("10:00", "11:00", False),
                ("11:00", "18:00", True),
            ],
        )

    def test_weekly_templates_require_a_valid_row(self) -> None:
        with self.assertRaisesRegex(ValidationError, "no valid weekly rows"):
            self.preferences.save_weekly_templates(
                "u1",
                [{"weekday": 9, "start_time": "09:00", "end_time": "10:00", "availability": True}],
            )

    def test_manual_block_midnight_end_rolls_forward(self) -> None:
        block = self.preferences.save_manual_block(
            "u1",
            start=datetime(2026, 3, 2, 20, tzinfo=timezone.utc),
            end=datetime(2026, 3, 2, 0, tzinfo=timezone.utc),
            availability=False,
        )
        self.assertEqual(block.end, datetime(2026, 3, 3, 0, tzinfo=timezone.utc))

        stored = self.preferences.list_blocks("u1")
        self.assertEqual(len(stored), 1)
        self.assertIs(stored[0].source, BlockSource.MANUAL)
        self.assertIsNone(stored[0].event_id)

    def test_manual_block_rejects_inverted_range(self) -> None:
        with self.assertRaises(ValidationError):
            self.preferences.save_manual_block("u1", start=at(2, 12), end=at(2, 11), availability=True)

    def test_manual_block_replaces_existing(self) -> None:
        self.preferences.save_manual_block("u1", start=at(2, 9), end=at(2, 10), availability=True)
        original = self.preferences.list_blocks("u1")[0]

        self.preferences.save_manual_block(
            "u1",
            start=at(2, 13),
            end=at(2, 14),
            availability=False,
            replace_block_id=original.id,
        )

        blocks = self.preferences.list_blocks("u1")
        self.assertEqual([(block.start, block.availability) for block in blocks], [(at(2, 13), False)])
        self.assertTrue(self.preferences.remove_block("u1", blocks[0].id))
        self.assertEqual(self.preferences.list_blocks("u1"), [])

    def test_upsert_link_updates_in_place(self) -> None:
        self.preferences.upsert_link("u1", "ev-a", "p1")
        self.preferences.upsert_link("u1", "ev-a", "p2", auto_sync=False)

        links = self.preferences.list_links("u1")
        self.assertEqual(len(links), 1)
        self.assertEqual(links[0].participant_id, "p2")
        self.assertFalse(links[0].auto_sync)

    def test_upsert_link_without_auto_sync_keeps_opt_out(self) -> None:
        self.preferences.upsert_link("u1", "ev-a", "p1", auto_sync=False)

        link = self.preferences.upsert_link("u1", "ev-a", "p1")

        self.assertFalse(link.auto_sync)
        self.assertFalse(self.preferences.list_links("u1")[0].auto_sync)

    def test_new_link_defaults_to_auto_sync(self) -> None:
        link = self.preferences.upsert_link("u1", "ev-a", "p1")
        self.assertTrue(link.auto_sync)
