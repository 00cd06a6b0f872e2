import unittest

from availsync.learner import TemplateLearner, reinforce
from availsync.models import ScheduleConfig, ScheduleTemplate, TemplateSource

from tests.store_fixtures import StoreTestCase, at

KEY = (1, "09:00", "10:00")


class ReinforceTests(unittest.TestCase):
    def _run(self, answers: list[bool]) -> list[tuple[bool, int]]:
        template = None
        history = []
        for chosen in answers:
            template = reinforce(template, chosen, owner_id="u1", key=KEY)
            history.append((template.availability, template.sample_count))
        return history

    def test_new_window_starts_with_one_sample(self) -> None:
        self.assertEqual(self._run([True]), [(True, 1)])

    def test_counter_decays_before_flipping(self) -> None:
        # Each disagreement removes one sample; the value flips only once the count reaches zero.
        history = self._run([True, True, True, False, False, False, False])
        self.assertEqual(
            history,
            [(True, 1), (True, 2), (True, 3), (True, 2), (True, 1), (False, 1), (False, 2)],
        )

    def test_single_disagreement_flips_fresh_window(self) -> None:
        self.assertEqual(self._run([True, False]), [(True, 1), (False, 1)])

    def test_rejects_manual_templates(self) -> None:
        manual = ScheduleTemplate(
            owner_id="u1",
            weekday=1,
            start_time="09:00",
            end_time="10:00",
            availability=True,
            source=TemplateSource.MANUAL,
        )
        with self.assertRaises(ValueError):
            reinforce(manual, False, owner_id="u1", key=KEY)


class TemplateLearnerTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.learner = TemplateLearner(self.store, ScheduleConfig())
        self.dates = self.add_event(
            "ev-a",
            [
                ("mon", at(2, 9), at(2, 10)),
                ("tue", at(3, 9), at(3, 10)),
                ("multi", at(4, 22), at(5, 2)),
            ],
        )

    def _learned(self) -> dict[tuple[int, str, str], tuple[bool, int]]:
        return {
            template.key: (template.availability, template.sample_count)
            for template in self.store.list_templates("u1", TemplateSource.LEARNED)
        }

    def test_learns_one_template_per_weekly_window(self) -> None:
        self.learner.learn_from_answer("u1", self.dates, ["mon"])
        self.assertEqual(
            self._learned(),
            {
                (1, "09:00", "10:00"): (True, 1),
                (2, "09:00", "10:00"): (False, 1),
            },
        )

    def test_repeated_answers_accumulate(self) -> None:
        for _ in range(3):
            self.learner.learn_from_answer("u1", self.dates, ["mon"])
        self.learner.learn_from_answer("u1", self.dates, [])
        self.assertEqual(self._learned()[(1, "09:00", "10:00")], (True, 2))
        self.assertEqual(self._learned()[(2, "09:00", "10:00")], (False, 4))

    def test_manual_window_is_not_learned(self) -> None:
        self.store.upsert_templates(
            "u1",
            [
                ScheduleTemplate(
                    owner_id="u1",
                    weekday=1,
                    start_time="09:00",
                    end_time="10:00",
                    availability=False,
                    source=TemplateSource.MANUAL,
                )
            ],
        )
        self.learner.learn_from_answer("u1", self.dates, ["mon"])
        self.assertNotIn((1, "09:00", "10:00"), self._learned())
        manual = self.store.list_templates("u1", TemplateSource.MANUAL)
        self.assertEqual([(item.availability, item.sample_count) for item in manual], [(False, 1)])

    def test_same_window_twice_in_one_answer(self) -> None:
        dates = self.add_event(
            "ev-b",
            [
                ("w1", at(2, 9), at(2, 10)),
                ("w2", at(9, 9), at(9, 10)),
            ],
        )
        self.learner.learn_from_answer("u1", dates, ["w1", "w2"])
        self.assertEqual(self._learned(), {(1, "09:00", "10:00"): (True, 2)})

    def test_disabled_learning_writes_nothing(self) -> None:
        learner = TemplateLearner(self.store, ScheduleConfig(learning_enabled=False))
        self.assertEqual(learner.learn_from_answer("u1", self.dates, ["mon"]), [])
        self.assertEqual(self.store.list_templates("u1"), [])


if __name__ == "__main__":
    unittest.main()
