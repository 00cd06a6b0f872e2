from __future__ import annotations

import logging
from typing import Iterable

from availsync.errors import require_owner
from availsync.intervals import weekly_window
from availsync.models import CandidateDate, ScheduleConfig, ScheduleTemplate, TemplateSource
from availsync.state_store import StateStore

logger = logging.getLogger(__name__)


def reinforce(
    existing: ScheduleTemplate | None,
    chosen: bool,
    *,
    owner_id: str,
    key: tuple[int, str, str],
) -> ScheduleTemplate:
    """Leaky-counter update for one learned weekly window.

    Agreeing answers add a sample; a disagreeing answer removes one, and once
    the counter reaches zero the stored availability flips to the new value
    with a fresh count of one.
    """
    if existing is None:
        weekday, start_time, end_time = key
        return ScheduleTemplate(
            owner_id=owner_id,
            weekday=weekday,
            start_time=start_time,
            end_time=end_time,
            availability=chosen,
            source=TemplateSource.LEARNED,
            sample_count=1,
        )
    if existing.source is not TemplateSource.LEARNED:
        raise ValueError("only learned templates can be reinforced")

    updated = ScheduleTemplate(
        owner_id=existing.owner_id,
        weekday=existing.weekday,
        start_time=existing.start_time,
        end_time=existing.end_time,
        availability=existing.availability,
        source=TemplateSource.LEARNED,
        sample_count=existing.sample_count,
        id=existing.id,
        updated_at=existing.updated_at,
    )
    if existing.availability == chosen:
        updated.sample_count += 1
        return updated
    updated.sample_count -= 1
    if updated.sample_count <= 0:
        updated.availability = chosen
        updated.sample_count = 1
    return updated


class TemplateLearner:
    def __init__(self, state_store: StateStore, schedule_config: ScheduleConfig | None = None) -> None:
        self.state_store = state_store
        self.schedule_config = schedule_config or ScheduleConfig()

    def learn_from_answer(
        self,
        owner_id: str | None,
        candidate_dates: Iterable[CandidateDate],
        selected_date_ids: Iterable[str],
    ) -> list[ScheduleTemplate]:
        owner = require_owner(owner_id)
        if not self.schedule_config.learning_enabled:
            return []

        tz = self.schedule_config.tzinfo
        selected = set(selected_date_ids)
        manual_keys: set[tuple[int, str, str]] = set()
        learned: dict[tuple[int, str, str], ScheduleTemplate] = {}
        for template in self.state_store.list_templates(owner):
            if template.source is TemplateSource.MANUAL:
                manual_keys.add(template.key)
            elif template.source is TemplateSource.LEARNED:
                learned[template.key] = template

        touched: dict[tuple[int, str, str], ScheduleTemplate] = {}
        for date in candidate_dates:
            key = weekly_window(date, tz)
            if key is None or key in manual_keys:
                continue
            updated = reinforce(learned.get(key), date.id in selected, owner_id=owner, key=key)
            learned[key] = updated
            touched[key] = updated

        if touched:
            self.state_store.upsert_templates(owner, touched.values())
            logger.debug("learned %d weekly windows for owner=%s", len(touched), owner)
        return list(touched.values())
