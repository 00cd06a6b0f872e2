from __future__ import annotations

import logging
from typing import Iterable

from availsync.conflicts import ConflictDetector
from availsync.intervals import bounding_interval, local_date_key, local_slot_key
from availsync.models import Availability, CandidateDate, ScheduleConfig, ScheduleContext
from availsync.resolver import resolve, resolve_blocks_only
from availsync.state_store import StateStore

logger = logging.getLogger(__name__)


class ScheduleContextBuilder:
    """Read-only view of an owner's schedule, shaped for pre-filling one event's answer form."""

    def __init__(
        self,
        state_store: StateStore,
        schedule_config: ScheduleConfig | None = None,
        conflict_detector: ConflictDetector | None = None,
    ) -> None:
        self.state_store = state_store
        self.schedule_config = schedule_config or ScheduleConfig()
        self.conflict_detector = conflict_detector or ConflictDetector(state_store)

    def build(
        self,
        owner_id: str | None,
        event_id: str,
        candidate_dates: Iterable[CandidateDate],
    ) -> ScheduleContext:
        owner = str(owner_id or "").strip()
        if not owner:
            return ScheduleContext(is_authenticated=False)

        dates = list(candidate_dates)
        window = bounding_interval(dates)
        if window is None:
            return ScheduleContext(is_authenticated=True)

        tz = self.schedule_config.tzinfo
        blocks = self.state_store.list_blocks(owner, window)
        templates = self.state_store.list_templates(owner)
        links = self.state_store.list_links(owner)
        has_sync_targets = any(link.event_id != event_id and link.participant_id for link in links)

        locked = self.conflict_detector.locked_dates(owner, event_id, dates)
        auto_fill: dict[str, bool] = {}
        block_covered: set[str] = set(locked)
        for date in dates:
            if resolve_blocks_only(date, blocks) is not Availability.UNKNOWN:
                block_covered.add(date.id)
            if date.id in locked:
                continue
            value = resolve(date, blocks, templates, tz).to_bool()
            if value is not None:
                auto_fill[date.id] = value

        overrides = self.state_store.list_overrides(owner, event_id)
        uncovered = [date for date in dates if date.id not in block_covered]
        slot_count = len({local_slot_key(date, tz) for date in dates})
        logger.debug(
            "context for owner=%s event=%s: %d locked, %d auto-filled",
            owner,
            event_id,
            len(locked),
            len(auto_fill),
        )
        return ScheduleContext(
            is_authenticated=True,
            has_sync_target_events=has_sync_targets,
            locked_date_ids=[date.id for date in dates if date.id in locked],
            auto_fill_availabilities=auto_fill,
            override_date_ids=[item.event_date_id for item in overrides],
            covered_date_ids=[date.id for date in dates if date.id in locked or date.id in auto_fill],
            uncovered_date_keys=sorted({local_date_key(date.start, tz) for date in uncovered}),
            require_weekly_step=len(uncovered) > 7 * slot_count,
            has_account_seed_data=bool(blocks or templates or locked),
        )
