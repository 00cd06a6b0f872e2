from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from availsync.errors import ValidationError, require_owner
from availsync.intervals import normalize_manual_range
from availsync.models import (
    AvailabilityOverride,
    BlockSource,
    CandidateDate,
    ScheduleBlock,
    ScheduleConfig,
    ScheduleTemplate,
    TemplateSource,
    UserEventLink,
)
from availsync.state_store import StateStore
from availsync.templates import WeeklyRow, compact_weekly_rows, normalize_weekly_row

logger = logging.getLogger(__name__)

OVERRIDE_REASON_CONFLICT = "conflict_override"


class PreferenceStore:
    def __init__(self, state_store: StateStore, schedule_config: ScheduleConfig | None = None) -> None:
        self.state_store = state_store
        self.schedule_config = schedule_config or ScheduleConfig()

    # Event answers.

    def upsert_blocks(
        self,
        owner_id: str | None,
        event_id: str,
        dates: Iterable[CandidateDate],
        selected_date_ids: Iterable[str],
    ) -> int:
        owner = require_owner(owner_id)
        selected = set(selected_date_ids)
        blocks = [
            ScheduleBlock(
                owner_id=owner,
                start=date.start,
                end=date.end,
                availability=date.id in selected,
                source=BlockSource.EVENT,
                event_id=event_id,
            )
            for date in dates
            if date.start < date.end
        ]
        written = self.state_store.upsert_blocks(owner, blocks, event_id=event_id)
        logger.debug("upserted %d event blocks for owner=%s event=%s", written, owner, event_id)
        return written

    def save_overrides(
        self,
        owner_id: str | None,
        event_id: str,
        override_date_ids: Iterable[str],
        selected_date_ids: Iterable[str],
    ) -> int:
        owner = require_owner(owner_id)
        override_ids = list(dict.fromkeys(override_date_ids))
        if not override_ids:
            return 0
        selected = set(selected_date_ids)
        overrides = [
            AvailabilityOverride(
                owner_id=owner,
                event_id=event_id,
                event_date_id=date_id,
                availability=date_id in selected,
                reason=OVERRIDE_REASON_CONFLICT,
            )
            for date_id in override_ids
        ]
        return self.state_store.save_overrides(owner, event_id, overrides)

    def list_overrides(self, owner_id: str | None, event_id: str) -> list[AvailabilityOverride]:
        return self.state_store.list_overrides(require_owner(owner_id), event_id)

    # Links.

    def upsert_link(
        self,
        owner_id: str | None,
        event_id: str,
        participant_id: str | None = None,
        auto_sync: bool | None = None,
    ) -> UserEventLink:
        # auto_sync=None keeps the stored opt-in; new links default to syncing.
        link = UserEventLink(
            owner_id=require_owner(owner_id),
            event_id=event_id,
            participant_id=participant_id or None,
            auto_sync=True if auto_sync is None else auto_sync,
        )
        self.state_store.upsert_link(link, keep_auto_sync=auto_sync is None)
        return self.state_store.get_link(link.owner_id, event_id) or link

    def list_links(self, owner_id: str | None) -> list[UserEventLink]:
        return self.state_store.list_links(require_owner(owner_id))

    # Manual templates.

    def create_manual_template(
        self,
        owner_id: str | None,
        *,
        weekday: int,
        start_time: str,
        end_time: str,
        availability: bool,
    ) -> ScheduleTemplate:
        owner = require_owner(owner_id)
        if isinstance(weekday, bool) or not isinstance(weekday, int) or not 0 <= weekday <= 6:
            raise ValidationError("weekday must be between 0 and 6")
        row = normalize_weekly_row(
            weekday=weekday,
            start_time=start_time,
            end_time=end_time,
            availability=availability,
        )
        if row is None:
            raise ValidationError("start time must be earlier than end time")
        template = ScheduleTemplate(
            owner_id=owner,
            weekday=row.weekday,
            start_time=row.start_time,
            end_time=row.end_time,
            availability=row.availability,
            source=TemplateSource.MANUAL,
            sample_count=1,
        )
        self.state_store.upsert_templates(owner, [template])
        return template

    def remove_template(self, owner_id: str | None, template_id: int) -> bool:
        return self.state_store.delete_template(require_owner(owner_id), template_id)

    def list_templates(self, owner_id: str | None) -> list[ScheduleTemplate]:
        return self.state_store.list_templates(require_owner(owner_id))

    def save_weekly_templates(self, owner_id: str | None, rows: Iterable[dict[str, Any]]) -> int:
        owner = require_owner(owner_id)
        incoming: list[WeeklyRow] = []
        for item in rows:
            row = normalize_weekly_row(
                weekday=item.get("weekday"),
                start_time=str(item.get("start_time", "")),
                end_time=str(item.get("end_time", "")),
                availability=bool(item.get("availability", False)),
            )
            if row is not None:
                incoming.append(row)
        if not incoming:
            raise ValidationError("no valid weekly rows to save")

        existing = self.state_store.list_templates(owner, TemplateSource.MANUAL)
        existing_rows: list[WeeklyRow] = []
        for template in existing:
            row = normalize_weekly_row(
                weekday=template.weekday,
                start_time=template.start_time,
                end_time=template.end_time,
                availability=template.availability,
            )
            if row is not None:
                existing_rows.append(row)

        compacted = compact_weekly_rows(existing_rows=existing_rows, incoming_rows=incoming)
        keep_keys = {row.key for row in compacted}
        stale_ids = [template.id for template in existing if template.key not in keep_keys and template.id is not None]
        templates = [
            ScheduleTemplate(
                owner_id=owner,
                weekday=row.weekday,
                start_time=row.start_time,
                end_time=row.end_time,
                availability=row.availability,
                source=TemplateSource.MANUAL,
                sample_count=1,
            )
            for row in compacted
        ]
        return self.state_store.replace_manual_templates(owner, templates, stale_ids)

    # Manual blocks.

    def save_manual_block(
        self,
        owner_id: str | None,
        *,
        start: datetime,
        end: datetime,
        availability: bool,
        replace_block_id: int | None = None,
    ) -> ScheduleBlock:
        owner = require_owner(owner_id)
        normalized = normalize_manual_range(start, end, self.schedule_config.tzinfo)
        if normalized.start >= normalized.end:
            raise ValidationError("start time must be earlier than end time")
        block = ScheduleBlock(
            owner_id=owner,
            start=normalized.start,
            end=normalized.end,
            availability=bool(availability),
            source=BlockSource.MANUAL,
            event_id=None,
        )
        self.state_store.replace_block(owner, block, replace_block_id)
        return block

    def list_blocks(self, owner_id: str | None) -> list[ScheduleBlock]:
        return self.state_store.list_blocks(require_owner(owner_id))

    def remove_block(self, owner_id: str | None, block_id: int) -> bool:
        return self.state_store.delete_block(require_owner(owner_id), block_id)
