from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

from availsync.conflicts import find_locked_dates
from availsync.errors import NotLinkedError
from availsync.models import (
    EventInfo,
    FinalizedDate,
    ScheduleBlock,
    ScheduleConfig,
    ScheduleTemplate,
    SyncPreviewDate,
    SyncPreviewEvent,
    SyncScope,
    UserEventLink,
)
from availsync.resolver import resolve
from availsync.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class SyncInputs:
    owner_id: str
    links: list[UserEventLink] = field(default_factory=list)
    blocks: list[ScheduleBlock] = field(default_factory=list)
    templates: list[ScheduleTemplate] = field(default_factory=list)
    finalized: list[FinalizedDate] = field(default_factory=list)
    events: dict[str, EventInfo] = field(default_factory=dict)


def select_links(
    links: Iterable[UserEventLink],
    scope: SyncScope | str,
    current_event_id: str | None = None,
) -> list[UserEventLink]:
    scope = SyncScope(scope)
    selected: list[UserEventLink] = []
    for link in links:
        if not link.participant_id:
            continue
        if scope is SyncScope.CURRENT:
            if current_event_id and link.event_id == current_event_id:
                selected.append(link)
            continue
        if current_event_id and link.event_id == current_event_id:
            continue
        selected.append(link)
    return selected


def applied_value(row: SyncPreviewDate, selections: Mapping[str, bool], overwrite_protected: bool) -> bool:
    if row.is_protected and not overwrite_protected:
        return row.current
    if row.event_date_id in selections:
        return bool(selections[row.event_date_id])
    return row.effective


def reconcile_after_apply(
    event: SyncPreviewEvent,
    applied_selections: Mapping[str, bool],
    overwrite_protected: bool = False,
) -> SyncPreviewEvent:
    """Return the preview as it looks once the apply succeeded, without re-reading the store."""
    dates = [
        replace(
            row,
            current=applied_value(row, applied_selections, overwrite_protected),
            selected=None,
        )
        for row in event.dates
    ]
    return replace(event, dates=dates)


class SyncPreviewBuilder:
    def __init__(self, state_store: StateStore, schedule_config: ScheduleConfig | None = None) -> None:
        self.state_store = state_store
        self.schedule_config = schedule_config or ScheduleConfig()

    def load_inputs(self, owner_id: str) -> SyncInputs:
        links = self.state_store.list_links(owner_id)
        return SyncInputs(
            owner_id=owner_id,
            links=links,
            blocks=self.state_store.list_blocks(owner_id),
            templates=self.state_store.list_templates(owner_id),
            finalized=self.state_store.list_finalized_dates(link.event_id for link in links),
            events=self.state_store.get_events(link.event_id for link in links),
        )

    def build_event(
        self,
        inputs: SyncInputs,
        link: UserEventLink,
        ignore_event_ids: Iterable[str] = (),
    ) -> SyncPreviewEvent | None:
        event = inputs.events.get(link.event_id)
        if event is None or not link.participant_id:
            return None

        tz = self.schedule_config.tzinfo
        candidate_dates = self.state_store.list_candidate_dates(link.event_id)
        overrides = {
            item.event_date_id: item.availability
            for item in self.state_store.list_overrides(inputs.owner_id, link.event_id)
        }
        current = {
            entry.event_date_id: entry.available
            for entry in self.state_store.get_availability(link.participant_id)
        }
        locked = find_locked_dates(link.event_id, candidate_dates, inputs.finalized, ignore_event_ids)

        rows: list[SyncPreviewDate] = []
        for date in candidate_dates:
            current_value = current.get(date.id, False)
            override = overrides.get(date.id)
            if override is not None:
                desired = override
            elif date.id in locked:
                desired = False
            else:
                inferred = resolve(date, inputs.blocks, inputs.templates, tz).to_bool()
                desired = current_value if inferred is None else inferred
            rows.append(
                SyncPreviewDate(
                    event_date_id=date.id,
                    start=date.start,
                    end=date.end,
                    current=current_value,
                    desired=desired,
                    is_protected=override is not None or date.id in locked,
                )
            )
        return SyncPreviewEvent(
            event_id=event.id,
            title=event.title,
            public_token=event.public_token,
            is_finalized=event.is_finalized,
            dates=rows,
        )

    def preview(
        self,
        owner_id: str | None,
        scope: SyncScope | str = SyncScope.ALL,
        current_event_id: str | None = None,
        include_unchanged: bool = False,
    ) -> list[SyncPreviewEvent]:
        owner = str(owner_id or "").strip()
        if not owner:
            return []

        scope = SyncScope(scope)
        inputs = self.load_inputs(owner)
        ignored = [current_event_id] if scope is SyncScope.ALL and current_event_id else []
        targets = select_links(inputs.links, scope, current_event_id)
        if scope is SyncScope.CURRENT and not targets:
            raise NotLinkedError(current_event_id or "")
        output: list[SyncPreviewEvent] = []
        for link in targets:
            preview_event = self.build_event(inputs, link, ignored)
            if preview_event is None:
                logger.warning("skipping linked event %s for owner=%s: event not found", link.event_id, owner)
                continue
            if preview_event.changes.total == 0 and not include_unchanged:
                continue
            output.append(preview_event)
        return sorted(output, key=lambda item: (item.title.casefold(), item.event_id))
