from __future__ import annotations

from typing import Iterable

from availsync.errors import require_owner
from availsync.intervals import overlaps
from availsync.models import CandidateDate, FinalizedDate, UserEventLink
from availsync.state_store import StateStore


def find_locked_dates(
    event_id: str,
    candidate_dates: Iterable[CandidateDate],
    finalized_dates: Iterable[FinalizedDate],
    ignore_event_ids: Iterable[str] = (),
) -> set[str]:
    ignored = {event_id, *ignore_event_ids}
    busy = [item for item in finalized_dates if item.event_id not in ignored]
    if not busy:
        return set()
    return {date.id for date in candidate_dates if any(overlaps(date, item) for item in busy)}


class ConflictDetector:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def finalized_dates_for_links(self, links: Iterable[UserEventLink]) -> list[FinalizedDate]:
        return self.state_store.list_finalized_dates(link.event_id for link in links)

    def locked_dates(
        self,
        owner_id: str | None,
        event_id: str,
        candidate_dates: Iterable[CandidateDate],
    ) -> set[str]:
        owner = require_owner(owner_id)
        links = self.state_store.list_links(owner)
        finalized = self.finalized_dates_for_links(link for link in links if link.event_id != event_id)
        return find_locked_dates(event_id, candidate_dates, finalized)
