from __future__ import annotations

import logging
import threading
from enum import Enum

from availsync.errors import AvailSyncError, NotLinkedError, StoreError
from availsync.models import ApplyResult, SyncPreviewEvent, SyncScope
from availsync.sync_applier import SyncApplier
from availsync.sync_preview import SyncPreviewBuilder, reconcile_after_apply

logger = logging.getLogger(__name__)


class SessionStateError(AvailSyncError):
    pass


class ReviewState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    APPLYING = "applying"
    ERROR = "error"
    CANCELLED = "cancelled"
    REMOVED = "removed"


class SyncReviewSession:
    """Client-side review of a sync preview: per-event cell edits, apply and cancel.

    Each event moves idle -> loading -> ready|error, then ready -> applying ->
    ready|error, or ready -> cancelled. Events that are clean after an apply,
    and cancelled events, leave the visible list.
    """

    def __init__(self, preview_builder: SyncPreviewBuilder, applier: SyncApplier, owner_id: str) -> None:
        self.preview_builder = preview_builder
        self.applier = applier
        self.owner_id = owner_id
        self.status = ReviewState.IDLE
        self.last_error = ""
        self._lock = threading.RLock()
        self._events: dict[str, SyncPreviewEvent] = {}
        self._states: dict[str, ReviewState] = {}
        self._errors: dict[str, str] = {}
        self._applying: set[str] = set()
        self._exclude_event_id: str | None = None

    @property
    def events(self) -> list[SyncPreviewEvent]:
        with self._lock:
            return [
                event
                for event_id, event in self._events.items()
                if self._states.get(event_id) not in {ReviewState.CANCELLED, ReviewState.REMOVED}
            ]

    def state_of(self, event_id: str) -> ReviewState:
        with self._lock:
            return self._states.get(event_id, ReviewState.IDLE)

    def error_of(self, event_id: str) -> str:
        with self._lock:
            return self._errors.get(event_id, "")

    def load(
        self,
        scope: SyncScope | str = SyncScope.ALL,
        current_event_id: str | None = None,
    ) -> list[SyncPreviewEvent]:
        with self._lock:
            if self._applying:
                raise SessionStateError("cannot reload while an apply is in progress")
            self.status = ReviewState.LOADING
        try:
            loaded = self.preview_builder.preview(self.owner_id, scope, current_event_id)
        except (StoreError, NotLinkedError) as exc:
            with self._lock:
                self.status = ReviewState.ERROR
                self.last_error = str(exc)
            logger.error("loading sync preview failed for owner=%s: %s", self.owner_id, exc)
            return []
        with self._lock:
            self._events = {event.event_id: event for event in loaded}
            self._exclude_event_id = current_event_id if SyncScope(scope) is SyncScope.ALL else None
            self._states = {event.event_id: ReviewState.READY for event in loaded}
            self._errors = {}
            self.status = ReviewState.READY
            self.last_error = ""
        return self.events

    def _require_state(self, event_id: str, expected: ReviewState) -> SyncPreviewEvent:
        state = self._states.get(event_id)
        event = self._events.get(event_id)
        if event is None or state is not expected:
            current = state.value if state else "unknown"
            raise SessionStateError(f"event {event_id} is {current}, expected {expected.value}")
        return event

    def set_cell(self, event_id: str, event_date_id: str, value: bool | None) -> SyncPreviewEvent:
        with self._lock:
            event = self._require_state(event_id, ReviewState.READY)
            row = event.row(event_date_id)
            if row is None:
                raise SessionStateError(f"event {event_id} has no date {event_date_id}")
            row.selected = value
            return event

    def cancel(self, event_id: str) -> None:
        with self._lock:
            self._require_state(event_id, ReviewState.READY)
            self._states[event_id] = ReviewState.CANCELLED

    def apply(
        self,
        event_id: str,
        overwrite_protected: bool = False,
        allow_finalized: bool = False,
    ) -> ApplyResult:
        with self._lock:
            if event_id in self._applying:
                raise SessionStateError(f"apply already in progress for event {event_id}")
            event = self._require_state(event_id, ReviewState.READY)
            if event.is_finalized and not allow_finalized:
                return ApplyResult(
                    success=False,
                    message="event is finalized; allow finalized updates to apply changes",
                    code="event_finalized",
                )
            selections = {row.event_date_id: row.selected for row in event.dates if row.selected is not None}
            exclude_event_id = self._exclude_event_id
            self._applying.add(event_id)
            self._states[event_id] = ReviewState.APPLYING

        try:
            result = self.applier.apply(
                self.owner_id,
                event_id,
                selections,
                overwrite_protected=overwrite_protected,
                allow_finalized=allow_finalized,
                exclude_event_id=exclude_event_id,
            )
        except Exception:
            with self._lock:
                self._states[event_id] = ReviewState.ERROR
                self._errors[event_id] = "apply failed"
                self._applying.discard(event_id)
            raise

        with self._lock:
            if result.success:
                reconciled = reconcile_after_apply(event, selections, overwrite_protected)
                self._events[event_id] = reconciled
                self._states[event_id] = (
                    ReviewState.REMOVED if reconciled.changes.total == 0 else ReviewState.READY
                )
                self._errors.pop(event_id, None)
            else:
                self._states[event_id] = ReviewState.ERROR
                self._errors[event_id] = result.message
            self._applying.discard(event_id)
        return result
