from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from availsync.errors import StoreError, require_owner
from availsync.models import (
    ApplyResult,
    AvailabilityEntry,
    BatchSyncResult,
    EventSyncOutcome,
    SyncScope,
    UserEventLink,
)
from availsync.state_store import StateStore
from availsync.sync_preview import SyncInputs, SyncPreviewBuilder, applied_value, select_links

logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncApplier:
    def __init__(self, state_store: StateStore, preview_builder: SyncPreviewBuilder | None = None) -> None:
        self.state_store = state_store
        self.preview_builder = preview_builder or SyncPreviewBuilder(state_store)

    def _audit(
        self,
        *,
        owner_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        try:
            self.state_store.record_audit_event(
                owner_id=owner_id,
                event_id=event_id,
                action=action,
                details=details,
                run_id=run_id,
            )
        except StoreError as exc:
            logger.warning("audit write failed for owner=%s event=%s: %s", owner_id, event_id, exc)

    def apply(
        self,
        owner_id: str | None,
        event_id: str,
        selected_availabilities: Mapping[str, bool] | None = None,
        overwrite_protected: bool = False,
        allow_finalized: bool = False,
        exclude_event_id: str | None = None,
    ) -> ApplyResult:
        owner = str(owner_id or "").strip()
        if not owner:
            return ApplyResult(success=False, message="login required", code="login_required")

        try:
            link = self.state_store.get_link(owner, event_id)
            if link is None or not link.participant_id:
                return ApplyResult(success=False, message="not linked to this event", code="not_linked")
            event = self.state_store.get_event(event_id)
            if event is None:
                return ApplyResult(success=False, message="event not found", code="not_linked")
            if event.is_finalized and not allow_finalized:
                return ApplyResult(
                    success=False,
                    message="event is finalized; allow finalized updates to apply changes",
                    code="event_finalized",
                )
            inputs = self.preview_builder.load_inputs(owner)
            ignored = [exclude_event_id] if exclude_event_id and exclude_event_id != event_id else []
            target = self.preview_builder.build_event(inputs, link, ignored)
        except StoreError as exc:
            logger.error("loading sync state failed: %s", exc.context())
            return ApplyResult(success=False, message="failed to update event", code="store_error")
        if target is None:
            return ApplyResult(success=False, message="event not found", code="not_linked")

        selections = dict(selected_availabilities or {})
        entries = [
            AvailabilityEntry(
                event_date_id=row.event_date_id,
                available=applied_value(row, selections, overwrite_protected),
            )
            for row in target.dates
        ]
        updated_count = sum(1 for row, entry in zip(target.dates, entries) if entry.available != row.current)

        try:
            self.state_store.replace_availability(link.participant_id, event_id, entries)
        except StoreError as exc:
            logger.error("apply failed: %s", exc.context())
            return ApplyResult(success=False, message="failed to update event", code="store_error")

        self._audit(
            owner_id=owner,
            event_id=event_id,
            action="apply_sync",
            details={
                "updated_count": updated_count,
                "overwrite_protected": overwrite_protected,
                "allow_finalized": allow_finalized,
                "exclude_event_id": exclude_event_id,
            },
        )
        if updated_count == 0:
            return ApplyResult(success=True, message="no changes to apply", code="no_changes")
        return ApplyResult(success=True, message="event updated", code="applied", updated_count=updated_count)

    def _sync_link(
        self,
        inputs: SyncInputs,
        link: UserEventLink,
        *,
        ignore_event_ids: Iterable[str],
        allow_finalized: bool,
    ) -> EventSyncOutcome:
        try:
            target = self.preview_builder.build_event(inputs, link, ignore_event_ids)
            if target is None:
                return EventSyncOutcome(event_id=link.event_id, status="skipped", message="event not found")
            if target.is_finalized and not allow_finalized:
                return EventSyncOutcome(event_id=link.event_id, status="skipped", message="event is finalized")
            entries = [
                AvailabilityEntry(event_date_id=row.event_date_id, available=row.desired) for row in target.dates
            ]
            changes = sum(1 for row in target.dates if row.desired != row.current)
            self.state_store.replace_availability(link.participant_id, link.event_id, entries)
        except StoreError as exc:
            logger.error("sync failed for event %s: %s", link.event_id, exc.context())
            return EventSyncOutcome(event_id=link.event_id, status="failed", message=str(exc))
        return EventSyncOutcome(event_id=link.event_id, status="synced", changes_applied=changes)

    def sync_user_availabilities(
        self,
        owner_id: str | None,
        scope: SyncScope | str = SyncScope.ALL,
        current_event_id: str | None = None,
        allow_finalized: bool = False,
        trigger: str = "answer",
    ) -> BatchSyncResult:
        started_at = datetime.now(timezone.utc)
        owner = require_owner(owner_id)
        scope = SyncScope(scope)

        try:
            inputs = self.preview_builder.load_inputs(owner)
        except StoreError as exc:
            logger.error("batch sync could not load state: %s", exc.context())
            return BatchSyncResult(
                status="failed",
                message="failed to load schedule state",
                duration_ms=_elapsed_ms(started_at),
                changes_applied=0,
                failures=1,
                trigger=trigger,
            )

        links = [
            link
            for link in select_links(inputs.links, scope, current_event_id)
            if scope is SyncScope.CURRENT or link.auto_sync
        ]
        if not links:
            return BatchSyncResult(
                status="skipped",
                message="no linked events to sync",
                duration_ms=_elapsed_ms(started_at),
                changes_applied=0,
                failures=0,
                trigger=trigger,
            )

        try:
            run_id: int | None = self.state_store.start_sync_run(owner_id=owner, trigger=trigger)
        except StoreError as exc:
            logger.warning("could not record sync run for owner=%s: %s", owner, exc)
            run_id = None

        ignored = [current_event_id] if scope is SyncScope.ALL and current_event_id else []
        outcomes: list[EventSyncOutcome] = []
        for link in links:
            outcome = self._sync_link(inputs, link, ignore_event_ids=ignored, allow_finalized=allow_finalized)
            outcomes.append(outcome)
            self._audit(
                owner_id=owner,
                event_id=link.event_id,
                action=f"sync_{outcome.status}",
                details={"trigger": trigger, "message": outcome.message, "changes": outcome.changes_applied},
                run_id=run_id,
            )

        failures = sum(1 for item in outcomes if item.status == "failed")
        changes_applied = sum(item.changes_applied for item in outcomes)
        if failures == 0:
            status = "success"
        elif failures == len(outcomes):
            status = "failed"
        else:
            status = "partial"
        message = f"synced {len(outcomes) - failures} of {len(outcomes)} events"
        duration_ms = _elapsed_ms(started_at)

        if run_id is not None:
            try:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status=status,
                    message=message,
                    duration_ms=duration_ms,
                    changes_applied=changes_applied,
                    failures=failures,
                )
            except StoreError as exc:
                logger.warning("could not finish sync run %s: %s", run_id, exc)

        return BatchSyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            failures=failures,
            trigger=trigger,
            outcomes=outcomes,
        )
