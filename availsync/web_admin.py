from __future__ import annotations

import logging
import os
from typing import Any, Iterable

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from availsync.config_manager import ConfigManager
from availsync.context import ScheduleContextBuilder
from availsync.errors import (
    AvailSyncError,
    NotAuthenticatedError,
    NotLinkedError,
    StoreError,
    ValidationError,
    require_owner,
)
from availsync.learner import TemplateLearner
from availsync.models import ApplyResult, AvailabilityEntry, SyncScope, TemplateSource, parse_iso_datetime
from availsync.preferences import PreferenceStore
from availsync.state_store import StateStore
from availsync.sync_applier import SyncApplier
from availsync.sync_preview import SyncPreviewBuilder

logger = logging.getLogger(__name__)

APPLY_STATUS_CODES = {
    "login_required": 401,
    "not_linked": 409,
    "store_error": 500,
}


class AnswerRequest(BaseModel):
    participant_id: str = Field(min_length=1)
    selected_date_ids: list[str] = Field(default_factory=list)
    override_date_ids: list[str] = Field(default_factory=list)
    sync_other_events: bool = False


class ApplyRequest(BaseModel):
    selected_availabilities: dict[str, bool] = Field(default_factory=dict)
    overwrite_protected: bool = False
    allow_finalized: bool = False
    exclude_event_id: str | None = None


class SyncRunRequest(BaseModel):
    scope: SyncScope = SyncScope.ALL
    current_event_id: str | None = None
    allow_finalized: bool = False


class TemplateCreateRequest(BaseModel):
    weekday: int
    start_time: str
    end_time: str
    availability: bool


class WeeklyTemplatesRequest(BaseModel):
    templates: list[dict[str, Any]] = Field(default_factory=list)


class BlockRequest(BaseModel):
    start: str
    end: str
    availability: bool
    replace_block_id: int | None = None


class LinkRequest(BaseModel):
    participant_id: str | None = None
    auto_sync: bool | None = None


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path or config.storage.db_path)
        self.preferences = PreferenceStore(self.state_store, config.schedule)
        self.context_builder = ScheduleContextBuilder(self.state_store, config.schedule)
        self.learner = TemplateLearner(self.state_store, config.schedule)
        self.preview_builder = SyncPreviewBuilder(self.state_store, config.schedule)
        self.applier = SyncApplier(self.state_store, self.preview_builder)

    def reload_config(self) -> None:
        schedule = self.config_manager.load().schedule
        for component in (self.preferences, self.context_builder, self.learner, self.preview_builder):
            component.schedule_config = schedule

    def record_answer(
        self,
        owner_id: str | None,
        event_id: str,
        *,
        participant_id: str,
        selected_date_ids: Iterable[str],
        override_date_ids: Iterable[str],
        sync_other_events: bool = False,
    ) -> dict[str, Any]:
        owner = require_owner(owner_id)
        dates = self.state_store.list_candidate_dates(event_id)
        if not dates:
            raise ValidationError("event has no candidate dates")
        known_ids = {date.id for date in dates}
        selected = [date_id for date_id in dict.fromkeys(selected_date_ids) if date_id in known_ids]
        overrides = [date_id for date_id in dict.fromkeys(override_date_ids) if date_id in known_ids]
        selected_set = set(selected)

        self.state_store.add_participant(event_id, participant_id)
        self.state_store.replace_availability(
            participant_id,
            event_id,
            [AvailabilityEntry(event_date_id=date.id, available=date.id in selected_set) for date in dates],
        )
        self.preferences.upsert_link(owner, event_id, participant_id)
        blocks = self.preferences.upsert_blocks(owner, event_id, dates, selected)
        self.preferences.save_overrides(owner, event_id, overrides, selected)
        learned = self.learner.learn_from_answer(owner, dates, selected)
        payload: dict[str, Any] = {
            "saved": len(dates),
            "blocks": blocks,
            "learned_templates": len(learned),
        }
        if sync_other_events:
            payload["sync"] = self.applier.sync_user_availabilities(
                owner,
                SyncScope.ALL,
                current_event_id=event_id,
                trigger="answer",
            ).to_dict()
        return payload


def _http_error(exc: AvailSyncError) -> HTTPException:
    if isinstance(exc, NotAuthenticatedError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotLinkedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreError):
        logger.error("request failed: %s", exc.context())
        return HTTPException(status_code=500, detail="failed to save changes")
    return HTTPException(status_code=500, detail="unexpected error")


def _apply_response(result: ApplyResult) -> JSONResponse:
    return JSONResponse(status_code=APPLY_STATUS_CODES.get(result.code, 200), content=result.to_dict())


def create_app() -> FastAPI:
    config_path = os.getenv("AVAILSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("AVAILSYNC_STATE_PATH") or None
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="AvailSync", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        app.state.context.reload_config()
        return {"message": "config updated", "config": updated.to_dict()}

    @app.get("/api/events/{event_id}/schedule-context")
    def schedule_context(event_id: str, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        ctx = app.state.context
        try:
            dates = ctx.state_store.list_candidate_dates(event_id)
            return ctx.context_builder.build(x_owner_id, event_id, dates).to_dict()
        except AvailSyncError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/events/{event_id}/answer")
    def answer(event_id: str, request: AnswerRequest, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            return app.state.context.record_answer(
                x_owner_id,
                event_id,
                participant_id=request.participant_id,
                selected_date_ids=request.selected_date_ids,
                override_date_ids=request.override_date_ids,
                sync_other_events=request.sync_other_events,
            )
        except AvailSyncError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/sync/preview")
    def sync_preview(
        scope: SyncScope = SyncScope.ALL,
        event_id: str | None = None,
        include_unchanged: bool | None = None,
        x_owner_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        ctx = app.state.context
        if include_unchanged is None:
            include_unchanged = ctx.config_manager.load().sync.include_unchanged
        try:
            owner = require_owner(x_owner_id)
            events = ctx.preview_builder.preview(owner, scope, event_id, include_unchanged)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/sync/events/{event_id}/apply")
    def sync_apply(
        event_id: str,
        request: ApplyRequest,
        x_owner_id: str | None = Header(default=None),
    ) -> JSONResponse:
        result = app.state.context.applier.apply(
            x_owner_id,
            event_id,
            request.selected_availabilities,
            overwrite_protected=request.overwrite_protected,
            allow_finalized=request.allow_finalized,
            exclude_event_id=request.exclude_event_id,
        )
        return _apply_response(result)

    @app.post("/api/sync/run")
    def sync_run(request: SyncRunRequest, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            result = app.state.context.applier.sync_user_availabilities(
                x_owner_id,
                request.scope,
                current_event_id=request.current_event_id,
                allow_finalized=request.allow_finalized,
                trigger="manual",
            )
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return result.to_dict()

    @app.get("/api/sync/runs")
    def sync_runs(limit: int | None = None, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        ctx = app.state.context
        limit = limit or ctx.config_manager.load().sync.recent_runs_limit
        try:
            owner = require_owner(x_owner_id)
            runs = ctx.state_store.recent_sync_runs(owner, limit=limit)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"runs": runs}

    @app.get("/api/templates")
    def list_templates(x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            templates = app.state.context.preferences.list_templates(x_owner_id)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {
            "manual": [item.to_dict() for item in templates if item.source is TemplateSource.MANUAL],
            "learned": [item.to_dict() for item in templates if item.source is TemplateSource.LEARNED],
        }

    @app.post("/api/templates")
    def create_template(
        request: TemplateCreateRequest,
        x_owner_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        try:
            template = app.state.context.preferences.create_manual_template(
                x_owner_id,
                weekday=request.weekday,
                start_time=request.start_time,
                end_time=request.end_time,
                availability=request.availability,
            )
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"template": template.to_dict()}

    @app.put("/api/templates/weekly")
    def save_weekly_templates(
        request: WeeklyTemplatesRequest,
        x_owner_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        try:
            count = app.state.context.preferences.save_weekly_templates(x_owner_id, request.templates)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"updated_count": count}

    @app.delete("/api/templates/{template_id}")
    def delete_template(template_id: int, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            removed = app.state.context.preferences.remove_template(x_owner_id, template_id)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        if not removed:
            raise HTTPException(status_code=404, detail="template not found")
        return {"removed": True}

    @app.get("/api/blocks")
    def list_blocks(x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            blocks = app.state.context.preferences.list_blocks(x_owner_id)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"blocks": [block.to_dict() for block in blocks]}

    @app.post("/api/blocks")
    def save_block(request: BlockRequest, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            start = parse_iso_datetime(request.start)
            end = parse_iso_datetime(request.end)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="invalid datetime") from exc
        try:
            block = app.state.context.preferences.save_manual_block(
                x_owner_id,
                start=start,
                end=end,
                availability=request.availability,
                replace_block_id=request.replace_block_id,
            )
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"block": block.to_dict()}

    @app.delete("/api/blocks/{block_id}")
    def delete_block(block_id: int, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            removed = app.state.context.preferences.remove_block(x_owner_id, block_id)
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        if not removed:
            raise HTTPException(status_code=404, detail="block not found")
        return {"removed": True}

    @app.put("/api/links/{event_id}")
    def put_link(event_id: str, request: LinkRequest, x_owner_id: str | None = Header(default=None)) -> dict[str, Any]:
        try:
            link = app.state.context.preferences.upsert_link(
                x_owner_id,
                event_id,
                participant_id=request.participant_id,
                auto_sync=request.auto_sync,
            )
        except AvailSyncError as exc:
            raise _http_error(exc) from exc
        return {"link": link.to_dict()}

    return app


app = create_app()
