from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class Availability(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def from_bool(cls, value: bool) -> "Availability":
        return cls.AVAILABLE if value else cls.UNAVAILABLE

    def to_bool(self) -> bool | None:
        if self is Availability.AVAILABLE:
            return True
        if self is Availability.UNAVAILABLE:
            return False
        return None


class BlockSource(str, Enum):
    MANUAL = "manual"
    EVENT = "event"


class TemplateSource(str, Enum):
    MANUAL = "manual"
    LEARNED = "learned"


class SyncScope(str, Enum):
    CURRENT = "current"
    ALL = "all"


@dataclass
class StorageConfig:
    db_path: str = "data/availsync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/availsync.db")).strip() or "data/availsync.db")


@dataclass
class ScheduleConfig:
    timezone: str = "UTC"
    learning_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleConfig":
        data = data or {}
        name = str(data.get("timezone", "UTC")).strip() or "UTC"
        try:
            resolve_timezone(name)
        except (ZoneInfoNotFoundError, ValueError):
            name = "UTC"
        return cls(
            timezone=name,
            learning_enabled=bool(data.get("learning_enabled", True)),
        )

    @property
    def tzinfo(self) -> tzinfo:
        return resolve_timezone(self.timezone)


@dataclass
class SyncConfig:
    include_unchanged: bool = False
    recent_runs_limit: int = 20

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            include_unchanged=bool(data.get("include_unchanged", False)),
            recent_runs_limit=max(1, int(data.get("recent_runs_limit", 20))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            schedule=ScheduleConfig.from_dict(data.get("schedule")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime


@dataclass
class CandidateDate:
    id: str
    start: datetime
    end: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CandidateDate":
        start = parse_iso_datetime(data.get("start"))
        end = parse_iso_datetime(data.get("end"))
        if start is None or end is None:
            raise ValueError("candidate date requires start and end")
        return cls(id=str(data.get("id", "")).strip(), start=start, end=end)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "start": serialize_datetime(self.start), "end": serialize_datetime(self.end)}


@dataclass
class ScheduleBlock:
    owner_id: str
    start: datetime
    end: datetime
    availability: bool
    source: BlockSource = BlockSource.MANUAL
    event_id: str | None = None
    id: int | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "availability": self.availability,
            "source": self.source.value,
            "event_id": self.event_id,
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class ScheduleTemplate:
    owner_id: str
    weekday: int
    start_time: str
    end_time: str
    availability: bool
    source: TemplateSource = TemplateSource.MANUAL
    sample_count: int = 1
    id: int | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[int, str, str]:
        return (self.weekday, self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "weekday": self.weekday,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "availability": self.availability,
            "source": self.source.value,
            "sample_count": self.sample_count,
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class AvailabilityOverride:
    owner_id: str
    event_id: str
    event_date_id: str
    availability: bool
    reason: str = "conflict_override"
    updated_at: datetime | None = None


@dataclass
class UserEventLink:
    owner_id: str
    event_id: str
    participant_id: str | None = None
    auto_sync: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FinalizedDate:
    event_id: str
    event_date_id: str
    start: datetime
    end: datetime


@dataclass
class EventInfo:
    id: str
    title: str = ""
    public_token: str = ""
    is_finalized: bool = False


@dataclass
class AvailabilityEntry:
    event_date_id: str
    available: bool


@dataclass
class ScheduleContext:
    is_authenticated: bool = False
    has_sync_target_events: bool = False
    locked_date_ids: list[str] = field(default_factory=list)
    auto_fill_availabilities: dict[str, bool] = field(default_factory=dict)
    override_date_ids: list[str] = field(default_factory=list)
    covered_date_ids: list[str] = field(default_factory=list)
    uncovered_date_keys: list[str] = field(default_factory=list)
    require_weekly_step: bool = False
    has_account_seed_data: bool = False

    @property
    def uncovered_day_count(self) -> int:
        return len(self.uncovered_date_keys)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["uncovered_day_count"] = self.uncovered_day_count
        return payload


@dataclass
class SyncPreviewDate:
    event_date_id: str
    start: datetime
    end: datetime
    current: bool
    desired: bool
    is_protected: bool = False
    selected: bool | None = None

    @property
    def effective(self) -> bool:
        return self.desired if self.selected is None else self.selected

    @property
    def will_change(self) -> bool:
        return self.effective != self.current

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_date_id": self.event_date_id,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "current": self.current,
            "desired": self.desired,
            "selected": self.selected,
            "is_protected": self.is_protected,
            "will_change": self.will_change,
        }


@dataclass
class SyncChanges:
    total: int = 0
    available_to_unavailable: int = 0
    unavailable_to_available: int = 0
    protected: int = 0


@dataclass
class SyncPreviewEvent:
    event_id: str
    title: str = ""
    public_token: str = ""
    is_finalized: bool = False
    dates: list[SyncPreviewDate] = field(default_factory=list)

    @property
    def changes(self) -> SyncChanges:
        changed = [row for row in self.dates if row.will_change]
        return SyncChanges(
            total=len(changed),
            available_to_unavailable=sum(1 for row in changed if row.current and not row.effective),
            unavailable_to_available=sum(1 for row in changed if not row.current and row.effective),
            protected=sum(1 for row in changed if row.is_protected),
        )

    def row(self, event_date_id: str) -> SyncPreviewDate | None:
        for item in self.dates:
            if item.event_date_id == event_date_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "title": self.title,
            "public_token": self.public_token,
            "is_finalized": self.is_finalized,
            "changes": asdict(self.changes),
            "dates": [row.to_dict() for row in self.dates],
        }


@dataclass
class ApplyResult:
    success: bool
    message: str
    code: str
    updated_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventSyncOutcome:
    event_id: str
    status: str
    message: str = ""
    changes_applied: int = 0


@dataclass
class BatchSyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    failures: int
    trigger: str
    outcomes: list[EventSyncOutcome] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "failures": self.failures,
            "trigger": self.trigger,
            "outcomes": [asdict(item) for item in self.outcomes],
            "run_at": serialize_datetime(self.run_at),
        }
