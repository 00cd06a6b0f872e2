from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from availsync.errors import StoreError
from availsync.models import (
    AvailabilityEntry,
    AvailabilityOverride,
    BlockSource,
    CandidateDate,
    EventInfo,
    FinalizedDate,
    Interval,
    ScheduleBlock,
    ScheduleTemplate,
    TemplateSource,
    UserEventLink,
    parse_iso_datetime,
    serialize_datetime,
)

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _in_clause(values: list[Any]) -> str:
    return ",".join("?" for _ in values)


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(
        self,
        operation: str,
        *,
        owner_id: str | None = None,
        event_id: str | None = None,
    ) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                logger.error(
                    "store operation %s failed (owner=%s, event=%s): %s",
                    operation,
                    owner_id,
                    event_id,
                    exc,
                )
                raise StoreError(operation, owner_id=owner_id, event_id=event_id) from exc
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL DEFAULT '',
            public_token TEXT NOT NULL DEFAULT '',
            is_finalized INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS event_dates (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS finalized_dates (
            event_id TEXT NOT NULL,
            event_date_id TEXT NOT NULL,
            PRIMARY KEY (event_id, event_date_id)
        );

        CREATE TABLE IF NOT EXISTS participants (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS availabilities (
            participant_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            event_date_id TEXT NOT NULL,
            availability INTEGER NOT NULL,
            PRIMARY KEY (participant_id, event_date_id)
        );

        CREATE TABLE IF NOT EXISTS user_event_links (
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            participant_id TEXT,
            auto_sync INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, event_id)
        );

        CREATE TABLE IF NOT EXISTS user_schedule_blocks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            availability INTEGER NOT NULL,
            source TEXT NOT NULL,
            event_id TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, start_time, end_time)
        );

        CREATE TABLE IF NOT EXISTS user_schedule_templates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            weekday INTEGER NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            availability INTEGER NOT NULL,
            source TEXT NOT NULL,
            sample_count INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, weekday, start_time, end_time, source)
        );

        CREATE TABLE IF NOT EXISTS user_event_availability_overrides (
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            event_date_id TEXT NOT NULL,
            availability INTEGER NOT NULL,
            reason TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, event_id, event_date_id)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            failures INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._session("init_schema") as conn:
            conn.executescript(schema_sql)

    # Event and candidate-date collaborator.

    def create_event(
        self,
        event_id: str,
        *,
        title: str = "",
        public_token: str = "",
        is_finalized: bool = False,
    ) -> None:
        with self._session("create_event", event_id=event_id) as conn:
            conn.execute(
                """
                INSERT INTO events(id, title, public_token, is_finalized)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    public_token = excluded.public_token,
                    is_finalized = excluded.is_finalized
                """,
                (event_id, title, public_token, int(is_finalized)),
            )

    def add_event_date(self, event_id: str, date: CandidateDate) -> None:
        with self._session("add_event_date", event_id=event_id) as conn:
            conn.execute(
                """
                INSERT INTO event_dates(id, event_id, start_time, end_time)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    start_time = excluded.start_time,
                    end_time = excluded.end_time
                """,
                (date.id, event_id, serialize_datetime(date.start), serialize_datetime(date.end)),
            )

    def remove_event_date(self, event_id: str, date_id: str) -> None:
        with self._session("remove_event_date", event_id=event_id) as conn:
            conn.execute("DELETE FROM event_dates WHERE id = ? AND event_id = ?", (date_id, event_id))

    def add_finalized_date(self, event_id: str, event_date_id: str) -> None:
        with self._session("add_finalized_date", event_id=event_id) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO finalized_dates(event_id, event_date_id) VALUES (?, ?)",
                (event_id, event_date_id),
            )

    def set_event_finalized(self, event_id: str, is_finalized: bool) -> None:
        with self._session("set_event_finalized", event_id=event_id) as conn:
            conn.execute("UPDATE events SET is_finalized = ? WHERE id = ?", (int(is_finalized), event_id))

    def get_events(self, event_ids: Iterable[str]) -> dict[str, EventInfo]:
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return {}
        with self._session("get_events") as conn:
            rows = conn.execute(
                f"SELECT id, title, public_token, is_finalized FROM events WHERE id IN ({_in_clause(ids)})",
                ids,
            ).fetchall()
        return {
            str(row["id"]): EventInfo(
                id=str(row["id"]),
                title=str(row["title"] or ""),
                public_token=str(row["public_token"] or ""),
                is_finalized=bool(row["is_finalized"]),
            )
            for row in rows
        }

    def get_event(self, event_id: str) -> EventInfo | None:
        return self.get_events([event_id]).get(event_id)

    def is_finalized(self, event_id: str) -> bool:
        event = self.get_event(event_id)
        return bool(event and event.is_finalized)

    def list_candidate_dates(self, event_id: str) -> list[CandidateDate]:
        with self._session("list_candidate_dates", event_id=event_id) as conn:
            rows = conn.execute(
                """
                SELECT id, start_time, end_time
                FROM event_dates
                WHERE event_id = ?
                ORDER BY start_time ASC, id ASC
                """,
                (event_id,),
            ).fetchall()
        return [
            CandidateDate(
                id=str(row["id"]),
                start=parse_iso_datetime(row["start_time"]),
                end=parse_iso_datetime(row["end_time"]),
            )
            for row in rows
        ]

    def list_finalized_dates(self, event_ids: Iterable[str]) -> list[FinalizedDate]:
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return []
        with self._session("list_finalized_dates") as conn:
            rows = conn.execute(
                f"""
                SELECT f.event_id, f.event_date_id, d.start_time, d.end_time
                FROM finalized_dates AS f
                JOIN event_dates AS d ON d.id = f.event_date_id
                WHERE f.event_id IN ({_in_clause(ids)})
                """,
                ids,
            ).fetchall()
        return [
            FinalizedDate(
                event_id=str(row["event_id"]),
                event_date_id=str(row["event_date_id"]),
                start=parse_iso_datetime(row["start_time"]),
                end=parse_iso_datetime(row["end_time"]),
            )
            for row in rows
        ]

    # Participant and availability collaborator.

    def add_participant(self, event_id: str, participant_id: str, name: str = "") -> None:
        with self._session("add_participant", event_id=event_id) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO participants(id, event_id, name) VALUES (?, ?, ?)",
                (participant_id, event_id, name),
            )

    def get_availability(self, participant_id: str) -> list[AvailabilityEntry]:
        with self._session("get_availability") as conn:
            rows = conn.execute(
                """
                SELECT event_date_id, availability
                FROM availabilities
                WHERE participant_id = ?
                ORDER BY event_date_id ASC
                """,
                (participant_id,),
            ).fetchall()
        return [
            AvailabilityEntry(event_date_id=str(row["event_date_id"]), available=bool(row["availability"]))
            for row in rows
        ]

    def replace_availability(
        self,
        participant_id: str,
        event_id: str,
        entries: Iterable[AvailabilityEntry],
    ) -> int:
        payload = [(participant_id, event_id, entry.event_date_id, int(entry.available)) for entry in entries]
        with self._session("replace_availability", event_id=event_id) as conn:
            conn.execute("DELETE FROM availabilities WHERE participant_id = ?", (participant_id,))
            conn.executemany(
                """
                INSERT INTO availabilities(participant_id, event_id, event_date_id, availability)
                VALUES (?, ?, ?, ?)
                """,
                payload,
            )
        return len(payload)

    # Linked-events directory.

    def upsert_link(self, link: UserEventLink, *, keep_auto_sync: bool = False) -> None:
        auto_sync_update = "user_event_links.auto_sync" if keep_auto_sync else "excluded.auto_sync"
        with self._session("upsert_link", owner_id=link.owner_id, event_id=link.event_id) as conn:
            conn.execute(
                f"""
                INSERT INTO user_event_links(user_id, event_id, participant_id, auto_sync, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, event_id) DO UPDATE SET
                    participant_id = excluded.participant_id,
                    auto_sync = {auto_sync_update},
                    updated_at = excluded.updated_at
                """,
                (link.owner_id, link.event_id, link.participant_id, int(link.auto_sync), _utc_now()),
            )

    def list_links(self, owner_id: str) -> list[UserEventLink]:
        with self._session("list_links", owner_id=owner_id) as conn:
            rows = conn.execute(
                """
                SELECT user_id, event_id, participant_id, auto_sync
                FROM user_event_links
                WHERE user_id = ?
                ORDER BY event_id ASC
                """,
                (owner_id,),
            ).fetchall()
        return [
            UserEventLink(
                owner_id=str(row["user_id"]),
                event_id=str(row["event_id"]),
                participant_id=str(row["participant_id"]) if row["participant_id"] else None,
                auto_sync=bool(row["auto_sync"]),
            )
            for row in rows
        ]

    def get_link(self, owner_id: str, event_id: str) -> UserEventLink | None:
        for link in self.list_links(owner_id):
            if link.event_id == event_id:
                return link
        return None

    # Schedule blocks.

    @staticmethod
    def _block_from_row(row: sqlite3.Row) -> ScheduleBlock:
        return ScheduleBlock(
            id=int(row["id"]),
            owner_id=str(row["user_id"]),
            start=parse_iso_datetime(row["start_time"]),
            end=parse_iso_datetime(row["end_time"]),
            availability=bool(row["availability"]),
            source=BlockSource(row["source"]),
            event_id=row["event_id"],
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    @staticmethod
    def _write_blocks(conn: sqlite3.Connection, blocks: list[ScheduleBlock]) -> None:
        now = _utc_now()
        conn.executemany(
            """
            INSERT INTO user_schedule_blocks(user_id, start_time, end_time, availability, source, event_id, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, start_time, end_time) DO UPDATE SET
                availability = excluded.availability,
                source = excluded.source,
                event_id = excluded.event_id,
                updated_at = excluded.updated_at
            """,
            [
                (
                    block.owner_id,
                    serialize_datetime(block.start),
                    serialize_datetime(block.end),
                    int(block.availability),
                    block.source.value,
                    block.event_id,
                    now,
                )
                for block in blocks
            ],
        )

    def upsert_blocks(self, owner_id: str, blocks: Iterable[ScheduleBlock], *, event_id: str | None = None) -> int:
        payload = list(blocks)
        if not payload:
            return 0
        with self._session("upsert_blocks", owner_id=owner_id, event_id=event_id) as conn:
            self._write_blocks(conn, payload)
        return len(payload)

    def replace_block(self, owner_id: str, block: ScheduleBlock, replace_block_id: int | None) -> None:
        with self._session("replace_block", owner_id=owner_id) as conn:
            if replace_block_id is not None:
                conn.execute(
                    "DELETE FROM user_schedule_blocks WHERE id = ? AND user_id = ?",
                    (int(replace_block_id), owner_id),
                )
            self._write_blocks(conn, [block])

    def list_blocks(self, owner_id: str, window: Interval | None = None) -> list[ScheduleBlock]:
        query = """
            SELECT id, user_id, start_time, end_time, availability, source, event_id, updated_at
            FROM user_schedule_blocks
            WHERE user_id = ?
        """
        params: list[Any] = [owner_id]
        if window is not None:
            query += " AND start_time < ? AND end_time > ?"
            params.extend([serialize_datetime(window.end), serialize_datetime(window.start)])
        query += " ORDER BY start_time ASC, id ASC"
        with self._session("list_blocks", owner_id=owner_id) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._block_from_row(row) for row in rows]

    def delete_block(self, owner_id: str, block_id: int) -> bool:
        with self._session("delete_block", owner_id=owner_id) as conn:
            cursor = conn.execute(
                "DELETE FROM user_schedule_blocks WHERE id = ? AND user_id = ?",
                (int(block_id), owner_id),
            )
        return cursor.rowcount > 0

    # Schedule templates.

    @staticmethod
    def _template_from_row(row: sqlite3.Row) -> ScheduleTemplate:
        return ScheduleTemplate(
            id=int(row["id"]),
            owner_id=str(row["user_id"]),
            weekday=int(row["weekday"]),
            start_time=str(row["start_time"]),
            end_time=str(row["end_time"]),
            availability=bool(row["availability"]),
            source=TemplateSource(row["source"]),
            sample_count=int(row["sample_count"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    @staticmethod
    def _write_templates(conn: sqlite3.Connection, templates: list[ScheduleTemplate]) -> None:
        now = _utc_now()
        conn.executemany(
            """
            INSERT INTO user_schedule_templates(
                user_id, weekday, start_time, end_time, availability, source, sample_count, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, weekday, start_time, end_time, source) DO UPDATE SET
                availability = excluded.availability,
                sample_count = excluded.sample_count,
                updated_at = excluded.updated_at
            """,
            [
                (
                    template.owner_id,
                    int(template.weekday),
                    template.start_time,
                    template.end_time,
                    int(template.availability),
                    template.source.value,
                    int(template.sample_count),
                    now,
                )
                for template in templates
            ],
        )

    def list_templates(self, owner_id: str, source: TemplateSource | None = None) -> list[ScheduleTemplate]:
        query = """
            SELECT id, user_id, weekday, start_time, end_time, availability, source, sample_count, updated_at
            FROM user_schedule_templates
            WHERE user_id = ?
        """
        params: list[Any] = [owner_id]
        if source is not None:
            query += " AND source = ?"
            params.append(source.value)
        query += " ORDER BY weekday ASC, start_time ASC, source ASC"
        with self._session("list_templates", owner_id=owner_id) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._template_from_row(row) for row in rows]

    def upsert_templates(self, owner_id: str, templates: Iterable[ScheduleTemplate]) -> int:
        payload = list(templates)
        if not payload:
            return 0
        with self._session("upsert_templates", owner_id=owner_id) as conn:
            self._write_templates(conn, payload)
        return len(payload)

    def replace_manual_templates(
        self,
        owner_id: str,
        templates: Iterable[ScheduleTemplate],
        stale_ids: Iterable[int],
    ) -> int:
        payload = list(templates)
        stale = [int(item) for item in stale_ids]
        with self._session("replace_manual_templates", owner_id=owner_id) as conn:
            self._write_templates(conn, payload)
            if stale:
                conn.execute(
                    f"""
                    DELETE FROM user_schedule_templates
                    WHERE user_id = ? AND source = ? AND id IN ({_in_clause(stale)})
                    """,
                    [owner_id, TemplateSource.MANUAL.value, *stale],
                )
        return len(payload)

    def delete_template(self, owner_id: str, template_id: int) -> bool:
        with self._session("delete_template", owner_id=owner_id) as conn:
            cursor = conn.execute(
                "DELETE FROM user_schedule_templates WHERE id = ? AND user_id = ?",
                (int(template_id), owner_id),
            )
        return cursor.rowcount > 0

    # Availability overrides.

    def list_overrides(self, owner_id: str, event_id: str) -> list[AvailabilityOverride]:
        with self._session("list_overrides", owner_id=owner_id, event_id=event_id) as conn:
            rows = conn.execute(
                """
                SELECT user_id, event_id, event_date_id, availability, reason, updated_at
                FROM user_event_availability_overrides
                WHERE user_id = ? AND event_id = ?
                ORDER BY event_date_id ASC
                """,
                (owner_id, event_id),
            ).fetchall()
        return [
            AvailabilityOverride(
                owner_id=str(row["user_id"]),
                event_id=str(row["event_id"]),
                event_date_id=str(row["event_date_id"]),
                availability=bool(row["availability"]),
                reason=str(row["reason"]),
                updated_at=parse_iso_datetime(row["updated_at"]),
            )
            for row in rows
        ]

    def save_overrides(self, owner_id: str, event_id: str, overrides: Iterable[AvailabilityOverride]) -> int:
        payload = list(overrides)
        keep_ids = [item.event_date_id for item in payload]
        now = _utc_now()
        with self._session("save_overrides", owner_id=owner_id, event_id=event_id) as conn:
            conn.executemany(
                """
                INSERT INTO user_event_availability_overrides(
                    user_id, event_id, event_date_id, availability, reason, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, event_id, event_date_id) DO UPDATE SET
                    availability = excluded.availability,
                    reason = excluded.reason,
                    updated_at = excluded.updated_at
                """,
                [
                    (owner_id, event_id, item.event_date_id, int(item.availability), item.reason, now)
                    for item in payload
                ],
            )
            if keep_ids:
                conn.execute(
                    f"""
                    DELETE FROM user_event_availability_overrides
                    WHERE user_id = ? AND event_id = ? AND event_date_id NOT IN ({_in_clause(keep_ids)})
                    """,
                    [owner_id, event_id, *keep_ids],
                )
        return len(payload)

    # Sync runs and audit trail.

    def start_sync_run(self, *, owner_id: str, trigger: str, message: str = "running") -> int:
        with self._session("start_sync_run", owner_id=owner_id) as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(run_at, user_id, trigger, status, message, duration_ms, changes_applied, failures)
                VALUES (?, ?, ?, ?, ?, 0, 0, 0)
                """,
                (_utc_now(), owner_id, trigger, "running", message),
            )
            return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        failures: int,
    ) -> None:
        with self._session("finish_sync_run") as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, failures = ?
                WHERE id = ?
                """,
                (str(status), str(message), int(duration_ms), int(changes_applied), int(failures), int(run_id)),
            )

    def recent_sync_runs(self, owner_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._session("recent_sync_runs", owner_id=owner_id) as conn:
            rows = conn.execute(
                """
                SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, failures
                FROM sync_runs
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (owner_id, max(1, limit)),
            ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        owner_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._session("record_audit_event", owner_id=owner_id, event_id=event_id) as conn:
            conn.execute(
                """
                INSERT INTO audit_events(run_id, created_at, user_id, event_id, action, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, _utc_now(), owner_id, event_id, action, json.dumps(details, ensure_ascii=False)),
            )

    def recent_audit_events(
        self,
        owner_id: str,
        limit: int = 100,
        run_id: int | None = None,
    ) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_id, created_at, user_id, event_id, action, details_json
            FROM audit_events
            WHERE user_id = ?
        """
        params: list[Any] = [owner_id]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(int(run_id))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._session("recent_audit_events", owner_id=owner_id) as conn:
            rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
