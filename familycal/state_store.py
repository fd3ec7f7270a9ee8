from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from familycal.models import (
    Category,
    CompletionRecord,
    Event,
    EventException,
    Family,
    FamilyMember,
    Role,
    parse_iso_date,
    parse_iso_datetime,
    serialize_date,
    serialize_datetime,
)
from familycal.recurrence import Frequency, RecurrenceRule


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat()


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


_EVENT_COLUMNS = """
    id, family_id, category_id, title, description, start_at, end_at, all_day, location,
    created_by, recurrence_frequency, recurrence_interval, recurrence_end_date,
    recurrence_end_count, recurrence_anchor_day, is_task, xp_points, is_required, created_at, updated_at
"""


class StateStore:
    """sqlite persistence for the calendar.

    Every public method runs inside :meth:`transaction`. Nested calls on the same
    thread join the outer transaction, and the store lock is held until the
    outermost one commits, so a multi-step mutation is a single writer.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._local = threading.local()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            active = getattr(self._local, "conn", None)
            if active is not None:
                yield active
                return
            conn = self._connect()
            self._local.conn = conn
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                self._local.conn = None
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS families (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS family_members (
            id TEXT PRIMARY KEY,
            family_id TEXT NOT NULL REFERENCES families(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            role TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            family_id TEXT NOT NULL REFERENCES families(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            color TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (family_id, name)
        );

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            family_id TEXT NOT NULL REFERENCES families(id) ON DELETE CASCADE,
            category_id TEXT REFERENCES categories(id) ON DELETE SET NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            start_at TEXT NOT NULL,
            end_at TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            location TEXT NOT NULL DEFAULT '',
            created_by TEXT NOT NULL,
            recurrence_frequency TEXT,
            recurrence_interval INTEGER,
            recurrence_end_date TEXT,
            recurrence_end_count INTEGER,
            recurrence_anchor_day INTEGER,
            is_task INTEGER NOT NULL DEFAULT 0,
            xp_points INTEGER,
            is_required INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_participants (
            event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            member_id TEXT NOT NULL,
            PRIMARY KEY (event_id, member_id)
        );

        CREATE TABLE IF NOT EXISTS event_exceptions (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            occurrence_date TEXT NOT NULL,
            modified_event_id TEXT REFERENCES events(id) ON DELETE SET NULL,
            created_at TEXT NOT NULL,
            UNIQUE (event_id, occurrence_date)
        );

        CREATE TABLE IF NOT EXISTS task_completions (
            id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            member_id TEXT NOT NULL,
            occurrence_date TEXT NOT NULL,
            completed_at TEXT NOT NULL,
            UNIQUE (event_id, member_id, occurrence_date)
        );

        CREATE TABLE IF NOT EXISTS xp_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id TEXT NOT NULL,
            delta INTEGER NOT NULL,
            reason TEXT NOT NULL,
            event_id TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            family_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_family ON events(family_id);
        CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_at);
        CREATE INDEX IF NOT EXISTS idx_exceptions_modified ON event_exceptions(modified_event_id);
        CREATE INDEX IF NOT EXISTS idx_completions_occurrence ON task_completions(event_id, occurrence_date);
        CREATE INDEX IF NOT EXISTS idx_completions_member ON task_completions(member_id);
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(schema_sql)
            finally:
                conn.close()

    # Families and members

    def insert_family(self, family: Family) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO families(id, name, created_at) VALUES (?, ?, ?)",
                (family.id, family.name, serialize_datetime(family.created_at)),
            )

    def get_family(self, family_id: str) -> Family | None:
        with self.transaction() as conn:
            row = conn.execute("SELECT id, name, created_at FROM families WHERE id = ?", (family_id,)).fetchone()
        if row is None:
            return None
        return Family(id=row["id"], name=row["name"], created_at=parse_iso_datetime(row["created_at"]))

    def insert_member(self, member: FamilyMember) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO family_members(id, family_id, name, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (member.id, member.family_id, member.name, member.role.value, serialize_datetime(member.created_at)),
            )

    def get_member(self, member_id: str) -> FamilyMember | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT id, family_id, name, role, created_at FROM family_members WHERE id = ?",
                (member_id,),
            ).fetchone()
        return self._member_from_row(row) if row else None

    def list_members(self, family_id: str) -> list[FamilyMember]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, family_id, name, role, created_at
                FROM family_members
                WHERE family_id = ?
                ORDER BY rowid
                """,
                (family_id,),
            ).fetchall()
        return [self._member_from_row(row) for row in rows]

    @staticmethod
    def _member_from_row(row: sqlite3.Row) -> FamilyMember:
        return FamilyMember(
            id=row["id"],
            family_id=row["family_id"],
            name=row["name"],
            role=Role.parse(row["role"]),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    # Categories

    def insert_category(self, category: Category) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO categories(id, family_id, name, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    category.id,
                    category.family_id,
                    category.name,
                    category.color,
                    serialize_datetime(category.created_at),
                    serialize_datetime(category.updated_at),
                ),
            )

    def update_category(self, category: Category) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE categories SET name = ?, color = ?, updated_at = ? WHERE id = ?",
                (category.name, category.color, serialize_datetime(category.updated_at), category.id),
            )

    def delete_category(self, category_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
            changed = cursor.rowcount
        return changed > 0

    def get_category(self, category_id: str) -> Category | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT id, family_id, name, color, created_at, updated_at FROM categories WHERE id = ?",
                (category_id,),
            ).fetchone()
        return self._category_from_row(row) if row else None

    def find_category_by_name(self, family_id: str, name: str) -> Category | None:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT id, family_id, name, color, created_at, updated_at
                FROM categories
                WHERE family_id = ? AND name = ?
                """,
                (family_id, name),
            ).fetchone()
        return self._category_from_row(row) if row else None

    def list_categories(self, family_id: str) -> list[Category]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, family_id, name, color, created_at, updated_at
                FROM categories
                WHERE family_id = ?
                ORDER BY name ASC
                """,
                (family_id,),
            ).fetchall()
        return [self._category_from_row(row) for row in rows]

    @staticmethod
    def _category_from_row(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            family_id=row["family_id"],
            name=row["name"],
            color=row["color"],
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    # Events

    @staticmethod
    def _event_params(event: Event) -> tuple[Any, ...]:
        rule = event.recurrence if event.is_recurring else None
        return (
            event.family_id,
            event.category_id,
            event.title,
            event.description or "",
            serialize_datetime(event.start),
            serialize_datetime(event.end),
            int(event.all_day),
            event.location or "",
            event.created_by,
            rule.frequency.value if rule else None,
            rule.interval if rule else None,
            serialize_date(rule.end_date) if rule else None,
            rule.end_count if rule else None,
            rule.anchor_day if rule else None,
            int(event.is_task),
            event.xp_points,
            int(event.is_required),
            serialize_datetime(event.created_at),
            serialize_datetime(event.updated_at),
            event.id,
        )

    def insert_event(self, event: Event) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO events(
                    family_id, category_id, title, description, start_at, end_at, all_day, location,
                    created_by, recurrence_frequency, recurrence_interval, recurrence_end_date,
                    recurrence_end_count, recurrence_anchor_day, is_task, xp_points, is_required,
                    created_at, updated_at, id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._event_params(event),
            )
            self._write_participants(conn, event)

    def update_event(self, event: Event) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE events SET
                    family_id = ?, category_id = ?, title = ?, description = ?, start_at = ?, end_at = ?,
                    all_day = ?, location = ?, created_by = ?, recurrence_frequency = ?,
                    recurrence_interval = ?, recurrence_end_date = ?, recurrence_end_count = ?,
                    recurrence_anchor_day = ?, is_task = ?, xp_points = ?, is_required = ?,
                    created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                self._event_params(event),
            )
            conn.execute("DELETE FROM event_participants WHERE event_id = ?", (event.id,))
            self._write_participants(conn, event)

    @staticmethod
    def _write_participants(conn: sqlite3.Connection, event: Event) -> None:
        conn.executemany(
            "INSERT INTO event_participants(event_id, member_id) VALUES (?, ?)",
            [(event.id, member_id) for member_id in sorted(event.participant_ids)],
        )

    def delete_event(self, event_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
            changed = cursor.rowcount
        return changed > 0

    def get_event(self, event_id: str) -> Event | None:
        with self.transaction() as conn:
            row = conn.execute(f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", (event_id,)).fetchone()
            if row is None:
                return None
            participants = self._participants_for(conn, [event_id])
        return self._event_from_row(row, participants.get(event_id, frozenset()))

    def list_events(self, family_id: str) -> list[Event]:
        """Events of a family in creation order."""
        with self.transaction() as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE family_id = ? ORDER BY rowid",
                (family_id,),
            ).fetchall()
            participants = self._participants_for(conn, [row["id"] for row in rows])
        return [self._event_from_row(row, participants.get(row["id"], frozenset())) for row in rows]

    @staticmethod
    def _participants_for(conn: sqlite3.Connection, event_ids: list[str]) -> dict[str, frozenset[str]]:
        if not event_ids:
            return {}
        rows = conn.execute(
            f"""
            SELECT event_id, member_id FROM event_participants
            WHERE event_id IN ({_placeholders(event_ids)})
            """,
            event_ids,
        ).fetchall()
        grouped: dict[str, set[str]] = {}
        for row in rows:
            grouped.setdefault(row["event_id"], set()).add(row["member_id"])
        return {event_id: frozenset(members) for event_id, members in grouped.items()}

    @staticmethod
    def _event_from_row(row: sqlite3.Row, participant_ids: frozenset[str]) -> Event:
        recurrence = None
        if row["recurrence_frequency"]:
            recurrence = RecurrenceRule(
                frequency=Frequency.parse(row["recurrence_frequency"]),
                interval=int(row["recurrence_interval"] or 1),
                end_date=parse_iso_date(row["recurrence_end_date"]),
                end_count=row["recurrence_end_count"],
                anchor_day=row["recurrence_anchor_day"],
            )
        return Event(
            id=row["id"],
            family_id=row["family_id"],
            category_id=row["category_id"],
            title=row["title"],
            description=row["description"] or "",
            start=parse_iso_datetime(row["start_at"]),
            end=parse_iso_datetime(row["end_at"]),
            all_day=bool(row["all_day"]),
            location=row["location"] or "",
            created_by=row["created_by"],
            recurrence=recurrence,
            is_task=bool(row["is_task"]),
            xp_points=row["xp_points"],
            is_required=bool(row["is_required"]),
            participant_ids=participant_ids,
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    # Exceptions

    def upsert_exception(self, exception: EventException) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO event_exceptions(id, event_id, occurrence_date, modified_event_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(event_id, occurrence_date) DO UPDATE SET
                    modified_event_id = excluded.modified_event_id
                """,
                (
                    exception.id,
                    exception.event_id,
                    serialize_date(exception.occurrence_date),
                    exception.modified_event_id,
                    serialize_datetime(exception.created_at),
                ),
            )

    def get_exception(self, event_id: str, occurrence_date: date) -> EventException | None:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT id, event_id, occurrence_date, modified_event_id, created_at
                FROM event_exceptions
                WHERE event_id = ? AND occurrence_date = ?
                """,
                (event_id, serialize_date(occurrence_date)),
            ).fetchone()
        return self._exception_from_row(row) if row else None

    def find_exception_by_modified_event(self, modified_event_id: str) -> EventException | None:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT id, event_id, occurrence_date, modified_event_id, created_at
                FROM event_exceptions
                WHERE modified_event_id = ?
                """,
                (modified_event_id,),
            ).fetchone()
        return self._exception_from_row(row) if row else None

    def list_exceptions(self, event_ids: Iterable[str]) -> list[EventException]:
        ids = list(event_ids)
        if not ids:
            return []
        with self.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT id, event_id, occurrence_date, modified_event_id, created_at
                FROM event_exceptions
                WHERE event_id IN ({_placeholders(ids)})
                ORDER BY occurrence_date ASC
                """,
                ids,
            ).fetchall()
        return [self._exception_from_row(row) for row in rows]

    def delete_exception(self, exception_id: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM event_exceptions WHERE id = ?", (exception_id,))

    @staticmethod
    def _exception_from_row(row: sqlite3.Row) -> EventException:
        return EventException(
            id=row["id"],
            event_id=row["event_id"],
            occurrence_date=parse_iso_date(row["occurrence_date"]),
            modified_event_id=row["modified_event_id"],
            created_at=parse_iso_datetime(row["created_at"]),
        )

    # Completions

    def insert_completion(self, record: CompletionRecord) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO task_completions(id, event_id, member_id, occurrence_date, completed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.event_id,
                    record.member_id,
                    serialize_date(record.occurrence_date),
                    serialize_datetime(record.completed_at),
                ),
            )
            changed = cursor.rowcount
        return changed > 0

    def get_completion(self, event_id: str, member_id: str, occurrence_date: date) -> CompletionRecord | None:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT id, event_id, member_id, occurrence_date, completed_at
                FROM task_completions
                WHERE event_id = ? AND member_id = ? AND occurrence_date = ?
                """,
                (event_id, member_id, serialize_date(occurrence_date)),
            ).fetchone()
        return self._completion_from_row(row) if row else None

    def delete_completion(self, event_id: str, member_id: str, occurrence_date: date) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM task_completions
                WHERE event_id = ? AND member_id = ? AND occurrence_date = ?
                """,
                (event_id, member_id, serialize_date(occurrence_date)),
            )
            changed = cursor.rowcount
        return changed > 0

    def has_completion(self, event_id: str, occurrence_date: date) -> bool:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM task_completions
                WHERE event_id = ? AND occurrence_date = ?
                LIMIT 1
                """,
                (event_id, serialize_date(occurrence_date)),
            ).fetchone()
        return row is not None

    def completed_keys(self, event_ids: Iterable[str], first_day: date, last_day: date) -> set[tuple[str, date]]:
        ids = list(event_ids)
        if not ids:
            return set()
        with self.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT event_id, occurrence_date FROM task_completions
                WHERE event_id IN ({_placeholders(ids)})
                  AND occurrence_date >= ? AND occurrence_date <= ?
                """,
                [*ids, serialize_date(first_day), serialize_date(last_day)],
            ).fetchall()
        return {(row["event_id"], parse_iso_date(row["occurrence_date"])) for row in rows}

    def list_completions(self, *, event_id: str | None = None, member_id: str | None = None) -> list[CompletionRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if event_id is not None:
            clauses.append("event_id = ?")
            params.append(event_id)
        if member_id is not None:
            clauses.append("member_id = ?")
            params.append(member_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT id, event_id, member_id, occurrence_date, completed_at
                FROM task_completions
                {where}
                ORDER BY occurrence_date ASC, completed_at ASC
                """,
                params,
            ).fetchall()
        return [self._completion_from_row(row) for row in rows]

    def delete_completions_from(self, event_id: str, first_day: date) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM task_completions WHERE event_id = ? AND occurrence_date >= ?",
                (event_id, serialize_date(first_day)),
            )
            changed = cursor.rowcount
        return changed

    def delete_completions_on(self, event_id: str, occurrence_date: date) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM task_completions WHERE event_id = ? AND occurrence_date = ?",
                (event_id, serialize_date(occurrence_date)),
            )
            changed = cursor.rowcount
        return changed

    def move_completions(self, from_event_id: str, occurrence_date: date, to_event_id: str) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE OR IGNORE task_completions SET event_id = ?
                WHERE event_id = ? AND occurrence_date = ?
                """,
                (to_event_id, from_event_id, serialize_date(occurrence_date)),
            )
            conn.execute(
                "DELETE FROM task_completions WHERE event_id = ? AND occurrence_date = ?",
                (from_event_id, serialize_date(occurrence_date)),
            )
            changed = cursor.rowcount
        return changed

    @staticmethod
    def _completion_from_row(row: sqlite3.Row) -> CompletionRecord:
        return CompletionRecord(
            id=row["id"],
            event_id=row["event_id"],
            member_id=row["member_id"],
            occurrence_date=parse_iso_date(row["occurrence_date"]),
            completed_at=parse_iso_datetime(row["completed_at"]),
        )

    # XP ledger

    def record_xp(self, *, member_id: str, delta: int, reason: str, event_id: str | None = None) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO xp_history(member_id, delta, reason, event_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (member_id, int(delta), reason, event_id, _now_iso()),
            )

    def xp_total(self, member_id: str) -> int:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(delta), 0) AS total FROM xp_history WHERE member_id = ?",
                (member_id,),
            ).fetchone()
        return int(row["total"])

    # Audit

    def record_audit_event(
        self,
        *,
        family_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_events(created_at, family_id, event_id, action, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (_now_iso(), family_id, event_id, action, json.dumps(details, ensure_ascii=False, default=str)),
            )

    def recent_audit_events(self, limit: int = 100, family_id: str | None = None) -> list[dict[str, Any]]:
        with self.transaction() as conn:
            if family_id is None:
                rows = conn.execute(
                    """
                    SELECT id, created_at, family_id, event_id, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT id, created_at, family_id, event_id, action, details_json
                    FROM audit_events
                    WHERE family_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (family_id, max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
