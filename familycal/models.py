from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any

from familycal.errors import InvalidScope, ValidationError
from familycal.recurrence import Frequency, RecurrenceRule


DEFAULT_CATEGORY_COLOR = "#b8e6b8"
DEFAULT_TASK_XP = 1
DEFAULT_MAX_WINDOW_DAYS = {
    Frequency.DAILY.value: 365,
    Frequency.WEEKLY.value: 730,
    Frequency.MONTHLY.value: 1095,
    Frequency.YEARLY.value: 3650,
}


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    """Parse a family-local wall-clock timestamp.

    The calendar keeps a single family-local clock, so offsets are dropped after
    parsing rather than converted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1]
    parsed = datetime.fromisoformat(text)
    return parsed.replace(tzinfo=None)


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


class OccurrenceScope(str, enum.Enum):
    THIS = "THIS"
    THIS_AND_FOLLOWING = "THIS_AND_FOLLOWING"
    ALL = "ALL"

    @classmethod
    def parse(cls, value: Any) -> "OccurrenceScope":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError as exc:
            raise InvalidScope(f"Invalid scope: {value!r}") from exc


class Role(str, enum.Enum):
    CHILD = "CHILD"
    ASSISTANT = "ASSISTANT"
    PARENT = "PARENT"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown role: {value!r}") from exc

    @property
    def can_manage_events(self) -> bool:
        return self in (Role.ASSISTANT, Role.PARENT)

    @property
    def can_complete_tasks(self) -> bool:
        return True

    @property
    def can_manage_family(self) -> bool:
        return self is Role.PARENT


class MissingMemberPolicy(str, enum.Enum):
    REJECT = "reject"
    EVENT_CREATOR = "event_creator"
    FIRST_PARENT = "first_parent"

    @classmethod
    def parse(cls, value: Any) -> "MissingMemberPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.REJECT


@dataclass
class StorageConfig:
    db_path: str = "data/familycal.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/familycal.db")).strip() or "data/familycal.db")


@dataclass
class CalendarConfig:
    default_window_days: int = 90
    max_window_days: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_MAX_WINDOW_DAYS))
    default_category_color: str = DEFAULT_CATEGORY_COLOR

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        limits = dict(DEFAULT_MAX_WINDOW_DAYS)
        raw_limits = data.get("max_window_days", {})
        if isinstance(raw_limits, dict):
            for key, value in raw_limits.items():
                name = str(key).strip().upper()
                if name not in limits:
                    continue
                try:
                    limits[name] = max(1, int(value))
                except (TypeError, ValueError):
                    continue
        return cls(
            default_window_days=max(1, int(data.get("default_window_days", 90))),
            max_window_days=limits,
            default_category_color=str(data.get("default_category_color", DEFAULT_CATEGORY_COLOR)).strip()
            or DEFAULT_CATEGORY_COLOR,
        )


@dataclass
class CompletionConfig:
    missing_member_policy: str = MissingMemberPolicy.REJECT.value
    award_optional_tasks: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CompletionConfig":
        data = data or {}
        return cls(
            missing_member_policy=MissingMemberPolicy.parse(data.get("missing_member_policy")).value,
            award_optional_tasks=bool(data.get("award_optional_tasks", False)),
        )

    @property
    def policy(self) -> MissingMemberPolicy:
        return MissingMemberPolicy.parse(self.missing_member_policy)


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
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            completion=CompletionConfig.from_dict(data.get("completion")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Family:
    id: str
    name: str
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "created_at": serialize_datetime(self.created_at)}


@dataclass
class FamilyMember:
    id: str
    family_id: str
    name: str
    role: Role = Role.CHILD
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "family_id": self.family_id,
            "name": self.name,
            "role": self.role.value,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class Category:
    id: str
    family_id: str
    name: str
    color: str = DEFAULT_CATEGORY_COLOR
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class Event:
    id: str
    family_id: str
    title: str
    start: datetime
    created_by: str
    end: datetime | None = None
    category_id: str | None = None
    description: str = ""
    all_day: bool = False
    location: str = ""
    recurrence: RecurrenceRule | None = None
    is_task: bool = False
    xp_points: int | None = None
    is_required: bool = True
    participant_ids: frozenset[str] = frozenset()
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None and self.recurrence.is_recurring

    @property
    def duration(self) -> timedelta:
        if self.end is None:
            return timedelta(0)
        return self.end - self.start

    def with_updates(self, **kwargs: Any) -> "Event":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "family_id": self.family_id,
            "category_id": self.category_id,
            "title": self.title,
            "description": self.description,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "all_day": self.all_day,
            "location": self.location,
            "created_by": self.created_by,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "is_task": self.is_task,
            "xp_points": self.xp_points,
            "is_required": self.is_required,
            "participant_ids": sorted(self.participant_ids),
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class EventException:
    id: str
    event_id: str
    occurrence_date: date
    modified_event_id: str | None = None
    created_at: datetime = field(default_factory=_now)

    @property
    def is_deletion(self) -> bool:
        return not self.modified_event_id

    @property
    def is_substitution(self) -> bool:
        return bool(self.modified_event_id)


@dataclass
class CompletionRecord:
    id: str
    event_id: str
    member_id: str
    occurrence_date: date
    completed_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "member_id": self.member_id,
            "occurrence_date": serialize_date(self.occurrence_date),
            "completed_at": serialize_datetime(self.completed_at),
        }


@dataclass
class EffectiveOccurrence:
    event_id: str
    series_id: str | None
    occurrence_date: date
    start: datetime
    end: datetime | None
    title: str
    description: str = ""
    location: str = ""
    all_day: bool = False
    category_id: str | None = None
    participant_ids: frozenset[str] = frozenset()
    is_task: bool = False
    xp_points: int | None = None
    is_required: bool = True
    completed: bool = False

    @classmethod
    def render(
        cls,
        content: Event,
        *,
        occurrence_date: date,
        start: datetime,
        end: datetime | None,
        series_id: str | None,
    ) -> "EffectiveOccurrence":
        return cls(
            event_id=content.id,
            series_id=series_id,
            occurrence_date=occurrence_date,
            start=start,
            end=end,
            title=content.title,
            description=content.description,
            location=content.location,
            all_day=content.all_day,
            category_id=content.category_id,
            participant_ids=content.participant_ids,
            is_task=content.is_task,
            xp_points=content.xp_points,
            is_required=content.is_required,
        )

    @property
    def completion_key(self) -> tuple[str, date]:
        return self.event_id, self.occurrence_date

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurrence_date"] = serialize_date(self.occurrence_date)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["participant_ids"] = sorted(self.participant_ids)
        return payload
