from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from familycal.errors import ValidationError
from familycal.models import DEFAULT_TASK_XP, Event, parse_iso_datetime
from familycal.recurrence import RecurrenceRule, validate_rule


TEXT_FIELDS = ("title", "description", "location")
FLAG_FIELDS = ("all_day", "is_task", "is_required")
APPLY_FIELD_ORDER = (
    "title",
    "description",
    "location",
    "start",
    "end",
    "all_day",
    "category_id",
    "participant_ids",
    "is_task",
    "xp_points",
    "is_required",
    "recurrence",
)
ALLOWED_FIELDS = set(APPLY_FIELD_ORDER)


@dataclass
class EditOutcome:
    event: Event
    changed_fields: list[str]
    ignored_fields: list[str]

    @property
    def applied(self) -> bool:
        return bool(self.changed_fields)


def _parse_moment(field: str, value: Any) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field} datetime: {value!r}") from exc


def _parse_xp(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        points = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"xp_points must be an integer, got {value!r}") from exc
    if points < 0:
        raise ValidationError("xp_points must not be negative")
    return points


def _normalize_task_fields(event: Event, explicit_xp: bool) -> Event:
    if not event.is_task:
        if explicit_xp and event.xp_points:
            raise ValidationError("xp_points can only be set when is_task is true")
        return event.with_updates(xp_points=None)
    if event.xp_points is None:
        return event.with_updates(xp_points=DEFAULT_TASK_XP)
    return event


def apply_changes(event: Event, changes: dict[str, Any]) -> EditOutcome:
    """Return a copy of ``event`` with the whitelisted ``changes`` applied.

    Moving ``start`` without an explicit ``end`` keeps the event's duration.
    ``recurrence`` accepts a rule mapping, a :class:`RecurrenceRule` or None to
    make the event a single occurrence.
    """
    updated = event
    changed: list[str] = []
    ignored = sorted(key for key in changes if key not in ALLOWED_FIELDS)

    for field in APPLY_FIELD_ORDER:
        if field not in changes:
            continue
        value = changes[field]
        if field in TEXT_FIELDS:
            new_value: Any = str(value).strip() if value is not None else ""
            if field == "title" and not new_value:
                raise ValidationError("title is required")
        elif field == "start":
            new_value = _parse_moment(field, value)
            if new_value is None:
                raise ValidationError("start is required")
            if "end" not in changes and updated.end is not None:
                shifted_end = new_value + updated.duration
                if shifted_end != updated.end:
                    updated = updated.with_updates(end=shifted_end)
                    changed.append("end")
        elif field == "end":
            new_value = _parse_moment(field, value)
        elif field in FLAG_FIELDS:
            new_value = bool(value)
        elif field == "category_id":
            new_value = str(value).strip() if value else None
        elif field == "participant_ids":
            new_value = frozenset(str(item).strip() for item in (value or []) if str(item).strip())
        elif field == "xp_points":
            new_value = _parse_xp(value)
        else:
            if isinstance(value, RecurrenceRule) or value is None:
                new_value = value if value is not None and value.is_recurring else None
            elif isinstance(value, dict):
                new_value = RecurrenceRule.from_dict(value)
            else:
                raise ValidationError("recurrence must be an object or null")
        if getattr(updated, field) != new_value:
            updated = updated.with_updates(**{field: new_value})
            changed.append(field)

    if updated.end is not None and updated.end < updated.start:
        raise ValidationError("end must not precede start")
    if updated.recurrence is not None and "start" in changed and "recurrence" not in changes:
        updated = updated.with_updates(recurrence=updated.recurrence.anchored_at(updated.start))
    if updated.recurrence is not None:
        validate_rule(updated.recurrence, updated.start)
    updated = _normalize_task_fields(updated, explicit_xp="xp_points" in changes)
    if updated.xp_points != event.xp_points and "xp_points" not in changed:
        changed.append("xp_points")
    return EditOutcome(event=updated, changed_fields=changed, ignored_fields=ignored)


def new_event(
    *,
    family_id: str,
    created_by: str,
    fields: dict[str, Any],
    recurrence: RecurrenceRule | dict[str, Any] | None = None,
) -> Event:
    if not str(fields.get("title") or "").strip():
        raise ValidationError("title is required")
    start = _parse_moment("start", fields.get("start"))
    if start is None:
        raise ValidationError("start is required")
    blank = Event(
        id=str(uuid.uuid4()),
        family_id=family_id,
        title=str(fields["title"]).strip(),
        start=start,
        created_by=created_by,
    )
    payload = dict(fields)
    payload.pop("start", None)
    if recurrence is not None:
        payload["recurrence"] = recurrence
    return apply_changes(blank, payload).event
