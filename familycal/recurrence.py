"""Recurrence rules and their expansion into occurrence timestamps.

Every occurrence is computed from the series start (``start + k * interval``
units) rather than from the previous occurrence. Calendar months and years are
added with ``dateutil.relativedelta``, which clamps to the last day of a short
month, so a series anchored on the 31st yields Jan 31, Feb 29, Mar 31, Apr 30
and never drifts to the 29th for the rest of the year.

A series split off on a clamped date (Feb 29 of a 31st-of-month series) keeps
the wanted day of month in ``anchor_day`` and clamps against it instead of
its own start.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Iterator

from dateutil.relativedelta import relativedelta

from familycal.errors import InvalidRecurrenceRule, InvalidWindow


class Frequency(str, enum.Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @classmethod
    def parse(cls, value: Any) -> "Frequency":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        if not text:
            return cls.NONE
        try:
            return cls(text)
        except ValueError as exc:
            raise InvalidRecurrenceRule(f"Unknown recurrence frequency: {value}") from exc


_FIXED_STEP_DAYS = {Frequency.DAILY: 1, Frequency.WEEKLY: 7}


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise InvalidRecurrenceRule(f"Invalid recurrence end date: {value}") from exc


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency = Frequency.NONE
    interval: int = 1
    end_date: date | None = None
    end_count: int | None = None
    anchor_day: int | None = None

    @property
    def is_recurring(self) -> bool:
        return self.frequency is not Frequency.NONE

    @property
    def is_bounded(self) -> bool:
        return self.end_date is not None or self.end_count is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RecurrenceRule | None":
        if not data:
            return None
        frequency = Frequency.parse(data.get("frequency"))
        raw_interval = data.get("interval")
        try:
            interval = 1 if raw_interval is None else int(raw_interval)
            raw_count = data.get("end_count")
            end_count = None if raw_count in (None, "") else int(raw_count)
            raw_anchor = data.get("anchor_day")
            anchor_day = None if raw_anchor in (None, "") else int(raw_anchor)
        except (TypeError, ValueError) as exc:
            raise InvalidRecurrenceRule("interval, end_count and anchor_day must be integers") from exc
        rule = cls(
            frequency=frequency,
            interval=interval,
            end_date=_parse_date(data.get("end_date")),
            end_count=end_count,
            anchor_day=anchor_day,
        )
        validate_rule(rule)
        return rule if rule.is_recurring else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "end_count": self.end_count,
            "anchor_day": self.anchor_day,
        }

    def with_termination(self, *, end_date: date | None = None, end_count: int | None = None) -> "RecurrenceRule":
        return replace(self, end_date=end_date, end_count=end_count)

    def continued_from(self, series_start: datetime, new_start: datetime) -> "RecurrenceRule":
        """The same cadence restarted at ``new_start``, an occurrence of this rule.

        Month and year steps remember the day of month the original series
        wanted, so restarting on a clamped date does not shift later ones.
        """
        anchor_day = None
        if self.frequency in (Frequency.MONTHLY, Frequency.YEARLY):
            wanted = self.anchor_day or series_start.day
            if wanted != new_start.day:
                anchor_day = wanted
        return replace(self, anchor_day=anchor_day)

    def anchored_at(self, series_start: datetime) -> "RecurrenceRule":
        """Drop ``anchor_day`` once it no longer clamps to ``series_start``."""
        if self.anchor_day is None or _anchor_fits(self.anchor_day, series_start):
            return self
        return replace(self, anchor_day=None)


def _anchor_fits(anchor_day: int, series_start: datetime) -> bool:
    return (series_start + relativedelta(day=anchor_day)).day == series_start.day


def validate_rule(rule: RecurrenceRule, series_start: datetime | None = None) -> None:
    if isinstance(rule.interval, bool) or not isinstance(rule.interval, int) or rule.interval < 1:
        raise InvalidRecurrenceRule(f"interval must be a positive integer, got {rule.interval!r}")
    if rule.end_date is not None and rule.end_count is not None:
        raise InvalidRecurrenceRule("end_date and end_count cannot both be set")
    if rule.end_count is not None and rule.end_count < 1:
        raise InvalidRecurrenceRule(f"end_count must be at least 1, got {rule.end_count}")
    if rule.anchor_day is not None and not 1 <= rule.anchor_day <= 31:
        raise InvalidRecurrenceRule(f"anchor_day must be between 1 and 31, got {rule.anchor_day}")
    if series_start is None:
        return
    if rule.end_date is not None and rule.end_date < series_start.date():
        raise InvalidRecurrenceRule("end_date precedes the series start")
    if rule.anchor_day is not None and not _anchor_fits(rule.anchor_day, series_start):
        raise InvalidRecurrenceRule(
            f"anchor_day {rule.anchor_day} does not fall on the series start {series_start.date()}"
        )


def window_bounds(window_start: date | datetime, window_end: date | datetime) -> tuple[datetime, datetime]:
    """Normalize a window; plain dates cover their whole day."""
    if not isinstance(window_start, datetime):
        window_start = datetime.combine(window_start, time.min)
    if not isinstance(window_end, datetime):
        window_end = datetime.combine(window_end, time.max)
    if window_end < window_start:
        raise InvalidWindow("window end must not precede window start")
    return window_start, window_end


def nth_occurrence(rule: RecurrenceRule | None, series_start: datetime, index: int) -> datetime:
    if rule is None or not rule.is_recurring:
        return series_start
    steps = index * rule.interval
    if rule.frequency is Frequency.DAILY:
        return series_start + timedelta(days=steps)
    if rule.frequency is Frequency.WEEKLY:
        return series_start + timedelta(weeks=steps)
    # ``day`` set to None leaves the day alone; relativedelta clamps it to month end.
    if rule.frequency is Frequency.MONTHLY:
        return series_start + relativedelta(months=steps, day=rule.anchor_day)
    return series_start + relativedelta(years=steps, day=rule.anchor_day)


def _terminated(rule: RecurrenceRule, index: int, occurrence: datetime) -> bool:
    if rule.end_count is not None and index >= rule.end_count:
        return True
    if rule.end_date is not None and occurrence.date() > rule.end_date:
        return True
    return False


def _floor_index(rule: RecurrenceRule, series_start: datetime, moment: datetime) -> int:
    # Largest index whose occurrence is not after ``moment`` for fixed-length steps.
    if moment <= series_start:
        return 0
    step_days = _FIXED_STEP_DAYS.get(rule.frequency)
    if step_days is None:
        return 0
    return (moment - series_start) // timedelta(days=step_days * rule.interval)


def expand(
    rule: RecurrenceRule | None,
    series_start: datetime,
    window_start: date | datetime,
    window_end: date | datetime,
) -> Iterator[datetime]:
    window_start, window_end = window_bounds(window_start, window_end)
    if rule is None or not rule.is_recurring:
        if window_start <= series_start <= window_end:
            yield series_start
        return

    index = _floor_index(rule, series_start, window_start)
    while True:
        occurrence = nth_occurrence(rule, series_start, index)
        if occurrence > window_end or _terminated(rule, index, occurrence):
            return
        if occurrence >= window_start:
            yield occurrence
        index += 1


def count_before(rule: RecurrenceRule | None, series_start: datetime, day: date) -> int:
    """Number of occurrences dated strictly before ``day``."""
    if rule is None or not rule.is_recurring:
        return 1 if series_start.date() < day else 0
    if rule.end_date is not None:
        day = min(day, rule.end_date + timedelta(days=1))
    if day <= series_start.date():
        return 0
    index = _floor_index(rule, series_start, datetime.combine(day, time.min))
    while index > 0 and nth_occurrence(rule, series_start, index - 1).date() >= day:
        index -= 1
    while nth_occurrence(rule, series_start, index).date() < day:
        index += 1
        if rule.end_count is not None and index >= rule.end_count:
            break
    if rule.end_count is not None:
        index = min(index, rule.end_count)
    return index


def occurrence_index(rule: RecurrenceRule | None, series_start: datetime, day: date) -> int | None:
    """Position of the occurrence dated ``day`` in the series, or None."""
    if rule is None or not rule.is_recurring:
        return 0 if series_start.date() == day else None
    index = count_before(rule, series_start, day)
    occurrence = nth_occurrence(rule, series_start, index)
    if occurrence.date() != day or _terminated(rule, index, occurrence):
        return None
    return index


def last_occurrence(rule: RecurrenceRule | None, series_start: datetime) -> datetime | None:
    """Final occurrence of a bounded series; None when the series is unbounded."""
    if rule is None or not rule.is_recurring:
        return series_start
    if rule.end_count is not None:
        return nth_occurrence(rule, series_start, rule.end_count - 1)
    if rule.end_date is not None:
        total = count_before(rule, series_start, rule.end_date + timedelta(days=1))
        if total == 0:
            return None
        return nth_occurrence(rule, series_start, total - 1)
    return None
