from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Mapping

from familycal.errors import WindowTooLarge
from familycal.exception_store import ExceptionStore
from familycal.models import EffectiveOccurrence, Event, EventException
from familycal.recurrence import expand, window_bounds
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


def check_window(
    series: list[Event],
    window_start: datetime,
    window_end: datetime,
    max_window_days: Mapping[str, int] | None,
) -> None:
    if not max_window_days:
        return
    span_days = (window_end - window_start).days
    for event in series:
        limit = max_window_days.get(event.recurrence.frequency.value)
        if limit is not None and span_days > limit:
            raise WindowTooLarge(
                f"Window of {span_days} days exceeds the {limit}-day maximum for "
                f"{event.recurrence.frequency.value} series"
            )


def _shifted_end(event: Event, occurrence_start: datetime) -> datetime | None:
    if event.end is None:
        return None
    return occurrence_start + event.duration


class OccurrenceResolver:
    def __init__(self, state_store: StateStore, exception_store: ExceptionStore) -> None:
        self.state_store = state_store
        self.exception_store = exception_store

    def occurrences_in_range(
        self,
        event: Event,
        window_start: date | datetime,
        window_end: date | datetime,
        *,
        exceptions: Mapping[date, EventException] | None = None,
        substitutes: Mapping[str, Event] | None = None,
    ) -> list[EffectiveOccurrence]:
        window_start, window_end = window_bounds(window_start, window_end)
        if not event.is_recurring:
            if not window_start <= event.start <= window_end:
                return []
            return [
                EffectiveOccurrence.render(
                    event,
                    occurrence_date=event.start.date(),
                    start=event.start,
                    end=event.end,
                    series_id=None,
                )
            ]

        if exceptions is None:
            exceptions = self.exception_store.for_series(event.id)
        output: list[EffectiveOccurrence] = []
        for occurrence_start in expand(event.recurrence, event.start, window_start, window_end):
            day = occurrence_start.date()
            exception = exceptions.get(day)
            if exception is None:
                output.append(
                    EffectiveOccurrence.render(
                        event,
                        occurrence_date=day,
                        start=occurrence_start,
                        end=_shifted_end(event, occurrence_start),
                        series_id=event.id,
                    )
                )
                continue
            if exception.is_deletion:
                continue
            substitute = None
            if substitutes is not None:
                substitute = substitutes.get(exception.modified_event_id)
            if substitute is None:
                substitute = self.state_store.get_event(exception.modified_event_id)
            if substitute is None:
                logger.warning(
                    "Substitute %s for %s of series %s is missing",
                    exception.modified_event_id,
                    day,
                    event.id,
                )
                continue
            output.append(
                EffectiveOccurrence.render(
                    substitute,
                    occurrence_date=day,
                    start=substitute.start,
                    end=substitute.end,
                    series_id=event.id,
                )
            )
        return output

    def occurrences_for_family(
        self,
        family_id: str,
        window_start: date | datetime,
        window_end: date | datetime,
        max_window_days: Mapping[str, int] | None = None,
    ) -> list[EffectiveOccurrence]:
        window_start, window_end = window_bounds(window_start, window_end)
        events = self.state_store.list_events(family_id)
        series = [event for event in events if event.is_recurring]
        check_window(series, window_start, window_end, max_window_days)

        by_id = {event.id: event for event in events}
        exceptions = self.exception_store.for_many(event.id for event in series)
        links = {
            item.modified_event_id: item
            for per_series in exceptions.values()
            for item in per_series.values()
            if item.modified_event_id
        }

        results: list[EffectiveOccurrence] = []
        for event in series:
            if event.start > window_end:
                continue
            results.extend(
                self.occurrences_in_range(
                    event,
                    window_start,
                    window_end,
                    exceptions=exceptions.get(event.id, {}),
                    substitutes=by_id,
                )
            )
        emitted = {item.event_id for item in results if item.series_id is not None}

        for event in events:
            if event.is_recurring or event.id in emitted:
                continue
            if not window_start <= event.start <= window_end:
                continue
            link = links.get(event.id)
            results.append(
                EffectiveOccurrence.render(
                    event,
                    occurrence_date=link.occurrence_date if link else event.start.date(),
                    start=event.start,
                    end=event.end,
                    series_id=link.event_id if link else None,
                )
            )

        position = {event.id: index for index, event in enumerate(events)}
        results.sort(key=lambda item: (item.start, position.get(item.event_id, len(position))))
        logger.debug(
            "Resolved %d occurrence(s) for family %s in [%s, %s]",
            len(results),
            family_id,
            window_start,
            window_end,
        )
        return results
