"""Scope-aware edits and deletes of calendar events.

A recurring series is never rewritten occurrence by occurrence. THIS writes an
exception for one date, THIS_AND_FOLLOWING truncates the series (and, for an
edit, starts a new one at the occurrence), ALL touches the series itself.
Every branch runs inside one store transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from familycal.edits import apply_changes
from familycal.errors import AmbiguousTruncation, InvalidOccurrence, ValidationError
from familycal.exception_store import ExceptionStore
from familycal.models import Event, OccurrenceScope, serialize_date
from familycal.recurrence import count_before, expand, last_occurrence, occurrence_index
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


@dataclass
class MutationResult:
    action: str
    event: Event | None = None
    details: dict[str, Any] = field(default_factory=dict)


class ScopedMutator:
    def __init__(self, state_store: StateStore, exception_store: ExceptionStore) -> None:
        self.state_store = state_store
        self.exception_store = exception_store

    def mutate(
        self,
        event: Event,
        occurrence_date: date,
        scope: OccurrenceScope | str,
        changes: dict[str, Any] | None = None,
    ) -> MutationResult:
        """Edit (``changes`` given) or delete (``changes`` is None) with a scope."""
        scope = OccurrenceScope.parse(scope)
        with self.state_store.transaction():
            if not event.is_recurring:
                if changes is None:
                    return self._delete_single(event)
                return self._edit_single(event, changes)
            if changes is None:
                if scope is OccurrenceScope.ALL:
                    return self._delete_series(event)
                if scope is OccurrenceScope.THIS:
                    return self._delete_this(event, occurrence_date)
                return self._delete_following(event, occurrence_date)
            if scope is OccurrenceScope.ALL:
                return self._edit_series(event, changes)
            if scope is OccurrenceScope.THIS:
                return self._edit_this(event, occurrence_date, changes)
            return self._edit_following(event, occurrence_date, changes)

    # Standalone events

    def _delete_single(self, event: Event) -> MutationResult:
        link = self.exception_store.link_for(event.id)
        # The exception's reference is nulled on delete, leaving the series date excluded.
        self.state_store.delete_event(event.id)
        logger.info("Deleted event %s", event.id)
        details: dict[str, Any] = {}
        if link is not None:
            details = {"series_id": link.event_id, "occurrence_date": serialize_date(link.occurrence_date)}
        return MutationResult(action="delete_event", details=details)

    def _edit_single(self, event: Event, changes: dict[str, Any]) -> MutationResult:
        outcome = apply_changes(event, changes)
        if outcome.event.is_recurring and self.exception_store.link_for(event.id) is not None:
            raise ValidationError("a replaced occurrence cannot become a recurring series")
        updated = outcome.event.with_updates(updated_at=_now())
        self.state_store.update_event(updated)
        logger.info("Updated event %s fields=%s", event.id, outcome.changed_fields)
        return MutationResult(action="update_event", event=updated, details={"fields": outcome.changed_fields})

    # Whole series

    def _delete_series(self, event: Event) -> MutationResult:
        substitutes = self.exception_store.drop_series(event.id)
        self.state_store.delete_event(event.id)
        logger.info("Deleted series %s with %d substitute(s)", event.id, substitutes)
        return MutationResult(action="delete_series", details={"substitutes_deleted": substitutes})

    def _edit_series(self, event: Event, changes: dict[str, Any]) -> MutationResult:
        outcome = apply_changes(event, changes)
        updated = outcome.event.with_updates(updated_at=_now())
        self.state_store.update_event(updated)
        if not updated.is_recurring:
            self.exception_store.prune_from(event.id, date.min)
        logger.info("Updated series %s fields=%s", event.id, outcome.changed_fields)
        return MutationResult(action="update_series", event=updated, details={"fields": outcome.changed_fields})

    # Single occurrence

    def _require_occurrence(self, event: Event, occurrence_date: date) -> None:
        if occurrence_index(event.recurrence, event.start, occurrence_date) is not None:
            return
        if self.exception_store.get(event.id, occurrence_date) is not None:
            return
        raise InvalidOccurrence(
            f"{occurrence_date} is not an occurrence of the series starting {event.start.date()}"
        )

    def _only_remaining_occurrence(self, event: Event, occurrence_date: date) -> bool:
        last = last_occurrence(event.recurrence, event.start)
        if last is None:
            return False
        exceptions = self.exception_store.for_series(event.id)
        remaining = []
        for moment in expand(event.recurrence, event.start, event.start, last):
            exception = exceptions.get(moment.date())
            if exception is None or exception.is_substitution:
                remaining.append(moment.date())
            if len(remaining) > 1:
                return False
        return remaining == [occurrence_date]

    def _delete_this(self, event: Event, occurrence_date: date) -> MutationResult:
        self._require_occurrence(event, occurrence_date)
        if occurrence_date == event.start.date() and self._only_remaining_occurrence(event, occurrence_date):
            return self._delete_series(event)
        self.exception_store.exclude(event.id, occurrence_date)
        self.state_store.delete_completions_on(event.id, occurrence_date)
        logger.info("Excluded %s from series %s", occurrence_date, event.id)
        return MutationResult(
            action="exclude_occurrence",
            details={"occurrence_date": serialize_date(occurrence_date)},
        )

    def _occurrence_template(self, event: Event, occurrence_date: date) -> Event:
        start = datetime.combine(occurrence_date, event.start.time())
        now = _now()
        return event.with_updates(
            id=str(uuid.uuid4()),
            start=start,
            end=start + event.duration if event.end is not None else None,
            created_at=now,
            updated_at=now,
        )

    def _replacement_template(self, event: Event, occurrence_date: date) -> Event:
        # A date that was already replaced keeps its earlier edits.
        previous = self.exception_store.get(event.id, occurrence_date)
        if previous is not None and previous.modified_event_id:
            replaced = self.state_store.get_event(previous.modified_event_id)
            if replaced is not None:
                now = _now()
                return replaced.with_updates(id=str(uuid.uuid4()), created_at=now, updated_at=now)
        return self._occurrence_template(event, occurrence_date).with_updates(recurrence=None)

    def _edit_this(self, event: Event, occurrence_date: date, changes: dict[str, Any]) -> MutationResult:
        self._require_occurrence(event, occurrence_date)
        template = self._replacement_template(event, occurrence_date)
        single_changes = {key: value for key, value in changes.items() if key != "recurrence"}
        substitute = apply_changes(template, single_changes).event
        self.state_store.insert_event(substitute)

        previous = self.exception_store.get(event.id, occurrence_date)
        if previous is not None and previous.modified_event_id:
            self.state_store.move_completions(previous.modified_event_id, occurrence_date, substitute.id)
        self.state_store.move_completions(event.id, occurrence_date, substitute.id)
        self.exception_store.substitute(event.id, occurrence_date, substitute.id)
        logger.info("Replaced %s of series %s with event %s", occurrence_date, event.id, substitute.id)
        return MutationResult(
            action="substitute_occurrence",
            event=substitute,
            details={"series_id": event.id, "occurrence_date": serialize_date(occurrence_date)},
        )

    # This and following

    def _truncate(self, event: Event, occurrence_date: date) -> Event:
        rule = event.recurrence
        if rule.end_count is not None:
            truncated_rule = rule.with_termination(
                end_count=count_before(rule, event.start, occurrence_date),
            )
        else:
            new_end = occurrence_date - timedelta(days=1)
            if rule.end_date is not None and rule.end_date < new_end:
                new_end = rule.end_date
            truncated_rule = rule.with_termination(end_date=new_end)
        truncated = event.with_updates(recurrence=truncated_rule, updated_at=_now())
        self.state_store.update_event(truncated)
        pruned = self.exception_store.prune_from(event.id, occurrence_date)
        completions = self.state_store.delete_completions_from(event.id, occurrence_date)
        logger.info(
            "Truncated series %s before %s (%d exception(s), %d completion(s) pruned)",
            event.id,
            occurrence_date,
            len(pruned),
            completions,
        )
        return truncated

    def _check_truncation_point(self, event: Event, occurrence_date: date) -> None:
        if occurrence_date < event.start.date():
            raise AmbiguousTruncation(
                f"{occurrence_date} precedes the start of series {event.id} ({event.start.date()})"
            )

    def _delete_following(self, event: Event, occurrence_date: date) -> MutationResult:
        self._check_truncation_point(event, occurrence_date)
        if occurrence_date == event.start.date():
            return self._delete_series(event)
        truncated = self._truncate(event, occurrence_date)
        return MutationResult(
            action="truncate_series",
            event=truncated,
            details={"occurrence_date": serialize_date(occurrence_date), "recurrence": truncated.recurrence.to_dict()},
        )

    def _edit_following(self, event: Event, occurrence_date: date, changes: dict[str, Any]) -> MutationResult:
        self._check_truncation_point(event, occurrence_date)
        if occurrence_date == event.start.date():
            return self._edit_series(event, changes)
        self._require_occurrence(event, occurrence_date)

        rule = event.recurrence
        template = self._occurrence_template(event, occurrence_date)
        continued = rule.continued_from(event.start, template.start)
        elapsed = count_before(rule, event.start, occurrence_date)
        if rule.end_count is not None:
            remaining = rule.end_count - elapsed
            if remaining <= 0:
                raise InvalidOccurrence(f"Series {event.id} has no occurrences left at {occurrence_date}")
            continuation = continued.with_termination(end_count=remaining)
        else:
            continuation = continued.with_termination(end_date=rule.end_date)

        successor = apply_changes(template.with_updates(recurrence=continuation), changes).event
        truncated = self._truncate(event, occurrence_date)
        self.state_store.insert_event(successor)
        logger.info("Split series %s at %s into %s", event.id, occurrence_date, successor.id)
        return MutationResult(
            action="split_series",
            event=successor,
            details={
                "series_id": event.id,
                "occurrence_date": serialize_date(occurrence_date),
                "truncated_recurrence": truncated.recurrence.to_dict(),
                "elapsed_occurrences": elapsed,
            },
        )
