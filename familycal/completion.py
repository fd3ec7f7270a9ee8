"""Shared completion state for task events.

Completion is tracked per (event, occurrence date). Each member who marks an
occurrence done gets an audit row, but the occurrence counts as completed for
every participant as soon as one row exists.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Iterable

from familycal.directory import XpLedger
from familycal.errors import InvalidOccurrence, NotATask
from familycal.exception_store import ExceptionStore
from familycal.models import CompletionRecord, EffectiveOccurrence, Event
from familycal.recurrence import occurrence_index
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


class CompletionTracker:
    def __init__(
        self,
        state_store: StateStore,
        exception_store: ExceptionStore,
        xp_ledger: XpLedger | None = None,
        *,
        award_optional_tasks: bool = False,
    ) -> None:
        self.state_store = state_store
        self.exception_store = exception_store
        self.xp_ledger = xp_ledger
        self.award_optional_tasks = award_optional_tasks

    def ensure_valid_occurrence(self, event: Event, occurrence_date: date) -> None:
        if event.is_recurring:
            if occurrence_index(event.recurrence, event.start, occurrence_date) is None:
                raise InvalidOccurrence(
                    f"{occurrence_date} is not an occurrence of the series starting {event.start.date()}"
                )
            if self.exception_store.get(event.id, occurrence_date) is not None:
                raise InvalidOccurrence(f"Occurrence {occurrence_date} of event {event.id} was deleted or replaced")
            return
        link = self.exception_store.link_for(event.id)
        expected = link.occurrence_date if link else event.start.date()
        if occurrence_date != expected:
            raise InvalidOccurrence(f"Occurrence date {occurrence_date} does not match event date {expected}")

    def mark_completed(self, event: Event, member_id: str, occurrence_date: date) -> CompletionRecord:
        if not event.is_task:
            raise NotATask(f"Event {event.id} is not a task")
        self.ensure_valid_occurrence(event, occurrence_date)
        record = CompletionRecord(
            id=str(uuid.uuid4()),
            event_id=event.id,
            member_id=member_id,
            occurrence_date=occurrence_date,
        )
        inserted = self.state_store.insert_completion(record)
        if not inserted:
            logger.debug("Completion of %s on %s by %s already recorded", event.id, occurrence_date, member_id)
            existing = self.state_store.get_completion(event.id, member_id, occurrence_date)
            return existing or record
        logger.info("Member %s completed %s on %s", member_id, event.id, occurrence_date)
        self._notify_ledger(event, member_id, award=True)
        return record

    def unmark(self, event: Event, member_id: str, occurrence_date: date) -> bool:
        removed = self.state_store.delete_completion(event.id, member_id, occurrence_date)
        if not removed:
            logger.debug("No completion of %s on %s by %s to remove", event.id, occurrence_date, member_id)
            return False
        logger.info("Member %s uncompleted %s on %s", member_id, event.id, occurrence_date)
        self._notify_ledger(event, member_id, award=False)
        return True

    def is_completed(self, event_id: str, occurrence_date: date) -> bool:
        return self.state_store.has_completion(event_id, occurrence_date)

    def completed_keys(self, occurrences: Iterable[EffectiveOccurrence]) -> set[tuple[str, date]]:
        tasks = [item for item in occurrences if item.is_task]
        if not tasks:
            return set()
        days = [item.occurrence_date for item in tasks]
        return self.state_store.completed_keys({item.event_id for item in tasks}, min(days), max(days))

    def completions_for_event(self, event_id: str) -> list[CompletionRecord]:
        return self.state_store.list_completions(event_id=event_id)

    def completions_for_member(self, member_id: str) -> list[CompletionRecord]:
        return self.state_store.list_completions(member_id=member_id)

    def _notify_ledger(self, event: Event, member_id: str, *, award: bool) -> None:
        if self.xp_ledger is None or not event.xp_points:
            return
        if not event.is_required and not self.award_optional_tasks:
            return
        try:
            if award:
                self.xp_ledger.award(member_id, event.xp_points, event_id=event.id)
            else:
                self.xp_ledger.revoke(member_id, event.xp_points, event_id=event.id)
        except Exception:
            logger.exception(
                "XP %s failed for member %s on event %s (%s points)",
                "award" if award else "revocation",
                member_id,
                event.id,
                event.xp_points,
            )
