from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Iterable

from familycal.models import EventException
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


class ExceptionStore:
    """Per-occurrence overrides layered over a series.

    At most one exception exists per (series, occurrence date). A deletion
    exception hides the occurrence; a substitution exception points at the
    standalone event that replaces it.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get(self, series_id: str, occurrence_date: date) -> EventException | None:
        return self.state_store.get_exception(series_id, occurrence_date)

    def for_series(self, series_id: str) -> dict[date, EventException]:
        return {item.occurrence_date: item for item in self.state_store.list_exceptions([series_id])}

    def for_many(self, series_ids: Iterable[str]) -> dict[str, dict[date, EventException]]:
        grouped: dict[str, dict[date, EventException]] = {}
        for item in self.state_store.list_exceptions(series_ids):
            grouped.setdefault(item.event_id, {})[item.occurrence_date] = item
        return grouped

    def link_for(self, substitute_id: str) -> EventException | None:
        return self.state_store.find_exception_by_modified_event(substitute_id)

    def exclude(self, series_id: str, occurrence_date: date) -> EventException:
        """Hide one occurrence, discarding a previous substitute for that date."""
        with self.state_store.transaction():
            existing = self.get(series_id, occurrence_date)
            if existing is not None and existing.modified_event_id:
                self.state_store.delete_event(existing.modified_event_id)
            exception = EventException(
                id=existing.id if existing else str(uuid.uuid4()),
                event_id=series_id,
                occurrence_date=occurrence_date,
            )
            self.state_store.upsert_exception(exception)
        logger.debug("Excluded occurrence %s of series %s", occurrence_date, series_id)
        return exception

    def substitute(self, series_id: str, occurrence_date: date, substitute_id: str) -> EventException:
        """Point one occurrence at a replacement event, dropping the previous one."""
        with self.state_store.transaction():
            existing = self.get(series_id, occurrence_date)
            exception = EventException(
                id=existing.id if existing else str(uuid.uuid4()),
                event_id=series_id,
                occurrence_date=occurrence_date,
                modified_event_id=substitute_id,
            )
            self.state_store.upsert_exception(exception)
            if existing is not None and existing.modified_event_id and existing.modified_event_id != substitute_id:
                self.state_store.delete_event(existing.modified_event_id)
        logger.debug("Substituted occurrence %s of series %s with %s", occurrence_date, series_id, substitute_id)
        return exception

    def prune_from(self, series_id: str, first_day: date) -> list[EventException]:
        """Remove every exception dated on or after ``first_day`` with its substitute."""
        with self.state_store.transaction():
            pruned = [item for item in self.for_series(series_id).values() if item.occurrence_date >= first_day]
            for item in pruned:
                self.state_store.delete_exception(item.id)
                if item.modified_event_id:
                    self.state_store.delete_event(item.modified_event_id)
        if pruned:
            logger.info("Pruned %d exception(s) of series %s from %s", len(pruned), series_id, first_day)
        return pruned

    def drop_series(self, series_id: str) -> int:
        """Delete the substitutes a series points at; the rows cascade with the series."""
        with self.state_store.transaction():
            substitutes = [item.modified_event_id for item in self.for_series(series_id).values() if item.modified_event_id]
            for substitute_id in substitutes:
                self.state_store.delete_event(substitute_id)
        return len(substitutes)
