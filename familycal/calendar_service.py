from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Iterator

from familycal.completion import CompletionTracker
from familycal.config_manager import ConfigManager
from familycal.directory import FamilyDirectory, XpLedger
from familycal.edits import new_event
from familycal.errors import (
    CrossFamilyAccess,
    MissingIdentity,
    NotFound,
    PermissionDenied,
    ValidationError,
    WriteFailure,
)
from familycal.exception_store import ExceptionStore
from familycal.models import (
    AppConfig,
    Category,
    CompletionRecord,
    EffectiveOccurrence,
    Event,
    Family,
    FamilyMember,
    MissingMemberPolicy,
    OccurrenceScope,
    Role,
    parse_iso_date,
    serialize_date,
)
from familycal.mutator import ScopedMutator
from familycal.recurrence import RecurrenceRule
from familycal.resolver import OccurrenceResolver
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


def _parse_day(value: date | str | None, field: str = "occurrence_date") -> date:
    try:
        parsed = parse_iso_date(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc
    if parsed is None:
        raise ValidationError(f"{field} is required")
    return parsed


class CalendarService:
    """Calendar operations for one deployment, backed by a single state store.

    Every write checks identity, family ownership and role before any row is
    touched, then runs in one store transaction. Storage errors surface as
    :class:`WriteFailure` after the transaction has rolled back.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        xp_ledger: XpLedger | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.directory = FamilyDirectory(state_store)
        self.exception_store = ExceptionStore(state_store)
        self.resolver = OccurrenceResolver(state_store, self.exception_store)
        self.mutator = ScopedMutator(state_store, self.exception_store)
        self.xp_ledger = xp_ledger if xp_ledger is not None else XpLedger(state_store)

    def _config(self) -> AppConfig:
        return self.config_manager.load()

    def _tracker(self, config: AppConfig | None = None) -> CompletionTracker:
        config = config or self._config()
        return CompletionTracker(
            self.state_store,
            self.exception_store,
            self.xp_ledger,
            award_optional_tasks=config.completion.award_optional_tasks,
        )

    @contextmanager
    def _writing(self, description: str, *, atomic: bool = True) -> Iterator[None]:
        try:
            if atomic:
                with self.state_store.transaction():
                    yield
            else:
                yield
        except sqlite3.Error as exc:
            logger.exception("Storage failure while trying to %s", description)
            raise WriteFailure(f"Could not {description}") from exc

    def _audit(self, *, family_id: str, event_id: str, action: str, details: dict[str, Any]) -> None:
        self.state_store.record_audit_event(family_id=family_id, event_id=event_id, action=action, details=details)

    # Identity and authorization

    def _acting_member(self, member_id: str | None) -> FamilyMember:
        if not member_id:
            raise MissingIdentity("acting member id is required")
        return self.directory.get_member(member_id)

    def _require_family(self, member: FamilyMember, family_id: str) -> None:
        if not self.directory.belongs_to(member.id, family_id):
            raise CrossFamilyAccess(f"Member {member.id} does not belong to family {family_id}")

    @staticmethod
    def _require_event_manager(member: FamilyMember) -> None:
        if not member.role.can_manage_events:
            raise PermissionDenied(f"Role {member.role.value} cannot manage calendar events")

    def _load_event(self, event_id: str) -> Event:
        event = self.state_store.get_event(event_id)
        if event is None:
            raise NotFound(f"Event not found: {event_id}")
        return event

    def _validate_references(self, family_id: str, fields: dict[str, Any]) -> None:
        participants = fields.get("participant_ids")
        if participants:
            for participant_id in participants:
                participant_id = str(participant_id).strip()
                if self.directory.belongs_to(participant_id, family_id):
                    continue
                if self.state_store.get_member(participant_id) is None:
                    raise NotFound(f"Participant not found: {participant_id}")
                raise CrossFamilyAccess(f"Participant {participant_id} belongs to another family")
        category_id = fields.get("category_id")
        if category_id:
            category = self.state_store.get_category(str(category_id).strip())
            if category is None:
                raise NotFound(f"Category not found: {category_id}")
            if category.family_id != family_id:
                raise CrossFamilyAccess(f"Category {category_id} belongs to another family")

    # Directory

    def create_family(self, name: str) -> Family:
        with self._writing("create family"):
            return self.directory.create_family(name)

    def add_member(self, family_id: str, name: str, role: Role | str = Role.CHILD) -> FamilyMember:
        with self._writing("add family member"):
            return self.directory.add_member(family_id, name, role)

    def list_members(self, family_id: str) -> list[FamilyMember]:
        self.directory.get_family(family_id)
        return self.directory.members_of(family_id)

    # Read path

    def list_occurrences(
        self,
        family_id: str,
        window_start: date | datetime | None = None,
        window_end: date | datetime | None = None,
        *,
        acting_member_id: str | None = None,
    ) -> list[EffectiveOccurrence]:
        self.directory.get_family(family_id)
        if acting_member_id:
            self._require_family(self._acting_member(acting_member_id), family_id)
        config = self._config()
        if window_start is None:
            window_start = date.today()
        if window_end is None:
            start_day = window_start.date() if isinstance(window_start, datetime) else window_start
            window_end = start_day + timedelta(days=config.calendar.default_window_days)

        occurrences = self.resolver.occurrences_for_family(
            family_id,
            window_start,
            window_end,
            max_window_days=config.calendar.max_window_days,
        )
        completed = self._tracker(config).completed_keys(occurrences)
        if not completed:
            return occurrences
        return [replace(item, completed=item.completion_key in completed) for item in occurrences]

    def get_event(self, event_id: str, *, acting_member_id: str | None = None) -> Event:
        event = self._load_event(event_id)
        if acting_member_id:
            self._require_family(self._acting_member(acting_member_id), event.family_id)
        return event

    # Write path

    def create_event(
        self,
        acting_member_id: str | None,
        fields: dict[str, Any],
        recurrence: RecurrenceRule | dict[str, Any] | None = None,
    ) -> Event:
        member = self._acting_member(acting_member_id)
        self._require_event_manager(member)
        fields = dict(fields or {})
        fields.pop("family_id", None)
        fields.pop("created_by", None)
        self._validate_references(member.family_id, fields)
        event = new_event(family_id=member.family_id, created_by=member.id, fields=fields, recurrence=recurrence)

        with self._writing("create event"):
            self.state_store.insert_event(event)
            self._audit(
                family_id=event.family_id,
                event_id=event.id,
                action="create_event",
                details={"by": member.id, "title": event.title, "recurring": event.is_recurring},
            )
        logger.info("Member %s created event %s in family %s", member.id, event.id, event.family_id)
        return event

    def mutate_event(
        self,
        acting_member_id: str | None,
        event_id: str,
        occurrence_date: date | str | None,
        scope: OccurrenceScope | str,
        changes: dict[str, Any] | None = None,
    ) -> Event | None:
        """Edit (``changes`` given) or delete (``changes`` None) an event under a scope.

        Returns the event that now carries the edited content, or None for a delete.
        """
        member = self._acting_member(acting_member_id)

        with self._writing("update event" if changes is not None else "delete event"):
            event = self._load_event(event_id)
            self._require_family(member, event.family_id)
            self._require_event_manager(member)
            scope = OccurrenceScope.parse(scope)
            day = _parse_day(occurrence_date) if occurrence_date is not None else event.start.date()
            if changes is not None:
                changes = dict(changes)
                self._validate_references(event.family_id, changes)

            result = self.mutator.mutate(event, day, scope, changes)
            self._audit(
                family_id=event.family_id,
                event_id=event.id,
                action=result.action,
                details={
                    "by": member.id,
                    "scope": scope.value,
                    "occurrence_date": serialize_date(day),
                    **result.details,
                },
            )
        return result.event if changes is not None else None

    # Completion

    def _resolve_completer(self, event: Event, member_id: str | None, policy: MissingMemberPolicy) -> FamilyMember:
        if member_id:
            member = self.directory.get_member(member_id)
        elif policy is MissingMemberPolicy.EVENT_CREATOR:
            member = self.directory.get_member(event.created_by)
        elif policy is MissingMemberPolicy.FIRST_PARENT:
            member = self.directory.first_with_role(event.family_id, Role.PARENT)
            if member is None:
                raise MissingIdentity(f"Family {event.family_id} has no parent to attribute the completion to")
        else:
            raise MissingIdentity("member id is required to toggle completion")
        if not member_id:
            logger.debug("Attributing completion of %s to %s (%s)", event.id, member.id, policy.value)
        self._require_family(member, event.family_id)
        if not member.role.can_complete_tasks:
            raise PermissionDenied(f"Role {member.role.value} cannot complete tasks")
        return member

    def toggle_completion(
        self,
        event_id: str,
        member_id: str | None,
        occurrence_date: date | str,
        completed: bool,
    ) -> bool:
        """Set one member's completion of an occurrence; returns the shared state afterwards."""
        config = self._config()
        event = self._load_event(event_id)
        member = self._resolve_completer(event, member_id, config.completion.policy)
        day = _parse_day(occurrence_date)
        tracker = self._tracker(config)

        # Not wrapped in a transaction so the XP call runs after the completion commits.
        with self._writing("toggle completion", atomic=False):
            if completed:
                tracker.mark_completed(event, member.id, day)
            else:
                tracker.unmark(event, member.id, day)
            self._audit(
                family_id=event.family_id,
                event_id=event.id,
                action="complete_task" if completed else "uncomplete_task",
                details={"by": member.id, "occurrence_date": serialize_date(day)},
            )
            return tracker.is_completed(event.id, day)

    def completions_for_event(self, event_id: str, *, acting_member_id: str | None = None) -> list[CompletionRecord]:
        event = self.get_event(event_id, acting_member_id=acting_member_id)
        return self._tracker().completions_for_event(event.id)

    def completions_for_member(self, member_id: str) -> list[CompletionRecord]:
        member = self.directory.get_member(member_id)
        return self._tracker().completions_for_member(member.id)

    # Categories

    def list_categories(self, family_id: str) -> list[Category]:
        self.directory.get_family(family_id)
        return self.state_store.list_categories(family_id)

    def _load_category(self, category_id: str) -> Category:
        category = self.state_store.get_category(category_id)
        if category is None:
            raise NotFound(f"Category not found: {category_id}")
        return category

    def _check_unique_name(self, family_id: str, name: str, category_id: str | None = None) -> None:
        existing = self.state_store.find_category_by_name(family_id, name)
        if existing is not None and existing.id != category_id:
            raise ValidationError(f"Category {name!r} already exists in this family")

    def create_category(
        self,
        acting_member_id: str | None,
        family_id: str,
        name: str,
        color: str | None = None,
    ) -> Category:
        member = self._acting_member(acting_member_id)
        self.directory.get_family(family_id)
        self._require_family(member, family_id)
        self._require_event_manager(member)
        name = str(name or "").strip()
        if not name:
            raise ValidationError("category name is required")
        color = str(color or "").strip() or self._config().calendar.default_category_color

        with self._writing("create category"):
            self._check_unique_name(family_id, name)
            category = Category(id=str(uuid.uuid4()), family_id=family_id, name=name, color=color)
            self.state_store.insert_category(category)
            self._audit(
                family_id=family_id,
                event_id="",
                action="create_category",
                details={"by": member.id, "category_id": category.id, "name": name},
            )
        return category

    def update_category(
        self,
        acting_member_id: str | None,
        category_id: str,
        name: str | None = None,
        color: str | None = None,
    ) -> Category:
        member = self._acting_member(acting_member_id)
        with self._writing("update category"):
            category = self._load_category(category_id)
            self._require_family(member, category.family_id)
            self._require_event_manager(member)
            updates: dict[str, Any] = {}
            if name is not None:
                name = str(name).strip()
                if not name:
                    raise ValidationError("category name is required")
                self._check_unique_name(category.family_id, name, category.id)
                updates["name"] = name
            if color is not None and str(color).strip():
                updates["color"] = str(color).strip()
            if not updates:
                return category
            category = replace(category, updated_at=datetime.now().replace(microsecond=0), **updates)
            self.state_store.update_category(category)
            self._audit(
                family_id=category.family_id,
                event_id="",
                action="update_category",
                details={"by": member.id, "category_id": category.id, "fields": sorted(updates)},
            )
        return category

    def delete_category(self, acting_member_id: str | None, category_id: str) -> None:
        member = self._acting_member(acting_member_id)
        with self._writing("delete category"):
            category = self._load_category(category_id)
            self._require_family(member, category.family_id)
            self._require_event_manager(member)
            self.state_store.delete_category(category.id)
            self._audit(
                family_id=category.family_id,
                event_id="",
                action="delete_category",
                details={"by": member.id, "category_id": category.id, "name": category.name},
            )
        logger.info("Member %s deleted category %s", member.id, category.id)

    def recent_audit_events(self, limit: int = 100, family_id: str | None = None) -> list[dict[str, Any]]:
        return self.state_store.recent_audit_events(limit=limit, family_id=family_id)
