import tempfile
import unittest
from datetime import date
from pathlib import Path
from unittest import mock

from familycal.completion import CompletionTracker
from familycal.directory import FamilyDirectory, XpLedger
from familycal.edits import new_event
from familycal.errors import InvalidOccurrence, NotATask
from familycal.exception_store import ExceptionStore
from familycal.models import Role
from familycal.mutator import ScopedMutator
from familycal.resolver import OccurrenceResolver
from familycal.state_store import StateStore


class CompletionTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        directory = FamilyDirectory(self.store)
        family = directory.create_family("Holm")
        self.family_id = family.id
        self.parent = directory.add_member(family.id, "Eva", Role.PARENT)
        self.kid_a = directory.add_member(family.id, "Ola", Role.CHILD)
        self.kid_b = directory.add_member(family.id, "Mia", Role.CHILD)
        self.exceptions = ExceptionStore(self.store)
        self.ledger = mock.Mock(spec=XpLedger)
        self.tracker = CompletionTracker(self.store, self.exceptions, self.ledger)
        self.chore = self._task(xp_points=5)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _task(self, recurrence=None, **fields):
        payload = {
            "title": "Dishes",
            "start": "2024-01-01T19:00:00",
            "is_task": True,
            "participant_ids": [self.kid_a.id, self.kid_b.id],
        }
        payload.update(fields)
        event = new_event(
            family_id=self.family_id,
            created_by=self.parent.id,
            fields=payload,
            recurrence=recurrence if recurrence is not None else {"frequency": "DAILY"},
        )
        self.store.insert_event(event)
        return event

    def test_mark_is_idempotent(self) -> None:
        first = self.tracker.mark_completed(self.chore, self.kid_a.id, date(2024, 1, 3))
        second = self.tracker.mark_completed(self.chore, self.kid_a.id, date(2024, 1, 3))
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(self.tracker.completions_for_event(self.chore.id)), 1)
        self.ledger.award.assert_called_once_with(self.kid_a.id, 5, event_id=self.chore.id)

    def test_completion_is_shared_between_participants(self) -> None:
        day = date(2024, 1, 2)
        self.tracker.mark_completed(self.chore, self.kid_a.id, day)
        self.assertTrue(self.tracker.is_completed(self.chore.id, day))

        self.tracker.mark_completed(self.chore, self.kid_b.id, day)
        self.assertTrue(self.tracker.unmark(self.chore, self.kid_a.id, day))
        self.assertTrue(self.tracker.is_completed(self.chore.id, day))

        self.assertTrue(self.tracker.unmark(self.chore, self.kid_b.id, day))
        self.assertFalse(self.tracker.is_completed(self.chore.id, day))
        self.assertFalse(self.tracker.is_completed(self.chore.id, date(2024, 1, 3)))

    def test_unmark_without_record(self) -> None:
        self.assertFalse(self.tracker.unmark(self.chore, self.kid_a.id, date(2024, 1, 2)))
        self.ledger.revoke.assert_not_called()

    def test_unmark_revokes_xp(self) -> None:
        self.tracker.mark_completed(self.chore, self.kid_a.id, date(2024, 1, 2))
        self.tracker.unmark(self.chore, self.kid_a.id, date(2024, 1, 2))
        self.ledger.revoke.assert_called_once_with(self.kid_a.id, 5, event_id=self.chore.id)

    def test_non_task_rejected(self) -> None:
        event = self._task(is_task=False, xp_points=None)
        with self.assertRaises(NotATask):
            self.tracker.mark_completed(event, self.kid_a.id, date(2024, 1, 1))

    def test_occurrence_must_exist(self) -> None:
        weekly = self._task({"frequency": "WEEKLY"}, title="Trash")
        with self.assertRaises(InvalidOccurrence):
            self.tracker.mark_completed(weekly, self.kid_a.id, date(2024, 1, 2))
        ScopedMutator(self.store, self.exceptions).mutate(weekly, date(2024, 1, 8), "THIS")
        with self.assertRaises(InvalidOccurrence):
            self.tracker.mark_completed(weekly, self.kid_a.id, date(2024, 1, 8))

    def test_substitute_completes_on_original_date(self) -> None:
        mutator = ScopedMutator(self.store, self.exceptions)
        moved = mutator.mutate(self.chore, date(2024, 1, 4), "THIS", {"start": "2024-01-05T08:00:00"}).event

        with self.assertRaises(InvalidOccurrence):
            self.tracker.mark_completed(moved, self.kid_a.id, date(2024, 1, 5))
        self.tracker.mark_completed(moved, self.kid_a.id, date(2024, 1, 4))

        occurrences = OccurrenceResolver(self.store, self.exceptions).occurrences_for_family(
            self.family_id, date(2024, 1, 4), date(2024, 1, 4)
        )
        keys = self.tracker.completed_keys(occurrences)
        self.assertIn((moved.id, date(2024, 1, 4)), keys)

    def test_xp_failure_does_not_block_completion(self) -> None:
        self.ledger.award.side_effect = RuntimeError("gamification down")
        with self.assertLogs("familycal.completion", level="ERROR"):
            record = self.tracker.mark_completed(self.chore, self.kid_a.id, date(2024, 1, 5))
        self.assertEqual(record.member_id, self.kid_a.id)
        self.assertTrue(self.tracker.is_completed(self.chore.id, date(2024, 1, 5)))

    def test_optional_tasks_award_only_when_enabled(self) -> None:
        optional = self._task(title="Homework", is_required=False, xp_points=3)
        self.tracker.mark_completed(optional, self.kid_a.id, date(2024, 1, 1))
        self.ledger.award.assert_not_called()

        generous = CompletionTracker(self.store, self.exceptions, self.ledger, award_optional_tasks=True)
        generous.mark_completed(optional, self.kid_b.id, date(2024, 1, 1))
        self.ledger.award.assert_called_once_with(self.kid_b.id, 3, event_id=optional.id)

    def test_store_backed_ledger_totals(self) -> None:
        tracker = CompletionTracker(self.store, self.exceptions, XpLedger(self.store))
        tracker.mark_completed(self.chore, self.kid_a.id, date(2024, 1, 1))
        tracker.mark_completed(self.chore, self.kid_a.id, date(2024, 1, 2))
        tracker.unmark(self.chore, self.kid_a.id, date(2024, 1, 1))
        self.assertEqual(XpLedger(self.store).total(self.kid_a.id), 5)
        self.assertEqual(len(tracker.completions_for_member(self.kid_a.id)), 1)


if __name__ == "__main__":
    unittest.main()
