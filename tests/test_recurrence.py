import unittest
from datetime import date, datetime

from familycal.errors import InvalidRecurrenceRule, InvalidWindow
from familycal.recurrence import (
    Frequency,
    RecurrenceRule,
    count_before,
    expand,
    last_occurrence,
    occurrence_index,
    validate_rule,
    window_bounds,
)


def _days(moments):
    return [moment.date() for moment in moments]


class ExpandTests(unittest.TestCase):
    def test_weekly_series_over_four_week_window(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.WEEKLY)
        start = datetime(2024, 1, 1, 9, 0)
        occurrences = list(expand(rule, start, date(2024, 1, 1), date(2024, 1, 28)))
        self.assertEqual(
            _days(occurrences),
            [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)],
        )
        self.assertTrue(all(moment.time() == start.time() for moment in occurrences))

    def test_non_recurring_event_yields_only_inside_window(self) -> None:
        start = datetime(2024, 3, 5, 18, 30)
        self.assertEqual(list(expand(None, start, date(2024, 3, 1), date(2024, 3, 31))), [start])
        self.assertEqual(list(expand(None, start, date(2024, 4, 1), date(2024, 4, 30))), [])

    def test_monthly_on_31st_clamps_without_drift(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.MONTHLY, end_count=5)
        occurrences = list(expand(rule, datetime(2024, 1, 31, 8, 0), date(2024, 1, 1), date(2024, 12, 31)))
        self.assertEqual(
            _days(occurrences),
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30), date(2024, 5, 31)],
        )

    def test_series_continued_on_clamped_date_keeps_month_end(self) -> None:
        original = RecurrenceRule(frequency=Frequency.MONTHLY)
        rule = original.continued_from(datetime(2024, 1, 31, 8, 0), datetime(2024, 2, 29, 8, 0))
        self.assertEqual(rule.anchor_day, 31)

        occurrences = list(expand(rule, datetime(2024, 2, 29, 8, 0), date(2024, 1, 1), date(2024, 6, 30)))
        self.assertEqual(
            _days(occurrences),
            [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30), date(2024, 5, 31), date(2024, 6, 30)],
        )
        self.assertEqual(count_before(rule, datetime(2024, 2, 29, 8, 0), date(2024, 5, 1)), 3)
        self.assertEqual(occurrence_index(rule, datetime(2024, 2, 29, 8, 0), date(2024, 4, 30)), 2)

    def test_series_continued_on_unclamped_date_needs_no_anchor(self) -> None:
        original = RecurrenceRule(frequency=Frequency.MONTHLY, anchor_day=31)
        self.assertIsNone(original.continued_from(datetime(2024, 2, 29), datetime(2024, 3, 31)).anchor_day)
        weekly = RecurrenceRule(frequency=Frequency.WEEKLY)
        self.assertIsNone(weekly.continued_from(datetime(2024, 1, 31), datetime(2024, 2, 7)).anchor_day)

    def test_yearly_on_leap_day(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.YEARLY)
        occurrences = list(expand(rule, datetime(2024, 2, 29), date(2024, 1, 1), date(2028, 12, 31)))
        self.assertEqual(
            _days(occurrences),
            [date(2024, 2, 29), date(2025, 2, 28), date(2026, 2, 28), date(2027, 2, 28), date(2028, 2, 29)],
        )

    def test_end_count_and_end_date_terminate(self) -> None:
        start = datetime(2024, 1, 1, 7, 0)
        by_count = RecurrenceRule(frequency=Frequency.DAILY, end_count=3)
        by_date = RecurrenceRule(frequency=Frequency.DAILY, end_date=date(2024, 1, 3))
        self.assertEqual(len(list(expand(by_count, start, date(2024, 1, 1), date(2024, 12, 31)))), 3)
        self.assertEqual(
            _days(expand(by_date, start, date(2024, 1, 1), date(2024, 12, 31))),
            [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)],
        )

    def test_interval_skips_periods(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.WEEKLY, interval=2)
        occurrences = expand(rule, datetime(2024, 1, 1), date(2024, 1, 1), date(2024, 2, 1))
        self.assertEqual(_days(occurrences), [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)])

    def test_window_far_from_series_start(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.DAILY)
        occurrences = list(expand(rule, datetime(2000, 1, 1, 6, 0), date(2024, 6, 1), date(2024, 6, 3)))
        self.assertEqual(_days(occurrences), [date(2024, 6, 1), date(2024, 6, 2), date(2024, 6, 3)])

    def test_expansion_is_restartable(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.MONTHLY, interval=3)
        args = (rule, datetime(2023, 11, 30), date(2023, 1, 1), date(2025, 1, 1))
        self.assertEqual(list(expand(*args)), list(expand(*args)))

    def test_window_end_before_start_is_rejected(self) -> None:
        with self.assertRaises(InvalidWindow):
            window_bounds(date(2024, 2, 1), date(2024, 1, 1))


class RuleValidationTests(unittest.TestCase):
    def test_both_terminations_rejected(self) -> None:
        with self.assertRaises(InvalidRecurrenceRule):
            RecurrenceRule.from_dict({"frequency": "DAILY", "end_date": "2024-02-01", "end_count": 3})

    def test_non_positive_interval_rejected(self) -> None:
        with self.assertRaises(InvalidRecurrenceRule):
            RecurrenceRule.from_dict({"frequency": "WEEKLY", "interval": 0})
        with self.assertRaises(InvalidRecurrenceRule):
            validate_rule(RecurrenceRule(frequency=Frequency.DAILY, interval=-2))

    def test_unknown_frequency_rejected(self) -> None:
        with self.assertRaises(InvalidRecurrenceRule):
            RecurrenceRule.from_dict({"frequency": "HOURLY"})

    def test_none_frequency_means_single_event(self) -> None:
        self.assertIsNone(RecurrenceRule.from_dict({"frequency": "NONE"}))
        self.assertIsNone(RecurrenceRule.from_dict(None))

    def test_end_date_before_start_rejected(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.DAILY, end_date=date(2023, 12, 31))
        with self.assertRaises(InvalidRecurrenceRule):
            validate_rule(rule, datetime(2024, 1, 1))

    def test_anchor_day_must_clamp_to_series_start(self) -> None:
        rule = RecurrenceRule.from_dict({"frequency": "MONTHLY", "anchor_day": "31"})
        self.assertEqual(rule.anchor_day, 31)
        validate_rule(rule, datetime(2024, 4, 30))
        with self.assertRaises(InvalidRecurrenceRule):
            validate_rule(rule, datetime(2024, 4, 12))
        with self.assertRaises(InvalidRecurrenceRule):
            RecurrenceRule.from_dict({"frequency": "MONTHLY", "anchor_day": 32})
        self.assertIsNone(rule.anchored_at(datetime(2024, 4, 12)).anchor_day)
        self.assertEqual(rule.anchored_at(datetime(2024, 6, 30)).anchor_day, 31)

    def test_from_dict_parses_lowercase(self) -> None:
        rule = RecurrenceRule.from_dict({"frequency": "monthly", "interval": "2", "end_count": "6"})
        self.assertEqual(rule, RecurrenceRule(frequency=Frequency.MONTHLY, interval=2, end_count=6))
        self.assertEqual(rule.to_dict()["frequency"], "MONTHLY")


class PositionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.start = datetime(2024, 1, 1, 9, 0)
        self.weekly = RecurrenceRule(frequency=Frequency.WEEKLY)

    def test_count_before(self) -> None:
        self.assertEqual(count_before(self.weekly, self.start, date(2024, 1, 1)), 0)
        self.assertEqual(count_before(self.weekly, self.start, date(2024, 1, 15)), 2)
        self.assertEqual(count_before(self.weekly, self.start, date(2024, 1, 16)), 3)

    def test_count_before_respects_end_count(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.WEEKLY, end_count=2)
        self.assertEqual(count_before(rule, self.start, date(2024, 6, 1)), 2)

    def test_occurrence_index(self) -> None:
        self.assertEqual(occurrence_index(self.weekly, self.start, date(2024, 1, 15)), 2)
        self.assertIsNone(occurrence_index(self.weekly, self.start, date(2024, 1, 16)))
        self.assertIsNone(occurrence_index(self.weekly, self.start, date(2023, 12, 25)))

    def test_occurrence_index_past_termination(self) -> None:
        rule = RecurrenceRule(frequency=Frequency.WEEKLY, end_count=2)
        self.assertEqual(occurrence_index(rule, self.start, date(2024, 1, 8)), 1)
        self.assertIsNone(occurrence_index(rule, self.start, date(2024, 1, 15)))

    def test_last_occurrence(self) -> None:
        by_date = RecurrenceRule(frequency=Frequency.WEEKLY, end_date=date(2024, 1, 20))
        by_count = RecurrenceRule(frequency=Frequency.MONTHLY, end_count=3)
        self.assertEqual(last_occurrence(by_date, self.start), datetime(2024, 1, 15, 9, 0))
        self.assertEqual(last_occurrence(by_count, self.start), datetime(2024, 3, 1, 9, 0))
        self.assertIsNone(last_occurrence(self.weekly, self.start))


if __name__ == "__main__":
    unittest.main()
