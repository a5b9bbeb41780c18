from datetime import date
from itertools import islice

from models import RecurrenceFrequency
from periods import add_months
from recurrence import iter_occurrences, next_occurrences, nth_occurrence
from schemas import RecurrenceConfig


def _config(frequency: RecurrenceFrequency, interval: int = 1, end_date=None) -> RecurrenceConfig:
    return RecurrenceConfig(frequency=frequency, interval=interval, end_date=end_date)


def test_monthly_snaps_to_end_and_recovers_anchor_day():
    config = _config(RecurrenceFrequency.monthly)
    anchor = date(2024, 1, 31)
    assert nth_occurrence(anchor, config, 1) == date(2024, 2, 29)
    # counted from the anchor, so March goes back to the 31st
    assert nth_occurrence(anchor, config, 2) == date(2024, 3, 31)
    assert nth_occurrence(anchor, config, 3) == date(2024, 4, 30)


def test_daily_weekly_and_yearly_steps():
    anchor = date(2024, 2, 29)
    assert nth_occurrence(anchor, _config(RecurrenceFrequency.daily, 3), 1) == date(2024, 3, 3)
    assert nth_occurrence(anchor, _config(RecurrenceFrequency.weekly, 2), 1) == date(2024, 3, 14)
    assert nth_occurrence(anchor, _config(RecurrenceFrequency.yearly), 1) == date(2025, 2, 28)
    assert nth_occurrence(anchor, _config(RecurrenceFrequency.yearly), 4) == date(2028, 2, 29)


def test_sequence_stops_at_end_date_or_horizon():
    config = _config(RecurrenceFrequency.weekly, end_date=date(2024, 1, 22))
    assert list(iter_occurrences(date(2024, 1, 1), config)) == [
        date(2024, 1, 1),
        date(2024, 1, 8),
        date(2024, 1, 15),
        date(2024, 1, 22),
    ]
    assert list(
        iter_occurrences(date(2024, 1, 1), config, horizon=date(2024, 1, 10))
    ) == [date(2024, 1, 1), date(2024, 1, 8)]


def test_unbounded_sequence_is_lazy_and_restartable():
    config = _config(RecurrenceFrequency.monthly, interval=2)
    first = list(islice(iter_occurrences(date(2024, 1, 15), config), 3))
    again = list(islice(iter_occurrences(date(2024, 1, 15), config), 3))
    assert first == again == [date(2024, 1, 15), date(2024, 3, 15), date(2024, 5, 15)]


def test_next_occurrences_after_date():
    config = _config(RecurrenceFrequency.monthly)
    assert next_occurrences(date(2024, 1, 10), config, after=date(2024, 3, 10), count=2) == [
        date(2024, 4, 10),
        date(2024, 5, 10),
    ]


def test_add_months_handles_negative_offsets():
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert add_months(date(2024, 1, 15), -13) == date(2022, 12, 15)
