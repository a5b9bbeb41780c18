from datetime import date, timedelta
from itertools import islice
from typing import Iterator, Optional

from models import RecurrenceFrequency
from periods import add_months
from schemas import RecurrenceConfig


def nth_occurrence(anchor: date, config: RecurrenceConfig, n: int) -> date:
    """Date of the n-th occurrence (0 is the anchor itself).

    Monthly and yearly steps are computed from the anchor rather than from
    the previous occurrence, so a series anchored on the 31st snaps to
    shorter month ends without drifting to the 28th for good.
    """
    step = config.interval * n
    if config.frequency == RecurrenceFrequency.daily:
        return anchor + timedelta(days=step)
    if config.frequency == RecurrenceFrequency.weekly:
        return anchor + timedelta(weeks=step)
    if config.frequency == RecurrenceFrequency.monthly:
        return add_months(anchor, step, desired_day=anchor.day)
    return add_months(anchor, 12 * step, desired_day=anchor.day)


def iter_occurrences(
    anchor: date,
    config: RecurrenceConfig,
    *,
    horizon: Optional[date] = None,
    after: Optional[date] = None,
) -> Iterator[date]:
    """Lazily yield occurrence dates starting at ``anchor``.

    The sequence stops at ``config.end_date`` or ``horizon``, whichever comes
    first. With neither bound it is unbounded, so callers should slice it.
    Calling again with the same arguments restarts the sequence.
    """
    limit = config.end_date
    if horizon is not None and (limit is None or horizon < limit):
        limit = horizon
    n = 0
    while True:
        current = nth_occurrence(anchor, config, n)
        n += 1
        if limit is not None and current > limit:
            return
        if after is not None and current <= after:
            continue
        yield current


def next_occurrences(
    anchor: date, config: RecurrenceConfig, after: date, count: int = 1
) -> list[date]:
    return list(islice(iter_occurrences(anchor, config, after=after), count))
