"""
Availability Reconciler.

Pure functions that turn a provider's busy intervals into ranked candidate
slots, plus the policy that maps a follow-up interval to a search window.
All interval math is half-open: a slot may end exactly where a busy block
or the window begins, but never start there.
"""

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, Iterator, Sequence

from dateutil.relativedelta import relativedelta

from followup.core.errors import ValidationError
from followup.core.scheduling.types import (
    CandidateSlot,
    IntervalKind,
    IntervalSpec,
    TimeInterval,
    WorkingHours,
)

logger = logging.getLogger(__name__)


def merge_intervals(intervals: Iterable[TimeInterval]) -> list[TimeInterval]:
    """Sort and merge overlapping or adjacent intervals.

    Sorted by start; equal starts put the shorter interval first.
    """
    ordered = sorted(intervals, key=lambda i: (i.start, i.end - i.start))
    merged: list[TimeInterval] = []

    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            if interval.end > merged[-1].end:
                merged[-1] = TimeInterval(start=merged[-1].start, end=interval.end)
        else:
            merged.append(interval)

    return merged


def _working_spans(
    window: TimeInterval,
    working_hours: WorkingHours,
    tz: tzinfo,
) -> Iterator[TimeInterval]:
    """Yield each working day's open hours clipped to the window."""
    day = window.start.astimezone(tz).date()
    last_day = (window.end - timedelta(microseconds=1)).astimezone(tz).date()

    while day <= last_day:
        if day.isoweekday() in working_hours.weekdays:
            opens = datetime.combine(day, working_hours.start_of_day, tzinfo=tz)
            closes = datetime.combine(day, working_hours.end_of_day, tzinfo=tz)
            lo = max(opens, window.start)
            hi = min(closes, window.end)
            if lo < hi:
                yield TimeInterval(start=lo, end=hi)
        day += timedelta(days=1)


def _free_gaps(span: TimeInterval, merged_busy: Sequence[TimeInterval]) -> Iterator[TimeInterval]:
    """Complement of the merged busy intervals within one span."""
    cursor = span.start

    for busy in merged_busy:
        if busy.end <= cursor:
            continue
        if busy.start >= span.end:
            break
        if busy.start > cursor:
            yield TimeInterval(start=cursor, end=busy.start)
        cursor = max(cursor, busy.end)
        if cursor >= span.end:
            return

    if cursor < span.end:
        yield TimeInterval(start=cursor, end=span.end)


def find_candidate_slots(
    busy_intervals: Sequence[TimeInterval],
    window: TimeInterval,
    working_hours: WorkingHours,
    slot_duration: timedelta,
    max_candidates: int,
    tz: tzinfo = timezone.utc,
    per_day_limit: int = 0,
    exclude: Sequence[TimeInterval] = (),
) -> list[CandidateSlot]:
    """Compute earliest-first free slots inside the window's working hours.

    Args:
        busy_intervals: Provider busy blocks, any order, may overlap
        window: Search window; its end is exclusive
        working_hours: Daily bookable hours in ``tz``
        slot_duration: Length of each candidate
        max_candidates: Stop after this many candidates
        tz: Timezone the working hours are expressed in
        per_day_limit: Max candidates from one day (0 = unlimited)
        exclude: Intervals no candidate may overlap (e.g. a discarded batch)

    Returns:
        Candidates with ordinals 1..N (N <= max_candidates); empty means
        no availability and must be escalated by the caller.
    """
    if slot_duration <= timedelta(0):
        raise ValidationError("Slot duration must be positive")
    if max_candidates < 1:
        raise ValidationError("max_candidates must be at least 1")

    merged = merge_intervals(busy_intervals)
    intervals: list[TimeInterval] = []

    for span in _working_spans(window, working_hours, tz):
        taken_today = 0
        for gap in _free_gaps(span, merged):
            start = gap.start
            while start + slot_duration <= gap.end:
                candidate = TimeInterval(
                    start=start.astimezone(timezone.utc),
                    end=(start + slot_duration).astimezone(timezone.utc),
                )
                start += slot_duration
                if any(candidate.overlaps(ex) for ex in exclude):
                    continue
                intervals.append(candidate)
                taken_today += 1
                if len(intervals) >= max_candidates:
                    return _number(intervals)
                if per_day_limit and taken_today >= per_day_limit:
                    break
            if per_day_limit and taken_today >= per_day_limit:
                break

    logger.debug(f"Reconciler found {len(intervals)} candidates in {window.to_dict()}")
    return _number(intervals)


def _number(intervals: list[TimeInterval]) -> list[CandidateSlot]:
    return [CandidateSlot(ordinal=i, interval=interval) for i, interval in enumerate(intervals, 1)]


def is_slot_free(slot: TimeInterval, busy_intervals: Iterable[TimeInterval]) -> bool:
    """True if no busy interval overlaps the slot."""
    return not any(slot.overlaps(busy) for busy in busy_intervals)


def _local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, datetime.min.time(), tzinfo=tz)


def derive_window(
    spec: IntervalSpec,
    now: datetime,
    tz: tzinfo,
    default_start_days: int = 14,
    default_end_days: int = 56,
) -> TimeInterval:
    """Map a follow-up interval to a search window.

    relative(amount, unit) -> [today + (amount-1) units, today + (amount+1) units)
    unbounded / unspecified -> [today + default_start_days, today + default_end_days)

    The window never starts before ``now``.
    """
    today = now.astimezone(tz).date()

    if spec.kind == IntervalKind.RELATIVE:
        unit = spec.unit.value
        start_day = today + relativedelta(**{unit: spec.amount - 1})
        end_day = today + relativedelta(**{unit: spec.amount + 1})
    else:
        if default_end_days <= default_start_days:
            raise ValidationError("Default window must end after it starts")
        start_day = today + timedelta(days=default_start_days)
        end_day = today + timedelta(days=default_end_days)

    start = max(_local_midnight(start_day, tz), now)
    return TimeInterval(start=start, end=_local_midnight(end_day, tz))
