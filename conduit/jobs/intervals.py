"""
Interval maths for scheduled jobs.

A job fires at its start time and then per its interval unit:

    MINUTE, HOUR, DAY, WEEK   start + k * frequency * unit
    MONTH                     start + k * frequency * 31 days
    YEAR                      start + k * frequency * 365 days
    MONTH_START, MONTH_END    first / last calendar day of every
                              frequency-th month, at the start's time of day
    YEAR_START, YEAR_END      Jan 1 / Dec 31 of every frequency-th year

The frequency is either a single step multiplier ("2") or a list of
enumerated sub-units ("1,15"), which restricts firing to those values:

    MINUTE  minute of hour (0-59)     HOUR    hour of day (0-23)
    DAY     day of month (1-31)       WEEK    ISO weekday (1-7)
    MONTH*  month (1-12)              YEAR*   year

Non-repeating jobs fire once, at start. Nothing fires after `end`.
All arithmetic happens in the start's timezone (UTC unless configured).
"""

from __future__ import annotations

import calendar
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta

from conduit.config.schemas import IntervalUnit, Job

_FIXED_PERIODS = {
    IntervalUnit.MINUTE: timedelta(minutes=1),
    IntervalUnit.HOUR: timedelta(hours=1),
    IntervalUnit.DAY: timedelta(days=1),
    IntervalUnit.WEEK: timedelta(weeks=1),
    IntervalUnit.MONTH: timedelta(days=31),
    IntervalUnit.YEAR: timedelta(days=365),
}

_MONTH_UNITS = (IntervalUnit.MONTH, IntervalUnit.MONTH_START, IntervalUnit.MONTH_END)
_YEAR_UNITS = (IntervalUnit.YEAR, IntervalUnit.YEAR_START, IntervalUnit.YEAR_END)

_VALUE_RANGES: dict[IntervalUnit, tuple[int, int]] = {
    IntervalUnit.MINUTE: (0, 59),
    IntervalUnit.HOUR: (0, 23),
    IntervalUnit.DAY: (1, 31),
    IntervalUnit.WEEK: (1, 7),
    **{unit: (1, 12) for unit in _MONTH_UNITS},
    **{unit: (1, 9999) for unit in _YEAR_UNITS},
}


@dataclass(frozen=True)
class Frequency:
    step: int = 1
    values: frozenset[int] | None = None

    @property
    def enumerated(self) -> bool:
        return self.values is not None


def parse_frequency(text: str, unit: IntervalUnit | None = None) -> Frequency:
    """
    Parse "N" or "a,b,c".

    Raises:
        ValueError: On non-integers, a zero step, or values outside the unit's range
    """
    parts = [p.strip() for p in str(text).split(",") if p.strip()]
    if not parts:
        return Frequency()
    try:
        numbers = [int(p) for p in parts]
    except ValueError as e:
        raise ValueError(f"Invalid interval frequency '{text}': expected integers") from e

    if len(numbers) == 1:
        if numbers[0] < 1:
            raise ValueError(f"Invalid interval frequency '{text}': step must be at least 1")
        return Frequency(step=numbers[0])

    if unit is not None:
        low, high = _VALUE_RANGES[unit]
        bad = [n for n in numbers if not low <= n <= high]
        if bad:
            raise ValueError(
                f"Invalid interval frequency '{text}' for {unit.value}: "
                f"{bad} outside {low}-{high}"
            )
    return Frequency(values=frozenset(numbers))


def _add_months(year: int, month: int, count: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + count
    return index // 12, index % 12 + 1


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


class JobSchedule:
    """
    Fire-time calculator for one job.

    Example:
        schedule = JobSchedule.from_job(job)
        first = schedule.next_fire(None, now)
        second = schedule.next_fire(first, now)
    """

    def __init__(
        self,
        start: datetime,
        unit: IntervalUnit = IntervalUnit.DAY,
        frequency: Frequency | str = "1",
        *,
        end: datetime | None = None,
        repeats: bool = True,
    ):
        self.start = start
        self.unit = unit
        self.frequency = (
            frequency if isinstance(frequency, Frequency) else parse_frequency(frequency, unit)
        )
        self.end = end
        self.repeats = repeats

    @classmethod
    def from_job(cls, job: Job) -> "JobSchedule":
        return cls(
            job.start,
            job.interval,
            parse_frequency(job.frequency, job.interval),
            end=job.end,
            repeats=job.repeats,
        )

    # -------------------------------------------------------------------------

    def next_fire(self, previous: datetime | None, now: datetime) -> datetime | None:
        """
        Next fire time, or None once the job is retired.

        With a previous fire time, the next one strictly after it. Without
        one, the first at or after `now` (a one-off job whose start has
        already passed never fires).
        """
        if not self.repeats:
            if previous is None and self.start >= now:
                return self._within_end(self.start)
            return None
        if previous is not None:
            return self._within_end(self.after(previous, inclusive=False))
        return self._within_end(self.after(now, inclusive=True))

    def occurrences(self, limit: int) -> Iterator[datetime]:
        """First `limit` fire times from start, for previews and tests."""
        moment: datetime | None = None
        for _ in range(limit):
            nxt = self.next_fire(moment, self.start)
            if nxt is None:
                return
            yield nxt
            moment = nxt

    def _within_end(self, moment: datetime | None) -> datetime | None:
        if moment is None or (self.end is not None and moment > self.end):
            return None
        return moment

    def after(self, moment: datetime, *, inclusive: bool) -> datetime | None:
        """Earliest fire time >= start and after (or at, if inclusive) `moment`."""
        if moment < self.start:
            moment, inclusive = self.start, True

        def ok(candidate: datetime) -> bool:
            if candidate < self.start:
                return False
            return candidate >= moment if inclusive else candidate > moment

        if self.frequency.enumerated:
            return self._enumerated(moment, ok)
        if self.unit in _FIXED_PERIODS:
            return self._fixed(moment, inclusive)
        return self._calendar(moment, ok)

    # -------------------------------------------------------------------------
    # Step multiplier
    # -------------------------------------------------------------------------

    def _fixed(self, moment: datetime, inclusive: bool) -> datetime:
        period = _FIXED_PERIODS[self.unit] * self.frequency.step
        elapsed = moment - self.start
        k = elapsed // period
        candidate = self.start + k * period
        if candidate < moment or (candidate == moment and not inclusive):
            candidate += period
        return candidate

    def _calendar(self, moment: datetime, ok: Callable[[datetime], bool]) -> datetime | None:
        step = self.frequency.step
        if self.unit in (IntervalUnit.MONTH_START, IntervalUnit.MONTH_END):
            months = (moment.year - self.start.year) * 12 + (moment.month - self.start.month)
            k = max(0, months // step - 1)
            for i in range(k, k + 4):
                year, month = _add_months(self.start.year, self.start.month, i * step)
                candidate = self._month_anchor(year, month)
                if ok(candidate):
                    return candidate
            return None

        years = moment.year - self.start.year
        k = max(0, years // step - 1)
        for i in range(k, k + 4):
            candidate = self._year_anchor(self.start.year + i * step)
            if ok(candidate):
                return candidate
        return None

    # -------------------------------------------------------------------------
    # Enumerated sub-units
    # -------------------------------------------------------------------------

    def _enumerated(self, moment: datetime, ok: Callable[[datetime], bool]) -> datetime | None:
        values = self.frequency.values or frozenset()
        s = self.start
        unit = self.unit

        if unit == IntervalUnit.MINUTE:
            candidate = moment.replace(second=s.second, microsecond=s.microsecond)
            return _scan(candidate, timedelta(minutes=1), 62, lambda c: c.minute in values, ok)
        if unit == IntervalUnit.HOUR:
            candidate = moment.replace(minute=s.minute, second=s.second, microsecond=s.microsecond)
            return _scan(candidate, timedelta(hours=1), 26, lambda c: c.hour in values, ok)
        if unit in (IntervalUnit.DAY, IntervalUnit.WEEK):
            candidate = datetime.combine(moment.date(), s.timetz())
            if unit == IntervalUnit.DAY:
                return _scan(candidate, timedelta(days=1), 370, lambda c: c.day in values, ok)
            return _scan(candidate, timedelta(days=1), 9, lambda c: c.isoweekday() in values, ok)

        if unit in _MONTH_UNITS:
            for i in range(-1, 26):
                year, month = _add_months(moment.year, moment.month, i)
                if month not in values:
                    continue
                candidate = self._month_anchor(year, month)
                if ok(candidate):
                    return candidate
            return None

        for year in sorted(values):
            candidate = self._year_anchor(year)
            if ok(candidate):
                return candidate
        return None

    # -------------------------------------------------------------------------
    # Anchors
    # -------------------------------------------------------------------------

    def _at(self, year: int, month: int, day: int) -> datetime:
        return self.start.replace(year=year, month=month, day=day)

    def _month_anchor(self, year: int, month: int) -> datetime:
        if self.unit == IntervalUnit.MONTH_START:
            return self._at(year, month, 1)
        if self.unit == IntervalUnit.MONTH_END:
            return self._at(year, month, _last_day(year, month))
        return self._at(year, month, min(self.start.day, _last_day(year, month)))

    def _year_anchor(self, year: int) -> datetime:
        if self.unit == IntervalUnit.YEAR_START:
            return self._at(year, 1, 1)
        if self.unit == IntervalUnit.YEAR_END:
            return self._at(year, 12, 31)
        month = self.start.month
        return self._at(year, month, min(self.start.day, _last_day(year, month)))


def _scan(
    candidate: datetime,
    step: timedelta,
    limit: int,
    matches: Callable[[datetime], bool],
    ok: Callable[[datetime], bool],
) -> datetime | None:
    for _ in range(limit):
        if matches(candidate) and ok(candidate):
            return candidate
        candidate += step
    return None
