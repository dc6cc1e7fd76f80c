"""Calendar-aware period calculation."""

import enum
from datetime import datetime

from dateutil.relativedelta import relativedelta

from subplans.core.clock import utc_now
from subplans.core.exceptions import InvalidCountError, InvalidIntervalError


class Interval(str, enum.Enum):
    """Interval units for billing, trial, grace and reset cadences."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


_RELATIVEDELTA_KEYWORDS: dict[Interval, str] = {
    Interval.DAY: "days",
    Interval.WEEK: "weeks",
    Interval.MONTH: "months",
    Interval.YEAR: "years",
}


def parse_interval(value: Interval | str) -> Interval:
    """Coerce a raw interval value into an ``Interval``.

    Raises:
        InvalidIntervalError: If the value is not one of the supported units
    """
    try:
        return Interval(value)
    except ValueError:
        allowed = ", ".join(i.value for i in Interval)
        raise InvalidIntervalError(
            f'Invalid interval "{value}". Must be one of: {allowed}',
            field="interval",
            value=value,
        ) from None


class Period:
    """A span of ``count`` intervals starting at ``start``.

    Months and years follow calendar rollover and clamp to the last day of
    the target month, so one month after January 31st is the last day of
    February.
    """

    __slots__ = ("_count", "_end", "_interval", "_start")

    def __init__(
        self,
        interval: Interval | str = Interval.MONTH,
        count: int = 1,
        start: datetime | None = None,
    ) -> None:
        """Compute the period.

        Args:
            interval: Interval unit
            count: Number of intervals, zero or positive
            start: Start instant (defaults to now)

        Raises:
            InvalidIntervalError: If the interval is unknown
            InvalidCountError: If count is negative
        """
        self._interval = parse_interval(interval)

        if count < 0:
            raise InvalidCountError(field="count", value=count, constraint="count >= 0")

        self._count = int(count)
        self._start = start if start is not None else utc_now()
        delta = relativedelta(**{_RELATIVEDELTA_KEYWORDS[self._interval]: self._count})
        self._end = self._start + delta

    @property
    def start(self) -> datetime:
        return self._start

    @property
    def end(self) -> datetime:
        return self._end

    @property
    def interval(self) -> Interval:
        return self._interval

    @property
    def count(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return (
            f"Period(interval={self._interval.value!r}, count={self._count}, "
            f"start={self._start.isoformat()}, end={self._end.isoformat()})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Period):
            return NotImplemented
        return (
            self._interval == other._interval
            and self._count == other._count
            and self._start == other._start
        )

    def __hash__(self) -> int:
        return hash((self._interval, self._count, self._start))
