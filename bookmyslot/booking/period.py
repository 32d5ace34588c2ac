# Time period class used for availability and busy-interval checks
from datetime import datetime


class Period:
    """
    Defined as a pair of aware datetime objects, half-open: [begin_period, end_period).
    """

    __slots__ = ("_begin_period", "_end_period")

    def __init__(self, begin_period: datetime, end_period: datetime):
        if begin_period.tzinfo is None or end_period.tzinfo is None:
            raise ValueError("Period bounds must be timezone aware")
        if end_period < begin_period:
            raise ValueError(f"Period ends before it begins: {begin_period} > {end_period}")
        self._begin_period = begin_period
        self._end_period = end_period

    @property
    def begin_period(self) -> datetime:
        return self._begin_period

    @property
    def end_period(self) -> datetime:
        return self._end_period

    def overlaps(self, other: "Period") -> bool:
        # Back-to-back periods (one ends exactly when the other begins) do not overlap
        return self.begin_period < other.end_period and self.end_period > other.begin_period

    def __eq__(self, other):
        if not isinstance(other, Period):
            return NotImplemented
        return (self.begin_period, self.end_period) == (other.begin_period, other.end_period)

    def __hash__(self):
        return hash((self.begin_period, self.end_period))

    def __repr__(self):
        return f"Period({self.begin_period.isoformat()}, {self.end_period.isoformat()})"
