"""
Slot availability for the booking calendar.

Problem:

Given a date range and the busy intervals already on the operator's calendar, show every slot a visitor could book and whether it is free.

Input: range start / end instants, busy intervals from the external calendar
Output: every 30 and 60 minute candidate on each business day, flagged available or not

Algorithm:
1. Walk each calendar date in the range (in the business timezone), skipping weekends
2. Start a candidate every 30 minutes from opening time up to closing time, once per duration
3. Drop candidates that would run past closing time
4. A candidate is unavailable iff it overlaps a busy interval (half-open, back-to-back is fine)
"""
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, List, Tuple
import logging

from .config import BookingConfig
from .error_utils import TimeValidationError
from .models import AvailabilitySlot
from .period import Period

logger = logging.getLogger(__name__)


def slot_id(slot_date: date, start_time: time, duration: int) -> str:
    """Stable identifier so the same slot keeps its key across queries, e.g. '2025-01-06-10-0-30'."""
    return f"{slot_date.isoformat()}-{start_time.hour}-{start_time.minute}-{duration}"


def parse_instant(value: str, field_name: str = "date") -> datetime:
    """
    Parse an ISO-8601 instant as sent by the client. Naive values are rejected since the client always sends an offset or 'Z'.
    """
    if not value or not isinstance(value, str):
        raise TimeValidationError(f"{field_name} is required.", field=field_name)
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise TimeValidationError(f"{field_name} is not a valid ISO-8601 instant.", field=field_name) from None
    if parsed.tzinfo is None:
        raise TimeValidationError(f"{field_name} must include a UTC offset.", field=field_name)
    return parsed


class AvailabilityComputer:

    def __init__(self, config: BookingConfig):
        self._config = config
        self._tz = config.business_tz
        self._step = timedelta(minutes=config.slot_step_minutes)

    def compute_slots(self, range_start: datetime, range_end: datetime, busy_intervals: Iterable[Period]) -> List[AvailabilitySlot]:
        """
        Turn a time range and a set of busy intervals into the list of candidate slots.

        Pure given its inputs: the same range and busy set always give the same slots, in the same order, with the same ids.

        Raises TimeValidationError if the range is inverted or longer than the configured maximum.
        """
        self.validate_range(range_start, range_end)
        busy = list(busy_intervals)
        first_day = range_start.astimezone(self._tz).date()
        last_day = range_end.astimezone(self._tz).date()

        slots = []
        day = first_day
        while day <= last_day:
            # Saturday = 5, Sunday = 6
            if day.weekday() < 5:
                slots.extend(self._slots_for_day(day, busy))
            day += timedelta(days=1)

        blocked = sum(1 for slot in slots if not slot.is_available)
        logger.info(f"Generated {len(slots)} slots between {first_day} and {last_day}, {blocked} blocked by {len(busy)} busy intervals")
        return slots

    def business_window(self, range_start: datetime, range_end: datetime) -> Tuple[datetime, datetime]:
        """
        Span covered by compute_slots for this range: opening time on the first business-timezone date to closing time on the last.
        Busy time is looked up for this window, not the raw range.
        """
        first_day = range_start.astimezone(self._tz).date()
        last_day = range_end.astimezone(self._tz).date()
        return (datetime.combine(first_day, time(self._config.open_hour), tzinfo=self._tz),
                datetime.combine(last_day, time(0), tzinfo=self._tz) + timedelta(hours=self._config.close_hour))

    def validate_range(self, range_start: datetime, range_end: datetime):
        if range_end < range_start:
            raise TimeValidationError("endDate must not be before startDate.", field="endDate")
        span_days = (range_end.astimezone(self._tz).date() - range_start.astimezone(self._tz).date()).days
        if span_days > self._config.max_range_days:
            raise TimeValidationError(f"Date range may not exceed {self._config.max_range_days} days.", field="endDate")

    def _slots_for_day(self, day: date, busy: List[Period]) -> Iterator[AvailabilitySlot]:
        midnight = datetime.combine(day, time(0), tzinfo=self._tz)
        opening = midnight + timedelta(hours=self._config.open_hour)
        closing = midnight + timedelta(hours=self._config.close_hour)

        start = opening
        while start < closing:
            for duration in self._config.slot_durations:
                end = start + timedelta(minutes=duration)
                if end > closing:
                    continue
                candidate = Period(start, end)
                is_available = not any(candidate.overlaps(interval) for interval in busy)
                yield AvailabilitySlot(
                    id=slot_id(day, start.time(), duration),
                    date=day,
                    start=start,
                    end=end,
                    duration=duration,
                    is_available=is_available,
                )
            start += self._step
