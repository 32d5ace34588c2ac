"""Records passed between the booking engine's components."""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, List, Optional
from uuid import UUID

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"
STATUSES = (PENDING, APPROVED, REJECTED, CANCELLED)

PROVISION_CALENDAR = "provision_calendar"
REMOVE_CALENDAR = "remove_calendar"

NO_REASON_PROVIDED = "No reason provided"


@dataclass
class BookingSlot:
    slot_date: date
    slot_start_time: time
    slot_end_time: time
    slot_duration_minutes: int
    id: Optional[UUID] = None
    booking_request_id: Optional[UUID] = None
    ordinal: int = 1
    calendar_id: Optional[str] = None
    calendar_event_id: Optional[str] = None

    @property
    def sort_key(self):
        return (self.slot_date, self.slot_start_time)


@dataclass
class BookingRequest:
    user_name: str
    user_email: str
    phone_number: str = ""
    client_name: str = ""
    role_name: str = ""
    job_description: str = ""
    team_details: Optional[str] = None
    job_link: Optional[str] = None
    message: Optional[str] = None
    resume_file_path: Optional[str] = None
    payment_screenshot_path: Optional[str] = None
    id: Optional[UUID] = None
    status: str = PENDING
    approval_token: Optional[str] = field(default=None, repr=False)
    cancellation_token: Optional[str] = field(default=None, repr=False)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    slots: List[BookingSlot] = field(default_factory=list)

    @property
    def total_slots(self) -> int:
        return len(self.slots)

    def event_label(self, slot: BookingSlot) -> str:
        """
        Deterministic calendar event summary for a slot. Also used as the search text when a slot has no stored event id.
        """
        return f"{self.user_name} - Slot {slot.ordinal}/{self.total_slots}"


@dataclass(frozen=True)
class AvailabilitySlot:
    id: str
    date: date
    start: datetime
    end: datetime
    duration: int
    is_available: bool

    def to_json(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "startTime": format_wall_clock(self.start.time()),
            "endTime": format_wall_clock(self.end.time()),
            "isAvailable": self.is_available,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class EventRef:
    slot_id: Optional[UUID]
    calendar_id: str
    event_id: str
    html_link: Optional[str] = None


@dataclass
class ReconciliationTask:
    booking_request_id: UUID
    action: str
    id: Optional[int] = None
    last_error: Optional[str] = None
    attempts: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_json(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "bookingId": str(self.booking_request_id),
            "action": self.action,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def format_wall_clock(value: time) -> str:
    """12-hour display format used in slot listings and emails, e.g. '2:00 PM'."""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"
