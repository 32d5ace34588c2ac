# Shared fakes for the booking engine tests. Nothing here touches the network or a database.
import copy
import os
import sys
import uuid
from datetime import datetime, timezone

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from bookmyslot.booking.config import BookingConfig
from bookmyslot.booking.error_utils import NotificationFailure, PersistenceError
from bookmyslot.booking.models import APPROVED, CANCELLED, PENDING, EventRef, ReconciliationTask


def make_config(**overrides) -> BookingConfig:
    values = dict(
        calendar_id="operator@acmehiring.com",
        service_account_email="booking-bot@acme-project.iam.gserviceaccount.com",
        mail_sender="bookings@acmehiring.com",
        operator_email="operator@acmehiring.com",
        public_base_url="https://book.acmehiring.com",
        admin_password="letmein",
    )
    values.update(overrides)
    return BookingConfig(**values)


def booking_payload(**overrides):
    payload = {
        "user_name": "Jane Doe",
        "user_email": "jane.doe@gmail.com",
        "phone_number": "(201) 555-0123",
        "client_name": "Initech",
        "role_name": "Data Engineer",
        "job_description": "Build and run the reporting pipeline.",
        "message": "Looking forward to it",
        # 2025-01-06 is a Monday
        "slots": [
            {"slot_date": "2025-01-06", "slot_start_time": "14:00", "slot_end_time": "15:00", "slot_duration_minutes": 60},
        ],
    }
    payload.update(overrides)
    return payload


class InMemoryPersistence:
    """Dict-backed stand-in for BookingPersistence with the same conditional-update semantics."""

    def __init__(self):
        self.bookings = {}
        self.tasks = {}
        self.fail_writes = False
        self._next_task_id = 1

    def _check(self):
        if self.fail_writes:
            raise PersistenceError("database unavailable")

    def insert_booking_request(self, booking):
        self._check()
        stored = copy.deepcopy(booking)
        stored.id = uuid.uuid4()
        stored.created_at = stored.updated_at = datetime.now(timezone.utc)
        for slot in stored.slots:
            slot.id = uuid.uuid4()
            slot.booking_request_id = stored.id
        self.bookings[stored.id] = stored
        return copy.deepcopy(stored)

    def retrieve_booking(self, booking_id):
        booking = self.bookings.get(booking_id)
        return copy.deepcopy(booking) if booking else None

    def resolve_pending(self, approval_token, new_status, cancellation_token):
        self._check()
        for booking in self.bookings.values():
            if booking.approval_token == approval_token and booking.status == PENDING:
                booking.status = new_status
                booking.approval_token = None
                booking.cancellation_token = cancellation_token
                return copy.deepcopy(booking)
        return None

    def cancel_approved(self, cancellation_token, reason):
        self._check()
        for booking in self.bookings.values():
            if booking.cancellation_token == cancellation_token and booking.status == APPROVED:
                booking.status = CANCELLED
                booking.cancellation_token = None
                booking.cancelled_at = datetime.now(timezone.utc)
                booking.cancellation_reason = reason
                return copy.deepcopy(booking)
        return None

    def record_slot_event(self, ref):
        self._check()
        for booking in self.bookings.values():
            for slot in booking.slots:
                if slot.id == ref.slot_id:
                    slot.calendar_id = ref.calendar_id
                    slot.calendar_event_id = ref.event_id

    def enqueue_reconciliation(self, booking_id, action, error):
        self._check()
        task = ReconciliationTask(booking_request_id=booking_id, action=action, id=self._next_task_id,
                                  last_error=error, created_at=datetime.now(timezone.utc))
        self.tasks[task.id] = task
        self._next_task_id += 1
        return copy.deepcopy(task)

    def retrieve_open_reconciliations(self):
        return [copy.deepcopy(task) for task in self.tasks.values() if task.completed_at is None]

    def complete_reconciliation(self, task_id):
        task = self.tasks[task_id]
        task.attempts += 1
        task.completed_at = datetime.now(timezone.utc)

    def record_reconciliation_failure(self, task_id, error):
        task = self.tasks[task_id]
        task.attempts += 1
        task.last_error = error

    # Test helpers

    def only_booking(self):
        (booking,) = self.bookings.values()
        return booking


class FakeCalendar:
    """Records calls; set the *_error attributes to make the next calls fail."""

    def __init__(self, busy=None):
        self.busy = busy or []
        self.lookup_error = None
        self.create_error = None
        self.delete_error = None
        self.created = []
        self.deleted = []

    def fetch_busy_intervals(self, range_start, range_end):
        if self.lookup_error:
            raise self.lookup_error
        return list(self.busy)

    def create_events(self, booking):
        if self.create_error:
            raise self.create_error
        refs = [EventRef(slot_id=slot.id, calendar_id="operator@acmehiring.com", event_id=f"evt-{slot.ordinal}")
                for slot in booking.slots if not slot.calendar_event_id]
        self.created.extend(refs)
        return refs

    def delete_events(self, booking):
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(booking.id)
        return len(booking.slots)

    def add_to_calendar_link(self, booking, slot):
        return f"https://calendar.google.com/calendar/render?action=TEMPLATE&slot={slot.ordinal}"


class RecordingMailer:
    """Mailer double for NotificationDispatcher. Addresses in fail_for raise like a rejected Gmail send."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send_email(self, to, subject, html_body, text_body=None):
        if to in self.fail_for:
            raise NotificationFailure(f"send to {to} rejected")
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return {"id": f"msg-{len(self.sent)}"}

    def subjects(self):
        return [message["subject"] for message in self.sent]



class RangedEventsService:
    """
    Stand-in for the Calendar API client that only returns events overlapping the requested timeMin / timeMax,
    the way the real events().list does.
    """

    def __init__(self, items):
        self.items = items
        self.queries = []

    def events(self):
        return self

    def list(self, calendarId, timeMin=None, timeMax=None, pageToken=None, **params):
        self.queries.append({"calendarId": calendarId, "timeMin": timeMin, "timeMax": timeMax})
        low = datetime.fromisoformat(timeMin)
        high = datetime.fromisoformat(timeMax)
        items = [item for item in self.items
                 if datetime.fromisoformat(item["start"]["dateTime"]) < high
                 and datetime.fromisoformat(item["end"]["dateTime"]) > low]
        return _Executable({"items": items})


class _Executable:

    def __init__(self, response):
        self._response = response

    def execute(self):
        return self._response
