"""
Booking request lifecycle.

    pending  --approve-->  approved  --cancel-->  cancelled
    pending  --reject--->  rejected

Every transition is authorized by a single-use token from an email link. The status write and the token invalidation happen in one store operation; calendar and email side effects run afterwards and never undo it.
A failed calendar side effect is recorded as a reconciliation task that reconcile() retries later.
"""
from dataclasses import dataclass, field
from typing import List, Mapping
import logging
import secrets

from .availability import AvailabilityComputer, parse_instant
from .booking_utils import build_booking_request
from .calendar_events import CalendarEventManager
from .config import BookingConfig
from .error_utils import (AuthenticationFailure, BookingError, CalendarDeletionFailure,
                          CalendarProvisioningFailure, NotFound, NotificationFailure, ValidationError)
from .models import (APPROVED, NO_REASON_PROVIDED, PENDING, PROVISION_CALENDAR, REJECTED,
                     REMOVE_CALENDAR, AvailabilitySlot, BookingRequest, ReconciliationTask)
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

ACTIONS = {"approve": APPROVED, "reject": REJECTED}

MAX_REASON_LENGTH = 1000


def new_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class ReconciliationReport:
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    def to_json(self):
        return {"completed": self.completed, "failed": self.failed, "skipped": self.skipped}


class BookingStateMachine:

    def __init__(self, config: BookingConfig, db, calendar: CalendarEventManager = None,
                 notifier: NotificationDispatcher = None, availability: AvailabilityComputer = None):
        self._config = config
        self._db = db
        self._calendar = calendar or CalendarEventManager(config)
        self._notifier = notifier or NotificationDispatcher(config)
        self._availability = availability or AvailabilityComputer(config)

    # Slot query

    def available_slots(self, start_date: str, end_date: str) -> List[AvailabilitySlot]:
        """
        Slots between two ISO instants, checked against the calendar's busy intervals.
        Lookup and authentication failures propagate; availability is never guessed.
        """
        range_start = parse_instant(start_date, "startDate")
        range_end = parse_instant(end_date, "endDate")
        self._availability.validate_range(range_start, range_end)
        # Slots cover whole business days, which may extend past the client's local day
        busy = self._calendar.fetch_busy_intervals(*self._availability.business_window(range_start, range_end))
        return self._availability.compute_slots(range_start, range_end, busy)

    # Transitions

    def submit(self, request_data: Mapping) -> BookingRequest:
        """
        Validate and persist a new pending request, then alert the operator.

        Raises ValidationError before anything is stored or sent, and PersistenceError if the write fails (no token is issued in that case).
        """
        booking = build_booking_request(request_data, self._config)
        booking.status = PENDING
        booking.approval_token = new_token()
        booking = self._db.insert_booking_request(booking)
        logger.info(f"Booking {booking.id} submitted with {booking.total_slots} slot(s)")

        self._notify("submitted", booking)
        return booking

    def resolve(self, approval_token: str, action: str) -> BookingRequest:
        """
        Approve or reject the pending request holding approval_token.

        Raises NotFound if no pending request holds the token. That includes a second click on the same link.
        On approval a cancellation token is issued in the same write, then calendar events are provisioned and the requester is notified.
        """
        if action not in ACTIONS:
            raise ValidationError("Action must be 'approve' or 'reject'.", field="action")
        if not approval_token:
            raise NotFound("Missing approval token")

        new_status = ACTIONS[action]
        cancellation_token = new_token() if new_status == APPROVED else None
        booking = self._db.resolve_pending(approval_token, new_status, cancellation_token)
        if booking is None:
            logger.warning(f"No pending booking for the supplied approval token (action {action})")
            raise NotFound("Booking request not found or already processed")
        logger.info(f"Booking {booking.id} {new_status}")

        if new_status == REJECTED:
            self._notify("rejected", booking)
            return booking

        calendar_links = []
        if not self._provision_calendar(booking):
            calendar_links = [self._calendar.add_to_calendar_link(booking, slot) for slot in booking.slots]
        self._notify("approved", booking, calendar_links=calendar_links)
        return booking

    def cancel(self, cancellation_token: str, reason: str = None) -> BookingRequest:
        """
        Cancel the approved booking holding cancellation_token.

        Raises NotFound unless an approved booking holds the token. The status change is committed first; calendar cleanup is best effort and queued for retry on failure.
        """
        if not cancellation_token:
            raise NotFound("Missing cancellation token")
        reason = reason[:MAX_REASON_LENGTH] if reason and reason.strip() else NO_REASON_PROVIDED

        booking = self._db.cancel_approved(cancellation_token, reason)
        if booking is None:
            logger.warning("No approved booking for the supplied cancellation token")
            raise NotFound("Booking not found or already cancelled")
        logger.info(f"Booking {booking.id} cancelled")

        self._remove_calendar(booking)
        self._notify("cancelled", booking)
        return booking

    # Side effects

    def _provision_calendar(self, booking: BookingRequest) -> bool:
        try:
            created = self._calendar.create_events(booking)
        except CalendarProvisioningFailure as e:
            self._record_events(e.created)
            self._enqueue(booking, PROVISION_CALENDAR, e)
            return False
        except AuthenticationFailure as e:
            self._enqueue(booking, PROVISION_CALENDAR, e)
            return False
        self._record_events(created)
        return True

    def _remove_calendar(self, booking: BookingRequest) -> bool:
        try:
            self._calendar.delete_events(booking)
        except (CalendarDeletionFailure, AuthenticationFailure) as e:
            self._enqueue(booking, REMOVE_CALENDAR, e)
            return False
        return True

    def _record_events(self, refs):
        for ref in refs:
            try:
                self._db.record_slot_event(ref)
            except BookingError as e:
                # Search-then-delete still finds the event by its label
                logger.error(f"Could not store event id {ref.event_id} for slot {ref.slot_id}: {e}")

    def _enqueue(self, booking: BookingRequest, action: str, error: Exception):
        logger.error(f"Booking {booking.id}: {action} failed, queued for retry: {error}")
        try:
            self._db.enqueue_reconciliation(booking.id, action, str(error))
        except BookingError as e:
            logger.error(f"Booking {booking.id}: could not queue {action} for retry: {e}")

    def _notify(self, event: str, booking: BookingRequest, **context):
        try:
            self._notifier.notify(event, booking, **context)
        except NotificationFailure as e:
            logger.error(f"Booking {booking.id}: '{event}' notification not delivered: {e}")

    # Reconciliation

    def pending_reconciliations(self) -> List[ReconciliationTask]:
        return self._db.retrieve_open_reconciliations()

    def reconcile(self) -> ReconciliationReport:
        """
        Retry every open reconciliation task once.

        provision_calendar only creates events for slots still missing one, and only while the booking is still approved; a booking that was cancelled meanwhile just closes the task.
        """
        report = ReconciliationReport()
        for task in self._db.retrieve_open_reconciliations():
            booking = self._db.retrieve_booking(task.booking_request_id)
            if booking is None:
                logger.error(f"Reconciliation task {task.id} refers to missing booking {task.booking_request_id}")
                self._db.record_reconciliation_failure(task.id, "Booking not found")
                report.failed.append(task.id)
                continue

            if task.action == PROVISION_CALENDAR and booking.status != APPROVED:
                logger.info(f"Task {task.id}: booking {booking.id} is {booking.status}, nothing to provision")
                self._db.complete_reconciliation(task.id)
                report.skipped.append(task.id)
                continue

            try:
                if task.action == PROVISION_CALENDAR:
                    self._record_events(self._calendar.create_events(booking))
                else:
                    self._calendar.delete_events(booking)
            except CalendarProvisioningFailure as e:
                self._record_events(e.created)
                self._db.record_reconciliation_failure(task.id, str(e))
                report.failed.append(task.id)
            except (CalendarDeletionFailure, AuthenticationFailure) as e:
                self._db.record_reconciliation_failure(task.id, str(e))
                report.failed.append(task.id)
            else:
                logger.info(f"Task {task.id}: {task.action} for booking {booking.id} completed")
                self._db.complete_reconciliation(task.id)
                report.completed.append(task.id)
        return report
