from datetime import date, datetime, time, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode
import logging

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from .config import BookingConfig
from .credential_signer import CredentialSigner
from .error_utils import CalendarDeletionFailure, CalendarLookupFailure, CalendarProvisioningFailure
from .models import BookingRequest, BookingSlot, EventRef
from .period import Period

logger = logging.getLogger(__name__)

# Errors raised by googleapiclient for a rejected request or a broken transport
API_ERRORS = (HttpError, HttpLib2Error, OSError)

# Deleting an event that is already gone returns one of these
GONE_STATUSES = (404, 410)

REMINDER_OVERRIDES = [
    {"method": "email", "minutes": 60},
    {"method": "popup", "minutes": 15},
]


def _status_of(error: Exception) -> Optional[int]:
    resp = getattr(error, "resp", None)
    return getattr(resp, "status", None)


def busy_interval(event: Dict, tz: timezone) -> Optional[Period]:
    """
    Busy period covered by a calendar event, or None if the event does not block time.
    Cancelled and free ('transparent') events do not block. All-day events block whole days in the business timezone.
    """
    if event.get("status") == "cancelled" or event.get("transparency") == "transparent":
        return None
    start, end = event.get("start") or {}, event.get("end") or {}
    if start.get("dateTime") and end.get("dateTime"):
        begin_period = datetime.fromisoformat(start["dateTime"].replace("Z", "+00:00"))
        end_period = datetime.fromisoformat(end["dateTime"].replace("Z", "+00:00"))
    elif start.get("date") and end.get("date"):
        begin_period = datetime.combine(date.fromisoformat(start["date"]), time(0), tzinfo=tz)
        end_period = datetime.combine(date.fromisoformat(end["date"]), time(0), tzinfo=tz)
    else:
        return None
    if end_period < begin_period:
        return None
    return Period(begin_period, end_period)


class CalendarEventManager:
    """
    Reads busy time from, and creates and removes booking events on, the operator's Google Calendar.

    Which calendar id actually works depends on how the service account was shared, so every operation walks config.candidate_calendar_ids in order.
    A fresh API client (and so a fresh access token) is built for every operation.
    """

    def __init__(self, config: BookingConfig, service_factory: Optional[Callable] = None):
        self._config = config
        self._tz = config.business_tz
        self._service_factory = service_factory or self._authorize

    def _authorize(self):
        creds = CredentialSigner(self._config).credentials()
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    @property
    def candidate_calendar_ids(self):
        return self._config.candidate_calendar_ids

    # Availability

    def fetch_busy_intervals(self, range_start: datetime, range_end: datetime) -> List[Period]:
        """
        Busy intervals between range_start and range_end from the first candidate calendar that has any events.

        Raises CalendarLookupFailure if no candidate calendar could be read at all, so availability is never reported as "all free" because of an outage.
        AuthenticationFailure from the token exchange propagates unchanged.
        """
        service = self._service_factory()
        answered = []
        for calendar_id in self.candidate_calendar_ids:
            try:
                events = self._list_events(service, calendar_id,
                                           timeMin=range_start.isoformat(), timeMax=range_end.isoformat(),
                                           singleEvents=True, orderBy="startTime")
            except API_ERRORS as e:
                logger.warning(f"Could not read calendar {calendar_id}: {e}")
                continue
            answered.append(calendar_id)
            logger.info(f"Found {len(events)} events in calendar {calendar_id}")
            if events:
                intervals = [interval for interval in (busy_interval(event, self._tz) for event in events) if interval]
                return intervals

        if not answered:
            raise CalendarLookupFailure(f"None of the calendars {self.candidate_calendar_ids} could be read")
        logger.info(f"No events in any readable calendar ({', '.join(answered)})")
        return []

    @staticmethod
    def _list_events(service, calendar_id: str, **params) -> List[Dict]:
        items = []
        page_token = None
        while True:
            response = service.events().list(calendarId=calendar_id, pageToken=page_token, **params).execute()
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    # Provisioning

    def event_payload(self, booking: BookingRequest, slot: BookingSlot) -> Dict:
        start = datetime.combine(slot.slot_date, slot.slot_start_time, tzinfo=self._tz)
        end = datetime.combine(slot.slot_date, slot.slot_end_time, tzinfo=self._tz)
        details = [
            f"Booking confirmed for {booking.user_name} ({booking.user_email})",
            f"Phone: {booking.phone_number or 'Not provided'}",
            f"Client: {booking.client_name or 'Not provided'}",
            f"Role: {booking.role_name or 'Not provided'}",
        ]
        if booking.job_description:
            details.append(f"Job description: {booking.job_description}")
        if booking.team_details:
            details.append(f"Team: {booking.team_details}")
        if booking.job_link:
            details.append(f"Job link: {booking.job_link}")
        details.append(f"Message: {booking.message or 'No message provided'}")
        details.append(f"Booking id: {booking.id}")
        return {
            "summary": booking.event_label(slot),
            "description": "\n".join(details),
            "start": {"dateTime": start.isoformat(), "timeZone": self._config.timezone_name},
            "end": {"dateTime": end.isoformat(), "timeZone": self._config.timezone_name},
            "attendees": [{"email": booking.user_email, "displayName": booking.user_name}],
            "reminders": {"useDefault": False, "overrides": REMINDER_OVERRIDES},
            "extendedProperties": {"private": {
                "bookingRequestId": str(booking.id),
                "slotOrdinal": str(slot.ordinal),
            }},
        }

    def create_events(self, booking: BookingRequest) -> List[EventRef]:
        """
        Create one event per slot that does not have one yet.

        Returns the created events. Raises CalendarProvisioningFailure once every slot has been tried if any slot could not be placed on any candidate calendar; the events that did get created are on the exception.
        """
        service = self._service_factory()
        created = []
        failed = []
        for slot in booking.slots:
            if slot.calendar_event_id:
                continue
            try:
                created.append(self._insert_first_available(service, booking, slot))
            except CalendarProvisioningFailure as e:
                logger.error(f"Booking {booking.id}: {e}")
                failed.append(slot.ordinal)
        if failed:
            raise CalendarProvisioningFailure(
                f"Booking {booking.id}: no calendar accepted slot(s) {', '.join(map(str, failed))}", created=created)
        return created

    def _insert_first_available(self, service, booking: BookingRequest, slot: BookingSlot) -> EventRef:
        body = self.event_payload(booking, slot)
        errors = []
        for calendar_id in self.candidate_calendar_ids:
            try:
                event = service.events().insert(calendarId=calendar_id, body=body, sendUpdates="all").execute()
            except API_ERRORS as e:
                logger.warning(f"Failed to create event '{body['summary']}' on {calendar_id}: {e}")
                errors.append(f"{calendar_id} ({_status_of(e) or type(e).__name__})")
                continue
            logger.info(f"Created event {event.get('id')} on {calendar_id} for '{body['summary']}'")
            return EventRef(slot_id=slot.id, calendar_id=calendar_id,
                            event_id=event.get("id"), html_link=event.get("htmlLink"))
        raise CalendarProvisioningFailure(f"slot {slot.ordinal} rejected by {', '.join(errors)}")

    # Removal

    def delete_events(self, booking: BookingRequest) -> int:
        """
        Remove the events belonging to every slot of the booking. Best effort and idempotent: an event that is already gone, or a search with no matches, is not an error.

        Slots with a stored event id are deleted by id. Slots without one fall back to searching for the slot's label.

        Returns the number of events deleted. Raises CalendarDeletionFailure after every slot has been tried if any API call failed.
        """
        service = self._service_factory()
        deleted = 0
        failed = []
        for slot in booking.slots:
            try:
                if slot.calendar_event_id:
                    deleted += self._delete_by_id(service, slot.calendar_id or self.candidate_calendar_ids[0], slot.calendar_event_id)
                else:
                    deleted += self._search_and_delete(service, booking.event_label(slot))
            except API_ERRORS as e:
                logger.error(f"Booking {booking.id}: failed to remove calendar event for slot {slot.ordinal}: {e}")
                failed.append(slot.ordinal)
        logger.info(f"Booking {booking.id}: deleted {deleted} calendar event(s)")
        if failed:
            raise CalendarDeletionFailure(f"Booking {booking.id}: could not remove event(s) for slot(s) {', '.join(map(str, failed))}")
        return deleted

    @staticmethod
    def _delete_by_id(service, calendar_id: str, event_id: str) -> int:
        try:
            service.events().delete(calendarId=calendar_id, eventId=event_id, sendUpdates="all").execute()
        except HttpError as e:
            if _status_of(e) in GONE_STATUSES:
                logger.info(f"Event {event_id} on {calendar_id} already removed")
                return 0
            raise
        logger.info(f"Deleted event {event_id} on {calendar_id}")
        return 1

    def _search_and_delete(self, service, label: str) -> int:
        deleted = 0
        for calendar_id in self.candidate_calendar_ids:
            try:
                matches = self._list_events(service, calendar_id, q=label)
            except HttpError as e:
                # Calendar not visible to this service account
                if _status_of(e) in GONE_STATUSES:
                    continue
                raise
            # Free-text search is fuzzy, only delete exact label matches
            for event in matches:
                if event.get("summary") == label:
                    deleted += self._delete_by_id(service, calendar_id, event["id"])
        if not deleted:
            logger.info(f"No calendar events found for '{label}'")
        return deleted

    # Fallback link for emails when automatic provisioning failed

    def add_to_calendar_link(self, booking: BookingRequest, slot: BookingSlot) -> str:
        start = datetime.combine(slot.slot_date, slot.slot_start_time, tzinfo=self._tz).astimezone(timezone.utc)
        end = datetime.combine(slot.slot_date, slot.slot_end_time, tzinfo=self._tz).astimezone(timezone.utc)
        params = {
            "action": "TEMPLATE",
            "text": booking.event_label(slot),
            "dates": f"{start:%Y%m%dT%H%M%SZ}/{end:%Y%m%dT%H%M%SZ}",
            "details": f"Booking id: {booking.id}",
        }
        if self._config.operator_email:
            params["add"] = self._config.operator_email
        return f"https://calendar.google.com/calendar/render?{urlencode(params)}"
