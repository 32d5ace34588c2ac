"""
Transactional email sent at each booking transition.

Sending is fire-and-forget relative to state: notify() raises NotificationFailure when a message could not be sent, and the caller logs it without undoing the transition that triggered it.
"""
from pathlib import Path
from typing import Dict, List, NamedTuple
from urllib.parse import urlencode
import logging

from google.auth.exceptions import GoogleAuthError
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .calendar_events import API_ERRORS
from .config import BookingConfig
from .error_utils import BookingError, NotificationFailure
from .gmail import GmailIntegration
from .models import BookingRequest, NO_REASON_PROVIDED, format_wall_clock

logger = logging.getLogger(__name__)

SUBMITTED = "submitted"
APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"
EVENTS = (SUBMITTED, APPROVED, REJECTED, CANCELLED)

EMAIL_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

SEND_ERRORS = API_ERRORS + (GoogleAuthError, BookingError)


class OutgoingEmail(NamedTuple):
    to: str
    subject: str
    html: str


class NotificationDispatcher:

    def __init__(self, config: BookingConfig, mailer=None):
        self._config = config
        self._mailer = mailer or GmailIntegration(config)
        self._env = Environment(
            loader=FileSystemLoader(str(EMAIL_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )
        self._env.filters["wall_clock"] = format_wall_clock

    def approval_url(self, token: str, action: str) -> str:
        return f"{self._config.public_base_url}/booking/approval?{urlencode({'token': token, 'action': action})}"

    def cancellation_url(self, token: str) -> str:
        return f"{self._config.public_base_url}/booking/cancel?{urlencode({'token': token})}"

    def notify(self, event: str, booking: BookingRequest, **context):
        """
        Render and send the messages for a transition.

        Extra context understood by the templates:
            approved: calendar_links, list of add-to-calendar urls when automatic provisioning failed
            cancelled: nothing extra, the reason is read from the booking

        Raises NotificationFailure once every recipient has been attempted if any message could not be sent.
        """
        messages = self.render(event, booking, **context)
        failed = []
        for message in messages:
            try:
                self._mailer.send_email(message.to, message.subject, message.html)
            except SEND_ERRORS as e:
                logger.error(f"Booking {booking.id}: failed to send '{event}' email: {e}")
                failed.append(message.subject)
        if failed:
            raise NotificationFailure(f"Booking {booking.id}: {len(failed)} of {len(messages)} '{event}' email(s) not sent")
        logger.info(f"Booking {booking.id}: sent {len(messages)} '{event}' email(s)")

    def render(self, event: str, booking: BookingRequest, **context) -> List[OutgoingEmail]:
        if event not in EVENTS:
            raise ValueError(f"Unknown notification event: {event}")
        slots = sorted(booking.slots, key=lambda slot: slot.sort_key)
        values: Dict[str, object] = {"booking": booking, "slots": slots, "timezone_name": self._config.timezone_name, **context}
        first = slots[0] if slots else None
        first_label = f"{first.slot_date} {format_wall_clock(first.slot_start_time)}" if first else ""
        more = f" (+{len(slots) - 1} more)" if len(slots) > 1 else ""

        if event == SUBMITTED:
            values["approve_url"] = self.approval_url(booking.approval_token, "approve")
            values["reject_url"] = self.approval_url(booking.approval_token, "reject")
            return [self._email(self._operator(), f"New Booking Request - {first_label}{more}", "submitted.html", values)]

        if event == APPROVED:
            values["cancel_url"] = self.cancellation_url(booking.cancellation_token) if booking.cancellation_token else None
            values.setdefault("calendar_links", [])
            return [self._email(booking.user_email, f"Booking Confirmed - {first_label}{more}", "approved.html", values)]

        if event == REJECTED:
            return [self._email(booking.user_email, f"Booking Request Declined - {first.slot_date if first else ''}", "rejected.html", values)]

        reason = booking.cancellation_reason
        values["reason"] = reason if reason and reason != NO_REASON_PROVIDED else None
        values["slots_title"] = "Cancelled Slots"
        return [
            self._email(booking.user_email, f"Booking Cancelled - {first.slot_date if first else ''}{more}", "cancelled_requester.html", values),
            self._email(self._operator(), f"Booking Cancelled - {booking.user_name}", "cancelled_operator.html", values),
        ]

    def _operator(self) -> str:
        if not self._config.operator_email:
            raise NotificationFailure("No operator email configured")
        return self._config.operator_email

    def _email(self, to: str, subject: str, template: str, values: Dict[str, object]) -> OutgoingEmail:
        return OutgoingEmail(to=to, subject=subject, html=self._env.get_template(template).render(**values))
