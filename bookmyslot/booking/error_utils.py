# Custom exceptions to be used throughout the project.

class BookingError(Exception):
    """
    Base class for every error raised by the booking engine.

    public_message is the only text that may be shown to a visitor or operator. Anything more detailed belongs in the log.
    """
    public_message = "Something went wrong. Please try again later."

    # By default Exception class takes a tuple of arguments
    def __init__(self, *args):
        super().__init__(*args)


class ValidationError(BookingError):
    """
    Raised for bad or missing input that the user can correct.
    Unlike the other errors, the message itself is safe to show since it only describes the user's own input.
    """
    public_message = "The submitted booking details are not valid."

    def __init__(self, message: str = None, field: str = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.field = field


class TimeValidationError(ValidationError):
    """
    To be raised when a time input cannot be turned into a usable range.
    May be raised under the following circumstances:
        1. Input was not a valid ISO-8601 instant
        2. End of the range is before its start
        3. Range spans more days than the configured maximum
    """


class AuthenticationFailure(BookingError):
    """Signing the service-account assertion or exchanging it for an access token failed."""
    public_message = "The calendar service is not available right now."


class MalformedKeyError(AuthenticationFailure):
    """Service-account private key could not be normalized into PEM."""


class NotFound(BookingError):
    """Token is unknown, already consumed, or does not match the booking's current status."""
    public_message = "Booking not found or already processed."


class CalendarLookupFailure(BookingError):
    """No candidate calendar answered the busy-interval query."""
    public_message = "Availability could not be loaded. Please try again."


class CalendarProvisioningFailure(BookingError):
    """
    Every candidate calendar rejected the event for at least one slot.
    created holds the events that did get created for the other slots so they can still be recorded.
    """
    public_message = "The calendar event could not be created."

    def __init__(self, message: str, created=()):
        super().__init__(message)
        self.created = list(created)


class CalendarDeletionFailure(BookingError):
    """At least one calendar search or delete call failed."""
    public_message = "The calendar event could not be removed."


class NotificationFailure(BookingError):
    """At least one transactional email could not be sent."""
    public_message = "The notification email could not be sent."


class PersistenceError(BookingError):
    """Store read or write failed. The operation is aborted."""
    public_message = "Your request could not be saved. Please try again."
