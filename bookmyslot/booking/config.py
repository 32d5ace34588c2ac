"""
Configuration for the booking engine.

Everything environment specific (business hours, calendar identity, signing key, mail sender) is read once here and handed to each component at construction.
Components never call os.getenv themselves.
"""
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from typing import Mapping, Optional, Tuple
import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def _safe_int(environ: Mapping[str, str], env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = environ.get(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {env_var}: {raw!r}") from None


@dataclass(frozen=True)
class BookingConfig:
    # Business hours, wall-clock in the business timezone
    open_hour: int = 8
    close_hour: int = 18
    slot_step_minutes: int = 30
    slot_durations: Tuple[int, ...] = (30, 60)
    # Fixed offset from UTC. Daylight saving is not applied.
    utc_offset_hours: int = -6
    timezone_name: str = "America/Chicago"
    max_range_days: int = 62

    # Google service account
    calendar_id: str = ""
    service_account_email: str = ""
    private_key: str = field(default="", repr=False)
    token_uri: str = GOOGLE_TOKEN_URI
    calendar_scope: str = CALENDAR_SCOPE
    token_timeout_seconds: int = 10

    # Email
    mail_sender: str = ""
    operator_email: str = ""
    public_base_url: str = "http://localhost:5003"

    database_url: Optional[str] = field(default=None, repr=False)
    admin_password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if not 0 <= self.open_hour < self.close_hour <= 24:
            raise ValueError(f"Invalid business hours: {self.open_hour}-{self.close_hour}")
        if not -12 <= self.utc_offset_hours <= 14:
            raise ValueError(f"Invalid UTC offset: {self.utc_offset_hours}")

    @property
    def business_tz(self) -> timezone:
        return timezone(timedelta(hours=self.utc_offset_hours))

    @property
    def candidate_calendar_ids(self) -> Tuple[str, ...]:
        """
        Calendars tried in order when reading, creating or searching events: the shared calendar, the caller's own primary calendar, then the raw service-account identity.
        Empty and duplicate entries are dropped.
        """
        ordered = []
        for calendar_id in (self.calendar_id, "primary", self.service_account_email):
            if calendar_id and calendar_id not in ordered:
                ordered.append(calendar_id)
        return tuple(ordered)

    @property
    def has_google_credentials(self) -> bool:
        return bool(self.service_account_email and self.private_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BookingConfig":
        if environ is None:
            load_dotenv()
            environ = os.environ
        config = cls(
            open_hour=_safe_int(environ, "BUSINESS_OPEN_HOUR", "8"),
            close_hour=_safe_int(environ, "BUSINESS_CLOSE_HOUR", "18"),
            utc_offset_hours=_safe_int(environ, "BUSINESS_UTC_OFFSET_HOURS", "-6"),
            timezone_name=environ.get("BUSINESS_TIMEZONE", "America/Chicago"),
            max_range_days=_safe_int(environ, "MAX_RANGE_DAYS", "62"),
            calendar_id=environ.get("GOOGLE_CALENDAR_ID", ""),
            service_account_email=environ.get("GOOGLE_CLIENT_EMAIL", ""),
            private_key=environ.get("GOOGLE_PRIVATE_KEY", ""),
            token_uri=environ.get("GOOGLE_TOKEN_URI", GOOGLE_TOKEN_URI),
            token_timeout_seconds=_safe_int(environ, "TOKEN_TIMEOUT_SECONDS", "10"),
            mail_sender=environ.get("MAIL_SENDER", ""),
            operator_email=environ.get("OPERATOR_EMAIL", ""),
            public_base_url=environ.get("PUBLIC_BASE_URL", "http://localhost:5003").rstrip("/"),
            database_url=environ.get("DATABASE_URL"),
            admin_password=environ.get("ADMIN_PASSWORD"),
        )
        if not config.has_google_credentials:
            logger.warning("Google service account credentials are not configured.")
        return config
