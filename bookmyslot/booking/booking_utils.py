# Utility functions for validating booking submissions
from datetime import date, datetime, time
from typing import Dict, List, Mapping
import re

import phonenumbers
from email_validator import validate_email, EmailNotValidError

from .config import BookingConfig
from .error_utils import ValidationError
from .models import BookingRequest, BookingSlot

MAX_NAME_LENGTH = 200
MAX_EMAIL_LENGTH = 254  # 254 characters is a common maximum for email addresses by RFC 5321 / 5322 standards
MAX_PHONE_LENGTH = 50
MAX_TEXT_LENGTH = 5000
MAX_SLOTS = 10

REQUIRED_FIELDS = ("user_name", "user_email")
OPTIONAL_SHORT_FIELDS = ("client_name", "role_name", "job_link", "resume_file_path", "payment_screenshot_path")
OPTIONAL_LONG_FIELDS = ("job_description", "team_details", "message")

_WALL_CLOCK_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p")


def sanitize_text(value, field: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """
    Trims whitespace, enforces a maximum length and rejects control characters other than tab, LF and CR.
    None becomes an empty string.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text.", field=field)
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} is too long. Max {max_length} characters.", field=field)
    allowed_control_codes = {9, 10, 13}  # Tab, LF, CR
    for ch in value:
        if ord(ch) < 32 and ord(ch) not in allowed_control_codes:
            raise ValidationError(f"{field} contains disallowed characters.", field=field)
    return value


def sanitize_email(email: str) -> str:
    email = sanitize_text(email, "user_email", MAX_EMAIL_LENGTH)
    if not email:
        raise ValidationError("user_email is required.", field="user_email")
    try:
        # Deliverability needs a DNS lookup, syntax is enough here
        valid = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email format: {e}", field="user_email") from None
    return valid.normalized


def sanitize_phone(phone) -> str:
    """
    Returns the phone number in E.164 format, or an empty string when none was given.
    Numbers without a leading '+' are parsed as US numbers.
    """
    phone = sanitize_text(phone, "phone_number", MAX_PHONE_LENGTH)
    if not phone:
        return ""

    # Allowed characters: an optional leading '+', digits, spaces, hyphens, dots and parentheses.
    allowed_pattern = re.compile(r'^\+?[0-9\-\(\)\.\s]+$')
    if not allowed_pattern.fullmatch(phone):
        raise ValidationError("Phone contains disallowed characters.", field="phone_number")

    try:
        parsed_phone = phonenumbers.parse(phone, None if phone.startswith('+') else 'US')
    except phonenumbers.NumberParseException:
        raise ValidationError("Invalid phone number format.", field="phone_number") from None

    if not phonenumbers.is_possible_number(parsed_phone) or not phonenumbers.is_valid_number(parsed_phone):
        raise ValidationError("Phone number is not valid.", field="phone_number")

    return phonenumbers.format_number(parsed_phone, phonenumbers.PhoneNumberFormat.E164)


def parse_wall_clock(value, field: str) -> time:
    """Accepts '14:00', '14:00:00' or the 12-hour '2:00 PM' format shown in slot listings."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required.", field=field)
    text = value.strip().upper()
    for time_format in _WALL_CLOCK_FORMATS:
        try:
            return datetime.strptime(text, time_format).time()
        except ValueError:
            continue
    raise ValidationError(f"{field} is not a valid time.", field=field)


def parse_slot(raw: Mapping, index: int, config: BookingConfig) -> BookingSlot:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Slot {index} is not an object.", field="slots")
    try:
        slot_date = date.fromisoformat(str(raw.get("slot_date", "")).strip()[:10])
    except ValueError:
        raise ValidationError(f"Slot {index} has an invalid date.", field="slots") from None
    start = parse_wall_clock(raw.get("slot_start_time"), f"Slot {index} start time")
    end = parse_wall_clock(raw.get("slot_end_time"), f"Slot {index} end time")
    try:
        duration = int(raw.get("slot_duration_minutes"))
    except (TypeError, ValueError):
        raise ValidationError(f"Slot {index} has an invalid duration.", field="slots") from None

    if duration not in config.slot_durations:
        raise ValidationError(f"Slot {index} duration must be one of {', '.join(map(str, config.slot_durations))} minutes.", field="slots")
    minutes = (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)
    if minutes != duration:
        raise ValidationError(f"Slot {index} times do not match its duration.", field="slots")
    if slot_date.weekday() >= 5:
        raise ValidationError(f"Slot {index} is not on a business day.", field="slots")
    if start < time(config.open_hour) or (end.hour * 60 + end.minute) > config.close_hour * 60:
        raise ValidationError(f"Slot {index} is outside business hours.", field="slots")
    # Only starts on the listing grid are ever offered
    if start.second or start.microsecond or (start.hour * 60 + start.minute - config.open_hour * 60) % config.slot_step_minutes:
        raise ValidationError(f"Slot {index} does not start on a {config.slot_step_minutes} minute boundary.", field="slots")

    return BookingSlot(slot_date=slot_date, slot_start_time=start, slot_end_time=end, slot_duration_minutes=duration)


def parse_slots(raw_slots, config: BookingConfig) -> List[BookingSlot]:
    if not raw_slots or not isinstance(raw_slots, list):
        raise ValidationError("At least one slot is required.", field="slots")
    if len(raw_slots) > MAX_SLOTS:
        raise ValidationError(f"No more than {MAX_SLOTS} slots may be booked at once.", field="slots")
    slots = [parse_slot(raw, index, config) for index, raw in enumerate(raw_slots, start=1)]
    keys = [(slot.slot_date, slot.slot_start_time, slot.slot_duration_minutes) for slot in slots]
    if len(set(keys)) != len(keys):
        raise ValidationError("The same slot was selected more than once.", field="slots")

    # Ordinals follow date / start time so event labels are stable
    slots.sort(key=lambda slot: slot.sort_key)
    for ordinal, slot in enumerate(slots, start=1):
        slot.ordinal = ordinal
    return slots


def build_booking_request(data: Mapping, config: BookingConfig) -> BookingRequest:
    """
    Validate a submission payload and turn it into an unsaved BookingRequest.
    Raises ValidationError naming the first problem found.
    """
    if not isinstance(data, Mapping):
        raise ValidationError("Request body must be a JSON object.")

    missing = [field for field in REQUIRED_FIELDS if not str(data.get(field) or "").strip()]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}.", field=missing[0])

    fields: Dict[str, str] = {
        "user_name": sanitize_text(data.get("user_name"), "user_name", MAX_NAME_LENGTH),
        "user_email": sanitize_email(data.get("user_email")),
        "phone_number": sanitize_phone(data.get("phone_number")),
    }
    for field in OPTIONAL_SHORT_FIELDS:
        fields[field] = sanitize_text(data.get(field), field, MAX_NAME_LENGTH * 5)
    for field in OPTIONAL_LONG_FIELDS:
        fields[field] = sanitize_text(data.get(field), field)

    # Columns without a NOT NULL default store NULL rather than ''
    for field in ("team_details", "job_link", "message", "resume_file_path", "payment_screenshot_path"):
        fields[field] = fields[field] or None

    return BookingRequest(slots=parse_slots(data.get("slots"), config), **fields)
