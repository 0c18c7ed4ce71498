import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


# Formats accepted for the `since` query parameter, tried in order
SINCE_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)

# A "+HH:MM" offset sent unencoded in a query string arrives as " HH:MM"
_DECODED_PLUS_OFFSET = re.compile(r"^(.*\d{2}:\d{2}:\d{2}(?:\.\d+)?) (\d{2}:\d{2})$")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.
    Naive datetimes are taken to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch(value: Union[datetime, int, float]) -> float:
    """Map a timestamp onto a monotonically increasing numeric axis (seconds)."""
    if isinstance(value, datetime):
        return ensure_utc(value).timestamp()
    return float(value)


def parse_since(value: Optional[str], now: datetime,
                default_window: timedelta = timedelta(minutes=5)) -> datetime:
    """
    Parse the `since` query parameter.

    Accepts "YYYY-MM-DD HH:MM:SS" (optionally with fractional seconds) or any
    ISO-8601 string. Missing or blank values default to `now - default_window`.
    Raises ValueError if the value cannot be parsed.
    """
    if value is None or not value.strip():
        return now - default_window

    text = value.strip()
    for fmt in SINCE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    match = _DECODED_PLUS_OFFSET.match(text)
    if match:
        text = f"{match.group(1)}+{match.group(2)}"

    # Allow a trailing Z, which older interpreters reject in fromisoformat
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
