"""
Helper utilities
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import random
import string
import time

from dateutil import parser as date_parser

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def parse_datetime(val: Any) -> Optional[datetime]:
    """Parse a datetime from an ISO string, epoch seconds or datetime; naive values are UTC"""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        dt = val
    elif isinstance(val, (int, float)):
        dt = datetime.fromtimestamp(val, tz=timezone.utc)
    else:
        try:
            dt = date_parser.parse(str(val))
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_base36(number: int) -> str:
    """Encode a non-negative integer in base 36"""
    if number < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def epoch_millis() -> int:
    return int(time.time() * 1000)


def generate_local_id(prefix: str) -> str:
    """
    Generate a globally-unique record id without a database sequence.

    Format: <prefix>_<epoch millis>_<9 random base36 chars>
    """
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"{prefix}_{epoch_millis()}_{suffix}"


def days_ago(days: int) -> datetime:
    return utcnow() - timedelta(days=days)


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and trim an email; None for blanks"""
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned or None
