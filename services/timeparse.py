"""
Time helpers shared by the presence, schedule and claim evaluators.

Every raw time value crossing into the engine goes through one of the two
parsers here: ``parse_time_of_day`` for schedule strings and
``coerce_instant`` for timestamps. Neither raises on malformed input.
"""

import logging
import math
import re
from datetime import datetime, time as dt_time, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from services.config import DEFAULT_OPEN_TIME

logger = logging.getLogger(__name__)

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

_TWELVE_HOUR = re.compile(r"^(\d{1,2}):(\d{2})\s*([AP]M)$", re.IGNORECASE)
_TWENTY_FOUR_HOUR = re.compile(r"^(\d{2}):(\d{2})$")


class TimeOfDay(BaseModel):
    """Wall-clock time as a 24-hour hour/minute pair."""

    model_config = ConfigDict(frozen=True)

    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)

    @property
    def minutes(self) -> int:
        return self.hour * 60 + self.minute

    def to_12h(self) -> str:
        meridiem = "AM" if self.hour < 12 else "PM"
        hour = self.hour % 12 or 12
        return f"{hour}:{self.minute:02d} {meridiem}"

    def to_24h(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    def __str__(self) -> str:
        return self.to_12h()


FALLBACK_TIME = TimeOfDay(hour=9, minute=0)


def _parse_strict(raw: str) -> Optional[TimeOfDay]:
    text = raw.strip()

    match = _TWELVE_HOUR.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if not (1 <= hour <= 12 and 0 <= minute <= 59):
            return None
        hour = hour % 12
        if match.group(3).upper() == "PM":
            hour += 12
        return TimeOfDay(hour=hour, minute=minute)

    match = _TWENTY_FOUR_HOUR.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            return None
        return TimeOfDay(hour=hour, minute=minute)

    return None


def _default_time() -> TimeOfDay:
    return _parse_strict(DEFAULT_OPEN_TIME) or FALLBACK_TIME


def parse_time_of_day(value: Any) -> TimeOfDay:
    """
    Parse a schedule time into a TimeOfDay.

    Accepts a strict 12-hour ``"H:MM AM|PM"`` string, a strict 24-hour
    ``"HH:MM"`` string, a ``datetime.time``, a ``{"hour", "minute"}`` mapping
    or an existing TimeOfDay. Anything else (including ``"9:00"`` with no
    meridiem, which is ambiguous) is replaced by the default open time.

    Args:
        value: Raw time value from a schedule document

    Returns:
        TimeOfDay, never None
    """
    if isinstance(value, TimeOfDay):
        return value
    if isinstance(value, dt_time):
        return TimeOfDay(hour=value.hour, minute=value.minute)
    if isinstance(value, dict):
        try:
            return TimeOfDay(hour=int(value["hour"]), minute=int(value["minute"]))
        except (KeyError, TypeError, ValueError):
            pass
    elif isinstance(value, str):
        parsed = _parse_strict(value)
        if parsed is not None:
            return parsed

    default = _default_time()
    logger.warning(f"Invalid time of day {value!r}, using {default.to_24h()}")
    return default


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_instant(value: Any) -> Optional[datetime]:
    """
    Normalise an upstream timestamp to an aware UTC datetime.

    Numbers are epoch milliseconds. Firestore-style ``{"seconds": ...}``
    mappings and ISO-8601 strings are also accepted. Missing or malformed
    values return None, which callers treat as "never".
    """
    if value is None or value == "":
        return None

    try:
        if isinstance(value, datetime):
            instant = value
        elif isinstance(value, bool):
            raise TypeError("boolean is not a timestamp")
        elif isinstance(value, (int, float)):
            if not math.isfinite(value):
                raise ValueError("non-finite timestamp")
            instant = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        elif isinstance(value, dict):
            seconds = value.get("seconds", value.get("_seconds"))
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
            instant = datetime.fromtimestamp(
                float(seconds) + float(nanos) / 1e9, tz=timezone.utc
            )
        elif isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            instant = datetime.fromisoformat(text)
        else:
            raise TypeError(f"unsupported timestamp type {type(value).__name__}")
    except (TypeError, ValueError, OverflowError, OSError) as e:
        logger.warning(f"Ignoring malformed timestamp {value!r}: {e}")
        return None

    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def weekday_name(now: datetime) -> str:
    return WEEKDAYS[now.weekday()]


def minutes_since_midnight(now: datetime) -> int:
    return now.hour * 60 + now.minute
