"""
Weekly open/closed evaluation, including windows that cross midnight.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from models import WeeklySchedule
from services.config import SCHEDULE_POLL_SECONDS, SCHEDULE_TIMEZONE
from services.polling import Poller
from services.timeparse import minutes_since_midnight, weekday_name

logger = logging.getLogger(__name__)

LOCAL_TZ = ZoneInfo(SCHEDULE_TIMEZONE)

# Applied to vendors whose profile has no stored hours.
DEFAULT_BUSINESS_HOURS = {
    "sunday": {"open": "10:00 AM", "close": "4:00 PM", "closed": True},
    "monday": {"open": "9:00 AM", "close": "5:00 PM", "closed": False},
    "tuesday": {"open": "9:00 AM", "close": "5:00 PM", "closed": False},
    "wednesday": {"open": "9:00 AM", "close": "5:00 PM", "closed": False},
    "thursday": {"open": "9:00 AM", "close": "5:00 PM", "closed": False},
    "friday": {"open": "9:00 AM", "close": "5:00 PM", "closed": False},
    "saturday": {"open": "9:00 AM", "close": "5:00 PM", "closed": False},
}


@dataclass(frozen=True)
class OpenStatus:
    open: bool
    day: str


def load_schedule(raw: Union[WeeklySchedule, Mapping[str, Any], None]) -> WeeklySchedule:
    """Build a WeeklySchedule from a profile document, falling back to defaults."""
    if isinstance(raw, WeeklySchedule):
        return raw
    if not raw:
        return WeeklySchedule.model_validate(DEFAULT_BUSINESS_HOURS)
    return WeeklySchedule.model_validate(dict(raw) if isinstance(raw, Mapping) else raw)


def local_now() -> datetime:
    return datetime.now(LOCAL_TZ)


def is_open_now(
    schedule: Union[WeeklySchedule, Mapping[str, Any]], now: datetime
) -> OpenStatus:
    """
    Evaluate a weekly schedule at ``now``.

    ``now`` is read as wall-clock time in its own timezone; pass a datetime
    in the vendor's local zone. Same-day windows are half-open
    (``open <= now < close``); a window whose close is not after its open
    crosses midnight, except ``open == close`` which is always closed.

    Args:
        schedule: Weekly schedule or raw mapping of weekday -> hours
        now: Evaluation time

    Returns:
        OpenStatus for the current weekday
    """
    if not isinstance(schedule, WeeklySchedule):
        schedule = WeeklySchedule.model_validate(dict(schedule))
    day = weekday_name(now)
    hours = schedule.for_day(day)

    if hours is None or hours.closed:
        return OpenStatus(open=False, day=day)

    current = minutes_since_midnight(now)
    opens = hours.open.minutes
    closes = hours.close.minutes

    if opens == closes:
        return OpenStatus(open=False, day=day)

    if closes > opens:
        is_open = opens <= current < closes
    else:
        is_open = current >= opens or current < closes

    return OpenStatus(open=is_open, day=day)


class ScheduleWatcher:
    """
    Re-check a schedule on a fixed interval and report open/closed flips.

    The callback receives the new OpenStatus only when ``open`` changes
    from the last observed value.
    """

    def __init__(
        self,
        schedule: WeeklySchedule,
        on_change: Callable[[OpenStatus], None],
        clock: Callable[[], datetime] = local_now,
        interval: float = SCHEDULE_POLL_SECONDS,
    ):
        self.schedule = schedule
        self.on_change = on_change
        self.clock = clock
        self.last_status: Optional[OpenStatus] = None
        self._poller = Poller(interval, self.check, name="schedule-watcher")

    def check(self) -> bool:
        status = is_open_now(self.schedule, self.clock())
        if self.last_status is None or status.open != self.last_status.open:
            logger.info(f"Schedule is now {'open' if status.open else 'closed'} ({status.day})")
            self.last_status = status
            self.on_change(status)
        return False

    def start(self) -> bool:
        self.check()
        return self._poller.start()

    def stop(self):
        self._poller.stop()
