import logging
from enum import Enum
from typing import Iterable, List, Optional

from models import EventRecord

logger = logging.getLogger(__name__)


class EventCategory(str, Enum):
    DRAFT = "draft"
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


_STATUS_CATEGORIES = {
    "draft": EventCategory.DRAFT,
    "upcoming": EventCategory.UPCOMING,
    "published": EventCategory.UPCOMING,
    "active": EventCategory.ACTIVE,
    "live": EventCategory.ACTIVE,
    "completed": EventCategory.COMPLETED,
    "finished": EventCategory.COMPLETED,
}

# Unknown statuses stay discoverable rather than hidden as drafts.
DEFAULT_CATEGORY = EventCategory.UPCOMING

DISCOVERABLE = (EventCategory.UPCOMING, EventCategory.ACTIVE)


def classify(raw_status: Optional[str]) -> EventCategory:
    """Map a free-form upstream status onto a display category."""
    key = (raw_status or "").strip().lower()
    category = _STATUS_CATEGORIES.get(key)
    if category is None:
        logger.debug(f"Unknown event status {raw_status!r}, using {DEFAULT_CATEGORY.value}")
        return DEFAULT_CATEGORY
    return category


def discoverable_events(
    events: Iterable[EventRecord],
    role: Optional[str] = None,
    viewer_id: Optional[str] = None,
) -> List[EventRecord]:
    """
    Filter events for a viewer.

    Organizers see every located event they own, whatever its status.
    Everyone else sees located events that are upcoming or active.
    """
    result = []
    for event in events:
        if event.position is None:
            continue
        if role == "event-organizer" and viewer_id and event.organizer_id == viewer_id:
            result.append(event)
        elif classify(event.status) in DISCOVERABLE:
            result.append(event)
    return result
