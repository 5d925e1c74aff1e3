"""
Vendor presence: should a vendor's last broadcast be rendered as live?

A vendor that stopped broadcasting a moment ago stays visible for a grace
period, and a vendor that never refreshes drops off once its session ceiling
passes, even if a stale visible flag was left set.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from models import Position, VendorPresenceRecord
from services.config import PRESENCE_GRACE_MINUTES, PRESENCE_SESSION_TTL_HOURS
from services.timeparse import utcnow

logger = logging.getLogger(__name__)

GRACE_DURATION = timedelta(minutes=PRESENCE_GRACE_MINUTES)
SESSION_TTL = timedelta(hours=PRESENCE_SESSION_TTL_HOURS)

ICON_VARIANTS = ("truck", "trailer", "cart")


@dataclass(frozen=True)
class LiveVendor:
    """What the map layer needs to draw one live vendor."""

    vendor_id: str
    position: Position
    kitchen_type: str
    icon: str
    explicitly_live: bool


def _elapsed(now: datetime, since: Optional[datetime]) -> Optional[timedelta]:
    return None if since is None else now - since


def is_live(
    record: VendorPresenceRecord,
    now: datetime,
    grace_duration: timedelta = GRACE_DURATION,
    session_ttl: timedelta = SESSION_TTL,
) -> bool:
    """
    Decide whether a presence record should be shown as live at ``now``.

    Args:
        record: Latest presence snapshot for the vendor
        now: Evaluation instant (aware datetime)
        grace_duration: How long after the last activity the vendor stays live
        session_ttl: Longest a session may stay live without fresh activity

    Returns:
        True if the vendor should be rendered as live
    """
    if not record.explicitly_visible:
        return False

    since_active = _elapsed(now, record.last_active_at)
    recently_active = since_active is not None and since_active <= grace_duration

    session_age = _elapsed(now, record.session_anchor)
    within_session = session_age is not None and session_age < session_ttl

    return recently_active or within_session


def icon_variant(kitchen_type: Optional[str]) -> str:
    kind = (kitchen_type or "truck").strip().lower()
    return kind if kind in ICON_VARIANTS else "truck"


def live_vendors(
    records: Iterable[VendorPresenceRecord],
    now: Optional[datetime] = None,
    grace_duration: timedelta = GRACE_DURATION,
    session_ttl: timedelta = SESSION_TTL,
) -> List[LiveVendor]:
    """Project a presence snapshot onto the vendors that should be drawn."""
    now = now or utcnow()
    result = []

    for record in records:
        if record.position is None:
            logger.debug(f"Skipping vendor {record.id}: no coordinates")
            continue
        if not is_live(record, now, grace_duration, session_ttl):
            logger.debug(f"Skipping vendor {record.id}: not live")
            continue

        result.append(
            LiveVendor(
                vendor_id=record.id,
                position=record.position,
                kitchen_type=record.kitchen_type,
                icon=icon_variant(record.kitchen_type),
                explicitly_live=record.explicitly_live,
            )
        )

    return result
