"""
Live feed processor.

Consumes vendor, drop and event changes from the Redis feed, keeps the
latest record per id and recomputes every derived view on each change.
Nothing derived is cached between changes.
"""

import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from models import DropRecord, EventRecord, FeedChange, VendorPresenceRecord
from services.event_status import EventCategory, classify
from services.mq import FeedConsumer
from services.presence import LiveVendor, live_vendors
from services.timeparse import utcnow

logger = logging.getLogger(__name__)

RECORD_TYPES = {
    "vendor": VendorPresenceRecord,
    "drop": DropRecord,
    "event": EventRecord,
}


@dataclass
class DropView:
    drop_id: str
    vendor_id: str
    title: str
    remaining: int
    expires_at: datetime


@dataclass
class FeedView:
    generated_at: datetime
    live_vendors: List[LiveVendor] = field(default_factory=list)
    drops: List[DropView] = field(default_factory=list)
    event_categories: Dict[str, EventCategory] = field(default_factory=dict)


class FeedProcessor:
    """Apply pushed changes and publish recomputed views."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        on_update: Optional[Callable[[FeedView], None]] = None,
    ):
        self.clock = clock
        self.on_update = on_update
        self.records: Dict[str, Dict[str, BaseModel]] = {
            kind: {} for kind in RECORD_TYPES
        }
        self.changes_applied = 0
        self.changes_failed = 0
        self.start_time = time.time()

    def apply(self, change: FeedChange) -> bool:
        """Fold one change into the current snapshot. Returns False if skipped."""
        records = self.records[change.kind]

        if change.op == "remove":
            if change.key is None:
                logger.warning(f"Ignoring {change.kind} removal without an id")
                self.changes_failed += 1
                return False
            records.pop(change.key, None)
            self.changes_applied += 1
            return True

        payload = dict(change.record)
        if change.record_id and "id" not in payload:
            payload["id"] = change.record_id

        try:
            record = RECORD_TYPES[change.kind].model_validate(payload)
        except ValidationError as e:
            logger.error(f"Skipping malformed {change.kind} record {change.key}: {e}")
            self.changes_failed += 1
            return False

        records[record.id] = record
        self.changes_applied += 1
        return True

    def view(self, now: Optional[datetime] = None) -> FeedView:
        now = now or self.clock()

        drops = [
            DropView(
                drop_id=drop.id,
                vendor_id=drop.vendor_id,
                title=drop.title,
                remaining=drop.remaining,
                expires_at=drop.expires_at,
            )
            for drop in self.records["drop"].values()
            if not drop.is_expired(now)
        ]

        return FeedView(
            generated_at=now,
            live_vendors=live_vendors(self.records["vendor"].values(), now),
            drops=drops,
            event_categories={
                event.id: classify(event.status)
                for event in self.records["event"].values()
            },
        )

    def handle(self, change: FeedChange):
        if not self.apply(change):
            return
        view = self.view()
        logger.info(
            f"[LIVE_FEED] {len(view.live_vendors)} live vendors, "
            f"{len(view.drops)} open drops, {len(view.event_categories)} events"
        )
        if self.on_update:
            self.on_update(view)

    def get_metrics(self) -> Dict[str, float]:
        uptime = time.time() - self.start_time
        return {
            "changes_applied": self.changes_applied,
            "changes_failed": self.changes_failed,
            "uptime_seconds": round(uptime, 1),
        }


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    processor = FeedProcessor()
    consumer = FeedConsumer(
        consumer_group=os.getenv("FEED_CONSUMER_GROUP", "live-feed"),
        consumer_name=os.getenv("FEED_CONSUMER_NAME", "live-feed-worker"),
    )

    try:
        consumer.consume(processor.handle)
    finally:
        consumer.close()
        logger.info(f"[LIVE_FEED] Stopped: {processor.get_metrics()}")


if __name__ == "__main__":
    main()
