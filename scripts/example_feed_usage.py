#!/usr/bin/env python3
"""Example demonstrating the live feed: publishing changes and consuming views."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4
from models import FeedChange
from services.live_feed.__main__ import FeedProcessor, FeedView
from services.mq import FeedPublisher, FeedConsumer


def publish_example():
    """Example: Broadcasting a vendor location and a new drop."""
    publisher = FeedPublisher()
    now = datetime.now(timezone.utc)
    vendor_id = f"truck-{uuid4().hex[:8]}"

    vendor = FeedChange(
        kind="vendor",
        record={
            "id": vendor_id,
            "lat": 40.7505,
            "lng": -73.9934,
            "kitchenType": "trailer",
            "visible": True,
            "isLive": True,
            "lastActive": int(now.timestamp() * 1000),
            "sessionStartTime": int(now.timestamp() * 1000),
        },
    )
    drop = FeedChange(
        kind="drop",
        record={
            "id": f"drop-{uuid4().hex[:8]}",
            "truckId": vendor_id,
            "title": "Free Tacos",
            "quantity": 10,
            "claimedBy": [],
            "expiresAt": (now + timedelta(hours=1)).isoformat(),
        },
    )

    message_ids = publisher.publish_many([vendor, drop])
    for change, message_id in zip((vendor, drop), message_ids):
        print(f"Published {change.kind} {change.key}, Message ID: {message_id}")

    publisher.close()


def consume_example():
    """Example: Consuming changes and printing the recomputed view."""

    def show(view: FeedView):
        print(f"Live vendors: {[v.vendor_id for v in view.live_vendors]}")
        for drop in view.drops:
            print(f"Drop {drop.title}: {drop.remaining} left")

    processor = FeedProcessor(on_update=show)
    consumer = FeedConsumer(consumer_group="example_group", consumer_name="example_worker")

    try:
        consumer.consume(processor.handle)
    finally:
        consumer.close()


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python example_feed_usage.py [publish|consume]")
        sys.exit(1)

    command = sys.argv[1]

    if command == "publish":
        publish_example()
    elif command == "consume":
        consume_example()
    else:
        print(f"Unknown command: {command}")
        print("Usage: python example_feed_usage.py [publish|consume]")
        sys.exit(1)
