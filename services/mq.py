"""
Redis stream transport for pushed vendor, drop and event changes.

Each stream entry carries one JSON-encoded FeedChange under the ``data``
field. Consumers read through a consumer group and ack an entry only after
its handler succeeded, so a failed entry stays pending and is replayed the
next time the consumer starts.
"""

import json
import logging
from typing import Any, Callable, Iterable, List, Optional

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import ResponseError

from models import FeedChange
from services.config import FEED_STREAM, REDIS_URL

logger = logging.getLogger(__name__)

SUPPORTED_MAJOR_VERSION = "1"

Handler = Callable[[FeedChange], None]


def encode_change(change: FeedChange) -> dict[str, str]:
    return {"data": json.dumps(change.model_dump(mode="json"))}


def decode_change(fields: dict[str, Any]) -> FeedChange:
    """
    Parse one stream entry.

    Raises:
        ValueError: if the entry is not valid JSON or not a FeedChange
    """
    change = FeedChange.model_validate(json.loads(fields.get("data", "{}")))
    if change.schema_version.split(".")[0] != SUPPORTED_MAJOR_VERSION:
        logger.warning(f"Unsupported schema version: {change.schema_version}")
    return change


class _StreamClient:
    def __init__(self, redis_url: str, stream_name: str):
        self.redis_url = redis_url
        self.stream_name = stream_name
        self._client: Optional[Redis] = None

    @property
    def client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self.redis_url, decode_responses=True)
            self._on_connect()
        return self._client

    def _on_connect(self):
        pass

    def close(self):
        if self._client:
            self._client.close()
            self._client = None


class FeedPublisher(_StreamClient):
    """Appends changes to the feed stream."""

    def __init__(self, redis_url: str = REDIS_URL, stream_name: str = FEED_STREAM):
        super().__init__(redis_url, stream_name)

    def publish(self, change: FeedChange) -> str:
        message_id = str(self.client.xadd(self.stream_name, encode_change(change)))
        logger.info(
            f"Published {change.kind} {change.op} {change.key} to {self.stream_name}"
        )
        return message_id

    def publish_many(self, changes: Iterable[FeedChange]) -> List[str]:
        """Publish several changes in one round trip, in order."""
        pipe = self.client.pipeline()
        count = 0
        for change in changes:
            pipe.xadd(self.stream_name, encode_change(change))
            count += 1
        message_ids = [str(message_id) for message_id in pipe.execute()]
        logger.info(f"Published {count} changes to {self.stream_name}")
        return message_ids


class FeedConsumer(_StreamClient):
    """Reads changes from the feed stream through a consumer group."""

    def __init__(
        self,
        redis_url: str = REDIS_URL,
        stream_name: str = FEED_STREAM,
        consumer_group: str = "default",
        consumer_name: str = "worker",
    ):
        super().__init__(redis_url, stream_name)
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self._running = False

    def _on_connect(self):
        self._ensure_consumer_group()

    def _ensure_consumer_group(self):
        try:
            self._client.xgroup_create(
                self.stream_name, self.consumer_group, id="0", mkstream=True
            )
            logger.info(f"Created consumer group {self.consumer_group}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                logger.error(f"Error creating consumer group: {e}")

    def _read(self, start_id: str, count: int, block: Optional[int]):
        return self.client.xreadgroup(
            self.consumer_group,
            self.consumer_name,
            {self.stream_name: start_id},
            count=count,
            block=block,
        )

    def _dispatch(self, messages, handler: Handler) -> int:
        """Process a batch from xreadgroup. Returns how many entries it held."""
        seen = 0
        for _stream, message_list in messages or []:
            for message_id, fields in message_list:
                seen += 1
                self._process_message(message_id, fields, handler)
        return seen

    def replay_pending(self, handler: Handler, count: int = 10) -> int:
        """
        Re-deliver entries this consumer read earlier but never acked.

        Entries whose handler fails again stay pending for the next start;
        each pending entry is offered to the handler once per call.
        """
        replayed = 0
        last_id = "0"
        while True:
            messages = self._read(last_id, count, None)
            batch = [entry for _stream, entries in messages or [] for entry in entries]
            if not batch:
                break
            replayed += self._dispatch(messages, handler)
            last_id = batch[-1][0]
        if replayed:
            logger.info(f"Replayed {replayed} pending changes")
        return replayed

    def consume(
        self,
        handler: Handler,
        block: int = 5000,
        count: int = 10,
        replay: bool = True,
    ):
        logger.info(f"Starting consumer {self.consumer_name} on {self.stream_name}")
        self._running = True

        if replay:
            try:
                self.replay_pending(handler, count)
            except Exception as e:
                logger.error(f"Error replaying pending changes: {e}")

        while self._running:
            try:
                self._dispatch(self._read(">", count, block), handler)
            except KeyboardInterrupt:
                logger.info("Consumer shutting down")
                break
            except Exception as e:
                logger.error(f"Error in consumer loop: {e}")

        self._running = False

    def stop(self):
        """Ask the consume loop to exit after the current batch."""
        self._running = False

    def _process_message(
        self, message_id: str, fields: dict[str, Any], handler: Handler
    ) -> bool:
        try:
            change = decode_change(fields)
        except (ValueError, ValidationError) as e:
            logger.error(f"Dropping malformed message {message_id}: {e}")
            # Unparseable entries are acked and dropped.
            self.client.xack(self.stream_name, self.consumer_group, message_id)
            return False

        try:
            handler(change)
        except Exception as e:
            logger.error(f"Error processing message {message_id}: {e}")
            return False

        self.client.xack(self.stream_name, self.consumer_group, message_id)
        logger.debug(f"Processed {change.kind} change {change.key}")
        return True
