"""Live node status publication.

In-process fire-and-forget pub/sub. Publishing never blocks the run and
never fails when nobody is listening; slow subscribers lose events rather
than applying back-pressure. Workers publish through Redis and each API
process relays those events to its local subscribers.
"""

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger()

DEFAULT_QUEUE_SIZE = 256


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    """Status shown on a node while a run is in progress."""

    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class NodeStatusEvent:
    """Status change of one node during a run."""

    channel: str  # e.g. 'http-request-execution'
    workflow_id: str
    execution_id: str | None
    node_id: str
    status: NodeStatus
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for SSE streaming."""
        return {
            "channel": self.channel,
            "topic": "status",
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeStatusEvent":
        return cls(
            channel=data["channel"],
            workflow_id=data["workflow_id"],
            execution_id=data.get("execution_id"),
            node_id=data["node_id"],
            status=NodeStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


class StatusPublisher:
    """Fan-out of node status events to per-workflow subscribers.

    Example usage:
        publisher = StatusPublisher()

        async with publisher.subscribe(workflow_id) as events:
            async for event in events:
                print(event.node_id, event.status)
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[NodeStatusEvent]]] = {}

    def subscriber_count(self, workflow_id: str) -> int:
        return len(self._subscribers.get(workflow_id, ()))

    async def publish(self, event: NodeStatusEvent) -> None:
        """Deliver an event to current subscribers of its workflow."""
        for queue in list(self._subscribers.get(event.workflow_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(
                    "status_event_dropped",
                    workflow_id=event.workflow_id,
                    node_id=event.node_id,
                )

    @asynccontextmanager
    async def subscribe(self, workflow_id: str) -> AsyncIterator[AsyncIterator[NodeStatusEvent]]:
        """Subscribe to status events of one workflow."""
        queue: asyncio.Queue[NodeStatusEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(workflow_id, set()).add(queue)

        async def events() -> AsyncIterator[NodeStatusEvent]:
            while True:
                yield await queue.get()

        try:
            yield events()
        finally:
            subscribers = self._subscribers.get(workflow_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[workflow_id]


_publisher: StatusPublisher | None = None


def get_status_publisher() -> StatusPublisher:
    """Get or create the process-wide status publisher."""
    global _publisher
    if _publisher is None:
        _publisher = StatusPublisher()
    return _publisher


STATUS_CHANNEL_PREFIX = "chainly:status:"


class StatusSink(Protocol):
    async def publish(self, event: NodeStatusEvent) -> None: ...


class RedisStatusPublisher:
    """Publishes status events to Redis for API processes to relay.

    Used by workers, which run in a different process from the SSE
    subscribers. Redis failures are logged and dropped.
    """

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def publish(self, event: NodeStatusEvent) -> None:
        try:
            await self._redis.publish(
                f"{STATUS_CHANNEL_PREFIX}{event.workflow_id}",
                json.dumps(event.to_dict()),
            )
        except RedisError as e:
            logger.warning(
                "status_publish_failed",
                workflow_id=event.workflow_id,
                node_id=event.node_id,
                error_type=type(e).__name__,
            )


RELAY_RETRY_DELAY = 1.0
RELAY_MAX_RETRY_DELAY = 30.0


async def relay_status_events(
    redis: Redis,
    publisher: StatusPublisher,
    retry_delay: float = RELAY_RETRY_DELAY,
    max_retry_delay: float = RELAY_MAX_RETRY_DELAY,
) -> None:
    """Forward status events from Redis to local subscribers until cancelled.

    A lost or refused connection is retried with exponential backoff; the
    delay resets once a subscription succeeds.
    """
    delay = retry_delay
    while True:
        pubsub = redis.pubsub()
        try:
            await pubsub.psubscribe(f"{STATUS_CHANNEL_PREFIX}*")
            logger.info("status_relay_started")
            delay = retry_delay
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                try:
                    event = NodeStatusEvent.from_dict(json.loads(message["data"]))
                except (ValueError, KeyError, TypeError):
                    logger.warning("status_relay_invalid_message")
                    continue
                await publisher.publish(event)
        except (RedisError, OSError) as e:
            logger.warning(
                "status_relay_disconnected",
                error_type=type(e).__name__,
                retry_in=delay,
            )
        finally:
            with contextlib.suppress(RedisError, OSError):
                await pubsub.aclose()

        await asyncio.sleep(delay)
        delay = min(delay * 2, max_retry_delay)
