"""In-process notification channel — fan-out of events to connected UIs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

SSH_HOST_KEY_REQUEST = "ssh_host_key_request"
SSH_HOST_KEY_RESOLVED = "ssh_host_key_resolved"
SERVER_STATE_CHANGED = "server_state_changed"


class EventBroadcaster:
    """Publish events to every subscribed queue without ever blocking the publisher."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: set[asyncio.Queue[dict]] = set()

    def subscribe(self) -> asyncio.Queue[dict]:
        queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        event = {"type": event_type, "payload": payload, "timestamp": int(time.time() * 1000)}
        for queue in list(self._subscribers):
            if queue.full():
                # Slow consumer: drop its oldest event
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("Dropped oldest event for a slow subscriber")
            queue.put_nowait(event)
        logger.debug("Published %s to %d subscriber(s)", event_type, len(self._subscribers))


broadcaster = EventBroadcaster()
