"""
In-memory event bus for scan progress streaming.

Pub/sub over asyncio.Queue. The scan tracker publishes to "scan_all" and
"scan_<scan_id>"; SSE clients subscribe to either. State is in-memory only,
so clients reconnect after a restart.
"""

import asyncio
import json
import logging
import time
from typing import AsyncGenerator, Dict, Any, Set

logger = logging.getLogger(__name__)

# Keepalive interval (seconds)
KEEPALIVE_INTERVAL = 15

ALL_SCANS_CHANNEL = "scan_all"


def scan_channel(scan_id: str) -> str:
    """Channel name for a single scan's events."""
    return f"scan_{scan_id}"


class _EventBus:
    """Process-wide event bus."""

    def __init__(self):
        # channel -> subscriber queues
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def publish(self, channel: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Publish an event to every subscriber of a channel.

        Args:
            channel: Channel name (e.g. "scan_all", "scan_3f2a...")
            event_type: SSE event type (e.g. "scan_progress", "site_updated")
            data: JSON-serializable payload

        Returns:
            Number of subscribers that received the event
        """
        subscribers = self._subscribers.get(channel)
        if not subscribers:
            return 0

        event = {
            "type": event_type,
            "data": data,
            "timestamp": time.time(),
        }

        delivered = 0
        for queue in list(subscribers):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                # Slow consumer, drop it
                subscribers.discard(queue)
                logger.debug(f"Dropped slow subscriber on {channel}")

        return delivered

    def publish_scan_event(self, scan_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """Publish to both the global channel and the scan's own channel."""
        delivered = self.publish(ALL_SCANS_CHANNEL, event_type, data)
        delivered += self.publish(scan_channel(scan_id), event_type, data)
        return delivered

    def subscribe(self, channel: str, max_queue_size: int = 100) -> asyncio.Queue:
        """Register a raw queue on a channel. Pair with unsubscribe()."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(channel)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[channel]

    async def subscribe_stream(
        self, channel: str, max_queue_size: int = 100
    ) -> AsyncGenerator[str, None]:
        """
        Async generator yielding SSE-formatted strings.

        Emits a keepalive comment every KEEPALIVE_INTERVAL seconds of silence.
        """
        queue = self.subscribe(channel, max_queue_size)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=KEEPALIVE_INTERVAL
                    )
                    yield f"event: {event['type']}\ndata: {json.dumps(event['data'], default=str)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            self.unsubscribe(channel, queue)

    @property
    def active_channels(self) -> Dict[str, int]:
        """Active channels and their subscriber counts."""
        return {
            channel: len(subs) for channel, subs in self._subscribers.items() if subs
        }


# Module-level singleton
EventBus = _EventBus()
