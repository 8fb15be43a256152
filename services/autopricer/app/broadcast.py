"""
Price Broadcaster

Fans emitted price-list entries out to live subscribers (the SSE stream).
Each subscriber owns a bounded queue; a slow subscriber loses its oldest
events rather than blocking the pricing pass.
"""

import asyncio
import logging

from ..core.types import PricedItem

logger = logging.getLogger(__name__)


class PriceBroadcaster:
    """
    Usage:
        broadcaster = PriceBroadcaster()
        queue = broadcaster.subscribe()
        broadcaster.publish(item)
        item = await queue.get()
        broadcaster.unsubscribe(queue)
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        logger.debug(f"[broadcast] Subscriber added ({len(self._subscribers)} total)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)
        logger.debug(f"[broadcast] Subscriber removed ({len(self._subscribers)} total)")

    def publish(self, item: PricedItem) -> None:
        self.published += 1
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(item)
