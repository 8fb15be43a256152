"""
Batched Listing Writer

Accumulates accepted listing updates and writes them with one multi-row
upsert per interval. Pending listings are keyed on the store's unique key,
so a later update for the same (name, item id, side, owner) replaces the
earlier one before it is written.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..core.constants import BATCH_FLUSH_INTERVAL_SECONDS
from ..core.metrics import LISTINGS_FLUSHED
from ..core.types import Listing, Side
from ..persistence.repository import ListingRepository

logger = logging.getLogger(__name__)

ListingKey = tuple[str, str, Side, str]


def listing_key(listing: Listing) -> ListingKey:
    return (listing.name, listing.item_id, listing.side, listing.owner_id)


class BatchWriter:
    """
    Periodic batched upserts for the listing snapshot.

    Usage:
        writer = BatchWriter(listing_repo, interval=10)
        await writer.start()
        await writer.add(listing)
        await writer.stop()  # final flush
    """

    def __init__(
        self,
        listing_repo: ListingRepository,
        interval: float = BATCH_FLUSH_INTERVAL_SECONDS,
        on_flushed: Optional[Callable[[set[str]], Awaitable[None]]] = None,
    ):
        self.listing_repo = listing_repo
        self.interval = interval
        self.on_flushed = on_flushed
        self._pending: dict[ListingKey, Listing] = {}
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.flushed_total = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())
        logger.info(f"[writer] Started (interval={self.interval}s)")

    async def stop(self) -> None:
        """Cancel the timer and write whatever is pending."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info("[writer] Stopped")

    async def add(self, listing: Listing) -> None:
        async with self._lock:
            self._pending[listing_key(listing)] = listing

    async def discard(self, name: str, side: Side, owner_id: str) -> None:
        """Drop pending updates superseded by a delete."""
        async with self._lock:
            for key in [k for k in self._pending if k[0] == name and k[2] == side and k[3] == owner_id]:
                del self._pending[key]

    async def flush(self) -> int:
        """
        Write all pending listings in one statement.

        A failed batch is logged and dropped; later events for the same
        listings supersede it.

        Returns:
            Number of listings written
        """
        async with self._lock:
            if not self._pending:
                return 0
            batch = list(self._pending.values())
            self._pending = {}

            try:
                written = await self.listing_repo.upsert_batch(batch)
            except Exception as e:
                logger.error(f"[writer] Dropped batch of {len(batch)} listings: {type(e).__name__}: {e}")
                return 0

        self.flushed_total += written
        LISTINGS_FLUSHED.inc(written)
        logger.debug(f"[writer] Flushed {written} listings")
        if self.on_flushed is not None:
            await self.on_flushed({l.item_id for l in batch})
        return written

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            await self.flush()
