"""
Listing Stream Ingestor

Consumes the upstream listing event stream and keeps the listing snapshot
current:

- WebSocket connection with reconnection (exponential backoff with jitter,
  infinite retries)
- Liveness monitor that forces a reconnect after prolonged silence
- Single-event and batched (JSON array) messages
- Updates go through the batched writer; deletes are applied immediately
- Every accepted event leads to a stats refresh for its item

State machine: DISCONNECTED -> CONNECTING -> CONNECTED -> (drop) -> CONNECTING
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Optional

import websockets
from websockets import ClientConnection

from ..core.constants import (
    LIVENESS_CHECK_INTERVAL_SECONDS,
    LIVENESS_TIMEOUT_SECONDS,
    RECONNECT_BACKOFF_MULTIPLIER,
    RECONNECT_INITIAL_DELAY_MS,
    RECONNECT_JITTER_FRACTION,
    RECONNECT_MAX_DELAY_MS,
    STREAM_URL,
)
from ..core.errors import StoreUnavailableError
from ..core.metrics import (
    STREAM_MESSAGES,
    STREAM_RECONNECTS,
    record_stream_accept,
    record_stream_drop,
    set_stream_connected,
)
from ..core.types import ConnectionState, EventType, IngestionStats
from ..persistence.repository import ListingRepository, ListingStatsRepository
from .batch_writer import BatchWriter
from .filters import EventFilter, FilterDecision

logger = logging.getLogger(__name__)


@dataclass
class StreamState:
    """Internal state for the ingestor."""

    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    last_message_time_ms: Optional[int] = None
    connected_at_ms: Optional[int] = None
    message_count: int = 0
    reconnect_count: int = 0
    accepted_updates: int = 0
    accepted_deletes: int = 0
    last_error: Optional[str] = None
    current_reconnect_delay_ms: int = RECONNECT_INITIAL_DELAY_MS


def next_backoff_ms(
    delay_ms: int,
    multiplier: float = RECONNECT_BACKOFF_MULTIPLIER,
    max_delay_ms: int = RECONNECT_MAX_DELAY_MS,
) -> int:
    return min(int(delay_ms * multiplier), max_delay_ms)


def jittered(delay_ms: int, fraction: float = RECONNECT_JITTER_FRACTION) -> int:
    """Spread a delay uniformly over +/- fraction."""
    return max(0, int(delay_ms * (1 + random.uniform(-fraction, fraction))))


class ListingStreamIngestor:
    """
    WebSocket consumer for listing events.

    Usage:
        ingestor = ListingStreamIngestor(event_filter, writer, listing_repo, stats_repo)
        await ingestor.start()
        stats = ingestor.get_stats()
        touched = ingestor.drain_touched()
        await ingestor.stop()
    """

    def __init__(
        self,
        event_filter: EventFilter,
        writer: BatchWriter,
        listing_repo: ListingRepository,
        stats_repo: ListingStatsRepository,
        url: str = STREAM_URL,
        liveness_interval: float = LIVENESS_CHECK_INTERVAL_SECONDS,
        liveness_timeout: float = LIVENESS_TIMEOUT_SECONDS,
        initial_delay_ms: int = RECONNECT_INITIAL_DELAY_MS,
        max_delay_ms: int = RECONNECT_MAX_DELAY_MS,
        backoff_multiplier: float = RECONNECT_BACKOFF_MULTIPLIER,
    ):
        self.event_filter = event_filter
        self.writer = writer
        self.listing_repo = listing_repo
        self.stats_repo = stats_repo
        self.url = url
        self.liveness_interval = liveness_interval
        self.liveness_timeout = liveness_timeout
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.backoff_multiplier = backoff_multiplier

        self._state = StreamState(current_reconnect_delay_ms=initial_delay_ms)
        self._dropped: dict[str, int] = {}
        self._touched: dict[str, str] = {}
        self._ws: Optional[ClientConnection] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._refresh_tasks: set[asyncio.Task] = set()

        # Stats for updated items refresh once their batch is written
        self.writer.on_flushed = self._refresh_items

    @property
    def _log_prefix(self) -> str:
        return "[stream]"

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(self) -> None:
        """Start the ingestor (connect, receive, monitor liveness)."""
        if self._running:
            logger.warning(f"{self._log_prefix} Already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        self._monitor_task = asyncio.create_task(self._liveness_loop())
        logger.info(f"{self._log_prefix} Started")

    async def stop(self) -> None:
        """Close the socket, cancel timers and drain the writer."""
        self._running = False
        if self._ws:
            await self._ws.close()
            self._ws = None
        for task in (self._task, self._monitor_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._monitor_task = None

        await self.writer.stop()
        if self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)

        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"{self._log_prefix} Stopped")

    def is_connected(self) -> bool:
        return self._state.connection_state == ConnectionState.CONNECTED

    def get_stats(self) -> IngestionStats:
        """Current ingestion health snapshot."""
        now_ms = int(time.time() * 1000)
        last = self._state.last_message_time_ms
        return IngestionStats(
            message_count=self._state.message_count,
            last_message_time=last,
            time_since_last_message=now_ms - last if last else None,
            is_connected=self.is_connected(),
            connection_state=self._state.connection_state,
            reconnect_count=self._state.reconnect_count,
            accepted_updates=self._state.accepted_updates,
            accepted_deletes=self._state.accepted_deletes,
            dropped=dict(self._dropped),
        )

    def drain_touched(self) -> dict[str, str]:
        """Items (id -> name) updated since the previous call."""
        touched, self._touched = self._touched, {}
        return touched

    # =========================================================================
    # Connection
    # =========================================================================

    def _set_state(self, state: ConnectionState) -> None:
        if self._state.connection_state != state:
            logger.debug(f"{self._log_prefix} {self._state.connection_state.value} -> {state.value}")
            self._state.connection_state = state
            set_stream_connected(state == ConnectionState.CONNECTED)

    async def _run_loop(self) -> None:
        """Main connection loop with reconnection logic."""
        while self._running:
            try:
                await self._connect_and_receive()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._state.last_error = str(e)
                logger.error(f"{self._log_prefix} Connection error: {type(e).__name__}: {e}")

            self._ws = None
            self._set_state(ConnectionState.DISCONNECTED)
            if not self._running:
                break

            self._state.reconnect_count += 1
            STREAM_RECONNECTS.inc()
            delay_ms = self._state.current_reconnect_delay_ms
            wait_ms = jittered(delay_ms)
            logger.info(
                f"{self._log_prefix} Reconnecting in {wait_ms}ms (attempt {self._state.reconnect_count})"
            )
            await asyncio.sleep(wait_ms / 1000)

            self._state.current_reconnect_delay_ms = next_backoff_ms(
                delay_ms, self.backoff_multiplier, self.max_delay_ms
            )

    async def _connect_and_receive(self) -> None:
        """Connect to the stream and process messages until it closes."""
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"{self._log_prefix} Connecting to {self.url}")

        async with websockets.connect(
            self.url,
            additional_headers={"batch-test": "true"},
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
        ) as ws:
            self._ws = ws
            self._state.connected_at_ms = int(time.time() * 1000)
            self._state.current_reconnect_delay_ms = self.initial_delay_ms
            self._set_state(ConnectionState.CONNECTED)
            logger.info(f"{self._log_prefix} Connected")

            async for message in ws:
                if not self._running:
                    break
                await self._handle_message(message)

    async def _liveness_loop(self) -> None:
        """Force a reconnect when a connected stream goes silent."""
        while self._running:
            await asyncio.sleep(self.liveness_interval)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error(f"{self._log_prefix} Liveness check failed: {e}")

    async def check_liveness(self, now_ms: Optional[int] = None) -> bool:
        """
        Close a silent connection so the run loop reconnects.

        Returns:
            True if a reconnect was forced
        """
        if self._state.connection_state != ConnectionState.CONNECTED or self._ws is None:
            return False

        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        reference = self._state.last_message_time_ms
        if reference is None:
            reference = self._state.connected_at_ms if self._state.connected_at_ms is not None else now_ms
        silence_s = (now_ms - reference) / 1000
        if silence_s < self.liveness_timeout:
            return False

        logger.warning(f"{self._log_prefix} No messages for {silence_s:.0f}s, forcing reconnect")
        await self._ws.close()
        return True

    # =========================================================================
    # Messages
    # =========================================================================

    async def _handle_message(self, message: str | bytes) -> None:
        """Handle one WebSocket frame (single event or array of events)."""
        self._state.message_count += 1
        self._state.last_message_time_ms = int(time.time() * 1000)
        STREAM_MESSAGES.inc()

        try:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            data = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"{self._log_prefix} Invalid JSON: {e}")
            self._count_drop("invalid_json")
            return

        events = data if isinstance(data, list) else [data]
        if len(events) > 1:
            logger.debug(f"{self._log_prefix} Received batch of {len(events)} events")

        for raw in events:
            await self.handle_event(raw)

    async def handle_event(self, raw: Any) -> FilterDecision:
        decision = self.event_filter.evaluate(raw)
        if not decision.accepted:
            self._count_drop(decision.reason)
            return decision

        if decision.event == EventType.LISTING_UPDATE:
            listing = decision.listing
            await self.writer.add(listing)
            self._touched[listing.item_id] = listing.name
            self._state.accepted_updates += 1
        else:
            await self._apply_delete(decision)
            self._state.accepted_deletes += 1

        record_stream_accept(decision.event.value)
        return decision

    async def _apply_delete(self, decision: FilterDecision) -> None:
        await self.writer.discard(decision.name, decision.side, decision.owner_id)
        try:
            item_id = await self.listing_repo.delete(decision.owner_id, decision.name, decision.side)
        except StoreUnavailableError as e:
            logger.error(f"{self._log_prefix} Delete for {decision.name} lost, store unavailable: {e}")
            return
        if item_id:
            await self._refresh_items({item_id})

    def _count_drop(self, reason: str) -> None:
        self._dropped[reason] = self._dropped.get(reason, 0) + 1
        record_stream_drop(reason)

    # =========================================================================
    # Stats refresh
    # =========================================================================

    async def _refresh_items(self, item_ids: set[str]) -> None:
        """Schedule a stats refresh per item without blocking ingestion."""
        for item_id in item_ids:
            task = asyncio.create_task(self._refresh_one(item_id))
            self._refresh_tasks.add(task)
            task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_one(self, item_id: str) -> None:
        try:
            await self.stats_repo.refresh(item_id)
        except Exception as e:
            logger.warning(f"{self._log_prefix} Stats refresh failed for {item_id}: {e}")
