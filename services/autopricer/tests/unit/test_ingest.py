"""
Unit tests for listing ingestion.

Tests cover:
- EventFilter: drop reasons in order, delete validation, timestamps
- BatchWriter: dedup, idempotent flush, failed batches, delete discard
- ListingStreamIngestor: event handling, counters, touched items, liveness
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from services.autopricer.core.item_schema import MappingItemSchema
from services.autopricer.core.types import ConnectionState, Currencies, EventType, Listing, Side
from services.autopricer.ingest.batch_writer import BatchWriter, listing_key
from services.autopricer.ingest.filters import DropReason, EventFilter, normalize_text
from services.autopricer.ingest.stream import ListingStreamIngestor, jittered, next_backoff_ms


OWNER = "76561198000000001"


def make_update(name: str = "Team Captain", **payload_overrides) -> dict:
    payload = {
        "item": {"name": name, "attributes": []},
        "intent": "sell",
        "steamid": OWNER,
        "currencies": {"keys": 1, "metal": 5.5},
        "userAgent": {"client": "-", "lastPulse": 1704067000},
        "details": "Fast trades",
        "bumpedAt": 1704067100,
    }
    payload.update(payload_overrides)
    return {"event": "listing-update", "payload": payload}


def make_delete(name: str = "Team Captain", **payload_overrides) -> dict:
    payload = {"item": {"name": name}, "intent": "sell", "steamid": OWNER}
    payload.update(payload_overrides)
    return {"event": "listing-delete", "payload": payload}


def make_filter(**kwargs) -> EventFilter:
    schema = MappingItemSchema({"Team Captain": "378;6", "Burning Flames Team Captain": "378;5;u13"})
    return EventFilter(schema, **kwargs)


def make_listing(metal: float = 5.5, owner: str = OWNER, side: Side = Side.SELL) -> Listing:
    return Listing(
        name="Team Captain",
        item_id="378;6",
        side=side,
        currencies=Currencies(keys=1, metal=metal),
        owner_id=owner,
        updated=1704067100,
    )


# =============================================================================
# Event Filter Tests
# =============================================================================

class TestEventFilter:
    """Test event validation and drop reasons."""

    def test_valid_update(self):
        decision = make_filter().evaluate(make_update())

        assert decision.accepted
        assert decision.event == EventType.LISTING_UPDATE
        listing = decision.listing
        assert listing.item_id == "378;6"
        assert listing.side == Side.SELL
        assert listing.currencies == Currencies(keys=1, metal=5.5)
        assert listing.owner_id == OWNER
        assert listing.updated == 1704067100

    def test_listed_at_and_now_fallbacks(self):
        event_filter = make_filter()

        decision = event_filter.evaluate(make_update(bumpedAt=None, listedAt=1704060000))
        assert decision.listing.updated == 1704060000

        decision = event_filter.evaluate(make_update(bumpedAt=None), now=1704069999)
        assert decision.listing.updated == 1704069999

    def test_missing_details_is_accepted(self):
        assert make_filter().evaluate(make_update(details=None)).accepted

    @pytest.mark.parametrize("raw,reason", [
        ("not an event", DropReason.MISSING_ITEM),
        ({"event": "listing-bump", "payload": {}}, DropReason.UNKNOWN_EVENT),
        ({"event": "listing-update", "payload": {"item": {}}}, DropReason.MISSING_ITEM),
        (make_update(intent="trade"), DropReason.INVALID_INTENT),
        (make_update(steamid=None), DropReason.MISSING_OWNER),
        (make_update(userAgent=None), DropReason.MISSING_USER_AGENT),
        (make_update(currencies={}), DropReason.INVALID_CURRENCIES),
        (make_update(currencies={"metal": -2}), DropReason.INVALID_CURRENCIES),
        (make_update("Unknown Hat"), DropReason.UNRESOLVED_ITEM),
    ])
    def test_drop_reasons(self, raw, reason):
        decision = make_filter().evaluate(raw)

        assert not decision.accepted
        assert decision.reason == reason

    def test_spells_are_dropped(self):
        raw = make_update()
        raw["payload"]["item"]["spells"] = [{"id": 1004, "name": "Halloween Fire"}]

        assert make_filter().evaluate(raw).reason == DropReason.SPELLS

    def test_user_agent_checked_before_currencies(self):
        decision = make_filter().evaluate(make_update(userAgent=None, currencies={}))
        assert decision.reason == DropReason.MISSING_USER_AGENT

    def test_allow_list(self):
        event_filter = make_filter(allowed_names={"Other Hat"})
        assert event_filter.evaluate(make_update()).reason == DropReason.NOT_ALLOWED
        assert event_filter.evaluate(make_delete()).reason == DropReason.NOT_ALLOWED

    def test_excluded_owner(self):
        decision = make_filter(excluded_owners={OWNER}).evaluate(make_update())
        assert decision.reason == DropReason.EXCLUDED_OWNER

    def test_excluded_description_matches_whole_words(self):
        event_filter = make_filter(excluded_descriptions=["duped"])

        assert event_filter.evaluate(make_update(details="Possibly DUPED, cheap")).reason == (
            DropReason.EXCLUDED_DESCRIPTION
        )
        assert event_filter.evaluate(make_update(details="Verified unduped")).accepted

    def test_blocked_attribute(self):
        event_filter = make_filter(blocked_attributes={"Burning Flames": 13})
        raw = make_update()
        raw["payload"]["item"]["attributes"] = [{"defindex": 134, "float_value": 13}]

        assert event_filter.evaluate(raw).reason == DropReason.BLOCKED_ATTRIBUTE

    def test_blocked_attribute_exempts_named_item(self):
        event_filter = make_filter(blocked_attributes={"Burning Flames": 13})
        raw = make_update("Burning Flames Team Captain")
        raw["payload"]["item"]["attributes"] = [{"defindex": 134, "float_value": 13}]

        decision = event_filter.evaluate(raw)

        assert decision.accepted
        assert decision.listing.item_id == "378;5;u13"

    def test_valid_delete(self):
        decision = make_filter().evaluate(make_delete())

        assert decision.accepted
        assert decision.event == EventType.LISTING_DELETE
        assert decision.name == "Team Captain"
        assert decision.side == Side.SELL
        assert decision.owner_id == OWNER

    def test_delete_needs_owner(self):
        assert make_filter().evaluate(make_delete(steamid=None)).reason == DropReason.MISSING_OWNER

    def test_normalize_text(self):
        assert normalize_text("  ＤＵＰＥＤ ") == "duped"


# =============================================================================
# Batch Writer Tests
# =============================================================================

def make_repo() -> MagicMock:
    repo = MagicMock()
    repo.upsert_batch = AsyncMock(side_effect=lambda batch: len(batch))
    return repo


class TestBatchWriter:
    """Test batched listing upserts."""

    @pytest.mark.asyncio
    async def test_later_update_replaces_pending(self):
        repo = make_repo()
        writer = BatchWriter(repo)

        await writer.add(make_listing(5.5))
        await writer.add(make_listing(6.0))
        assert writer.pending_count == 1

        assert await writer.flush() == 1
        batch = repo.upsert_batch.await_args.args[0]
        assert batch[0].currencies.metal == 6.0

    @pytest.mark.asyncio
    async def test_flush_is_idempotent(self):
        repo = make_repo()
        writer = BatchWriter(repo)
        await writer.add(make_listing())

        await writer.flush()
        assert await writer.flush() == 0
        repo.upsert_batch.assert_awaited_once()
        assert writer.flushed_total == 1

    @pytest.mark.asyncio
    async def test_failed_batch_is_dropped(self):
        repo = MagicMock()
        repo.upsert_batch = AsyncMock(side_effect=RuntimeError("constraint violation"))
        writer = BatchWriter(repo)
        await writer.add(make_listing())

        assert await writer.flush() == 0
        assert writer.pending_count == 0

    @pytest.mark.asyncio
    async def test_discard_removes_matching_pending(self):
        writer = BatchWriter(make_repo())
        await writer.add(make_listing(owner="a"))
        await writer.add(make_listing(owner="b"))
        await writer.add(make_listing(owner="a", side=Side.BUY))

        await writer.discard("Team Captain", Side.SELL, "a")

        assert writer.pending_count == 2

    @pytest.mark.asyncio
    async def test_on_flushed_receives_item_ids(self):
        on_flushed = AsyncMock()
        writer = BatchWriter(make_repo(), on_flushed=on_flushed)
        await writer.add(make_listing(owner="a"))
        await writer.add(make_listing(owner="b"))

        await writer.flush()

        on_flushed.assert_awaited_once_with({"378;6"})

    @pytest.mark.asyncio
    async def test_stop_flushes_pending(self):
        repo = make_repo()
        writer = BatchWriter(repo, interval=3600)
        await writer.start()
        await writer.add(make_listing())

        await writer.stop()

        repo.upsert_batch.assert_awaited_once()

    def test_listing_key(self):
        assert listing_key(make_listing()) == ("Team Captain", "378;6", Side.SELL, OWNER)


# =============================================================================
# Stream Ingestor Tests
# =============================================================================

def make_ingestor(**filter_kwargs):
    listing_repo = MagicMock()
    listing_repo.upsert_batch = AsyncMock(side_effect=lambda batch: len(batch))
    listing_repo.delete = AsyncMock(return_value="378;6")
    stats_repo = MagicMock()
    stats_repo.refresh = AsyncMock()
    writer = BatchWriter(listing_repo)
    return ListingStreamIngestor(make_filter(**filter_kwargs), writer, listing_repo, stats_repo)


class TestListingStreamIngestor:
    """Test event handling and health counters."""

    @pytest.mark.asyncio
    async def test_update_goes_to_writer(self):
        ingestor = make_ingestor()

        decision = await ingestor.handle_event(make_update())

        assert decision.accepted
        assert ingestor.writer.pending_count == 1
        assert ingestor.get_stats().accepted_updates == 1
        ingestor.listing_repo.upsert_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stats_refresh_after_flush(self):
        ingestor = make_ingestor()
        await ingestor.handle_event(make_update())

        await ingestor.writer.flush()
        await asyncio.sleep(0)

        ingestor.stats_repo.refresh.assert_awaited_once_with("378;6")

    @pytest.mark.asyncio
    async def test_delete_is_applied_immediately(self):
        ingestor = make_ingestor()
        await ingestor.handle_event(make_update())

        await ingestor.handle_event(make_delete())
        await asyncio.sleep(0)

        ingestor.listing_repo.delete.assert_awaited_once_with(OWNER, "Team Captain", Side.SELL)
        ingestor.stats_repo.refresh.assert_awaited_once_with("378;6")
        # The pending update must not resurrect the deleted listing
        assert ingestor.writer.pending_count == 0
        assert ingestor.get_stats().accepted_deletes == 1

    @pytest.mark.asyncio
    async def test_delete_of_unknown_listing(self):
        ingestor = make_ingestor()
        ingestor.listing_repo.delete = AsyncMock(return_value=None)

        await ingestor.handle_event(make_delete())
        await asyncio.sleep(0)

        ingestor.stats_repo.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_drops_are_counted_by_reason(self):
        ingestor = make_ingestor()

        await ingestor.handle_event(make_update(userAgent=None))
        await ingestor.handle_event(make_update(userAgent=None))
        await ingestor.handle_event(make_update("Unknown Hat"))

        assert ingestor.get_stats().dropped == {
            DropReason.MISSING_USER_AGENT: 2,
            DropReason.UNRESOLVED_ITEM: 1,
        }

    @pytest.mark.asyncio
    async def test_batched_message(self):
        ingestor = make_ingestor()

        await ingestor._handle_message(json.dumps([make_update(), make_delete("Team Captain", steamid="other")]))

        stats = ingestor.get_stats()
        assert stats.message_count == 1
        assert stats.accepted_updates == 1
        assert stats.accepted_deletes == 1
        assert stats.last_message_time is not None

    @pytest.mark.asyncio
    async def test_invalid_json_is_dropped(self):
        ingestor = make_ingestor()

        await ingestor._handle_message(b"{not json")

        assert ingestor.get_stats().dropped == {"invalid_json": 1}

    @pytest.mark.asyncio
    async def test_drain_touched(self):
        ingestor = make_ingestor()
        await ingestor.handle_event(make_update())

        assert ingestor.drain_touched() == {"378;6": "Team Captain"}
        assert ingestor.drain_touched() == {}

    def test_initial_stats(self):
        stats = make_ingestor().get_stats()

        assert stats.connection_state == ConnectionState.DISCONNECTED
        assert not stats.is_connected
        assert stats.message_count == 0
        assert stats.time_since_last_message is None

    @pytest.mark.asyncio
    async def test_liveness_forces_reconnect_after_silence(self):
        ingestor = make_ingestor()
        ingestor._state.connection_state = ConnectionState.CONNECTED
        ingestor._state.connected_at_ms = 0
        ingestor._ws = AsyncMock()

        assert await ingestor.check_liveness(now_ms=60_000) is False
        assert await ingestor.check_liveness(now_ms=200_000) is True
        ingestor._ws.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_liveness_ignored_when_disconnected(self):
        ingestor = make_ingestor()
        assert await ingestor.check_liveness(now_ms=10**12) is False


class TestBackoff:
    """Test reconnect delay helpers."""

    def test_next_backoff(self):
        assert next_backoff_ms(1000) == 1300
        assert next_backoff_ms(29_000) == 30_000

    def test_jitter_bounds(self):
        with patch("services.autopricer.ingest.stream.random.uniform", return_value=0.5):
            assert jittered(1000) == 1500
        with patch("services.autopricer.ingest.stream.random.uniform", return_value=-0.5):
            assert jittered(1000) == 500
