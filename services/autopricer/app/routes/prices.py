"""
Price List Endpoints

Read access to the published price list for trading bots.

Endpoints:
- GET /prices - Full price list
- GET /prices/stream - SSE stream of newly emitted prices
- GET /prices/{item_id} - One item
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from ...core.types import PricedItem


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/prices", tags=["prices"])

KEEPALIVE_SECONDS = 15.0


def get_pricelist_repository(request: Request):
    """Get price list repository from app state."""
    repository = getattr(request.app.state, "pricelist_repo", None)
    if not repository:
        raise HTTPException(status_code=503, detail="Price list not available (no database configured)")
    return repository


def get_broadcaster(request: Request):
    """Get price broadcaster from app state."""
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if not broadcaster:
        raise HTTPException(status_code=503, detail="Broadcaster not initialized")
    return broadcaster


@router.get("")
async def list_prices(request: Request) -> dict:
    """All price list entries, camelCase."""
    repository = get_pricelist_repository(request)
    items = await repository.get_all()
    return {
        "items": [item.model_dump(by_alias=True, mode="json") for item in items],
        "count": len(items),
    }


@router.get("/stream")
async def stream_prices(request: Request):
    """
    Server-Sent Events stream of emitted prices.

    Events:
    - price: one PricedItem per event, as written to the price list

    A comment line is sent every 15s while idle to keep proxies from
    closing the connection.
    """
    broadcaster = get_broadcaster(request)
    queue = broadcaster.subscribe()

    async def event_generator() -> AsyncGenerator[str, None]:
        """Generate SSE events."""
        sequence = 0
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    item: PricedItem = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                sequence += 1
                event = {
                    "type": "price",
                    "sequence": sequence,
                    "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
                    "data": item.model_dump(by_alias=True, mode="json"),
                }
                yield f"event: price\ndata: {json.dumps(event)}\n\n"

        except asyncio.CancelledError:
            logger.info("SSE price stream cancelled")
            raise
        finally:
            broadcaster.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.get("/{item_id}")
async def get_price(item_id: str, request: Request) -> dict:
    """One price list entry by item id (e.g. 5021;6)."""
    repository = get_pricelist_repository(request)
    item = await repository.get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"No price for {item_id}")
    return item.model_dump(by_alias=True, mode="json")
