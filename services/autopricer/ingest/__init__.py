# Autopricer Ingestion
# Listing event stream consumer

"""
Ingestion module.

Components:
- ListingStreamIngestor: WebSocket consumer with reconnect and liveness
- EventFilter: validation and drop reasons for raw events
- BatchWriter: periodic multi-row listing upserts
"""

from .batch_writer import BatchWriter
from .filters import DropReason, EventFilter, FilterDecision
from .stream import ListingStreamIngestor

__all__ = [
    "BatchWriter",
    "DropReason",
    "EventFilter",
    "FilterDecision",
    "ListingStreamIngestor",
]
