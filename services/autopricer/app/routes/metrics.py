"""
Prometheus Metrics Endpoint

Exposes /metrics endpoint in Prometheus text format.
"""

import logging
from fastapi import APIRouter, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from ...core.metrics import (
    KEY_PIVOT_RATE,
    REGISTRY,
    set_service_info,
    set_stream_connected,
)
from ..config import settings


logger = logging.getLogger(__name__)
router = APIRouter()


def _update_live_metrics(request: Request) -> None:
    """Refresh gauges that mirror live state on each scrape."""
    ingestor = getattr(request.app.state, "ingestor", None)
    if ingestor:
        set_stream_connected(ingestor.is_connected())

    key_rate = getattr(request.app.state, "key_rate", None)
    if key_rate:
        KEY_PIVOT_RATE.set(key_rate.metal)


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Metrics exposed:
    - autopricer_stream_messages_total
    - autopricer_stream_events_accepted_total{event}
    - autopricer_stream_events_dropped_total{reason}
    - autopricer_stream_reconnects_total
    - autopricer_stream_connected
    - autopricer_listings_flushed_total
    - autopricer_pricing_outcomes_total{stage, status}
    - autopricer_pricing_pass_seconds
    - autopricer_stale_listings_deleted_total
    - autopricer_key_pivot_rate_metal
    - autopricer_scheduled_task_runs_total{task, status}
    - autopricer_db_writes_total{table, status}
    - autopricer_db_write_latency_seconds{table}
    - autopricer_service_info{version, environment}
    """
    set_service_info(settings.service_version, settings.environment)
    _update_live_metrics(request)

    metrics_output = generate_latest(REGISTRY)

    return Response(
        content=metrics_output,
        media_type=CONTENT_TYPE_LATEST,
    )
