"""
Autopricer Service

Always-on service that ingests the marketplace listing stream, maintains a
listing snapshot and publishes buy/sell prices for trading bots.

API Endpoints:
- GET /health - Service health check
- GET /health/ingestion - Listing stream counters
- GET /prices - Published price list
- GET /prices/{item_id} - One item's price
- GET /prices/stream - SSE stream of emitted prices
- GET /metrics - Prometheus metrics endpoint
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .broadcast import PriceBroadcaster
from .config import Settings, settings
from .routes import health, metrics, prices
from ..core.constants import KEY_ITEM_ID
from ..core.currency import KeyPivotRate, to_metal
from ..core.item_schema import MappingItemSchema
from ..core.metrics import KEY_PIVOT_RATE
from ..discovery import PriceDiscoveryEngine
from ..ingest import BatchWriter, EventFilter, ListingStreamIngestor
from ..persistence import (
    DatabasePool,
    KeyPriceRepository,
    ListingRepository,
    ListingStatsRepository,
    PriceHistoryRepository,
    PriceListRepository,
)
from ..pricing import (
    BaselineFeed,
    DynamicBoundsCalculator,
    PipelineConfig,
    PricingPipeline,
    PricingRunner,
    RateLimitedFallback,
    SteamMarketClient,
    TierPricer,
)
from ..scheduler import Scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances for app state
_db_pool: Optional[DatabasePool] = None
_baseline: Optional[BaselineFeed] = None
_steam: Optional[SteamMarketClient] = None
_ingestor: Optional[ListingStreamIngestor] = None
_writer: Optional[BatchWriter] = None
_scheduler: Optional[Scheduler] = None


async def load_key_rate(
    config: Settings,
    key_price_repo: Optional[KeyPriceRepository],
    baseline: BaselineFeed,
) -> KeyPivotRate:
    """Latest key price row, else the baseline's key quote, else the configured default."""
    key_rate = KeyPivotRate(config.default_key_price, source="default")

    if key_price_repo:
        try:
            latest = await key_price_repo.latest()
        except Exception as e:
            logger.error(f"Failed to read latest key price: {e}")
            latest = None
        if latest:
            key_rate.update(latest[1], source="key_prices")
            return key_rate

    quote = baseline.get(KEY_ITEM_ID)
    if quote:
        # The key is quoted in pure metal, so the pivot does not matter here
        sell = to_metal(quote.sell, key_rate.metal)
        if sell > 0:
            key_rate.update(sell, source="baseline")
            return key_rate

    logger.warning(f"No key price available, using default {config.default_key_price} ref")
    return key_rate


def build_pipeline_config(config: Settings) -> PipelineConfig:
    return PipelineConfig(
        trusted_owners=config.trusted_owner_set,
        excluded_owners=config.excluded_owner_set,
        item_bounds=config.item_bounds_map,
        max_buy_difference_pct=config.max_buy_difference_pct,
        max_sell_difference_pct=config.max_sell_difference_pct,
        max_buy_increase=config.max_buy_increase,
        max_sell_decrease=config.max_sell_decrease,
        min_sell_margin=config.min_sell_margin,
        fallback_onto_baseline=config.fallback_onto_baseline,
        use_steam_market=config.use_steam_market,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection pool
    - Baseline feed and key pivot rate
    - Listing stream ingestor and batched writer
    - Scheduled jobs (pricing pass, moving averages, baseline refresh,
      key price cleanup, ingestion health log)
    """
    global _db_pool, _baseline, _steam, _ingestor, _writer, _scheduler

    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    logger.info(f"Environment: {settings.environment}")

    # Repositories stay None without a database
    listing_repo = stats_repo = history_repo = pricelist_repo = key_price_repo = None

    if settings.database_url:
        try:
            _db_pool = DatabasePool()
            await _db_pool.connect(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
            logger.info("Database connection established")

            schema_ok = await _db_pool.initialize_schema()
            if schema_ok:
                logger.info("Database schema verified")
            else:
                logger.warning("Schema initialization returned False - tables may not exist")

            listing_repo = ListingRepository(_db_pool)
            stats_repo = ListingStatsRepository(_db_pool)
            history_repo = PriceHistoryRepository(_db_pool)
            pricelist_repo = PriceListRepository(_db_pool)
            key_price_repo = KeyPriceRepository(_db_pool)
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            _db_pool = None
    else:
        logger.warning("No DATABASE_URL configured - ingestion and pricing disabled")

    item_schema = MappingItemSchema.from_file(settings.item_schema_path)

    _baseline = BaselineFeed(settings.baseline_url)
    await _baseline.refresh()

    key_rate = await load_key_rate(settings, key_price_repo, _baseline)
    KEY_PIVOT_RATE.set(key_rate.metal)
    logger.info(f"Key pivot rate: {key_rate}")

    broadcaster = PriceBroadcaster()
    _scheduler = Scheduler()
    runner: Optional[PricingRunner] = None

    if _db_pool:
        _steam = SteamMarketClient(key_rate, currency=settings.steam_currency)
        market_limiter = RateLimitedFallback()
        pipeline = PricingPipeline(
            listing_repo=listing_repo,
            history_repo=history_repo,
            key_price_repo=key_price_repo,
            baseline=_baseline,
            steam=_steam,
            tier_pricer=TierPricer(
                PriceDiscoveryEngine(method_weights=settings.method_weight_map),
                DynamicBoundsCalculator(),
            ),
            bounds=DynamicBoundsCalculator(),
            key_rate=key_rate,
            config=build_pipeline_config(settings),
            limiter=market_limiter,
        )

        _writer = BatchWriter(listing_repo, interval=settings.batch_interval_seconds)
        if settings.stream_enabled:
            _ingestor = ListingStreamIngestor(
                EventFilter(
                    item_schema,
                    allowed_names=settings.allowed_item_names,
                    excluded_owners=settings.excluded_owner_set,
                    excluded_descriptions=settings.excluded_description_list,
                    blocked_attributes=settings.blocked_attribute_map,
                ),
                _writer,
                listing_repo,
                stats_repo,
                url=settings.stream_url,
                liveness_interval=settings.liveness_interval_seconds,
                liveness_timeout=settings.liveness_timeout_seconds,
                initial_delay_ms=settings.reconnect_initial_delay_ms,
                max_delay_ms=settings.reconnect_max_delay_ms,
                backoff_multiplier=settings.reconnect_backoff_multiplier,
            )

        allowed_items = {}
        for name in settings.allowed_item_names:
            item_id = item_schema.resolve_id(name)
            if item_id:
                allowed_items[item_id] = name
            else:
                logger.warning(f"Allowed item not in schema: {name}")

        runner = PricingRunner(
            pipeline,
            listing_repo,
            stats_repo,
            history_repo,
            pricelist_repo,
            key_rate,
            baseline=_baseline,
            steam=_steam,
            fallback=market_limiter,
            touched_source=_ingestor.drain_touched if _ingestor else None,
            sink=broadcaster,
            allowed_items=allowed_items,
            concurrency=settings.pricing_concurrency,
            min_sell_margin=settings.min_sell_margin,
        )

        _scheduler.every("pricing_pass", settings.pricing_interval_seconds, runner.run_pass)
        _scheduler.every(
            "moving_averages", settings.moving_average_interval_seconds, stats_repo.update_moving_averages
        )
        _scheduler.every(
            "key_price_cleanup",
            settings.key_price_cleanup_interval_seconds,
            lambda: key_price_repo.cleanup(settings.key_price_retention_days),
        )

        async def check_database() -> dict:
            ok = await _db_pool.check_health() if _db_pool else False
            return {"status": "healthy" if ok else "unhealthy"}

        health.register_health_check("database", check_database)

    _scheduler.every("baseline_refresh", settings.baseline_refresh_interval_seconds, _baseline.refresh)

    if _ingestor:
        async def log_ingestion() -> None:
            stats = _ingestor.get_stats()
            logger.info(
                f"[stream] state={stats.connection_state.value} messages={stats.message_count} "
                f"updates={stats.accepted_updates} deletes={stats.accepted_deletes} "
                f"reconnects={stats.reconnect_count} dropped={sum(stats.dropped.values())}"
            )

        async def check_stream() -> dict:
            stats = _ingestor.get_stats()
            if stats.is_connected:
                return {"status": "healthy", "message": f"{stats.message_count} messages"}
            return {"status": "degraded", "message": f"stream {stats.connection_state.value}"}

        _scheduler.every("ingestion_health", settings.ingestion_log_interval_seconds, log_ingestion)
        health.register_health_check("stream", check_stream)

        await _writer.start()
        await _ingestor.start()
        logger.info("Listing stream ingestor started")

    await _scheduler.start()
    logger.info("Service startup complete")

    # Store references on app.state for route access
    app.state.db_pool = _db_pool
    app.state.pricelist_repo = pricelist_repo
    app.state.ingestor = _ingestor
    app.state.runner = runner
    app.state.key_rate = key_rate
    app.state.broadcaster = broadcaster
    app.state.scheduler = _scheduler

    yield

    # Shutdown
    logger.info("Shutting down service...")

    if _scheduler:
        await _scheduler.stop(grace_seconds=settings.shutdown_grace_seconds)
        _scheduler = None

    # Stopping the ingestor drains the writer
    if _ingestor:
        await _ingestor.stop()
        _ingestor = None
    elif _writer:
        await _writer.stop()
    _writer = None

    if _steam:
        await _steam.close()
        _steam = None
    if _baseline:
        await _baseline.close()
        _baseline = None

    health.clear_health_checks()

    if _db_pool:
        await _db_pool.close()
        _db_pool = None

    logger.info("Service shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Autopricer",
    description="Listing-driven buy/sell pricing service",
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "local" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(prices.router)
app.include_router(metrics.router, tags=["metrics"])


@app.get("/")
async def root() -> dict:
    """Root endpoint - service info."""
    return {
        "service": settings.service_name,
        "version": settings.service_version,
        "environment": settings.environment,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.autopricer.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "local",
    )
