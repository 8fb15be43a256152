"""
External Price Sources

Two lower-trust sources consulted when listing-based pricing is unavailable
or needs a sanity check:

- BaselineFeed: a reference price list fetched periodically and held in
  memory. Used for the zero-price check, the agreement check and as the last
  fallback.
- SteamMarketClient: the secondary external market. Its USD prices are
  converted to metal through the key's own market price.

RateLimitedFallback fans SCM lookups out over many items without tripping
the market's rate limits.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from ..core.constants import (
    KEY_ITEM_NAME,
    STEAM_APP_ID,
    STEAM_BASE_BUY_MARGIN,
    STEAM_BASE_SELL_MARGIN,
    STEAM_BUY_MARGIN_RANGE,
    STEAM_CURRENCY_CODES,
    STEAM_FALLBACK_BATCH_DELAY_SECONDS,
    STEAM_FALLBACK_BATCH_SIZE,
    STEAM_FALLBACK_CONCURRENCY,
    STEAM_MARKET_PRICE_URL,
    STEAM_SELL_MARGIN_RANGE,
    is_key,
)
from ..core.currency import KeyPivotRate, parse_currencies, round_metal
from ..core.errors import BaselineUnavailableError, ExternalPriceError
from ..core.types import Currencies

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PRICE_PATTERN = re.compile(r"[^\d.,]")


# =============================================================================
# Baseline Reference Feed
# =============================================================================

@dataclass
class BaselineQuote:
    item_id: str
    name: str
    buy: Currencies
    sell: Currencies


class BaselineFeed:
    """
    In-memory snapshot of the baseline reference price list.

    Expected payload:
        {"items": [{"sku": "5021;6", "name": "...",
                    "buy": {"keys": 0, "metal": 62.11},
                    "sell": {"keys": 0, "metal": 62.55}}, ...]}

    Usage:
        feed = BaselineFeed(url)
        await feed.refresh()
        quote = feed.get("5021;6")
    """

    def __init__(self, url: Optional[str], timeout: float = 30.0):
        self.url = url
        self.timeout = timeout
        self._quotes: dict[str, BaselineQuote] = {}
        self._client: Optional[httpx.AsyncClient] = None
        self.last_refresh: Optional[int] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def __len__(self) -> int:
        return len(self._quotes)

    def load(self, payload: dict) -> int:
        """
        Replace the snapshot from a decoded payload.

        Entries without an id or with an unparseable side are skipped.

        Returns:
            Number of quotes loaded
        """
        quotes: dict[str, BaselineQuote] = {}
        for entry in payload.get("items", []):
            item_id = entry.get("sku")
            if not item_id:
                continue
            buy = parse_currencies(entry.get("buy")) or Currencies()
            sell = parse_currencies(entry.get("sell")) or Currencies()
            quotes[item_id] = BaselineQuote(
                item_id=item_id,
                name=entry.get("name", ""),
                buy=buy,
                sell=sell,
            )
        self._quotes = quotes
        self.last_refresh = int(time.time())
        return len(quotes)

    async def refresh(self) -> int:
        """
        Fetch the reference list.

        On failure the previous snapshot is kept.

        Returns:
            Number of quotes now held
        """
        if not self.url:
            logger.debug("[baseline] No feed URL configured, skipping refresh")
            return len(self._quotes)

        client = await self._get_client()
        try:
            response = await client.get(self.url)
            response.raise_for_status()
            count = self.load(response.json())
            logger.info(f"[baseline] Loaded {count} reference prices")
            return count
        except httpx.HTTPStatusError as e:
            logger.error(
                f"[baseline] HTTP error {e.response.status_code} refreshing reference prices; "
                f"keeping {len(self._quotes)} cached"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                f"[baseline] Refresh failed: {type(e).__name__}: {e}; keeping {len(self._quotes)} cached"
            )
        return len(self._quotes)

    def get(self, item_id: str) -> Optional[BaselineQuote]:
        return self._quotes.get(item_id)

    def require(self, item_id: str) -> BaselineQuote:
        quote = self._quotes.get(item_id)
        if quote is None:
            raise BaselineUnavailableError(f"No baseline quote for {item_id}")
        return quote


# =============================================================================
# Secondary Market (Steam Community Market)
# =============================================================================

def parse_market_price(text: Optional[str]) -> Optional[float]:
    """
    Parse a market price string.

    Examples:
        >>> parse_market_price("$1,234.56")
        1234.56
        >>> parse_market_price("2,49€")
        2.49
    """
    if not text:
        return None
    cleaned = _PRICE_PATTERN.sub("", text)
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def dynamic_margins(
    price_metal: float,
    buy_count: int = 0,
    sell_count: int = 0,
    volatility: Optional[float] = None,
) -> tuple[float, float]:
    """
    Buy and sell margins for a market-derived price.

    Higher-value, thinner and more volatile items get wider margins.
    """
    buy_margin = STEAM_BASE_BUY_MARGIN
    sell_margin = STEAM_BASE_SELL_MARGIN

    if price_metal > 50:
        buy_margin += 0.03
        sell_margin += 0.05
    elif price_metal < 5:
        buy_margin -= 0.02
        sell_margin -= 0.03

    total = buy_count + sell_count
    if total < 5:
        buy_margin += 0.05
        sell_margin += 0.08
    elif total > 20:
        buy_margin -= 0.02
        sell_margin -= 0.03

    if volatility is not None and volatility > 0.3:
        buy_margin += 0.04
        sell_margin += 0.06

    buy_margin = max(STEAM_BUY_MARGIN_RANGE[0], min(buy_margin, STEAM_BUY_MARGIN_RANGE[1]))
    sell_margin = max(STEAM_SELL_MARGIN_RANGE[0], min(sell_margin, STEAM_SELL_MARGIN_RANGE[1]))
    return buy_margin, sell_margin


class SteamMarketClient:
    """
    Secondary market price lookups.

    Usage:
        client = SteamMarketClient(key_rate)
        buy, sell = await client.get_price("Team Captain")
    """

    def __init__(
        self,
        key_rate: KeyPivotRate,
        currency: str = "USD",
        timeout: float = 5.0,
        url: str = STEAM_MARKET_PRICE_URL,
    ):
        self.key_rate = key_rate
        self.currency_code = STEAM_CURRENCY_CODES.get(currency.upper(), 1)
        self.timeout = timeout
        self.url = url
        self._client: Optional[httpx.AsyncClient] = None
        self._key_price: Optional[float] = None
        self._key_lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def lowest_price(self, market_hash_name: str) -> Optional[float]:
        """Lowest listed market price in the configured currency, or None."""
        client = await self._get_client()
        params = {
            "appid": STEAM_APP_ID,
            "currency": self.currency_code,
            "market_hash_name": market_hash_name,
        }
        try:
            response = await client.get(self.url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"[scm] HTTP error {e.response.status_code} for {market_hash_name}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[scm] Lookup failed for {market_hash_name}: {type(e).__name__}: {e}")
            return None

        if not data.get("success"):
            return None
        return parse_market_price(data.get("lowest_price"))

    async def key_market_price(self) -> Optional[float]:
        """Market price of the key, looked up once until `forget_key_price`."""
        async with self._key_lock:
            if self._key_price is None:
                self._key_price = await self.lowest_price(KEY_ITEM_NAME)
            return self._key_price

    def forget_key_price(self) -> None:
        """Drop the cached key price so the next lookup fetches it again."""
        self._key_price = None

    async def get_price(
        self,
        name: str,
        item_id: Optional[str] = None,
        buy_count: int = 0,
        sell_count: int = 0,
        volatility: Optional[float] = None,
    ) -> tuple[Currencies, Currencies]:
        """
        Buy and sell quotes for an item, all in metal.

        Raises:
            ExternalPriceError: for the key itself or when either the item
                or the key has no market price
        """
        if (item_id and is_key(item_id)) or name == KEY_ITEM_NAME:
            raise ExternalPriceError("The key is never priced from the secondary market")

        item_price = await self.lowest_price(name)
        key_price = await self.key_market_price()
        if not item_price or not key_price:
            raise ExternalPriceError(f"No market price for {name}")

        price_metal = item_price / key_price * self.key_rate.metal
        buy_margin, sell_margin = dynamic_margins(price_metal, buy_count, sell_count, volatility)

        buy = round_metal(price_metal * (1 - buy_margin))
        sell = round_metal(price_metal * (1 + sell_margin))
        logger.debug(
            f"[scm] {name}: {item_price} / key {key_price} -> {price_metal:.2f} ref, "
            f"margins buy={buy_margin:.2f} sell={sell_margin:.2f}"
        )
        return Currencies(keys=0, metal=buy), Currencies(keys=0, metal=sell)


# =============================================================================
# Rate-Limited Fan-Out
# =============================================================================

class RateLimitedFallback:
    """
    Shared limiter for secondary market lookups.

    Every lookup goes through `call`, whether it comes from a pricing pass
    or the allow-list fallback. At most `concurrency` lookups are in flight,
    and after every `batch_size` started lookups the next one waits
    `batch_delay` seconds.
    """

    def __init__(
        self,
        batch_size: int = STEAM_FALLBACK_BATCH_SIZE,
        batch_delay: float = STEAM_FALLBACK_BATCH_DELAY_SECONDS,
        concurrency: int = STEAM_FALLBACK_CONCURRENCY,
    ):
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.started = 0
        self._semaphore = asyncio.Semaphore(concurrency)
        self._pace_lock = asyncio.Lock()

    async def _pace(self) -> None:
        async with self._pace_lock:
            if self.started and self.started % self.batch_size == 0:
                await asyncio.sleep(self.batch_delay)
            self.started += 1

    async def call(self, fn: Callable[..., Awaitable], *args, **kwargs):
        """Await fn(*args, **kwargs) under the shared concurrency and pacing limits."""
        async with self._semaphore:
            await self._pace()
            return await fn(*args, **kwargs)

    async def run(self, items: list[T], fn: Callable[[T], Awaitable]) -> list:
        """
        Apply fn to every item.

        Returns:
            One result per item, in order; exceptions are returned, not raised
        """
        return list(
            await asyncio.gather(
                *(self.call(fn, item) for item in items),
                return_exceptions=True,
            )
        )
