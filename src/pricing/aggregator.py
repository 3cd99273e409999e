"""
Price Aggregator.

Merges price strategies into one quote per asset:
- Ordered fallback over strategies, first success wins
- Bounded retries per strategy with a short fixed delay
- Plausibility windows; implausible quotes are discarded, never cached
- Short-TTL cache; expired entries count as absent
- Per-source health with consecutive-failure threshold

The caller must treat PriceUnavailableError as "skip this tick" and never
substitute a constant.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Any

from config.settings import PricingConfig, PairConfig
from src.api.errors import PriceSourceError, ImplausiblePriceError, PriceUnavailableError
from src.api.stream_feed import MidPriceStream
from src.pricing.cache import TTLCache
from src.pricing.sources import (
    PriceQuote,
    PriceStrategy,
    OnChainQuoter,
    QuoteLeg,
    StreamPriceStrategy,
    DirectQuoteStrategy,
    ChainedQuoteStrategy,
    CrossRateStrategy,
    PeggedPriceStrategy,
)

logger = logging.getLogger(__name__)


@dataclass
class SourceHealth:
    """Health bookkeeping for one strategy."""
    name: str
    available: bool = True
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "available": self.available,
            "consecutive_failures": self.consecutive_failures,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
            "last_error": self.last_error,
        }


class PriceAggregator:
    """
    Single entry point for prices.

    Usage:
        aggregator = PriceAggregator(
            strategies=[StreamPriceStrategy(stream), DirectQuoteStrategy(quoter, routes)],
            config=config.pricing,
        )
        quote = await aggregator.get_price("HYPE")
        prices = await aggregator.get_prices(["HYPE", "BTC", "WHYPE/UBTC"])
    """

    def __init__(
        self,
        strategies: List[PriceStrategy],
        config: Optional[PricingConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._strategies = list(strategies)
        self._config = config or PricingConfig()
        self._clock = clock
        self._sleep = sleep

        self._cache: TTLCache[PriceQuote] = TTLCache(self._config.cache_ttl, clock)

        # Health reads happen from the control loop, writes also from health checks
        self._lock = threading.Lock()
        self._health: Dict[str, SourceHealth] = {
            s.name: SourceHealth(name=s.name) for s in self._strategies
        }

        # Statistics
        self._requests = 0
        self._unavailable = 0
        self._implausible = 0
        self._by_source: Dict[str, int] = {}

    # === Public API ===

    async def get_price(self, asset: str, force_fresh: bool = False) -> PriceQuote:
        """
        Get a validated quote for an asset.

        Args:
            asset: Asset key ("HYPE" for USD price, "WHYPE/UBTC" for pair price)
            force_fresh: Bypass the cache

        Returns:
            PriceQuote from the first strategy that succeeds

        Raises:
            PriceUnavailableError: If every supporting source is exhausted
        """
        self._requests += 1

        if not force_fresh:
            cached = self._cache.get(asset)
            if cached is not None:
                return cached

        attempted = []
        for strategy in self._strategies:
            if not strategy.supports(asset):
                continue
            if not self.is_available(strategy.name):
                logger.debug(f"Skipping unavailable source {strategy.name} for {asset}")
                continue

            attempted.append(strategy.name)
            quote = await self._try_strategy(strategy, asset)
            if quote is not None:
                self._cache.set(asset, quote)
                self._by_source[strategy.name] = self._by_source.get(strategy.name, 0) + 1
                return quote

        self._unavailable += 1
        logger.warning(f"Price unavailable for {asset}, tried: {attempted or 'no sources'}")
        raise PriceUnavailableError(asset, attempted)

    async def get_prices(self, assets: Iterable[str]) -> Dict[str, Optional[PriceQuote]]:
        """
        Fetch independent assets concurrently.

        Returns:
            Dict asset -> quote, or None where the price is unavailable
        """
        unique = list(dict.fromkeys(assets))
        results = await asyncio.gather(
            *(self.get_price(asset) for asset in unique),
            return_exceptions=True,
        )

        prices: Dict[str, Optional[PriceQuote]] = {}
        for asset, result in zip(unique, results):
            if isinstance(result, PriceUnavailableError):
                prices[asset] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                prices[asset] = result
        return prices

    async def probe_sources(self, asset: str) -> Dict[str, bool]:
        """
        Try every supporting source once, including unavailable ones.

        Used by background health checks. Updates health but not the cache.

        Returns:
            Dict source name -> whether it produced a plausible quote
        """
        outcome = {}
        for strategy in self._strategies:
            if not strategy.supports(asset):
                continue
            try:
                quote = await strategy.fetch(asset)
                self._check_plausible(strategy.name, quote)
            except Exception as e:
                self._record_failure(strategy.name, e)
                outcome[strategy.name] = False
            else:
                self._record_success(strategy.name)
                outcome[strategy.name] = True
        return outcome

    def invalidate(self, asset: Optional[str] = None) -> None:
        self._cache.invalidate(asset)

    def is_available(self, name: str) -> bool:
        with self._lock:
            health = self._health.get(name)
            return health is None or health.available

    def get_source_health(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of the health table."""
        with self._lock:
            return {name: h.to_dict() for name, h in self._health.items()}

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self._requests,
            "unavailable": self._unavailable,
            "implausible": self._implausible,
            "by_source": dict(self._by_source),
            "cache": self._cache.get_stats(),
            "sources": self.get_source_health(),
        }

    # === Internals ===

    async def _try_strategy(self, strategy: PriceStrategy, asset: str) -> Optional[PriceQuote]:
        """Run one strategy with bounded retries; None if it gives up."""
        last_error: Optional[Exception] = None

        for attempt in range(self._config.max_attempts):
            try:
                quote = await strategy.fetch(asset)
                self._check_plausible(strategy.name, quote)
            except ImplausiblePriceError as e:
                # Retrying the same source will not make it sane
                self._implausible += 1
                logger.warning(f"Discarding quote: {e}")
                last_error = e
                break
            except PriceSourceError as e:
                last_error = e
            except Exception as e:
                last_error = e
                logger.debug(f"{strategy.name} raised {type(e).__name__} for {asset}: {e}")
            else:
                self._record_success(strategy.name)
                return quote

            if attempt < self._config.max_attempts - 1:
                await self._sleep(self._config.retry_delay)

        self._record_failure(strategy.name, last_error)
        logger.info(f"Source {strategy.name} exhausted for {asset}: {last_error}")
        return None

    def _check_plausible(self, source: str, quote: PriceQuote) -> None:
        """
        Raises:
            ImplausiblePriceError: If the price is non-positive or outside its window
        """
        price = quote.price
        bounds = self._config.plausibility_ranges.get(quote.asset)

        if not price.is_finite() or price <= 0:
            raise ImplausiblePriceError(source, quote.asset, price, bounds or (0.0, float("inf")))

        if bounds is not None:
            low, high = bounds
            if not Decimal(str(low)) <= price <= Decimal(str(high)):
                raise ImplausiblePriceError(source, quote.asset, price, bounds)

    def _record_success(self, name: str) -> None:
        with self._lock:
            health = self._health.setdefault(name, SourceHealth(name=name))
            if not health.available:
                logger.info(f"Price source {name} recovered")
            health.available = True
            health.consecutive_failures = 0
            health.total_successes += 1
            health.last_success = self._clock()

    def _record_failure(self, name: str, error: Optional[Exception]) -> None:
        with self._lock:
            health = self._health.setdefault(name, SourceHealth(name=name))
            health.consecutive_failures += 1
            health.total_failures += 1
            health.last_failure = self._clock()
            health.last_error = str(error) if error else None

            if health.available and health.consecutive_failures >= self._config.failure_threshold:
                health.available = False
                logger.warning(
                    f"Price source {name} marked unavailable after "
                    f"{health.consecutive_failures} consecutive failures"
                )


def build_strategies(
    pricing: PricingConfig,
    pairs: List[PairConfig],
    stream: Optional[MidPriceStream] = None,
    quoter: Optional[OnChainQuoter] = None,
    clock: Callable[[], float] = time.time,
) -> List[PriceStrategy]:
    """
    Build the standard fallback order for the configured pairs.

    Order: stream, direct pool quote, chained pool quote, stream cross rate,
    explicit pegs. Strategies whose collaborator is missing are left out.
    """
    strategies: List[PriceStrategy] = []

    if stream is not None:
        strategies.append(
            StreamPriceStrategy(stream, pricing.stream_max_age, pricing.stream_symbols, clock)
        )

    if quoter is not None:
        direct = {
            p.price_key: QuoteLeg(p.base_address, p.quote_address, p.pool_fee) for p in pairs
        }
        strategies.append(DirectQuoteStrategy(quoter, direct, clock))

        if pricing.intermediate_token:
            chained = {
                p.price_key: (
                    QuoteLeg(p.base_address, pricing.intermediate_token, pricing.intermediate_fee),
                    QuoteLeg(pricing.intermediate_token, p.quote_address, pricing.intermediate_fee),
                )
                for p in pairs
            }
            strategies.append(ChainedQuoteStrategy(quoter, chained, clock))

    if stream is not None:
        cross = {
            p.price_key: (
                pricing.stream_symbols.get(p.base_token, p.base_token),
                pricing.stream_symbols.get(p.quote_token, p.quote_token),
            )
            for p in pairs
        }
        strategies.append(CrossRateStrategy(stream, cross, pricing.stream_max_age, clock))

    if pricing.pegged_assets:
        strategies.append(PeggedPriceStrategy(pricing.pegged_assets, clock))

    return strategies
