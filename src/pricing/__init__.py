"""
Price Discovery Module.

Provides multi-source prices with fallback and staleness semantics:
- PriceAggregator: ordered fallback, retries, plausibility, cache, source health
- Strategies: stream, direct pool quote, chained pool quote, cross rate, pegs
- TTLCache: (value, expiry) cache with an injected clock

Usage:
    from src.pricing import PriceAggregator, build_strategies

    strategies = build_strategies(config.pricing, pairs, stream=stream, quoter=quoter)
    aggregator = PriceAggregator(strategies, config.pricing)

    quote = await aggregator.get_price("WHYPE/UBTC")
    print(quote.price, quote.source, quote.confidence)
"""

from .cache import TTLCache
from .sources import (
    PriceSource,
    Confidence,
    PriceQuote,
    QuoteLeg,
    OnChainQuoter,
    PriceStrategy,
    StreamPriceStrategy,
    DirectQuoteStrategy,
    ChainedQuoteStrategy,
    CrossRateStrategy,
    PeggedPriceStrategy,
)
from .aggregator import (
    SourceHealth,
    PriceAggregator,
    build_strategies,
)

__all__ = [
    # Cache
    "TTLCache",
    # Quotes and strategies
    "PriceSource",
    "Confidence",
    "PriceQuote",
    "QuoteLeg",
    "OnChainQuoter",
    "PriceStrategy",
    "StreamPriceStrategy",
    "DirectQuoteStrategy",
    "ChainedQuoteStrategy",
    "CrossRateStrategy",
    "PeggedPriceStrategy",
    # Aggregator
    "SourceHealth",
    "PriceAggregator",
    "build_strategies",
]
