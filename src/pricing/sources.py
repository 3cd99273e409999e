"""
Price sources and fallback strategies.

Each strategy wraps one way of producing a price. The aggregator walks an
ordered list of strategies, so the fallback order is data:

    [StreamPriceStrategy, DirectQuoteStrategy, ChainedQuoteStrategy,
     CrossRateStrategy, PeggedPriceStrategy]

Asset keys:
- "BTC", "HYPE": USD price of an asset
- "WHYPE/UBTC": pair price, units of quote per one unit of base

Provides:
- PriceSource, Confidence: provenance of a quote
- PriceQuote: immutable price observation
- OnChainQuoter: abstract pool quoter collaborator
- QuoteLeg: one pool hop for on-chain quotes
- The five strategies above
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Any

from src.api.errors import PriceSourceError
from src.api.stream_feed import MidPriceStream

logger = logging.getLogger(__name__)


class PriceSource(Enum):
    """Where a quote came from."""
    STREAM = "stream"
    ONCHAIN_DIRECT = "onchain_direct"
    ONCHAIN_CHAINED = "onchain_chained"
    CALCULATED = "calculated"


class Confidence(Enum):
    """How much a quote can be trusted."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class PriceQuote:
    """A single price observation. Superseded, never mutated."""
    asset: str
    price: Decimal
    timestamp: float  # Unix seconds
    source: PriceSource
    confidence: Confidence

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "price": str(self.price),
            "timestamp": self.timestamp,
            "source": self.source.value,
            "confidence": self.confidence.value,
        }


@dataclass(frozen=True)
class QuoteLeg:
    """One pool hop: token_in -> token_out through a fee tier."""
    token_in: str
    token_out: str
    fee: int


class OnChainQuoter(ABC):
    """Pool quoter collaborator (e.g. a QuoterV2 contract wrapper)."""

    @abstractmethod
    async def quote(self, token_in: str, token_out: str, fee: int) -> Optional[Decimal]:
        """
        Units of token_out received for one unit of token_in.

        Returns:
            Price in human units, or None if the pool cannot quote
        """
        pass


class PriceStrategy(ABC):
    """One way of producing a price for some assets."""

    name: str = ""
    source: PriceSource = PriceSource.CALCULATED
    confidence: Confidence = Confidence.LOW

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    @abstractmethod
    def supports(self, asset: str) -> bool:
        pass

    @abstractmethod
    async def fetch(self, asset: str) -> PriceQuote:
        """
        Produce a quote.

        Raises:
            PriceSourceError: If this strategy cannot price the asset now
        """
        pass

    def _quote(self, asset: str, price: Decimal) -> PriceQuote:
        return PriceQuote(
            asset=asset,
            price=price,
            timestamp=self._clock(),
            source=self.source,
            confidence=self.confidence,
        )

    def _fail(self, asset: str, message: str) -> PriceSourceError:
        return PriceSourceError(self.name, asset, message)


class StreamPriceStrategy(PriceStrategy):
    """USD prices from the mid-price stream. Rejects data older than max_age."""

    name = "stream"
    source = PriceSource.STREAM
    confidence = Confidence.HIGH

    def __init__(
        self,
        stream: MidPriceStream,
        max_age: float = 30.0,
        symbols: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self._stream = stream
        self._max_age = max_age
        self._symbols = symbols or {}

    def supports(self, asset: str) -> bool:
        return "/" not in asset

    async def fetch(self, asset: str) -> PriceQuote:
        symbol = self._symbols.get(asset, asset)
        latest = self._stream.get_latest(symbol)
        if latest is None:
            raise self._fail(asset, f"no stream data for {symbol}")

        price, timestamp = latest
        age = self._clock() - timestamp
        if age > self._max_age:
            raise self._fail(asset, f"stream data {age:.0f}s old")

        return PriceQuote(
            asset=asset,
            price=price,
            timestamp=timestamp,
            source=self.source,
            confidence=self.confidence,
        )


class DirectQuoteStrategy(PriceStrategy):
    """Pair price from a single pool quote."""

    name = "onchain_direct"
    source = PriceSource.ONCHAIN_DIRECT
    confidence = Confidence.HIGH

    def __init__(
        self,
        quoter: OnChainQuoter,
        routes: Dict[str, QuoteLeg],
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self._quoter = quoter
        self._routes = dict(routes)

    def supports(self, asset: str) -> bool:
        return asset in self._routes

    async def fetch(self, asset: str) -> PriceQuote:
        leg = self._routes[asset]
        price = await self._quoter.quote(leg.token_in, leg.token_out, leg.fee)
        if price is None or price <= 0:
            raise self._fail(asset, "pool returned no quote")
        return self._quote(asset, price)


class ChainedQuoteStrategy(PriceStrategy):
    """Pair price composed from two pool quotes through an intermediate token."""

    name = "onchain_chained"
    source = PriceSource.ONCHAIN_CHAINED
    confidence = Confidence.MEDIUM

    def __init__(
        self,
        quoter: OnChainQuoter,
        routes: Dict[str, Tuple[QuoteLeg, QuoteLeg]],
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self._quoter = quoter
        self._routes = dict(routes)

    def supports(self, asset: str) -> bool:
        return asset in self._routes

    async def fetch(self, asset: str) -> PriceQuote:
        first, second = self._routes[asset]

        first_price = await self._quoter.quote(first.token_in, first.token_out, first.fee)
        if first_price is None or first_price <= 0:
            raise self._fail(asset, f"first leg {first.token_in}->{first.token_out} failed")

        second_price = await self._quoter.quote(second.token_in, second.token_out, second.fee)
        if second_price is None or second_price <= 0:
            raise self._fail(asset, f"second leg {second.token_in}->{second.token_out} failed")

        return self._quote(asset, first_price * second_price)


class CrossRateStrategy(PriceStrategy):
    """Pair price as the ratio of two fresh USD stream prices (e.g. HYPE / BTC)."""

    name = "cross_rate"
    source = PriceSource.CALCULATED
    confidence = Confidence.LOW

    def __init__(
        self,
        stream: MidPriceStream,
        pairs: Dict[str, Tuple[str, str]],
        max_age: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self._stream = stream
        self._pairs = dict(pairs)
        self._max_age = max_age

    def supports(self, asset: str) -> bool:
        return asset in self._pairs

    def _fresh(self, asset: str, symbol: str) -> Decimal:
        latest = self._stream.get_latest(symbol)
        if latest is None:
            raise self._fail(asset, f"no stream data for {symbol}")
        price, timestamp = latest
        if self._clock() - timestamp > self._max_age:
            raise self._fail(asset, f"stream data for {symbol} is stale")
        return price

    async def fetch(self, asset: str) -> PriceQuote:
        numerator, denominator = self._pairs[asset]
        return self._quote(asset, self._fresh(asset, numerator) / self._fresh(asset, denominator))


class PeggedPriceStrategy(PriceStrategy):
    """Fixed USD price for explicitly configured pegged assets only."""

    name = "pegged"
    source = PriceSource.CALCULATED
    confidence = Confidence.MEDIUM

    def __init__(self, pegs: Dict[str, float], clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._pegs = {asset: Decimal(str(value)) for asset, value in pegs.items()}

    def supports(self, asset: str) -> bool:
        return asset in self._pegs

    async def fetch(self, asset: str) -> PriceQuote:
        return self._quote(asset, self._pegs[asset])
