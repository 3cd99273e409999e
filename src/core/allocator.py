"""
Multi-pair Allocator and Scheduler.

Provides:
- Capital split across enabled pairs (must sum to 100%, fatal otherwise)
- Per-pair cooldowns that adapt to each pair's commit success rate
- Priority scoring of triggered levels (expected profit, proximity, volatility)
- Fixed-size batching with a front-requeue for failed batches
- A global limit on how many pairs may have commits in flight
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional

from config.settings import (
    AllocationConfig,
    ConfigurationError,
    ExecutionConfig,
    GridConfig,
    PairConfig,
    QueueFlushMode,
)
from src.grid import GridLevel, ProfitabilityResult

logger = logging.getLogger(__name__)

# Dynamic cooldown thresholds
LOW_SUCCESS_RATE = 0.5
HIGH_SUCCESS_RATE = 0.8

# Priority weights
PROFIT_WEIGHT = 10.0
PROXIMITY_WEIGHT = 50.0
HIGH_VOLATILITY_BOOST = 1.2


@dataclass
class PairAllocation:
    """Capital assigned to one pair."""

    pair_id: str
    allocation_percent: float
    allocation_usd: Decimal
    grid_count: int
    range_percent: float
    pool_fee: int

    @property
    def position_size_usd(self) -> Decimal:
        """Average capital per level."""
        return self.allocation_usd / self.grid_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "allocation_percent": self.allocation_percent,
            "allocation_usd": str(self.allocation_usd),
            "grid_count": self.grid_count,
            "range_percent": self.range_percent,
            "pool_fee": self.pool_fee,
            "position_size_usd": str(self.position_size_usd),
        }


@dataclass
class AllocationValidation:
    """Result of checking a capital split."""

    allocations: List[PairAllocation] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class PairPerformance:
    """Commit outcomes and cooldown for one pair."""

    pair_id: str
    base_cooldown: float
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    last_trade_time: Optional[float] = None
    current_cooldown: float = 0.0

    def __post_init__(self):
        if not self.current_cooldown:
            self.current_cooldown = self.base_cooldown

    @property
    def success_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.successful_trades / self.total_trades

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "success_rate": self.success_rate,
            "last_trade_time": self.last_trade_time,
            "base_cooldown": self.base_cooldown,
            "current_cooldown": self.current_cooldown,
        }


@dataclass
class ScoredLevel:
    """A validated level waiting for execution."""

    level: GridLevel
    score: float
    current_price: Decimal
    quote_usd: Decimal
    profitability: ProfitabilityResult
    margin: float

    @property
    def pair_id(self) -> str:
        return self.level.pair_id


class Allocator:
    """
    Splits capital across pairs and schedules validated levels.

    Construction validates the split eagerly; a split that does not sum
    to 100% raises ConfigurationError.

    Usage:
        allocator = Allocator(config.allocation.enabled_pairs, config.grid, config.execution)

        if allocator.can_trade(pair_id) and allocator.try_acquire(pair_id):
            ...  # commit
            allocator.record_trade_result(pair_id, success=True)
            allocator.release(pair_id)
    """

    def __init__(
        self,
        pairs: List[PairConfig],
        grid_config: Optional[GridConfig] = None,
        execution_config: Optional[ExecutionConfig] = None,
        allocation_config: Optional[AllocationConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._grid = grid_config or GridConfig()
        self._exec = execution_config or ExecutionConfig()
        self._alloc_config = allocation_config or AllocationConfig(pairs=list(pairs))
        self._clock = clock

        validation = self.validate_allocations(
            pairs, Decimal(str(self._grid.total_investment)), self._alloc_config
        )
        for warning in validation.warnings:
            logger.warning(f"Allocation: {warning}")
        if not validation.is_valid:
            raise ConfigurationError(validation.errors)

        self._allocations: Dict[str, PairAllocation] = {
            a.pair_id: a for a in validation.allocations
        }
        self._performance: Dict[str, PairPerformance] = {
            p.pair_id: PairPerformance(p.pair_id, p.trading_interval)
            for p in pairs
            if p.enabled
        }

        self._queue: Deque[ScoredLevel] = deque()
        self._in_flight: Dict[str, int] = {}
        self._dropped = 0

        logger.info(
            "Allocator ready: "
            + ", ".join(
                f"{a.pair_id} {a.allocation_percent:.1f}% (${a.allocation_usd:.2f})"
                for a in validation.allocations
            )
        )

    # === Validation ===

    @staticmethod
    def validate_allocations(
        pairs: List[PairConfig],
        total_investment: Decimal,
        config: Optional[AllocationConfig] = None,
    ) -> AllocationValidation:
        """
        Check a percentage split and derive USD allocations.

        Args:
            pairs: Candidate pairs (disabled pairs are ignored)
            total_investment: Budget in USD
            config: Tolerance, pair limit and recommended minimum

        Returns:
            AllocationValidation with allocations, errors and warnings
        """
        config = config or AllocationConfig(pairs=list(pairs))
        result = AllocationValidation()
        enabled = [p for p in pairs if p.enabled]

        if total_investment <= 0:
            result.errors.append(f"Total investment must be positive, got {total_investment}")
        if not enabled:
            result.errors.append("No trading pairs enabled")
            return result
        if len(enabled) > config.max_pairs:
            result.errors.append(
                f"Too many pairs enabled ({len(enabled)}), maximum is {config.max_pairs}"
            )

        for pair in enabled:
            if not 0 < pair.allocation_percent <= 100:
                result.errors.append(
                    f"{pair.pair_id}: invalid allocation percentage ({pair.allocation_percent}%)"
                )
            if pair.grid_count < 2:
                result.errors.append(
                    f"{pair.pair_id}: grid count must be at least 2, got {pair.grid_count}"
                )
            if not 0 < pair.range_percent < 100:
                result.errors.append(
                    f"{pair.pair_id}: invalid price range ({pair.range_percent}%)"
                )

        total_percent = sum(p.allocation_percent for p in enabled)
        if abs(total_percent - 100.0) > config.allocation_tolerance:
            result.errors.append(
                f"Pair allocations must sum to 100%, got {total_percent:.2f}%"
            )

        if result.errors:
            return result

        for pair in enabled:
            usd = total_investment * Decimal(str(pair.allocation_percent)) / Decimal(100)
            result.allocations.append(
                PairAllocation(
                    pair_id=pair.pair_id,
                    allocation_percent=pair.allocation_percent,
                    allocation_usd=usd,
                    grid_count=pair.grid_count,
                    range_percent=pair.range_percent,
                    pool_fee=pair.pool_fee,
                )
            )

        allocated = sum((a.allocation_usd for a in result.allocations), Decimal("0"))
        if abs(allocated - total_investment) > total_investment * Decimal("0.0001"):
            result.errors.append(
                f"USD allocations sum to {allocated:.2f}, expected {total_investment:.2f}"
            )

        if len(enabled) == 1:
            result.warnings.append(
                "Only one pair enabled - consider diversification with multiple pairs"
            )
        smallest = min(p.allocation_percent for p in enabled)
        if len(enabled) > 1 and smallest < config.min_recommended_percent:
            result.warnings.append(
                f"Small allocation detected ({smallest}%) - may not be cost-effective"
            )

        return result

    @property
    def allocations(self) -> List[PairAllocation]:
        return list(self._allocations.values())

    def get_allocation(self, pair_id: str) -> PairAllocation:
        return self._allocations[pair_id]

    # === Cooldowns ===

    def _perf(self, pair_id: str) -> PairPerformance:
        if pair_id not in self._performance:
            self._performance[pair_id] = PairPerformance(pair_id, 0.0)
        return self._performance[pair_id]

    def effective_cooldown(self, pair_id: str) -> float:
        return self._perf(pair_id).current_cooldown

    def cooldown_remaining(self, pair_id: str) -> float:
        perf = self._perf(pair_id)
        if perf.last_trade_time is None:
            return 0.0
        elapsed = self._clock() - perf.last_trade_time
        return max(0.0, perf.current_cooldown - elapsed)

    def can_trade(self, pair_id: str) -> bool:
        """True when the pair's cooldown has elapsed."""
        return self.cooldown_remaining(pair_id) <= 0

    def record_trade_result(self, pair_id: str, success: bool) -> None:
        """
        Record a commit outcome and re-derive the pair's cooldown.

        Success rate below 50% doubles the configured interval; above 80%
        halves it.
        """
        perf = self._perf(pair_id)
        perf.total_trades += 1
        if success:
            perf.successful_trades += 1
        else:
            perf.failed_trades += 1
        perf.last_trade_time = self._clock()

        rate = perf.success_rate
        if rate < LOW_SUCCESS_RATE:
            perf.current_cooldown = perf.base_cooldown * 2
        elif rate > HIGH_SUCCESS_RATE:
            perf.current_cooldown = perf.base_cooldown * 0.5
        else:
            perf.current_cooldown = perf.base_cooldown

        logger.debug(
            f"{pair_id} success rate {rate:.0%} over {perf.total_trades} trades, "
            f"cooldown {perf.current_cooldown:.1f}s"
        )

    def get_performance(self, pair_id: str) -> PairPerformance:
        return self._perf(pair_id)

    # === Concurrency ===

    def try_acquire(self, pair_id: str) -> bool:
        """
        Reserve an execution slot for a pair.

        The limit counts pairs with in-flight commits; a pair that already
        holds a slot may add commits.
        """
        if pair_id in self._in_flight:
            self._in_flight[pair_id] += 1
            return True
        if len(self._in_flight) >= self._exec.max_concurrent_trades:
            return False
        self._in_flight[pair_id] = 1
        return True

    def release(self, pair_id: str) -> None:
        count = self._in_flight.get(pair_id, 0)
        if count <= 1:
            self._in_flight.pop(pair_id, None)
        else:
            self._in_flight[pair_id] = count - 1

    @property
    def active_pairs(self) -> List[str]:
        return list(self._in_flight)

    # === Priority ===

    def score_level(
        self,
        level: GridLevel,
        current_price: Decimal,
        expected_profit: Decimal,
        high_volatility: bool = False,
    ) -> float:
        """
        Priority score for a triggered level.

        score = expected_profit * 10 + (1 - distance) * 50, boosted 20% in
        high volatility, where distance is |level - price| / price.
        """
        if not self._exec.priority_scoring:
            return 1.0

        score = float(expected_profit) * PROFIT_WEIGHT
        if current_price > 0:
            distance = float(abs(level.price - current_price) / current_price)
            score += (1 - distance) * PROXIMITY_WEIGHT
        if high_volatility:
            score *= HIGH_VOLATILITY_BOOST

        level.priority = score
        return score

    def prioritize(self, candidates: List[ScoredLevel]) -> List[ScoredLevel]:
        """Highest score first; ties keep arrival order."""
        if not self._exec.priority_scoring:
            return list(candidates)
        return sorted(candidates, key=lambda c: c.score, reverse=True)

    # === Batching ===

    def make_batches(self, candidates: List[ScoredLevel]) -> List[List[ScoredLevel]]:
        """Split into fixed-size batches, or single-item batches when batching is off."""
        size = self._exec.batch_size if self._exec.batch_orders else 1
        return [candidates[i:i + size] for i in range(0, len(candidates), size)]

    def enqueue(self, candidates: List[ScoredLevel]) -> None:
        """Merge candidates into the queue; entries left from earlier ticks win ties."""
        if not self._exec.priority_scoring:
            self._queue.extend(candidates)
            return
        self._queue = deque(self.prioritize(list(self._queue) + list(candidates)))

    def next_batch(self) -> List[ScoredLevel]:
        """Pop up to one batch from the front of the queue."""
        size = self._exec.batch_size if self._exec.batch_orders else 1
        batch = []
        while self._queue and len(batch) < size:
            batch.append(self._queue.popleft())
        return batch

    def requeue_front(self, batch: List[ScoredLevel]) -> None:
        """Put an unprocessed batch back at the front, preserving its order."""
        self._queue.extendleft(reversed(batch))

    def remove_queued(self, pair_id: str) -> List[ScoredLevel]:
        """Drop queued entries for a pair (its levels were replanned)."""
        removed = [c for c in self._queue if c.pair_id == pair_id]
        if removed:
            self._queue = deque(c for c in self._queue if c.pair_id != pair_id)
        return removed

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def flush(self, mode: QueueFlushMode = QueueFlushMode.DROP) -> List[ScoredLevel]:
        """
        Empty the queue on shutdown.

        Returns:
            The entries to process under PROCESS, an empty list under DROP
        """
        drained = list(self._queue)
        self._queue.clear()

        if mode == QueueFlushMode.PROCESS:
            logger.info(f"Flushing {len(drained)} queued level(s) for processing")
            return drained

        if drained:
            self._dropped += len(drained)
            logger.warning(
                f"Dropped {len(drained)} queued level(s): "
                + ", ".join(c.level.id for c in drained)
            )
        return []

    def get_stats(self) -> Dict[str, Any]:
        return {
            "allocations": [a.to_dict() for a in self._allocations.values()],
            "performance": {k: p.to_dict() for k, p in self._performance.items()},
            "queue_size": len(self._queue),
            "in_flight_pairs": list(self._in_flight),
            "max_concurrent_trades": self._exec.max_concurrent_trades,
            "dropped": self._dropped,
        }
