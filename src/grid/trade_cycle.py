"""
Trade-Cycle Engine.

Level lifecycle per pair:

    PENDING -> TRIGGERED -> VALIDATED -> COMMITTED -> FILLED
                        +-> REJECTED (removed, not retried at this price)
                                       COMMITTED -> FAILED (retried on next trigger)
                                       FAILED x max_failures -> DISABLED (removed)

Trigger rule is a strict crossing since the previous observed price:
- down crossing (prev > level >= current) fires a BUY
- up crossing (prev < level <= current) fires a SELL

The level's side is re-derived from the crossing direction at trigger time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Any, Iterable, Set, Tuple

from config.settings import ExecutionConfig, PairConfig, GridConfig
from src.api.errors import (
    ExecutionError,
    ExecutionTimeoutError,
    GridBotError,
    InsufficientFundsError,
    RetryConfig,
    with_async_retry,
)
from src.api.execution import BalanceProvider, SwapExecutor, SwapResult

from .grid_planner import GridLevel, GridPlanner, LevelStatus, OrderSide
from .profitability import ProfitabilityResult, ProfitabilityValidator, TradeCosts, ZERO_COSTS
from .trade_ledger import TradeCycle, TradeExecution, TradeLedger

logger = logging.getLogger(__name__)

# Balance reads are retried on transport errors only
BALANCE_RETRY = RetryConfig(max_retries=2, base_delay=0.5, max_delay=5.0)


@dataclass
class CommitOutcome:
    """Result of handing one level to the execution collaborator."""
    level: GridLevel
    success: bool
    execution: Optional[TradeExecution] = None
    cycle: Optional[TradeCycle] = None
    opposite: Optional[GridLevel] = None
    swap: Optional[SwapResult] = None
    error: Optional[str] = None
    timed_out: bool = False
    disabled: bool = False  # Circuit breaker tripped on this failure
    skipped: bool = False  # Level was already in flight or gone
    exception: Optional[GridBotError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level_id": self.level.id,
            "pair_id": self.level.pair_id,
            "success": self.success,
            "execution_id": self.execution.id if self.execution else None,
            "cycle_id": self.cycle.id if self.cycle else None,
            "opposite_level_id": self.opposite.id if self.opposite else None,
            "error": self.error,
            "timed_out": self.timed_out,
            "disabled": self.disabled,
            "skipped": self.skipped,
        }


@dataclass
class _PairBook:
    """Levels and last observed price for one pair."""
    levels: Dict[str, GridLevel] = field(default_factory=dict)
    last_price: Optional[Decimal] = None
    disabled: Set[str] = field(default_factory=set)


class TradeCycleEngine:
    """
    Tracks level lifecycle, validates triggers, commits swaps and pairs fills.

    Usage:
        engine = TradeCycleEngine(executor, planner, validator, config=exec_config)
        engine.load_levels(pair.pair_id, plan.levels)

        for level in engine.detect_triggers(pair.pair_id, price):
            result = engine.validate_trigger(level, price, margin, quote_usd, gas_usd, pair.pool_fee)
            if result.passed:
                outcome = await engine.commit(level, pair, price, quote_usd, result.costs, margin)
    """

    def __init__(
        self,
        executor: SwapExecutor,
        planner: Optional[GridPlanner] = None,
        validator: Optional[ProfitabilityValidator] = None,
        ledger: Optional[TradeLedger] = None,
        config: Optional[ExecutionConfig] = None,
        grid_config: Optional[GridConfig] = None,
        pairs: Optional[List[PairConfig]] = None,
        clock: Callable[[], float] = time.time,
        balances: Optional[BalanceProvider] = None,
    ):
        self._executor = executor
        self._balances = balances
        self._pairs: Dict[str, PairConfig] = {p.pair_id: p for p in pairs or []}
        self._config = config or ExecutionConfig()
        self._grid_config = grid_config or GridConfig()
        self._planner = planner or GridPlanner(self._grid_config)
        self._validator = validator or ProfitabilityValidator(self._grid_config, self._config)
        self._ledger = ledger or TradeLedger()
        self._clock = clock

        self._books: Dict[str, _PairBook] = {}
        self._in_flight: Dict[str, GridLevel] = {}

        # Statistics
        self._triggers = 0
        self._rejections = 0
        self._commits = 0
        self._fills = 0
        self._failures = 0
        self._timeouts = 0
        self._disabled_count = 0
        self._insufficient_funds = 0

    @property
    def ledger(self) -> TradeLedger:
        return self._ledger

    def _book(self, pair_id: str) -> _PairBook:
        if pair_id not in self._books:
            self._books[pair_id] = _PairBook()
        return self._books[pair_id]

    def _pair(self, pair_id: str) -> PairConfig:
        if pair_id not in self._pairs:
            self._pairs[pair_id] = PairConfig(pair_id=pair_id)
        return self._pairs[pair_id]

    # === Level management ===

    def load_levels(
        self,
        pair_id: str,
        levels: Iterable[GridLevel],
        preserved: Iterable[GridLevel] = (),
        reference_price: Optional[Decimal] = None,
    ) -> None:
        """
        Install a new plan for a pair.

        Pending levels are discarded and replaced; preserved (in-flight)
        levels are kept alongside the new ones. A reference_price re-seeds
        the crossing baseline so the new ladder only fires on later moves.
        """
        book = self._book(pair_id)
        kept = {level.id: level for level in preserved}
        discarded = sum(1 for level_id in book.levels if level_id not in kept)

        book.levels = dict(kept)
        for level in levels:
            if level.id in book.disabled:
                continue
            level.status = LevelStatus.PENDING
            book.levels[level.id] = level

        if reference_price is not None:
            book.last_price = reference_price

        logger.info(
            f"Loaded {len(book.levels) - len(kept)} levels for {pair_id} "
            f"(kept {len(kept)} active, discarded {discarded})"
        )

    def levels(self, pair_id: str) -> List[GridLevel]:
        return sorted(self._book(pair_id).levels.values(), key=lambda lvl: lvl.price)

    def active_levels(self, pair_id: str) -> List[GridLevel]:
        """Committed levels awaiting confirmation."""
        return [level for level in self.levels(pair_id) if level.is_active]

    def get_level(self, pair_id: str, level_id: str) -> Optional[GridLevel]:
        return self._book(pair_id).levels.get(level_id)

    def is_disabled(self, pair_id: str, level_id: str) -> bool:
        return level_id in self._book(pair_id).disabled

    def last_price(self, pair_id: str) -> Optional[Decimal]:
        return self._book(pair_id).last_price

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def in_flight_pairs(self) -> Set[str]:
        return {level.pair_id for level in self._in_flight.values()}

    # === Triggers ===

    def detect_triggers(self, pair_id: str, current_price: Decimal) -> List[GridLevel]:
        """
        Find levels crossed since the previous observed price.

        The first observation only seeds the previous price. Moves smaller
        than price_update_threshold are ignored and do not advance it.

        Returns:
            Triggered levels with side re-derived from the crossing direction
        """
        book = self._book(pair_id)
        previous = book.last_price

        if previous is None:
            book.last_price = current_price
            return []

        change = abs(current_price - previous) / previous
        if change < Decimal(str(self._config.price_update_threshold)):
            return []

        triggered = []
        for level in self.levels(pair_id):
            # In flight, or validated and waiting in the batch queue
            if level.is_active or level.status == LevelStatus.VALIDATED:
                continue

            if previous > level.price >= current_price:
                side = OrderSide.BUY
            elif previous < level.price <= current_price:
                side = OrderSide.SELL
            else:
                continue

            if side != level.side:
                logger.debug(f"Level {level.id} side re-derived {level.side.value} -> {side.value}")
                level.side = side
                self._planner.apply_swap_amounts(
                    level,
                    self._pair(pair_id),
                    Decimal(str(self._grid_config.slippage_tolerance)),
                )

            level.status = LevelStatus.TRIGGERED
            triggered.append(level)

        book.last_price = current_price
        self._triggers += len(triggered)

        if triggered:
            direction = "down" if current_price < previous else "up"
            logger.info(
                f"{len(triggered)} level(s) triggered on {pair_id} ({direction} "
                f"{previous:.8g} -> {current_price:.8g})"
            )
        return triggered

    def validate_trigger(
        self,
        level: GridLevel,
        current_price: Decimal,
        margin: float,
        quote_usd: Decimal,
        gas_token_usd: Decimal,
        pool_fee: int,
    ) -> ProfitabilityResult:
        """
        Run profitability floors on a triggered level.

        A rejected level is removed from the pending set.
        """
        result = self._validator.validate(
            level, current_price, margin, quote_usd, gas_token_usd, pool_fee
        )

        if result.passed:
            level.status = LevelStatus.VALIDATED
        else:
            level.status = LevelStatus.REJECTED
            self._book(level.pair_id).levels.pop(level.id, None)
            self._rejections += 1
            logger.info(f"Level {level.id} rejected: {result.reason}")

        return result

    def release_level(self, level: GridLevel) -> None:
        """Return a triggered level to PENDING without committing it."""
        if level.is_active:
            return
        if level.id in self._book(level.pair_id).levels:
            level.status = LevelStatus.PENDING

    # === Commit ===

    async def commit(
        self,
        level: GridLevel,
        pair: PairConfig,
        current_price: Decimal,
        quote_usd: Decimal = Decimal("1"),
        costs: TradeCosts = ZERO_COSTS,
        margin: Optional[float] = None,
    ) -> CommitOutcome:
        """
        Hand a validated level to the executor with a bounded timeout.

        A timeout, an exception or a non-confirmed status all count as a
        failure. Reaching max_failures disables and removes the level.
        """
        book = self._book(pair.pair_id)
        self._pairs.setdefault(pair.pair_id, pair)

        if level.is_active or level.id in self._in_flight:
            return CommitOutcome(level, False, error="already in flight", skipped=True)
        if level.id in book.disabled:
            return CommitOutcome(level, False, error="level disabled", skipped=True)
        if level.id not in book.levels:
            return CommitOutcome(level, False, error="level replaced by replan", skipped=True)

        level.status = LevelStatus.COMMITTED
        level.is_active = True
        self._in_flight[level.id] = level
        self._commits += 1

        if level.side == OrderSide.BUY:
            token_in, token_out = pair.quote_address, pair.base_address
        else:
            token_in, token_out = pair.base_address, pair.quote_address

        try:
            if self._balances is not None:
                await self._check_funds(level, pair, token_in)
            result = await asyncio.wait_for(
                self._executor.execute_swap(
                    token_in=token_in,
                    token_out=token_out,
                    amount_in=level.amount_in,
                    min_amount_out=level.min_amount_out,
                    pool_fee=pair.pool_fee,
                    recipient=self._config.recipient,
                ),
                timeout=self._config.order_timeout,
            )
        except asyncio.TimeoutError:
            self._timeouts += 1
            error = ExecutionTimeoutError(level.id, self._config.order_timeout)
            return self._record_failure(level, error, timed_out=True)
        except GridBotError as e:
            return self._record_failure(level, e)
        except Exception as e:
            return self._record_failure(level, ExecutionError(f"{type(e).__name__}: {e}"))
        finally:
            self._in_flight.pop(level.id, None)
            level.is_active = False

        if not result.succeeded:
            outcome = self._record_failure(
                level, ExecutionError(f"swap {result.status.value}: {result.error or 'no reason'}")
            )
            outcome.swap = result
            return outcome

        fill_price = self._fill_price(level, pair, result)
        execution, cycle, opposite = self.record_fill(
            level, fill_price, result.tx_ref, pair, quote_usd, costs,
            margin if margin is not None else self._grid_config.base_profit_margin,
        )
        return CommitOutcome(
            level, True, execution=execution, cycle=cycle, opposite=opposite, swap=result
        )

    async def _check_funds(self, level: GridLevel, pair: PairConfig, token_in: str) -> None:
        """
        Confirm the wallet can cover amount_in and the router may spend it.

        Raises:
            InsufficientFundsError: If the balance is below the swap input
        """
        decimals = pair.quote_decimals if level.side == OrderSide.BUY else pair.base_decimals
        needed = Decimal(level.amount_in) / (Decimal(10) ** decimals)
        available = await self._query_balance(token_in)

        if available < needed:
            self._insufficient_funds += 1
            raise InsufficientFundsError(token_in, needed, available)

        if self._config.router_address:
            await self._balances.ensure_allowance(
                token_in, self._config.router_address, level.amount_in
            )

    @with_async_retry(BALANCE_RETRY, retry_on=(OSError, asyncio.TimeoutError))
    async def _query_balance(self, asset: str) -> Decimal:
        return await self._balances.get_balance(asset)

    def _record_failure(
        self,
        level: GridLevel,
        error: GridBotError,
        timed_out: bool = False,
    ) -> CommitOutcome:
        """Count a commit failure; trip the per-level circuit breaker at the limit."""
        self._failures += 1
        level.failure_count += 1
        level.is_active = False
        book = self._book(level.pair_id)

        if level.failure_count >= self._config.max_failures:
            level.status = LevelStatus.DISABLED
            book.levels.pop(level.id, None)
            book.disabled.add(level.id)
            self._disabled_count += 1
            logger.warning(
                f"Level {level.id} disabled after {level.failure_count} failures: {error}"
            )
            return CommitOutcome(
                level, False, error=str(error), timed_out=timed_out, disabled=True, exception=error
            )

        level.status = LevelStatus.FAILED
        logger.warning(
            f"Commit failed for {level.id} "
            f"({level.failure_count}/{self._config.max_failures}): {error}"
        )
        return CommitOutcome(level, False, error=str(error), timed_out=timed_out, exception=error)

    @staticmethod
    def _fill_price(level: GridLevel, pair: PairConfig, result: SwapResult) -> Decimal:
        """Execution price from reported amounts, else the level price."""
        if not result.amount_out or not level.amount_in:
            return level.price

        base_scale = Decimal(10) ** pair.base_decimals
        quote_scale = Decimal(10) ** pair.quote_decimals
        if level.side == OrderSide.BUY:
            quote_spent = Decimal(level.amount_in) / quote_scale
            base_received = Decimal(result.amount_out) / base_scale
            return quote_spent / base_received
        base_spent = Decimal(level.amount_in) / base_scale
        quote_received = Decimal(result.amount_out) / quote_scale
        return quote_received / base_spent

    # === Fills ===

    def record_fill(
        self,
        level: GridLevel,
        fill_price: Decimal,
        tx_ref: str,
        pair: Optional[PairConfig] = None,
        quote_usd: Decimal = Decimal("1"),
        costs: TradeCosts = ZERO_COSTS,
        margin: Optional[float] = None,
    ) -> Tuple[TradeExecution, Optional[TradeCycle], GridLevel]:
        """
        Record a confirmed fill, match it into a cycle, install the opposite level.

        Returns:
            (TradeExecution, Optional[TradeCycle], opposite GridLevel)
        """
        pair = pair or self._pair(level.pair_id)
        book = self._book(level.pair_id)

        level.status = LevelStatus.FILLED
        level.is_active = False
        book.levels.pop(level.id, None)

        execution = TradeExecution(
            id=TradeExecution.new_id(),
            level_id=level.id,
            pair_id=level.pair_id,
            side=level.side,
            exec_price=fill_price,
            quantity=level.quantity,
            usd_value=level.quantity * fill_price * quote_usd,
            costs=costs,
            tx_ref=tx_ref,
            timestamp=self._clock(),
            quote_usd=quote_usd,
        )
        cycle = self._ledger.record(execution)
        self._fills += 1

        opposite = self._planner.opposite_level(
            level,
            fill_price,
            margin if margin is not None else self._grid_config.base_profit_margin,
            pair,
            quote_usd,
        )
        book.levels[opposite.id] = opposite

        logger.info(
            f"Filled {level.side.value} {level.quantity:.8g} on {level.pair_id} at "
            f"{fill_price:.8g} ({tx_ref}); opposite {opposite.side.value} at {opposite.price:.8g}"
        )
        return execution, cycle, opposite

    # === Observability ===

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        """Current grid per pair for dashboards."""
        return {pair_id: [lvl.to_dict() for lvl in self.levels(pair_id)] for pair_id in self._books}

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pairs": len(self._books),
            "levels": sum(len(b.levels) for b in self._books.values()),
            "in_flight": len(self._in_flight),
            "triggers": self._triggers,
            "rejections": self._rejections,
            "commits": self._commits,
            "fills": self._fills,
            "failures": self._failures,
            "timeouts": self._timeouts,
            "insufficient_funds": self._insufficient_funds,
            "disabled_levels": self._disabled_count,
            "validator": self._validator.get_stats(),
        }
