"""
Orchestrator - Central Coordinator for the Grid Engine.

Provides:
- Component initialization and wiring
- The control loop (price fetch, replan, trigger, validate, schedule)
- Commit outcome routing (ledger persistence, risk, cooldowns, alerts)
- Health and state persistence timers
- Graceful startup and shutdown
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from config.settings import BotConfig, ConfigurationError, PairConfig, QueueFlushMode
from src.api import (
    BalanceProvider,
    DryRunSwapExecutor,
    ErrorAggregator,
    MidPriceStream,
    StreamConfig,
    SwapExecutor,
)
from src.grid import (
    AdaptiveController,
    CommitOutcome,
    GridLevel,
    GridPlanner,
    OrderSide,
    ProfitabilityValidator,
    ReplanDecision,
    ReplanReason,
    TradeCycleEngine,
    TradeLedger,
    VolatilityRegime,
)
from src.pricing import OnChainQuoter, PriceAggregator, PriceQuote, build_strategies
from .alerts import (
    AlertManager,
    AlertSeverity,
    AlertType,
    LoggingAlertHandler,
    RejectionKind,
    create_circuit_breaker_alert,
)
from .allocator import Allocator, ScoredLevel
from .health_check import HealthChecker, HealthLevel
from .risk_manager import RiskCheckResult, RiskManager
from .state_manager import BotState, StateManager

logger = logging.getLogger(__name__)


class OrchestratorState(Enum):
    """Orchestrator lifecycle states."""

    CREATED = auto()
    INITIALIZING = auto()
    RUNNING = auto()
    PAUSED = auto()
    SHUTTING_DOWN = auto()
    STOPPED = auto()
    ERROR = auto()


@dataclass
class OrchestratorConfig:
    """Timing intervals for the background tasks."""

    check_interval: float = 5.0  # Control loop tick
    health_check_interval: float = 60.0  # 1 min
    state_persist_interval: float = 30.0  # 30 sec
    shutdown_timeout: float = 10.0  # 10 sec

    # Extra wait for in-flight commits on shutdown (None = order timeout)
    commit_drain_timeout: Optional[float] = None

    # Recovery settings
    skip_state_restore: bool = False

    # Connect the mid-price stream when no aggregator is injected
    use_stream: bool = True

    @classmethod
    def from_bot_config(cls, config: BotConfig, **overrides: Any) -> "OrchestratorConfig":
        values = {
            "check_interval": config.execution.check_interval,
            "health_check_interval": config.monitoring.health_check_interval,
            "state_persist_interval": config.monitoring.state_persist_interval,
        }
        values.update(overrides)
        return cls(**values)


class Orchestrator:
    """
    Central coordinator for the grid engine.

    Responsibilities:
    - Initialize all components in correct dependency order
    - Run the control loop across all enabled pairs
    - Route commit outcomes to the ledger, risk manager and allocator
    - Manage graceful shutdown (queue flush, in-flight drain, final save)
    - Default to simulated fills

    Usage:
        config = ConfigLoader("config/config.yaml").load()
        orchestrator = Orchestrator(config)

        await orchestrator.initialize()
        await orchestrator.start()

        # Engine runs until stopped
        await orchestrator.stop()
    """

    def __init__(
        self,
        config: BotConfig,
        orchestrator_config: Optional[OrchestratorConfig] = None,
        executor: Optional[SwapExecutor] = None,
        stream: Optional[MidPriceStream] = None,
        quoter: Optional[OnChainQuoter] = None,
        aggregator: Optional[PriceAggregator] = None,
        balances: Optional[BalanceProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Bot configuration
            orchestrator_config: Timing configuration (derived from config if None)
            executor: Swap executor (dry-run executor when simulating)
            stream: Mid-price stream (created from config if None)
            quoter: On-chain pool quoter for fallback pricing
            aggregator: Pre-built price aggregator, bypasses source wiring
            balances: Balance and allowance collaborator checked before live swaps
            clock: Time source shared with cooldowns and replan timing
        """
        self._config = config
        self._orch_config = orchestrator_config or OrchestratorConfig.from_bot_config(config)
        self._state = OrchestratorState.CREATED
        self._clock = clock

        # Collaborators (may be injected)
        self._executor = executor
        self._stream = stream
        self._quoter = quoter
        self._aggregator = aggregator
        self._balances = balances

        # Components (initialized in initialize())
        self._pairs: Dict[str, PairConfig] = {}
        self._state_manager: Optional[StateManager] = None
        self._alert_manager: Optional[AlertManager] = None
        self._risk_manager: Optional[RiskManager] = None
        self._allocator: Optional[Allocator] = None
        self._engine: Optional[TradeCycleEngine] = None
        self._controllers: Dict[str, AdaptiveController] = {}
        self._health_checker: Optional[HealthChecker] = None
        self._error_aggregator = ErrorAggregator(clock=clock)
        self._error_alert_active = False

        # Runtime state
        self._tasks: List[asyncio.Task] = []
        self._commit_tasks: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()
        self._session_id: Optional[str] = None
        self._last_prices: Dict[str, Tuple[Decimal, Decimal]] = {}
        self._batch_counter = 0

        # Statistics
        self._start_time: Optional[float] = None
        self._tick_count = 0
        self._scheduled_count = 0

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == OrchestratorState.RUNNING

    @property
    def engine(self) -> Optional[TradeCycleEngine]:
        return self._engine

    @property
    def allocator(self) -> Optional[Allocator]:
        return self._allocator

    @property
    def risk_manager(self) -> Optional[RiskManager]:
        return self._risk_manager

    @property
    def alert_manager(self) -> Optional[AlertManager]:
        return self._alert_manager

    @property
    def state_manager(self) -> Optional[StateManager]:
        return self._state_manager

    def controller(self, pair_id: str) -> AdaptiveController:
        return self._controllers[pair_id]

    # === Lifecycle ===

    async def initialize(self) -> None:
        """
        Initialize all components.

        Order matters - components depend on each other.

        Raises:
            ConfigurationError: Invalid configuration (fatal at startup)
        """
        if self._state != OrchestratorState.CREATED:
            raise RuntimeError(f"Cannot initialize from state {self._state}")

        self._state = OrchestratorState.INITIALIZING
        mode = "DRY RUN" if self._config.dry_run else "LIVE"
        logger.info(f"Initializing grid engine ({mode})...")

        try:
            # 1. Configuration
            self._config.validate_or_raise()
            pairs = self._config.allocation.enabled_pairs
            self._pairs = {p.pair_id: p for p in pairs}

            # 2. State manager
            logger.info("Initializing state manager...")
            self._state_manager = StateManager(self._config.database.path)

            # 3. Alerts
            self._alert_manager = AlertManager()
            self._alert_manager.add_handler(LoggingAlertHandler())

            # 4. Risk manager
            logger.info("Initializing risk manager...")
            self._risk_manager = RiskManager(
                self._config.risk,
                Decimal(str(self._config.grid.total_investment)),
                alert_manager=self._alert_manager,
                on_halt=self._on_emergency_stop,
            )

            # 5. Allocator (raises ConfigurationError on a bad split)
            logger.info("Initializing allocator...")
            self._allocator = Allocator(
                pairs,
                self._config.grid,
                self._config.execution,
                self._config.allocation,
                clock=self._clock,
            )

            # 6. Price aggregator
            if self._aggregator is None:
                logger.info("Initializing price sources...")
                if self._stream is None and self._orch_config.use_stream:
                    self._stream = MidPriceStream(StreamConfig(url=self._config.pricing.stream_url))
                strategies = build_strategies(
                    self._config.pricing, pairs, self._stream, self._quoter, self._clock
                )
                if not strategies:
                    raise ConfigurationError(["No price sources configured"])
                self._aggregator = PriceAggregator(strategies, self._config.pricing, self._clock)

            # 7. Grid components
            logger.info("Initializing grid components...")
            if self._executor is None:
                if not self._config.dry_run:
                    raise ConfigurationError(["Live trading requires a swap executor"])
                self._executor = DryRunSwapExecutor()

            planner = GridPlanner(self._config.grid)
            self._engine = TradeCycleEngine(
                self._executor,
                planner=planner,
                validator=ProfitabilityValidator(self._config.grid, self._config.execution),
                ledger=TradeLedger(),
                config=self._config.execution,
                grid_config=self._config.grid,
                pairs=pairs,
                clock=self._clock,
                balances=None if self._config.dry_run else self._balances,
            )
            self._controllers = {
                p.pair_id: AdaptiveController(
                    p, self._config.grid, self._config.adaptive, planner, self._clock
                )
                for p in pairs
            }

            # 8. Health checker
            self._health_checker = HealthChecker(
                aggregator=self._aggregator,
                state_manager=self._state_manager,
                stream=self._stream,
                probe_assets=sorted(self._assets_to_fetch()),
                stale_price_seconds=self._config.monitoring.stale_price_seconds,
                alert_manager=self._alert_manager,
                clock=self._clock,
            )

            # 9. Restore persisted risk state
            if not self._orch_config.skip_state_restore:
                self._restore_state()

            logger.info("Grid engine initialized successfully")

        except Exception as e:
            self._state = OrchestratorState.ERROR
            logger.exception(f"Initialization failed: {e}")
            raise

    async def start(self) -> None:
        """Start the control loop and background tasks."""
        if self._state != OrchestratorState.INITIALIZING:
            raise RuntimeError(f"Cannot start from state {self._state}")

        logger.info("Starting grid engine...")

        self._session_id = self._state_manager.start_session(
            total_investment=Decimal(str(self._config.grid.total_investment)),
            dry_run=self._config.dry_run,
        )

        if self._stream is not None:
            try:
                await self._stream.connect()
            except Exception as e:
                logger.warning(f"Mid-price stream unavailable, using fallback sources: {e}")

        self._start_time = self._clock()
        self._shutdown_event.clear()
        self._state = OrchestratorState.RUNNING

        self._tasks = [
            asyncio.create_task(self._control_loop_task(), name="control_loop"),
            asyncio.create_task(self._health_check_task(), name="health_check"),
            asyncio.create_task(self._state_persist_task(), name="state_persist"),
        ]

        logger.info(f"Grid engine running with {len(self._tasks)} background tasks")

    async def stop(self) -> None:
        """
        Gracefully stop the engine.

        Steps:
        1. Stop the control loop and timers
        2. Flush the batch queue (process or drop per config)
        3. Wait for in-flight commits without resubmitting them
        4. Save final state and end the session
        """
        if self._state in (OrchestratorState.STOPPED, OrchestratorState.SHUTTING_DOWN):
            return

        logger.info("Stopping grid engine...")
        self._state = OrchestratorState.SHUTTING_DOWN
        self._shutdown_event.set()

        # 1. Background tasks
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks, timeout=self._orch_config.shutdown_timeout)
        self._tasks = []

        # 2. Queue
        if self._allocator is not None:
            await self._flush_queue()

        # 3. In-flight commits
        await self._drain_commits()

        # 4. Final state
        if self._state_manager is not None and self._engine is not None:
            self._save_state()
            if self._session_id:
                totals = self._engine.ledger.get_totals()
                self._state_manager.end_session(
                    self._session_id,
                    {
                        "trades": totals["trades"],
                        "cycles": totals["cycles"],
                        "realized_profit": totals["realized_profit"],
                    },
                )

        if self._stream is not None:
            try:
                await self._stream.disconnect()
            except Exception as e:
                logger.warning(f"Stream disconnect failed: {e}")

        self._state = OrchestratorState.STOPPED
        logger.info("Grid engine stopped")

    async def pause(self, reason: str = "") -> None:
        """Stop ticking; in-flight commits still complete."""
        if self._state == OrchestratorState.RUNNING:
            self._state = OrchestratorState.PAUSED
            logger.warning(f"Engine paused: {reason}")
            self._alert_manager.create_alert(
                AlertType.TRADING_PAUSED, AlertSeverity.WARNING, f"Engine paused: {reason}"
            )

    async def resume(self) -> None:
        if self._state == OrchestratorState.PAUSED:
            self._state = OrchestratorState.RUNNING
            logger.info("Engine resumed")
            self._alert_manager.create_alert(
                AlertType.TRADING_RESUMED, AlertSeverity.INFO, "Engine resumed"
            )

    def reset_emergency_stop(self) -> bool:
        """Operator override of a latched emergency stop."""
        if self._risk_manager is None:
            raise RuntimeError("Orchestrator not initialized")
        cleared = self._risk_manager.reset_emergency_stop(operator_override=True)
        if cleared and self._state_manager is not None:
            self._state_manager.save_risk_state(self._risk_manager.to_dict())
        return cleared

    def _on_emergency_stop(self, reason: str) -> None:
        logger.critical(f"Trading halted, no new commits until operator reset: {reason}")

    # === Control Loop ===

    def _assets_to_fetch(self) -> Set[str]:
        assets = {self._config.pricing.gas_token_asset}
        for pair in self._pairs.values():
            assets.add(pair.price_key)
            if pair.quote_usd_asset:
                assets.add(pair.quote_usd_asset)
        return assets

    async def tick(self) -> Dict[str, Any]:
        """
        Run one pass over all enabled pairs.

        All prices are fetched concurrently and merged before any grid state
        is touched; pairs are then processed in configuration order.

        Returns:
            Counts for this tick
        """
        self._tick_count += 1
        summary = {"pairs": 0, "skipped": 0, "triggered": 0, "validated": 0, "scheduled": 0}

        quotes = await self._aggregator.get_prices(sorted(self._assets_to_fetch()))
        for asset, quote in quotes.items():
            if quote is not None:
                self._health_checker.record_price_update(asset)

        gas_quote = quotes.get(self._config.pricing.gas_token_asset)
        risk_check = self._risk_manager.check_trading_allowed()

        candidates: List[ScoredLevel] = []
        for pair in self._pairs.values():
            prices = self._resolve_prices(pair, quotes)
            if prices is None:
                summary["skipped"] += 1
                continue
            price, quote_usd = prices
            self._last_prices[pair.pair_id] = (price, quote_usd)
            summary["pairs"] += 1

            triggered = self._advance_pair(pair, price, quote_usd)
            summary["triggered"] += len(triggered)
            if not triggered:
                continue

            scored = self._validate_triggers(pair, triggered, price, quote_usd, gas_quote, risk_check)
            summary["validated"] += len(scored)
            candidates.extend(scored)

        if candidates:
            self._allocator.enqueue(candidates)
        summary["scheduled"] = self._drain_queue()
        return summary

    def _resolve_prices(
        self, pair: PairConfig, quotes: Dict[str, Optional[PriceQuote]]
    ) -> Optional[Tuple[Decimal, Decimal]]:
        """Pair price and quote-token USD price, or None (pair skipped this tick)."""
        missing = []
        pair_quote = quotes.get(pair.price_key)
        if pair_quote is None:
            missing.append(pair.price_key)

        quote_usd = Decimal("1")
        if pair.quote_usd_asset:
            usd_quote = quotes.get(pair.quote_usd_asset)
            if usd_quote is None:
                missing.append(pair.quote_usd_asset)
            else:
                quote_usd = usd_quote.price

        if missing:
            reason = f"no price for {', '.join(missing)}"
            self._alert_manager.record_rejection(RejectionKind.PRICE_UNAVAILABLE, pair.pair_id, reason)
            self._alert_manager.create_alert(
                AlertType.PRICE_UNAVAILABLE,
                AlertSeverity.WARNING,
                f"{pair.pair_id} skipped: {reason}",
                {"pair_id": pair.pair_id, "missing": missing},
            )
            return None

        return pair_quote.price, quote_usd

    def _advance_pair(self, pair: PairConfig, price: Decimal, quote_usd: Decimal) -> List[GridLevel]:
        """Feed volatility, replan if needed and return crossed levels."""
        controller = self._controllers[pair.pair_id]
        controller.record_price(price)

        decision = controller.should_replan(price)
        if decision.should_replan:
            self._replan(pair, price, quote_usd, decision)

        return self._engine.detect_triggers(pair.pair_id, price)

    def _replan(
        self, pair: PairConfig, price: Decimal, quote_usd: Decimal, decision: ReplanDecision
    ) -> None:
        controller = self._controllers[pair.pair_id]
        allocation = self._allocator.get_allocation(pair.pair_id)

        result = controller.replan(
            price,
            allocation.allocation_usd,
            quote_usd,
            self._engine.active_levels(pair.pair_id),
            decision.reason,
        )

        stale = self._allocator.remove_queued(pair.pair_id)
        for entry in stale:
            self._engine.release_level(entry.level)
        self._engine.load_levels(
            pair.pair_id, result.plan.levels, result.preserved, reference_price=price
        )

        if decision.reason != ReplanReason.INITIAL:
            self._alert_manager.create_alert(
                AlertType.GRID_REPLANNED,
                AlertSeverity.INFO,
                f"{pair.pair_id} grid replanned: {decision}",
                {
                    "pair_id": pair.pair_id,
                    "reason": decision.reason.name if decision.reason else None,
                    "center": str(price),
                    "levels": len(result.plan.levels),
                    "preserved": len(result.preserved),
                    "dropped_queued": len(stale),
                },
            )

    def _validate_triggers(
        self,
        pair: PairConfig,
        triggered: List[GridLevel],
        price: Decimal,
        quote_usd: Decimal,
        gas_quote: Optional[PriceQuote],
        risk_check: RiskCheckResult,
    ) -> List[ScoredLevel]:
        """Apply risk gate and profitability floors, score the survivors."""
        if risk_check.should_halt:
            self._reject_all(triggered, RejectionKind.RISK_HALT, risk_check.reason)
            return []

        if risk_check.should_pause:
            # Only exposure-reducing trades while paused on imbalance
            blocked = [lvl for lvl in triggered if not self._reduces_exposure(lvl)]
            self._reject_all(blocked, RejectionKind.RISK_HALT, risk_check.reason)
            triggered = [lvl for lvl in triggered if lvl not in blocked]
            if not triggered:
                return []

        if gas_quote is None:
            self._reject_all(
                triggered,
                RejectionKind.PRICE_UNAVAILABLE,
                f"no price for gas token {self._config.pricing.gas_token_asset}",
            )
            return []

        controller = self._controllers[pair.pair_id]
        margin = controller.current_margin
        high_volatility = controller.regime == VolatilityRegime.HIGH

        scored: List[ScoredLevel] = []
        for level in triggered:
            result = self._engine.validate_trigger(
                level, price, margin, quote_usd, gas_quote.price, pair.pool_fee
            )
            if not result.passed:
                self._alert_manager.record_rejection(
                    RejectionKind.PROFITABILITY_FLOOR, pair.pair_id, result.reason, level.id
                )
                continue

            order_check = self._risk_manager.check_order_allowed(result.position_usd)
            if not order_check.passed:
                self._engine.release_level(level)
                self._alert_manager.record_rejection(
                    RejectionKind.RISK_HALT, pair.pair_id, order_check.reason, level.id
                )
                continue

            score = self._allocator.score_level(level, price, result.expected_profit, high_volatility)
            scored.append(ScoredLevel(level, score, price, quote_usd, result, margin))

        return scored

    def _reject_all(self, levels: List[GridLevel], kind: RejectionKind, reason: str) -> None:
        for level in levels:
            self._engine.release_level(level)
            self._alert_manager.record_rejection(kind, level.pair_id, reason, level.id)

    # === Scheduling ===

    def _admit(self, entry: ScoredLevel) -> bool:
        """Risk and cooldown gates at dispatch time. Rejected levels go back to PENDING."""
        if self._risk_manager.is_halted:
            self._reject_all([entry.level], RejectionKind.RISK_HALT, self._risk_manager.halt_reason)
            return False

        if self._risk_manager.is_paused and not self._reduces_exposure(entry.level):
            self._reject_all([entry.level], RejectionKind.RISK_HALT, "trading paused")
            return False

        if not self._allocator.can_trade(entry.pair_id):
            remaining = self._allocator.cooldown_remaining(entry.pair_id)
            self._reject_all(
                [entry.level], RejectionKind.COOLDOWN, f"cooldown {remaining:.1f}s remaining"
            )
            return False

        return True

    def _drain_queue(self) -> int:
        """
        Dispatch queued batches until empty or the concurrency limit blocks.

        A batch blocked by the limit goes back to the front of the queue for
        the next tick.

        Returns:
            Number of levels dispatched
        """
        dispatched = 0
        while self._allocator.queue_size:
            batch = self._allocator.next_batch()
            ready: List[ScoredLevel] = []
            blocked: List[ScoredLevel] = []

            for entry in batch:
                if blocked:
                    blocked.append(entry)
                    continue
                if not self._admit(entry):
                    continue
                if not self._allocator.try_acquire(entry.pair_id):
                    self._alert_manager.record_rejection(
                        RejectionKind.CONCURRENCY_LIMIT,
                        entry.pair_id,
                        f"{self._config.execution.max_concurrent_trades} pairs in flight",
                        entry.level.id,
                    )
                    blocked.append(entry)
                    continue
                ready.append(entry)

            if ready:
                self._launch_batch(ready)
                dispatched += len(ready)
            if blocked:
                self._allocator.requeue_front(blocked)
                break

        self._scheduled_count += dispatched
        return dispatched

    def _launch_batch(self, batch: List[ScoredLevel]) -> asyncio.Task:
        self._batch_counter += 1
        task = asyncio.create_task(
            self._execute_batch(batch), name=f"batch-{self._batch_counter}"
        )
        self._commit_tasks.add(task)
        task.add_done_callback(self._commit_tasks.discard)
        return task

    async def _execute_batch(self, batch: List[ScoredLevel]) -> List[CommitOutcome]:
        logger.info(
            f"Executing batch of {len(batch)}: "
            + ", ".join(f"{e.level.id} ({e.level.side.value} @ {e.level.price:.8g})" for e in batch)
        )
        return list(await asyncio.gather(*(self._commit_one(entry) for entry in batch)))

    async def _commit_one(self, entry: ScoredLevel) -> CommitOutcome:
        pair = self._pairs[entry.pair_id]
        try:
            outcome = await self._engine.commit(
                entry.level,
                pair,
                entry.current_price,
                entry.quote_usd,
                entry.profitability.costs,
                entry.margin,
            )
        finally:
            self._allocator.release(entry.pair_id)

        self._handle_outcome(pair, outcome)
        return outcome

    def _handle_outcome(self, pair: PairConfig, outcome: CommitOutcome) -> None:
        """Route a commit outcome to cooldowns, persistence, risk and alerts."""
        level = outcome.level

        if outcome.skipped:
            if self._engine.is_disabled(pair.pair_id, level.id):
                self._alert_manager.record_rejection(
                    RejectionKind.CIRCUIT_BREAKER, pair.pair_id, outcome.error or "", level.id
                )
            logger.debug(f"Commit skipped for {level.id}: {outcome.error}")
            return

        self._allocator.record_trade_result(pair.pair_id, outcome.success)

        if outcome.success:
            self._persist_outcome(outcome)
            if outcome.cycle is not None:
                self._risk_manager.record_cycle(outcome.cycle)
            self._update_imbalance(pair)
            return

        if outcome.disabled:
            self._alert_manager.record_rejection(
                RejectionKind.CIRCUIT_BREAKER, pair.pair_id, outcome.error or "", level.id
            )
            create_circuit_breaker_alert(
                self._alert_manager, pair.pair_id, level.id, level.failure_count, outcome.error
            )
        elif outcome.timed_out:
            self._alert_manager.create_alert(
                AlertType.COMMIT_TIMEOUT,
                AlertSeverity.WARNING,
                f"Commit timed out for {level.id}",
                outcome.to_dict(),
            )
        else:
            self._alert_manager.create_alert(
                AlertType.COMMIT_FAILED,
                AlertSeverity.WARNING,
                f"Commit failed for {level.id}: {outcome.error}",
                outcome.to_dict(),
            )

        if outcome.exception is not None:
            self._error_aggregator.record_error(outcome.exception)
            self._check_error_rate()

    def _check_error_rate(self) -> None:
        """Raise one critical alert while commit failures cluster."""
        if not self._error_aggregator.should_alert():
            if self._error_alert_active:
                self._error_alert_active = False
                self._alert_manager.clear_alert_type(AlertType.ERROR_RATE)
            return
        if self._error_alert_active:
            return

        self._error_alert_active = True
        stats = self._error_aggregator.get_stats(time_window=60.0)
        self._alert_manager.create_alert(
            AlertType.ERROR_RATE,
            AlertSeverity.CRITICAL,
            f"Elevated commit failure rate: {stats['total']} failures in the last minute",
            stats,
        )

    def _persist_outcome(self, outcome: CommitOutcome) -> None:
        try:
            if outcome.execution is not None:
                self._state_manager.save_execution(outcome.execution)
            if outcome.cycle is not None:
                self._state_manager.save_cycle(outcome.cycle)
        except Exception as e:
            logger.error(f"Failed to persist fill for {outcome.level.id}: {e}")

    def inventory_imbalance(self, pair_id: str) -> float:
        """
        Net open exposure as a fraction of the pair's allocation.

        |open buy USD - open sell USD| / allocation USD
        """
        allocation = self._allocator.get_allocation(pair_id).allocation_usd
        if allocation <= 0:
            return 0.0
        return float(abs(self._net_exposure(pair_id)) / allocation)

    def _net_exposure(self, pair_id: str) -> Decimal:
        """Open buy USD minus open sell USD."""
        net = Decimal("0")
        for position in self._engine.ledger.open_positions(pair_id):
            if position.side == OrderSide.BUY:
                net += position.usd_value
            else:
                net -= position.usd_value
        return net

    def _reduces_exposure(self, level: GridLevel) -> bool:
        net = self._net_exposure(level.pair_id)
        if level.side == OrderSide.BUY:
            return net < 0
        return net > 0

    def _update_imbalance(self, pair: PairConfig) -> None:
        self._risk_manager.update_imbalance(pair.pair_id, self.inventory_imbalance(pair.pair_id))

    # === Shutdown helpers ===

    async def _flush_queue(self) -> None:
        """Process or drop queued levels per flush_queue_on_stop."""
        entries = self._allocator.flush(self._config.execution.flush_queue_on_stop)

        if self._config.execution.flush_queue_on_stop == QueueFlushMode.DROP:
            return

        for batch in self._allocator.make_batches(entries):
            ready: List[ScoredLevel] = []
            for entry in batch:
                if not self._admit(entry):
                    continue
                acquired = self._allocator.try_acquire(entry.pair_id)
                while not acquired and (ready or self._commit_tasks):
                    # Slots held by this batch only free up once it runs
                    if ready:
                        self._launch_batch(ready)
                        ready = []
                    await asyncio.wait(set(self._commit_tasks), return_when=asyncio.FIRST_COMPLETED)
                    acquired = self._allocator.try_acquire(entry.pair_id)
                if not acquired:
                    self._reject_all(
                        [entry.level], RejectionKind.CONCURRENCY_LIMIT, "no slot during shutdown"
                    )
                    continue
                ready.append(entry)
            if ready:
                self._launch_batch(ready)

    async def _drain_commits(self) -> None:
        """Wait for in-flight commits. They are never resubmitted."""
        if not self._commit_tasks:
            return

        timeout = self._orch_config.commit_drain_timeout
        if timeout is None:
            timeout = self._config.execution.order_timeout
        pending_tasks = set(self._commit_tasks)

        logger.info(f"Waiting up to {timeout:.0f}s for {len(pending_tasks)} in-flight batch(es)")
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)

        if pending:
            logger.warning(f"Abandoning {len(pending)} unresolved batch(es) on shutdown")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # === Background Tasks ===

    async def _control_loop_task(self) -> None:
        """Tick on check_interval until shutdown."""
        logger.info("Control loop started")

        try:
            while not self._shutdown_event.is_set():
                if self._state == OrchestratorState.RUNNING:
                    try:
                        summary = await self.tick()
                        if summary["triggered"]:
                            logger.info(f"Tick {self._tick_count}: {summary}")
                    except Exception as e:
                        logger.exception(f"Control loop tick failed: {e}")

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=self._orch_config.check_interval
                    )
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Control loop task cancelled")

    async def _health_check_task(self) -> None:
        """Periodic health checks."""
        try:
            while not self._shutdown_event.is_set():
                await asyncio.sleep(self._orch_config.health_check_interval)

                if self._shutdown_event.is_set():
                    break

                try:
                    health = await self._health_checker.run_all_checks()
                    if health.overall_level == HealthLevel.CRITICAL:
                        logger.error(f"Health check critical: {health.to_dict()}")
                    elif not health.overall_healthy:
                        logger.warning(f"Health check warning: {health.to_dict()}")
                except Exception as e:
                    logger.error(f"Health check error: {e}")

        except asyncio.CancelledError:
            logger.info("Health check task cancelled")

    async def _state_persist_task(self) -> None:
        """Periodic state persistence."""
        try:
            while not self._shutdown_event.is_set():
                await asyncio.sleep(self._orch_config.state_persist_interval)

                if self._shutdown_event.is_set():
                    break

                try:
                    self._save_state()
                except Exception as e:
                    logger.error(f"State persist error: {e}")

        except asyncio.CancelledError:
            logger.info("State persist task cancelled")

    # === State ===

    def _save_state(self) -> None:
        """Save grid snapshot, risk state, per-pair summaries and totals."""
        state = BotState(
            timestamp=datetime.now(timezone.utc),
            grid_snapshot=self._engine.snapshot(),
            risk_state=self._risk_manager.to_dict(),
            is_trading=self._state == OrchestratorState.RUNNING,
            session_id=self._session_id,
        )
        self._state_manager.save_state(state)

        ledger = self._engine.ledger
        for pair_id in self._pairs:
            summary = ledger.get_pair_summary(pair_id).to_dict()
            summary["cooldown"] = self._allocator.get_performance(pair_id).to_dict()
            self._state_manager.save_pair_performance(pair_id, summary)

        totals = ledger.get_totals()
        totals["unrealized_profit"] = self.unrealized_profit()
        self._state_manager.save_totals(totals)
        logger.debug("State saved")

    def _restore_state(self) -> None:
        """Restore the risk latch and P&L; grids are re-planned from live prices."""
        saved = self._state_manager.load_state()
        if saved is None or not saved.risk_state:
            logger.info("No saved state found, starting fresh")
            return

        self._risk_manager.restore_from_dict(saved.risk_state)
        if self._risk_manager.is_halted:
            logger.critical(
                f"Restored latched emergency stop: {self._risk_manager.halt_reason}. "
                "Use --reset-emergency-stop to resume trading"
            )

    def unrealized_profit(self) -> Decimal:
        """Mark-to-market of open positions at the last seen prices."""
        total = Decimal("0")
        for pair_id, (price, quote_usd) in self._last_prices.items():
            total += self._engine.ledger.unrealized_profit(pair_id, price, quote_usd)
        return total

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        uptime = self._clock() - self._start_time if self._start_time else 0.0

        stats: Dict[str, Any] = {
            "state": self._state.name,
            "uptime_seconds": uptime,
            "tick_count": self._tick_count,
            "scheduled": self._scheduled_count,
            "in_flight_batches": len(self._commit_tasks),
            "session_id": self._session_id,
        }

        if self._engine:
            stats["engine"] = self._engine.get_stats()
            stats["totals"] = {
                **self._engine.ledger.get_totals(),
                "unrealized_profit": self.unrealized_profit(),
            }
            stats["pairs"] = {
                pair_id: self._engine.ledger.get_pair_summary(pair_id).to_dict()
                for pair_id in self._pairs
            }
        if self._controllers:
            stats["adaptive"] = {k: c.get_stats() for k, c in self._controllers.items()}
        if self._allocator:
            stats["allocator"] = self._allocator.get_stats()
        if self._risk_manager:
            stats["risk"] = self._risk_manager.get_stats()
        if self._aggregator:
            stats["pricing"] = self._aggregator.get_stats()
        if self._alert_manager:
            stats["rejections"] = self._alert_manager.get_rejection_counts()
            stats["alerts"] = self._alert_manager.get_stats()
            stats["pair_alerts"] = {
                pair_id: len(self._alert_manager.get_recent_alerts(pair_id=pair_id))
                for pair_id in self._pairs
            }
        if self._health_checker:
            stats["health"] = self._health_checker.get_metrics()
        stats["errors"] = self._error_aggregator.get_stats()

        return stats
