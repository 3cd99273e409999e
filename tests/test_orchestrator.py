"""
Tests for Orchestrator module.

Tests:
- Initialization and fatal configuration errors
- Control loop tick (replan, trigger, validate, schedule, commit)
- Pairs skipped when prices are unavailable
- Risk halt blocks new commits
- Clustered commit failures raise a critical alert
- Shutdown, persistence and restore of the risk latch
- Queue flush (drop or process) and bounded commit drain on stop
"""

import pytest
import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

from src.api import DryRunSwapExecutor, ExecutionError
from src.core import (
    AlertSeverity,
    AlertType,
    Orchestrator,
    OrchestratorConfig,
    OrchestratorState,
)
from src.grid import CommitOutcome, LevelStatus, OrderSide
from src.pricing import Confidence, PriceQuote, PriceSource
from config.settings import (
    AllocationConfig,
    BotConfig,
    ConfigurationError,
    ExecutionConfig,
    GridConfig,
    PairConfig,
    QueueFlushMode,
    RiskConfig,
    SizingMode,
)
from src.main import build_orchestrator, parse_args


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeAggregator:
    """Serves fixed prices; None means every source failed."""

    def __init__(self, clock):
        self.clock = clock
        self.prices = {"HYPE": Decimal("45"), "HYPE/USDC": Decimal("100")}
        self.requests = []

    async def get_prices(self, assets):
        self.requests.append(list(assets))
        return {asset: self._quote(asset) for asset in assets}

    def _quote(self, asset):
        price = self.prices.get(asset)
        if price is None:
            return None
        return PriceQuote(asset, price, self.clock(), PriceSource.STREAM, Confidence.HIGH)

    async def probe_sources(self, asset):
        return {}

    def get_source_health(self):
        return {}

    def get_stats(self):
        return {}


def make_config(db_path: str, **pair_overrides) -> BotConfig:
    """One USD-quoted pair, 100 +/- 5% with 5 arithmetic levels and $500."""
    pair_values = dict(
        pair_id="HYPE_USDC",
        base_token="HYPE",
        quote_token="USDC",
        quote_decimals=6,
        quote_usd_asset=None,
        allocation_percent=100.0,
        grid_count=5,
        range_percent=5.0,
        trading_interval=0.0,
    )
    pair_values.update(pair_overrides)

    config = BotConfig(
        grid=GridConfig(total_investment=500.0, sizing_mode=SizingMode.ARITHMETIC),
        allocation=AllocationConfig(pairs=[PairConfig(**pair_values)]),
        execution=ExecutionConfig(dry_run=True, batch_size=3, max_concurrent_trades=2),
        risk=RiskConfig(max_position_percent=50.0),
    )
    config.database.path = db_path
    return config


def make_two_pair_config(db_path: str) -> BotConfig:
    """HYPE_USDC and BTC_USDC at $500 each with one pair allowed in flight."""
    config = make_config(db_path, allocation_percent=50.0)
    config.allocation.pairs.append(
        PairConfig(
            pair_id="BTC_USDC",
            base_token="BTC",
            quote_token="USDC",
            quote_decimals=6,
            quote_usd_asset=None,
            allocation_percent=50.0,
            grid_count=5,
            range_percent=5.0,
            trading_interval=0.0,
        )
    )
    config.grid.total_investment = 1000.0
    config.execution.max_concurrent_trades = 1
    return config


class GatedExecutor(DryRunSwapExecutor):
    """Holds every swap until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.calls = 0

    async def execute_swap(self, *args, **kwargs):
        self.calls += 1
        await self.gate.wait()
        return await super().execute_swap(*args, **kwargs)


@pytest.fixture
def temp_db():
    with tempfile.TemporaryDirectory() as tmp:
        yield str(Path(tmp) / "engine.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator(clock):
    return FakeAggregator(clock)


@pytest.fixture
def executor():
    return DryRunSwapExecutor()


@pytest.fixture
def orchestrator(temp_db, clock, aggregator, executor):
    return Orchestrator(
        make_config(temp_db),
        OrchestratorConfig(use_stream=False),
        executor=executor,
        aggregator=aggregator,
        clock=clock,
    )


class TestOrchestratorConfig:
    """Tests for OrchestratorConfig."""

    def test_from_bot_config(self):
        config = BotConfig()
        config.execution.check_interval = 2.0

        orch_config = OrchestratorConfig.from_bot_config(config, shutdown_timeout=3.0)

        assert orch_config.check_interval == 2.0
        assert orch_config.health_check_interval == config.monitoring.health_check_interval
        assert orch_config.shutdown_timeout == 3.0
        assert orch_config.commit_drain_timeout is None


class TestInitialization:
    """Tests for startup."""

    @pytest.mark.asyncio
    async def test_initialize(self, orchestrator):
        await orchestrator.initialize()

        assert orchestrator.state == OrchestratorState.INITIALIZING
        assert orchestrator.engine is not None
        assert orchestrator.allocator.get_allocation("HYPE_USDC").allocation_usd == Decimal("500")
        assert orchestrator.controller("HYPE_USDC").plan is None

    @pytest.mark.asyncio
    async def test_bad_allocation_is_fatal(self, temp_db, aggregator, executor):
        """Test allocations off 100% abort startup."""
        orchestrator = Orchestrator(
            make_config(temp_db, allocation_percent=60.0),
            OrchestratorConfig(use_stream=False),
            executor=executor,
            aggregator=aggregator,
        )

        with pytest.raises(ConfigurationError, match="sum to 100%"):
            await orchestrator.initialize()
        assert orchestrator.state == OrchestratorState.ERROR

    @pytest.mark.asyncio
    async def test_live_requires_executor(self, temp_db, aggregator):
        config = make_config(temp_db)
        config.execution.dry_run = False
        orchestrator = Orchestrator(config, OrchestratorConfig(use_stream=False), aggregator=aggregator)

        with pytest.raises(ConfigurationError, match="swap executor"):
            await orchestrator.initialize()

    @pytest.mark.asyncio
    async def test_initialize_twice_rejected(self, orchestrator):
        await orchestrator.initialize()

        with pytest.raises(RuntimeError, match="Cannot initialize"):
            await orchestrator.initialize()


class TestTick:
    """Tests for one control loop pass."""

    @pytest.mark.asyncio
    async def test_first_tick_plans_without_trading(self, orchestrator, aggregator):
        """Test the initial plan is seeded at the current price."""
        await orchestrator.initialize()

        summary = await orchestrator.tick()

        assert summary["pairs"] == 1
        assert summary["triggered"] == 0
        assert len(orchestrator.engine.levels("HYPE_USDC")) == 5
        assert sorted(aggregator.requests[0]) == ["HYPE", "HYPE/USDC"]

    @pytest.mark.asyncio
    async def test_down_move_commits_buys(self, orchestrator, aggregator, executor):
        """Test 100 -> 97 fills the two BUY levels crossed."""
        await orchestrator.initialize()
        await orchestrator.tick()

        aggregator.prices["HYPE/USDC"] = Decimal("97")
        summary = await orchestrator.tick()

        assert summary["triggered"] == 2
        assert summary["validated"] == 2
        assert summary["scheduled"] == 2

        await orchestrator.stop()

        assert len(executor.submitted) == 2
        ledger = orchestrator.engine.ledger
        assert ledger.get_totals()["trades"] == 2
        assert all(p.side == OrderSide.BUY for p in ledger.open_positions("HYPE_USDC"))

        # Filled levels are replaced by SELLs above their fill price
        sells = [l for l in orchestrator.engine.levels("HYPE_USDC") if l.side == OrderSide.SELL]
        assert len(sells) == 4

        history = orchestrator.state_manager.get_execution_history("HYPE_USDC")
        assert len(history) == 2
        assert 0 < orchestrator.inventory_imbalance("HYPE_USDC") < 0.8

    @pytest.mark.asyncio
    async def test_missing_price_skips_pair(self, orchestrator, aggregator):
        """Test a pair without a price is skipped and counted."""
        await orchestrator.initialize()
        aggregator.prices["HYPE/USDC"] = None

        summary = await orchestrator.tick()

        assert summary["skipped"] == 1
        assert summary["pairs"] == 0
        counts = orchestrator.alert_manager.get_rejection_counts("HYPE_USDC")
        assert counts["price_unavailable"] == 1
        assert orchestrator.alert_manager.get_recent_alerts(alert_type=AlertType.PRICE_UNAVAILABLE)

    @pytest.mark.asyncio
    async def test_missing_gas_price_rejects_triggers(self, orchestrator, aggregator):
        await orchestrator.initialize()
        await orchestrator.tick()

        aggregator.prices["HYPE"] = None
        aggregator.prices["HYPE/USDC"] = Decimal("97")
        summary = await orchestrator.tick()

        assert summary["triggered"] == 2
        assert summary["scheduled"] == 0
        assert orchestrator.alert_manager.get_rejection_counts()["price_unavailable"] == 2

    @pytest.mark.asyncio
    async def test_halt_blocks_commits(self, orchestrator, aggregator, executor):
        """Test a latched emergency stop rejects triggers and keeps levels."""
        await orchestrator.initialize()
        await orchestrator.tick()
        orchestrator.risk_manager.record_cycle(Mock(net_profit=Decimal("-100")))

        aggregator.prices["HYPE/USDC"] = Decimal("97")
        summary = await orchestrator.tick()

        assert summary["triggered"] == 2
        assert summary["scheduled"] == 0
        assert executor.submitted == []
        assert orchestrator.alert_manager.get_rejection_counts()["risk_halt"] == 2
        assert all(
            level.status == LevelStatus.PENDING
            for level in orchestrator.engine.levels("HYPE_USDC")
        )

    @pytest.mark.asyncio
    async def test_out_of_range_replans(self, orchestrator, aggregator, clock):
        """Test leaving the range re-centers the grid after the cooldown."""
        await orchestrator.initialize()
        await orchestrator.tick()

        clock.now += 600
        aggregator.prices["HYPE/USDC"] = Decimal("110")
        summary = await orchestrator.tick()

        assert summary["triggered"] == 0
        plan = orchestrator.controller("HYPE_USDC").plan
        assert plan.center_price == Decimal("110")
        assert orchestrator.alert_manager.get_recent_alerts(alert_type=AlertType.GRID_REPLANNED)


class TestCommitFailures:
    """Tests for failed commit routing."""

    @pytest.mark.asyncio
    async def test_clustered_failures_raise_one_critical_alert(self, orchestrator):
        await orchestrator.initialize()
        await orchestrator.tick()
        pair = orchestrator._pairs["HYPE_USDC"]
        level = orchestrator.engine.levels("HYPE_USDC")[0]

        for _ in range(5):
            orchestrator._handle_outcome(
                pair,
                CommitOutcome(level, False, error="reverted", exception=ExecutionError("reverted")),
            )

        critical = orchestrator.alert_manager.get_recent_alerts(
            alert_type=AlertType.ERROR_RATE, min_severity=AlertSeverity.CRITICAL
        )
        assert len(critical) == 1
        assert orchestrator.alert_manager.get_recent_alerts(alert_type=AlertType.COMMIT_FAILED)
        assert orchestrator.get_stats()["errors"]["by_category"]["execution"] == 5


class TestShutdownAndRestore:
    """Tests for stop, persistence and restart."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator):
        await orchestrator.initialize()
        await orchestrator.start()

        assert orchestrator.is_running
        await asyncio.sleep(0)

        await orchestrator.stop()

        assert orchestrator.state == OrchestratorState.STOPPED
        assert orchestrator.state_manager.load_state() is not None

    @pytest.mark.asyncio
    async def test_emergency_stop_survives_restart(self, temp_db, clock, aggregator, executor):
        """Test a latched stop is restored until the operator resets it."""
        first = Orchestrator(
            make_config(temp_db), OrchestratorConfig(use_stream=False),
            executor=executor, aggregator=aggregator, clock=clock,
        )
        await first.initialize()
        first.risk_manager.record_cycle(Mock(net_profit=Decimal("-100")))
        await first.stop()

        second = Orchestrator(
            make_config(temp_db), OrchestratorConfig(use_stream=False),
            executor=DryRunSwapExecutor(), aggregator=aggregator, clock=clock,
        )
        await second.initialize()

        assert second.risk_manager.is_halted
        assert second.reset_emergency_stop() is True
        assert second.state_manager.load_state().risk_state["emergency_stopped"] is False

    @pytest.mark.asyncio
    async def test_skip_state_restore(self, temp_db, clock, aggregator, executor):
        first = Orchestrator(
            make_config(temp_db), OrchestratorConfig(use_stream=False),
            executor=executor, aggregator=aggregator, clock=clock,
        )
        await first.initialize()
        first.risk_manager.record_cycle(Mock(net_profit=Decimal("-100")))
        await first.stop()

        second = Orchestrator(
            make_config(temp_db), OrchestratorConfig(use_stream=False, skip_state_restore=True),
            executor=DryRunSwapExecutor(), aggregator=aggregator, clock=clock,
        )
        await second.initialize()

        assert not second.risk_manager.is_halted

    def test_fresh_flag_skips_restore(self, temp_db):
        """Test --fresh builds an orchestrator that never restores saved state."""
        fresh = build_orchestrator(make_config(temp_db), parse_args(["config.yaml", "--fresh"]))
        normal = build_orchestrator(make_config(temp_db), parse_args(["config.yaml"]))

        assert fresh._orch_config.skip_state_restore is True
        assert normal._orch_config.skip_state_restore is False

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator):
        await orchestrator.initialize()
        await orchestrator.tick()

        stats = orchestrator.get_stats()

        assert stats["tick_count"] == 1
        assert "HYPE_USDC" in stats["pairs"]
        assert stats["rejections"]["risk_halt"] == 0


class TestShutdownFlush:
    """Tests for the queue flush and commit drain on stop."""

    async def _queue_behind_busy_pair(self, temp_db, clock, aggregator, executor, mode):
        config = make_two_pair_config(temp_db)
        config.execution.flush_queue_on_stop = mode
        aggregator.prices["BTC/USDC"] = Decimal("100")
        orchestrator = Orchestrator(
            config, OrchestratorConfig(use_stream=False),
            executor=executor, aggregator=aggregator, clock=clock,
        )
        await orchestrator.initialize()
        await orchestrator.tick()

        aggregator.prices["HYPE/USDC"] = Decimal("97")
        aggregator.prices["BTC/USDC"] = Decimal("97")
        summary = await orchestrator.tick()
        return orchestrator, summary

    @pytest.mark.asyncio
    async def test_drop_discards_queued_levels(self, temp_db, clock, aggregator, executor):
        """Test queued levels are dropped without reaching the executor."""
        orchestrator, summary = await self._queue_behind_busy_pair(
            temp_db, clock, aggregator, executor, QueueFlushMode.DROP
        )
        queued = orchestrator.allocator.queue_size
        assert queued > 0
        assert summary["scheduled"] + queued == summary["validated"]

        await orchestrator.stop()

        assert orchestrator.allocator.queue_size == 0
        assert orchestrator.allocator.get_stats()["dropped"] == queued
        assert len(executor.submitted) == summary["scheduled"]
        assert orchestrator.state == OrchestratorState.STOPPED

    @pytest.mark.asyncio
    async def test_process_commits_queued_levels(self, temp_db, clock, aggregator, executor):
        """Test queued levels are committed once the busy pair frees its slot."""
        orchestrator, summary = await self._queue_behind_busy_pair(
            temp_db, clock, aggregator, executor, QueueFlushMode.PROCESS
        )
        assert orchestrator.allocator.queue_size > 0

        await orchestrator.stop()

        assert orchestrator.allocator.queue_size == 0
        assert orchestrator.allocator.get_stats()["dropped"] == 0
        assert len(executor.submitted) == summary["validated"]
        assert orchestrator.engine.ledger.get_totals()["trades"] == summary["validated"]

    @pytest.mark.asyncio
    async def test_drain_timeout_abandons_without_resubmitting(
        self, temp_db, clock, aggregator
    ):
        """Test an unresolved commit is awaited once, then cancelled on stop."""
        executor = GatedExecutor()
        orchestrator = Orchestrator(
            make_config(temp_db),
            OrchestratorConfig(use_stream=False, commit_drain_timeout=0.05),
            executor=executor, aggregator=aggregator, clock=clock,
        )
        await orchestrator.initialize()
        await orchestrator.tick()

        aggregator.prices["HYPE/USDC"] = Decimal("97")
        summary = await orchestrator.tick()
        assert summary["scheduled"] == 2

        await orchestrator.stop()

        assert executor.calls == 2
        assert executor.submitted == []
        assert orchestrator.state == OrchestratorState.STOPPED
        assert orchestrator.engine.ledger.get_totals()["trades"] == 0
        assert not any(level.is_active for level in orchestrator.engine.levels("HYPE_USDC"))

        # Releasing the gate after shutdown submits nothing new
        executor.gate.set()
        await asyncio.sleep(0)
        assert executor.calls == 2
        assert executor.submitted == []
