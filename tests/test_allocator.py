"""
Tests for Allocator module.

Tests:
- Allocation split validation (sum to 100%, pair limits)
- Success-rate driven cooldowns
- Priority scoring and ordering
- Batching, requeue and queue flush
- Concurrency limit counted per pair
"""

import pytest
from decimal import Decimal

from src.core.allocator import Allocator, ScoredLevel
from src.grid import GridLevel, OrderSide, ProfitabilityResult, ZERO_COSTS
from config.settings import (
    AllocationConfig,
    ConfigurationError,
    ExecutionConfig,
    GridConfig,
    PairConfig,
    QueueFlushMode,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_pairs(*percents):
    return [
        PairConfig(pair_id=f"P{i}", allocation_percent=p, trading_interval=30.0)
        for i, p in enumerate(percents)
    ]


def make_scored(pair_id="P0", price="99", score=1.0, index=0):
    level = GridLevel(
        id=f"{pair_id}-{index}-x",
        index=index,
        price=Decimal(price),
        side=OrderSide.BUY,
        quantity=Decimal("1"),
        usd_value=Decimal(price),
        pair_id=pair_id,
    )
    check = ProfitabilityResult(
        level_id=level.id,
        position_usd=Decimal(price),
        margin=0.012,
        expected_profit=Decimal("1"),
        costs=ZERO_COSTS,
        net_profit=Decimal("1"),
        net_percent=0.01,
        passed=True,
    )
    return ScoredLevel(level, score, Decimal("100"), Decimal("1"), check, 0.012)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def allocator(clock):
    return Allocator(
        make_pairs(60.0, 40.0),
        GridConfig(total_investment=1000.0),
        ExecutionConfig(batch_size=2, max_concurrent_trades=1),
        clock=clock,
    )


class TestAllocationValidation:
    """Tests for capital split checks."""

    def test_split_to_usd(self, allocator):
        """Test percentages convert to USD budgets."""
        assert allocator.get_allocation("P0").allocation_usd == Decimal("600")
        assert allocator.get_allocation("P1").allocation_usd == Decimal("400")
        assert allocator.get_allocation("P0").position_size_usd == Decimal("60")

    @pytest.mark.parametrize("percents", [(50.0, 49.0), (60.0, 41.0)])
    def test_sum_must_be_100(self, percents):
        """Test splits off 100% are fatal."""
        with pytest.raises(ConfigurationError, match="sum to 100%"):
            Allocator(make_pairs(*percents), GridConfig())

    def test_disabled_pairs_ignored(self):
        """Test disabled pairs do not count toward the split."""
        pairs = make_pairs(100.0, 50.0)
        pairs[1].enabled = False

        validation = Allocator.validate_allocations(pairs, Decimal("500"))

        assert validation.is_valid
        assert [a.pair_id for a in validation.allocations] == ["P0"]
        assert any("one pair" in w for w in validation.warnings)

    def test_too_many_pairs(self):
        """Test more pairs than max_pairs is an error."""
        pairs = make_pairs(25.0, 25.0, 25.0, 25.0)
        validation = Allocator.validate_allocations(
            pairs, Decimal("500"), AllocationConfig(pairs=pairs, max_pairs=3)
        )

        assert not validation.is_valid
        assert "Too many pairs" in validation.errors[0]

    def test_small_allocation_warns(self):
        """Test a tiny share warns but stays valid."""
        validation = Allocator.validate_allocations(make_pairs(95.0, 5.0), Decimal("500"))

        assert validation.is_valid
        assert any("Small allocation" in w for w in validation.warnings)

    def test_no_pairs(self):
        validation = Allocator.validate_allocations([], Decimal("500"))

        assert validation.errors == ["No trading pairs enabled"]


class TestCooldowns:
    """Tests for dynamic cooldowns."""

    def test_trade_allowed_initially(self, allocator):
        assert allocator.can_trade("P0")
        assert allocator.cooldown_remaining("P0") == 0.0

    def test_success_halves_cooldown(self, allocator, clock):
        """Test success rate above 80% halves the interval."""
        allocator.record_trade_result("P0", success=True)

        assert allocator.effective_cooldown("P0") == 15.0
        assert not allocator.can_trade("P0")

        clock.now += 15.0
        assert allocator.can_trade("P0")

    def test_failure_doubles_cooldown(self, allocator, clock):
        """Test success rate below 50% doubles the interval."""
        allocator.record_trade_result("P0", success=False)

        assert allocator.effective_cooldown("P0") == 60.0
        clock.now += 30.0
        assert allocator.cooldown_remaining("P0") == pytest.approx(30.0)

    def test_middling_rate_uses_base(self, allocator):
        """Test a 60% success rate keeps the configured interval."""
        for success in (True, True, True, False, False):
            allocator.record_trade_result("P0", success)

        perf = allocator.get_performance("P0")
        assert perf.success_rate == pytest.approx(0.6)
        assert perf.current_cooldown == 30.0

    def test_pairs_independent(self, allocator):
        """Test a trade on one pair leaves the other free."""
        allocator.record_trade_result("P0", success=True)

        assert allocator.can_trade("P1")


class TestPriority:
    """Tests for priority scoring."""

    def test_score_formula(self, allocator):
        """Test profit * 10 + (1 - distance) * 50."""
        level = make_scored(price="99").level
        score = allocator.score_level(level, Decimal("100"), Decimal("2"))

        assert score == pytest.approx(2 * 10 + 0.99 * 50)
        assert level.priority == score

    def test_high_volatility_boost(self, allocator):
        level = make_scored(price="100").level
        score = allocator.score_level(level, Decimal("100"), Decimal("1"), high_volatility=True)

        assert score == pytest.approx((10 + 50) * 1.2)

    def test_prioritize_descending(self, allocator):
        low, high = make_scored(score=1.0, index=0), make_scored(score=5.0, index=1)

        assert allocator.prioritize([low, high]) == [high, low]

    def test_scoring_disabled_keeps_order(self):
        """Test disabled scoring returns 1.0 and keeps arrival order."""
        allocator = Allocator(
            make_pairs(100.0), GridConfig(), ExecutionConfig(priority_scoring=False)
        )
        low, high = make_scored(score=1.0, index=0), make_scored(score=5.0, index=1)

        assert allocator.score_level(low.level, Decimal("100"), Decimal("3")) == 1.0
        assert allocator.prioritize([low, high]) == [low, high]


class TestQueue:
    """Tests for batching and queue handling."""

    def test_make_batches(self, allocator):
        items = [make_scored(index=i) for i in range(5)]

        batches = allocator.make_batches(items)

        assert [len(b) for b in batches] == [2, 2, 1]

    def test_batching_disabled(self):
        allocator = Allocator(make_pairs(100.0), GridConfig(), ExecutionConfig(batch_orders=False))

        assert [len(b) for b in allocator.make_batches([make_scored(index=i) for i in range(3)])] == [1, 1, 1]

    def test_next_batch_and_requeue(self, allocator):
        """Test a requeued batch returns to the front in order."""
        items = [make_scored(score=float(10 - i), index=i) for i in range(3)]
        allocator.enqueue(items)

        batch = allocator.next_batch()
        assert batch == items[:2]
        assert allocator.queue_size == 1

        allocator.requeue_front(batch)
        assert allocator.next_batch() == items[:2]

    def test_enqueue_merges_across_ticks(self, allocator):
        """Test a later, higher-scored level is served before leftovers."""
        leftovers = [make_scored(score=5.0, index=0), make_scored(score=3.0, index=1)]
        allocator.enqueue(leftovers)

        fresh = make_scored("P1", score=8.0, index=2)
        tied = make_scored("P1", score=5.0, index=3)
        allocator.enqueue([tied, fresh])

        assert allocator.next_batch() == [fresh, leftovers[0]]
        assert allocator.next_batch() == [tied, leftovers[1]]

    def test_requeued_batch_reordered_by_next_enqueue(self, allocator):
        allocator.enqueue([make_scored(score=2.0, index=0), make_scored(score=1.0, index=1)])
        blocked = allocator.next_batch()
        allocator.requeue_front(blocked)

        urgent = make_scored("P1", score=9.0, index=2)
        allocator.enqueue([urgent])

        assert allocator.next_batch() == [urgent, blocked[0]]

    def test_enqueue_without_scoring_keeps_arrival_order(self):
        allocator = Allocator(
            make_pairs(100.0), GridConfig(), ExecutionConfig(priority_scoring=False, batch_size=3)
        )
        first = make_scored(score=1.0, index=0)
        second = make_scored(score=9.0, index=1)

        allocator.enqueue([first])
        allocator.enqueue([second])

        assert allocator.next_batch() == [first, second]

    def test_remove_queued(self, allocator):
        allocator.enqueue([make_scored("P0"), make_scored("P1"), make_scored("P0", index=1)])

        removed = allocator.remove_queued("P0")

        assert len(removed) == 2
        assert allocator.queue_size == 1

    def test_flush_drop(self, allocator):
        """Test DROP discards queued levels."""
        allocator.enqueue([make_scored(index=i) for i in range(3)])

        assert allocator.flush(QueueFlushMode.DROP) == []
        assert allocator.queue_size == 0
        assert allocator.get_stats()["dropped"] == 3

    def test_flush_process(self, allocator):
        """Test PROCESS hands back queued levels."""
        items = [make_scored(index=i) for i in range(2)]
        allocator.enqueue(items)

        assert allocator.flush(QueueFlushMode.PROCESS) == items
        assert allocator.queue_size == 0


class TestConcurrency:
    """Tests for the in-flight pair limit."""

    def test_limit_counts_pairs(self, allocator):
        """Test a second pair is blocked while the first is in flight."""
        assert allocator.try_acquire("P0")
        assert allocator.try_acquire("P0")
        assert not allocator.try_acquire("P1")
        assert allocator.active_pairs == ["P0"]

    def test_release_refcount(self, allocator):
        """Test the slot frees only after every commit releases."""
        allocator.try_acquire("P0")
        allocator.try_acquire("P0")

        allocator.release("P0")
        assert not allocator.try_acquire("P1")

        allocator.release("P0")
        assert allocator.try_acquire("P1")
