"""
Tests for Profitability Validator module.

Tests:
- Cost model (pool fee, gas, size-dependent slippage)
- Passing trigger
- USD floor rejection
- Percentage floor rejection
- Both floors must hold
"""

import pytest
from decimal import Decimal

from src.grid import (
    GridLevel,
    OrderSide,
    ProfitabilityValidator,
    TradeCosts,
)
from config.settings import ExecutionConfig, GridConfig


def make_level(quantity: str, price: str = "100") -> GridLevel:
    return GridLevel(
        id="HYPE_USDC-2-abcd1234",
        index=2,
        price=Decimal(price),
        side=OrderSide.BUY,
        quantity=Decimal(quantity),
        usd_value=Decimal(quantity) * Decimal(price),
        pair_id="HYPE_USDC",
    )


@pytest.fixture
def execution_config():
    return ExecutionConfig(
        gas_cost_native=0.00002,
        large_trade_usd=100.0,
        large_trade_slippage=0.001,
        small_trade_slippage=0.0005,
    )


class TestCostModel:
    """Tests for swap cost estimation."""

    def test_large_trade_costs(self, execution_config):
        """Test $200 swap at 0.3% fee with gas token at $45."""
        validator = ProfitabilityValidator(GridConfig(), execution_config)
        costs = validator.estimate_costs(Decimal("200"), 3000, Decimal("45"))

        assert costs.pool_fee == Decimal("0.6")
        assert costs.gas_cost == Decimal("0.00002") * Decimal("45")
        assert costs.slippage == Decimal("0.2")
        assert costs.total == costs.pool_fee + costs.gas_cost + costs.slippage

    def test_small_trade_slippage(self, execution_config):
        """Test swaps at or below the threshold use the small slippage rate."""
        validator = ProfitabilityValidator(GridConfig(), execution_config)

        assert validator.estimate_costs(Decimal("100"), 500, Decimal("45")).slippage == Decimal("0.05")
        assert validator.estimate_costs(Decimal("50"), 500, Decimal("45")).slippage == Decimal("0.025")

    def test_costs_serialize(self):
        """Test cost breakdown serializes as strings."""
        costs = TradeCosts(Decimal("0.6"), Decimal("0.0009"), Decimal("0.2"))

        assert costs.to_dict()["pool_fee"] == "0.6"


class TestValidate:
    """Tests for profit floor checks."""

    def test_profitable_trigger_passes(self, execution_config):
        """Test $200 position at 1.2% margin clears default floors."""
        validator = ProfitabilityValidator(GridConfig(), execution_config)
        result = validator.validate(
            make_level("2"), Decimal("100"), 0.012, Decimal("1"), Decimal("45"), 3000
        )

        assert result.passed is True
        assert result.failed_floor is None
        assert result.position_usd == Decimal("200")
        assert result.expected_profit == Decimal("2.400")
        assert float(result.net_profit) == pytest.approx(2.4 - 0.8009)
        assert result.reason == "profitable"

    def test_usd_floor_rejects(self, execution_config):
        """Test net below min_profit_usd rejects."""
        validator = ProfitabilityValidator(GridConfig(min_profit_usd=2.0), execution_config)
        result = validator.validate(
            make_level("2"), Decimal("100"), 0.012, Decimal("1"), Decimal("45"), 3000
        )

        assert result.passed is False
        assert result.failed_floor == "min_profit_usd"
        assert "min_profit_usd" in result.reason

    def test_percentage_floor_rejects(self, execution_config):
        """Test net percent below min_profit_percentage rejects."""
        grid = GridConfig(min_profit_usd=0.01, min_profit_percentage=0.005)
        validator = ProfitabilityValidator(grid, execution_config)
        result = validator.validate(
            make_level("0.5"), Decimal("100"), 0.008, Decimal("1"), Decimal("45"), 3000
        )

        assert result.passed is False
        assert result.failed_floor == "min_profit_percentage"
        assert result.net_percent == pytest.approx(0.2241 / 50, rel=1e-6)

    def test_usd_floor_applies_even_when_percent_passes(self, execution_config):
        """Test both floors must hold."""
        grid = GridConfig(min_profit_usd=0.05, min_profit_percentage=0.0015)
        validator = ProfitabilityValidator(grid, execution_config)
        result = validator.validate(
            make_level("0.05"), Decimal("100"), 0.012, Decimal("1"), Decimal("45"), 3000
        )

        assert result.net_percent > 0.0015
        assert result.passed is False
        assert result.failed_floor == "min_profit_usd"

    def test_quote_usd_scales_position(self, execution_config):
        """Test position value converts through the quote token price."""
        validator = ProfitabilityValidator(GridConfig(), execution_config)
        level = make_level("1000", price="0.0005")
        result = validator.validate(
            level, Decimal("0.0005"), 0.012, Decimal("100000"), Decimal("45"), 3000
        )

        assert result.position_usd == Decimal("50000.0000")
        assert result.passed is True

    def test_stats_count_rejections(self, execution_config):
        """Test checks and rejections are counted."""
        validator = ProfitabilityValidator(GridConfig(min_profit_usd=100.0), execution_config)
        validator.validate(make_level("2"), Decimal("100"), 0.012, Decimal("1"), Decimal("45"), 3000)

        stats = validator.get_stats()
        assert stats["checks"] == 1
        assert stats["rejections"] == 1
        assert stats["rejection_rate"] == 1.0
