"""
Profitability validation before commit.

Cost model per swap:
- Pool fee: position * pool_fee / 1e6
- Gas: gas_cost_native * gas token USD price (from the price aggregator)
- Slippage: position * large_trade_slippage above large_trade_usd,
  otherwise position * small_trade_slippage

A trigger passes only when net profit (position * margin - costs) clears
both the absolute USD floor and the percentage-of-position floor.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any

from config.settings import GridConfig, ExecutionConfig

from .grid_planner import GridLevel

logger = logging.getLogger(__name__)

FLOOR_USD = "min_profit_usd"
FLOOR_PERCENT = "min_profit_percentage"


@dataclass(frozen=True)
class TradeCosts:
    """Cost breakdown for one swap, USD."""
    pool_fee: Decimal
    gas_cost: Decimal
    slippage: Decimal

    @property
    def total(self) -> Decimal:
        return self.pool_fee + self.gas_cost + self.slippage

    def to_dict(self) -> Dict[str, str]:
        return {
            "pool_fee": str(self.pool_fee),
            "gas_cost": str(self.gas_cost),
            "slippage": str(self.slippage),
            "total": str(self.total),
        }


ZERO_COSTS = TradeCosts(Decimal("0"), Decimal("0"), Decimal("0"))


@dataclass
class ProfitabilityResult:
    """Outcome of a profitability check."""
    level_id: str
    position_usd: Decimal
    margin: float
    expected_profit: Decimal
    costs: TradeCosts
    net_profit: Decimal
    net_percent: float
    passed: bool
    failed_floor: Optional[str] = None

    @property
    def reason(self) -> str:
        if self.passed:
            return "profitable"
        return (
            f"net ${self.net_profit:.4f} ({self.net_percent:.3%}) below {self.failed_floor}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level_id": self.level_id,
            "position_usd": str(self.position_usd),
            "margin": self.margin,
            "expected_profit": str(self.expected_profit),
            "costs": self.costs.to_dict(),
            "net_profit": str(self.net_profit),
            "net_percent": self.net_percent,
            "passed": self.passed,
            "failed_floor": self.failed_floor,
        }


class ProfitabilityValidator:
    """
    Checks a triggered level against the cost model and profit floors.

    Example:
        validator = ProfitabilityValidator(grid_config, execution_config)
        result = validator.validate(
            level, current_price, margin=0.012,
            quote_usd=Decimal("97000"), gas_token_usd=Decimal("45"), pool_fee=3000,
        )
        if not result.passed:
            logger.info(result.reason)
    """

    def __init__(
        self,
        grid_config: Optional[GridConfig] = None,
        execution_config: Optional[ExecutionConfig] = None,
    ):
        self._grid = grid_config or GridConfig()
        self._exec = execution_config or ExecutionConfig()

        self._checks = 0
        self._rejections = 0

    def estimate_costs(
        self,
        position_usd: Decimal,
        pool_fee: int,
        gas_token_usd: Decimal,
    ) -> TradeCosts:
        """Cost of one swap of position_usd."""
        pool_fee_usd = position_usd * Decimal(pool_fee) / Decimal(1_000_000)
        gas_usd = Decimal(str(self._exec.gas_cost_native)) * gas_token_usd

        if position_usd > Decimal(str(self._exec.large_trade_usd)):
            slippage_rate = Decimal(str(self._exec.large_trade_slippage))
        else:
            slippage_rate = Decimal(str(self._exec.small_trade_slippage))

        return TradeCosts(
            pool_fee=pool_fee_usd,
            gas_cost=gas_usd,
            slippage=position_usd * slippage_rate,
        )

    def validate(
        self,
        level: GridLevel,
        current_price: Decimal,
        margin: float,
        quote_usd: Decimal,
        gas_token_usd: Decimal,
        pool_fee: int,
    ) -> ProfitabilityResult:
        """
        Validate a trigger.

        Args:
            level: Triggered level
            current_price: Pair price at trigger
            margin: Current profit margin (fraction)
            quote_usd: USD value of one quote token
            gas_token_usd: USD price of the gas token
            pool_fee: Pool fee tier (hundredths of a bip)

        Returns:
            ProfitabilityResult (passed=False names the failed floor)
        """
        self._checks += 1

        position_usd = level.quantity * current_price * quote_usd
        expected = position_usd * Decimal(str(margin))
        costs = self.estimate_costs(position_usd, pool_fee, gas_token_usd)
        net = expected - costs.total
        net_percent = float(net / position_usd) if position_usd > 0 else 0.0

        failed_floor = None
        if net < Decimal(str(self._grid.min_profit_usd)):
            failed_floor = FLOOR_USD
        elif net_percent < self._grid.min_profit_percentage:
            failed_floor = FLOOR_PERCENT

        result = ProfitabilityResult(
            level_id=level.id,
            position_usd=position_usd,
            margin=margin,
            expected_profit=expected,
            costs=costs,
            net_profit=net,
            net_percent=net_percent,
            passed=failed_floor is None,
            failed_floor=failed_floor,
        )

        if not result.passed:
            self._rejections += 1

        logger.debug(
            f"Profitability {level.id}: position ${position_usd:.2f}, "
            f"expected ${expected:.4f}, costs ${costs.total:.4f}, "
            f"net ${net:.4f} ({net_percent:.3%}) -> {'pass' if result.passed else 'reject'}"
        )
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "checks": self._checks,
            "rejections": self._rejections,
            "rejection_rate": self._rejections / self._checks if self._checks else 0.0,
        }
