"""
Grid Planner for computing grid levels and position sizes.

Calculates the ladder of levels around a reference price:
- Geometric price distribution (constant relative spacing)
- Arithmetic, geometric or hybrid position sizing by distance from mid
- Budget normalization so level capital sums to the pair's investment
- Exact swap input and slippage-bounded minimum output per level

Price convention: a pair price is units of quote token per one base token.
A BUY spends quote to receive base; a SELL spends base to receive quote.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import List, Optional, Dict, Any

import numpy as np

from config.settings import GridConfig, PairConfig, SizingMode

logger = logging.getLogger(__name__)


class OrderSide(Enum):
    """Swap direction relative to the base token."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self == OrderSide.BUY else OrderSide.BUY


class LevelStatus(Enum):
    """Lifecycle of a grid level."""
    PENDING = "pending"        # Waiting for a crossing
    TRIGGERED = "triggered"    # Price crossed this tick
    VALIDATED = "validated"    # Passed profitability floors
    COMMITTED = "committed"    # Handed to the execution collaborator
    FILLED = "filled"          # Swap confirmed
    REJECTED = "rejected"      # Not profitable, removed
    FAILED = "failed"          # Commit failed, may retry
    DISABLED = "disabled"      # Circuit breaker tripped, removed


def to_base_units(amount: Decimal, decimals: int) -> int:
    """
    Convert a human token amount to integer smallest units (rounded down).

    Example:
        to_base_units(Decimal("1.5"), 18) == 1500000000000000000
    """
    scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


@dataclass
class GridLevel:
    """Represents a single grid level."""

    id: str
    index: int  # 0 = lowest price in the plan
    price: Decimal  # Quote per base
    side: OrderSide
    quantity: Decimal  # Base tokens
    usd_value: Decimal  # Position size in USD
    pair_id: str
    amount_in: int = 0  # Smallest units of the input token
    min_amount_out: int = 0  # Smallest units of the output token
    is_active: bool = False  # Committed and awaiting confirmation
    priority: float = 0.0
    profit_target: Optional[Decimal] = None
    created_at: float = field(default_factory=time.time)
    status: LevelStatus = LevelStatus.PENDING
    failure_count: int = 0

    def __post_init__(self):
        """Validate grid level."""
        if self.price <= 0:
            raise ValueError(f"Price must be positive, got {self.price}")
        if self.quantity < 0:
            raise ValueError(f"Quantity cannot be negative, got {self.quantity}")

    def side_for(self, current_price: Decimal) -> OrderSide:
        """Side implied by the current price: below it buys, at or above it sells."""
        return OrderSide.BUY if self.price < current_price else OrderSide.SELL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "index": self.index,
            "price": str(self.price),
            "side": self.side.value,
            "quantity": str(self.quantity),
            "usd_value": str(self.usd_value),
            "pair_id": self.pair_id,
            "amount_in": self.amount_in,
            "min_amount_out": self.min_amount_out,
            "is_active": self.is_active,
            "priority": self.priority,
            "profit_target": str(self.profit_target) if self.profit_target is not None else None,
            "created_at": self.created_at,
            "status": self.status.value,
            "failure_count": self.failure_count,
        }


@dataclass
class GridStatistics:
    """Capital distribution across a plan."""

    total_capital: Decimal
    average_position: Decimal
    largest_position: Decimal
    smallest_position: Decimal
    position_std: float
    capital_efficiency: float  # total / investment
    buy_levels: int
    sell_levels: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_capital": str(self.total_capital),
            "average_position": str(self.average_position),
            "largest_position": str(self.largest_position),
            "smallest_position": str(self.smallest_position),
            "position_std": self.position_std,
            "capital_efficiency": self.capital_efficiency,
            "buy_levels": self.buy_levels,
            "sell_levels": self.sell_levels,
        }


@dataclass
class GridPlan:
    """Complete output of one planning pass."""

    pair_id: str
    levels: List[GridLevel]
    center_price: Decimal
    lower_bound: Decimal
    upper_bound: Decimal
    price_ratio: Decimal
    range_percent: float
    sizing_mode: SizingMode
    investment: Decimal
    statistics: GridStatistics
    created_at: float = field(default_factory=time.time)

    def contains(self, price: Decimal) -> bool:
        return self.lower_bound <= price <= self.upper_bound

    def get_levels_by_side(self, side: OrderSide) -> List[GridLevel]:
        return [level for level in self.levels if level.side == side]


class GridPlanner:
    """
    Calculates grid levels and position sizes.

    Example:
        planner = GridPlanner(grid_config)
        plan = planner.plan(
            pair=pair_config,
            current_price=Decimal("0.00045"),
            range_percent=5.0,
            count=10,
            investment=Decimal("500"),
            quote_usd=Decimal("97000"),
        )
        for level in plan.levels:
            print(level.side, level.price, level.usd_value)
    """

    def __init__(self, config: Optional[GridConfig] = None):
        self._config = config or GridConfig()

    # === Prices ===

    def compute_prices(self, lower: Decimal, upper: Decimal, count: int) -> List[Decimal]:
        """
        Geometric distribution: price_i = lower * ratio^i with
        ratio = (upper / lower)^(1 / (count - 1)).

        Raises:
            ValueError: If bounds or count are invalid
        """
        if count < 2:
            raise ValueError(f"Need at least 2 levels, got {count}")
        if lower <= 0 or upper <= lower:
            raise ValueError(f"Invalid price bounds [{lower}, {upper}]")

        ratio = self.price_ratio(lower, upper, count)
        prices = [lower * ratio ** i for i in range(count)]
        prices[-1] = upper
        return prices

    @staticmethod
    def price_ratio(lower: Decimal, upper: Decimal, count: int) -> Decimal:
        return (upper / lower) ** (Decimal(1) / Decimal(count - 1))

    # === Sizing ===

    def compute_multipliers(
        self,
        prices: List[Decimal],
        current_price: Decimal,
        mode: SizingMode,
    ) -> List[float]:
        """Theoretical size multiplier per level from its distance to mid."""
        cfg = self._config
        multipliers = []

        for price in prices:
            distance = float(abs(price - current_price) / current_price)

            if mode == SizingMode.ARITHMETIC:
                multiplier = 1 + distance * cfg.arithmetic_factor
            elif mode == SizingMode.GEOMETRIC:
                multiplier = cfg.geometric_ratio ** (distance * cfg.geometric_scaling_factor)
            else:
                linear = 1 + distance * cfg.hybrid_linear_factor
                exponential = cfg.hybrid_exponential_ratio ** (
                    distance * cfg.hybrid_exponential_factor
                )
                multiplier = min(linear * exponential, cfg.hybrid_max_multiplier)

            multipliers.append(multiplier)

        return multipliers

    def allocate(self, multipliers: List[float], investment: Decimal) -> List[Decimal]:
        """
        Budget normalization: scale multipliers so they sum to the level count,
        then size each level at (investment / count) * scaled multiplier.
        """
        count = len(multipliers)
        raw = [Decimal(repr(m)) for m in multipliers]
        total = sum(raw)
        if total <= 0:
            raise ValueError("Multipliers must sum to a positive value")

        base_size = investment / count
        scaling = Decimal(count) / total
        return [base_size * m * scaling for m in raw]

    # === Planning ===

    def plan_levels(
        self,
        current_price: Decimal,
        range_percent: float,
        count: int,
        sizing_mode: SizingMode,
        investment: Decimal,
        pair: Optional[PairConfig] = None,
        quote_usd: Decimal = Decimal("1"),
        margin: Optional[float] = None,
    ) -> List[GridLevel]:
        """
        Compute the ladder for one pair.

        Args:
            current_price: Reference price (quote per base)
            range_percent: Half-width of the grid in percent (5.0 = +/- 5%)
            count: Number of levels
            sizing_mode: Position sizing curve
            investment: USD budget for this pair
            pair: Pair details (decimals, fee); defaults to PairConfig()
            quote_usd: USD value of one quote token
            margin: Profit margin for profit targets; defaults to the base margin

        Returns:
            Levels ordered by ascending price

        Raises:
            ValueError: On invalid price, range, count or investment
        """
        if current_price <= 0:
            raise ValueError(f"Current price must be positive, got {current_price}")
        if not 0 < range_percent < 100:
            raise ValueError(f"Range percent must be in (0, 100), got {range_percent}")
        if investment <= 0:
            raise ValueError(f"Investment must be positive, got {investment}")
        if quote_usd <= 0:
            raise ValueError(f"Quote USD price must be positive, got {quote_usd}")

        pair = pair or PairConfig()
        margin_d = Decimal(str(margin if margin is not None else self._config.base_profit_margin))
        slippage = Decimal(str(self._config.slippage_tolerance))

        fraction = Decimal(str(range_percent)) / 100
        lower = current_price * (1 - fraction)
        upper = current_price * (1 + fraction)

        prices = self.compute_prices(lower, upper, count)
        sizes = self.allocate(self.compute_multipliers(prices, current_price, sizing_mode), investment)

        levels = []
        for i, (price, usd_value) in enumerate(zip(prices, sizes)):
            side = OrderSide.BUY if price < current_price else OrderSide.SELL
            quantity = usd_value / (price * quote_usd)
            level = GridLevel(
                id=self._new_id(pair.pair_id, i),
                index=i,
                price=price,
                side=side,
                quantity=quantity,
                usd_value=usd_value,
                pair_id=pair.pair_id,
                profit_target=(
                    price * (1 + margin_d) if side == OrderSide.BUY else price * (1 - margin_d)
                ),
            )
            self.apply_swap_amounts(level, pair, slippage)
            levels.append(level)

        return levels

    def plan(
        self,
        pair: PairConfig,
        current_price: Decimal,
        range_percent: float,
        count: int,
        investment: Decimal,
        quote_usd: Decimal = Decimal("1"),
        sizing_mode: Optional[SizingMode] = None,
        margin: Optional[float] = None,
    ) -> GridPlan:
        """Plan levels and wrap them with bounds and statistics."""
        mode = sizing_mode or self._config.sizing_mode
        levels = self.plan_levels(
            current_price=current_price,
            range_percent=range_percent,
            count=count,
            sizing_mode=mode,
            investment=investment,
            pair=pair,
            quote_usd=quote_usd,
            margin=margin,
        )

        plan = GridPlan(
            pair_id=pair.pair_id,
            levels=levels,
            center_price=current_price,
            lower_bound=levels[0].price,
            upper_bound=levels[-1].price,
            price_ratio=self.price_ratio(levels[0].price, levels[-1].price, count),
            range_percent=range_percent,
            sizing_mode=mode,
            investment=investment,
            statistics=self.compute_statistics(levels, investment),
        )

        logger.info(
            f"Planned {count} levels for {pair.pair_id}: "
            f"[{plan.lower_bound:.8g}, {plan.upper_bound:.8g}] around {current_price:.8g}, "
            f"{len(plan.get_levels_by_side(OrderSide.BUY))} buys / "
            f"{len(plan.get_levels_by_side(OrderSide.SELL))} sells, "
            f"${plan.statistics.total_capital:.2f} allocated ({mode.value})"
        )
        return plan

    def compute_statistics(self, levels: List[GridLevel], investment: Decimal) -> GridStatistics:
        values = [level.usd_value for level in levels]
        total = sum(values, Decimal("0"))
        return GridStatistics(
            total_capital=total,
            average_position=total / len(values) if values else Decimal("0"),
            largest_position=max(values) if values else Decimal("0"),
            smallest_position=min(values) if values else Decimal("0"),
            position_std=float(np.std([float(v) for v in values])) if values else 0.0,
            capital_efficiency=float(total / investment) if investment > 0 else 0.0,
            buy_levels=sum(1 for level in levels if level.side == OrderSide.BUY),
            sell_levels=sum(1 for level in levels if level.side == OrderSide.SELL),
        )

    # === Opposite levels ===

    def opposite_level(
        self,
        filled: GridLevel,
        fill_price: Decimal,
        margin: float,
        pair: Optional[PairConfig] = None,
        quote_usd: Optional[Decimal] = None,
    ) -> GridLevel:
        """
        Level that closes a fill: a filled BUY becomes a SELL at
        fill * (1 + margin), a filled SELL becomes a BUY at fill * (1 - margin).
        Quantity is carried over.
        """
        pair = pair or PairConfig(pair_id=filled.pair_id)
        margin_d = Decimal(str(margin))
        side = filled.side.opposite

        if side == OrderSide.SELL:
            price = fill_price * (1 + margin_d)
        else:
            price = fill_price * (1 - margin_d)

        if quote_usd is not None:
            usd_value = filled.quantity * price * quote_usd
        else:
            usd_value = filled.usd_value * price / filled.price

        level = GridLevel(
            id=self._new_id(filled.pair_id, filled.index),
            index=filled.index,
            price=price,
            side=side,
            quantity=filled.quantity,
            usd_value=usd_value,
            pair_id=filled.pair_id,
            profit_target=fill_price,
        )
        self.apply_swap_amounts(level, pair, Decimal(str(self._config.slippage_tolerance)))
        return level

    # === Helpers ===

    def apply_swap_amounts(self, level: GridLevel, pair: PairConfig, slippage: Decimal) -> None:
        """Fill amount_in / min_amount_out in the tokens' smallest units."""
        if level.side == OrderSide.BUY:
            # Spend quote, receive base
            spend = level.quantity * level.price
            expected_out = level.quantity
            level.amount_in = to_base_units(spend, pair.quote_decimals)
            level.min_amount_out = to_base_units(expected_out * (1 - slippage), pair.base_decimals)
        else:
            # Spend base, receive quote
            spend = level.quantity
            expected_out = level.quantity * level.price
            level.amount_in = to_base_units(spend, pair.base_decimals)
            level.min_amount_out = to_base_units(expected_out * (1 - slippage), pair.quote_decimals)

    @staticmethod
    def _new_id(pair_id: str, index: int) -> str:
        return f"{pair_id}-{index}-{uuid.uuid4().hex[:8]}"
