"""
Adaptive Controller for volatility tracking and range replanning.

Monitors:
- Rolling price window and return volatility
- Volatility regime (LOW / NORMAL / HIGH) mapped to grid count and margin
- Price position relative to the current range

Replan triggers (all subject to a minimum interval between replans):
- OUT_OF_RANGE: price at or beyond a range bound
- FORCED_DEVIATION: price moved past the forced-update deviation
- SIGNIFICANT_MOVE: price moved past the significant-movement threshold
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Callable, Deque, List, Optional, Dict, Any

import numpy as np

from config.settings import AdaptiveConfig, GridConfig, PairConfig

from .grid_planner import GridLevel, GridPlan, GridPlanner

logger = logging.getLogger(__name__)


class VolatilityRegime(Enum):
    """Market volatility regimes."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class ReplanReason(Enum):
    """Reasons for replanning the grid."""
    INITIAL = auto()  # No plan yet
    OUT_OF_RANGE = auto()  # Price left the range
    SIGNIFICANT_MOVE = auto()  # Moved past range_update_threshold
    FORCED_DEVIATION = auto()  # Moved past max_range_deviation


@dataclass
class RegimeParameters:
    """Planner parameters for a regime."""
    regime: VolatilityRegime
    grid_count: int
    profit_margin: float


@dataclass
class ReplanDecision:
    """Decision from the controller."""

    should_replan: bool
    reason: Optional[ReplanReason] = None
    deviation: float = 0.0  # Fractional distance from range center
    details: str = ""

    def __str__(self) -> str:
        if not self.should_replan:
            return f"ReplanDecision(no replan: {self.details})"
        return (
            f"ReplanDecision(REPLAN: reason={self.reason.name}, "
            f"deviation={self.deviation:.2%})"
        )


@dataclass
class ReplanResult:
    """New plan plus the in-flight levels that survive it."""
    plan: GridPlan
    preserved: List[GridLevel] = field(default_factory=list)
    dropped: List[GridLevel] = field(default_factory=list)
    parameters: Optional[RegimeParameters] = None


class AdaptiveController:
    """
    Volatility-aware range manager for one pair.

    Example:
        controller = AdaptiveController(pair, grid_config, adaptive_config)

        controller.record_price(price)
        decision = controller.should_replan(price)
        if decision.should_replan:
            result = controller.replan(price, investment, quote_usd, active_levels)
            engine.load_levels(pair.pair_id, result.plan.levels, result.preserved)
    """

    def __init__(
        self,
        pair: PairConfig,
        grid_config: Optional[GridConfig] = None,
        config: Optional[AdaptiveConfig] = None,
        planner: Optional[GridPlanner] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._pair = pair
        self._grid_config = grid_config or GridConfig()
        self._config = config or AdaptiveConfig()
        self._planner = planner or GridPlanner(self._grid_config)
        self._clock = clock

        self._prices: Deque[float] = deque(maxlen=self._config.volatility_window)
        self._volatility: Optional[float] = None
        self._volatility_history: Deque[float] = deque(
            maxlen=self._config.volatility_history_size
        )

        # Current range
        self._plan: Optional[GridPlan] = None
        self._center: Optional[Decimal] = None
        self._lower: Optional[Decimal] = None
        self._upper: Optional[Decimal] = None
        self._last_replan: Optional[float] = None
        self._replan_count = 0
        self._replans_by_reason: Dict[str, int] = {}

    # === Volatility ===

    def record_price(self, price: Decimal) -> Optional[float]:
        """
        Add a price to the rolling window and refresh volatility.

        Returns:
            Current volatility, or None until enough samples exist
        """
        self._prices.append(float(price))

        if len(self._prices) >= self._config.min_volatility_samples:
            self._volatility = self._compute_volatility()
            self._volatility_history.append(self._volatility)
            logger.debug(f"{self._pair.pair_id} volatility: {self._volatility:.4%}")

        return self._volatility

    def _compute_volatility(self) -> float:
        """Population std of consecutive simple returns."""
        prices = np.array(self._prices, dtype=float)
        previous = prices[:-1]
        mask = previous != 0
        returns = (prices[1:][mask] - previous[mask]) / previous[mask]
        if returns.size == 0:
            return 0.0
        return float(np.std(returns))

    @property
    def volatility(self) -> Optional[float]:
        return self._volatility

    @property
    def volatility_history(self) -> List[float]:
        return list(self._volatility_history)

    @property
    def regime(self) -> VolatilityRegime:
        """Regime from current volatility; NORMAL until volatility is known."""
        if self._volatility is None:
            return VolatilityRegime.NORMAL
        if self._volatility > self._config.high_volatility_threshold:
            return VolatilityRegime.HIGH
        if self._volatility < self._config.low_volatility_threshold:
            return VolatilityRegime.LOW
        return VolatilityRegime.NORMAL

    def parameters_for_regime(self, regime: VolatilityRegime) -> RegimeParameters:
        if regime == VolatilityRegime.HIGH:
            # Fewer levels, lower margin
            return RegimeParameters(
                regime, self._config.min_grid_count, self._grid_config.min_profit_margin
            )
        if regime == VolatilityRegime.LOW:
            # More levels, higher margin
            return RegimeParameters(
                regime, self._config.max_grid_count, self._grid_config.max_profit_margin
            )
        return RegimeParameters(
            regime, self._pair.grid_count, self._grid_config.base_profit_margin
        )

    def current_parameters(self) -> RegimeParameters:
        if not self._config.enabled:
            return self.parameters_for_regime(VolatilityRegime.NORMAL)
        return self.parameters_for_regime(self.regime)

    @property
    def current_margin(self) -> float:
        return self.current_parameters().profit_margin

    # === Range ===

    @property
    def plan(self) -> Optional[GridPlan]:
        return self._plan

    def should_replan(self, price: Decimal) -> ReplanDecision:
        """
        Decide whether the range must move.

        Args:
            price: Current pair price

        Returns:
            ReplanDecision with the first matching reason
        """
        if self._plan is None:
            return ReplanDecision(True, ReplanReason.INITIAL, 0.0, "no plan yet")

        deviation = float(abs(price - self._center) / self._center)

        if self._last_replan is not None:
            elapsed = self._clock() - self._last_replan
            if elapsed < self._config.min_update_interval:
                return ReplanDecision(
                    False,
                    deviation=deviation,
                    details=f"cooldown, {self._config.min_update_interval - elapsed:.0f}s left",
                )

        if price <= self._lower or price >= self._upper:
            return ReplanDecision(
                True,
                ReplanReason.OUT_OF_RANGE,
                deviation,
                f"price {price:.8g} outside [{self._lower:.8g}, {self._upper:.8g}]",
            )

        if deviation >= self._config.max_range_deviation:
            return ReplanDecision(
                True,
                ReplanReason.FORCED_DEVIATION,
                deviation,
                f"deviation {deviation:.2%} >= {self._config.max_range_deviation:.2%}",
            )

        if deviation >= self._config.range_update_threshold:
            return ReplanDecision(
                True,
                ReplanReason.SIGNIFICANT_MOVE,
                deviation,
                f"deviation {deviation:.2%} >= {self._config.range_update_threshold:.2%}",
            )

        return ReplanDecision(False, deviation=deviation, details="within range")

    def replan(
        self,
        price: Decimal,
        investment: Decimal,
        quote_usd: Decimal = Decimal("1"),
        active_levels: Optional[List[GridLevel]] = None,
        reason: Optional[ReplanReason] = None,
    ) -> ReplanResult:
        """
        Build a new plan around price.

        Active (committed, unfilled) levels inside the new range are kept;
        pending levels are replaced by the new plan.
        """
        params = self.current_parameters()
        plan = self._planner.plan(
            pair=self._pair,
            current_price=price,
            range_percent=self._pair.range_percent,
            count=params.grid_count,
            investment=investment,
            quote_usd=quote_usd,
            margin=params.profit_margin,
        )

        preserved, dropped = [], []
        for level in active_levels or []:
            (preserved if plan.contains(level.price) else dropped).append(level)

        old_center = self._center
        self._plan = plan
        self._center = price
        self._lower = plan.lower_bound
        self._upper = plan.upper_bound
        self._last_replan = self._clock()
        self._replan_count += 1

        reason_name = (reason or ReplanReason.INITIAL).name
        self._replans_by_reason[reason_name] = self._replans_by_reason.get(reason_name, 0) + 1

        logger.info(
            f"Replanned {self._pair.pair_id} ({reason_name}, {params.regime.value} volatility): "
            f"center {old_center} -> {price:.8g}, {params.grid_count} levels, "
            f"margin {params.profit_margin:.2%}, preserved {len(preserved)} active levels"
        )

        return ReplanResult(plan=plan, preserved=preserved, dropped=dropped, parameters=params)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pair_id": self._pair.pair_id,
            "volatility": self._volatility,
            "regime": self.regime.value,
            "samples": len(self._prices),
            "volatility_history": self.volatility_history[-20:],
            "center": str(self._center) if self._center is not None else None,
            "lower": str(self._lower) if self._lower is not None else None,
            "upper": str(self._upper) if self._upper is not None else None,
            "last_replan": self._last_replan,
            "replan_count": self._replan_count,
            "replans_by_reason": dict(self._replans_by_reason),
        }
