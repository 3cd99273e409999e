"""
Grid Trading Module.

Provides the grid ladder and its trade lifecycle:
- GridPlanner: Geometric level prices, sizing modes, budget normalization
- AdaptiveController: Volatility regimes and range replanning
- ProfitabilityValidator: Cost model and profit floors before commit
- TradeCycleEngine: Trigger detection, commit with timeout, circuit breaker
- TradeLedger: FIFO pairing of fills into closed cycles

Usage:
    from src.grid import (
        GridPlanner,
        AdaptiveController,
        TradeCycleEngine,
    )

    planner = GridPlanner(grid_config)
    controller = AdaptiveController(pair, grid_config, adaptive_config, planner)
    engine = TradeCycleEngine(executor, planner, config=execution_config, pairs=[pair])

    # Plan around the current price
    controller.record_price(price)
    decision = controller.should_replan(price)
    if decision.should_replan:
        result = controller.replan(price, investment, quote_usd,
                                   engine.active_levels(pair.pair_id), decision.reason)
        engine.load_levels(pair.pair_id, result.plan.levels, result.preserved)

    # React to crossings
    for level in engine.detect_triggers(pair.pair_id, price):
        check = engine.validate_trigger(level, price, controller.current_margin,
                                        quote_usd, gas_usd, pair.pool_fee)
        if check.passed:
            outcome = await engine.commit(level, pair, price, quote_usd, check.costs)
"""

from .grid_planner import (
    OrderSide,
    LevelStatus,
    GridLevel,
    GridStatistics,
    GridPlan,
    GridPlanner,
    to_base_units,
)
from .adaptive_controller import (
    VolatilityRegime,
    ReplanReason,
    RegimeParameters,
    ReplanDecision,
    ReplanResult,
    AdaptiveController,
)
from .profitability import (
    TradeCosts,
    ZERO_COSTS,
    ProfitabilityResult,
    ProfitabilityValidator,
)
from .trade_ledger import (
    TradeExecution,
    TradeCycle,
    PairProfitSummary,
    TradeLedger,
)
from .trade_cycle import (
    CommitOutcome,
    TradeCycleEngine,
)

__all__ = [
    # Planner
    "OrderSide",
    "LevelStatus",
    "GridLevel",
    "GridStatistics",
    "GridPlan",
    "GridPlanner",
    "to_base_units",
    # Adaptive
    "VolatilityRegime",
    "ReplanReason",
    "RegimeParameters",
    "ReplanDecision",
    "ReplanResult",
    "AdaptiveController",
    # Profitability
    "TradeCosts",
    "ZERO_COSTS",
    "ProfitabilityResult",
    "ProfitabilityValidator",
    # Ledger
    "TradeExecution",
    "TradeCycle",
    "PairProfitSummary",
    "TradeLedger",
    # Engine
    "CommitOutcome",
    "TradeCycleEngine",
]
