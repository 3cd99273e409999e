"""
Configuration dataclasses for the grid market-making engine.

All configuration parameters are defined here with sensible defaults.
Values can be overridden via config.yaml or environment variables.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Tuple
from enum import Enum


class ConfigurationError(ValueError):
    """Raised when configuration violates a startup invariant."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class SizingMode(Enum):
    """Position sizing strategies across grid levels."""
    ARITHMETIC = "arithmetic"
    GEOMETRIC = "geometric"
    HYBRID = "hybrid"


class QueueFlushMode(Enum):
    """What happens to queued batches when the engine stops."""
    DROP = "drop"
    PROCESS = "process"


# ===========================================
# PAIR CONFIGURATION
# ===========================================

@dataclass
class PairConfig:
    """A single trading pair on the liquidity pool."""

    pair_id: str = "WHYPE_UBTC"
    base_token: str = "WHYPE"
    quote_token: str = "UBTC"

    # On-chain token details
    base_address: str = "0x5555555555555555555555555555555555555555"
    quote_address: str = "0x9fdbda0a5e284c32744d2f17ee5c74b284993463"
    base_decimals: int = 18
    quote_decimals: int = 8

    allocation_percent: float = 100.0  # Share of total investment
    grid_count: int = 10
    range_percent: float = 5.0  # Grid spans +/- 5% from current price
    pool_fee: int = 3000  # Hundredths of a bip (3000 = 0.3%)
    trading_interval: float = 30.0  # Base cooldown between trades, seconds
    enabled: bool = True

    # Price aggregator keys
    price_asset: Optional[str] = None  # Defaults to BASE/QUOTE
    quote_usd_asset: Optional[str] = "BTC"  # None means quote is USD

    @property
    def price_key(self) -> str:
        """Aggregator key for this pair's price (quote per base)."""
        return self.price_asset or f"{self.base_token}/{self.quote_token}"

    @property
    def pool_fee_rate(self) -> float:
        """Pool fee as a fraction of notional."""
        return self.pool_fee / 1_000_000


@dataclass
class AllocationConfig:
    """Multi-pair capital split."""

    pairs: List[PairConfig] = field(default_factory=lambda: [PairConfig()])
    max_pairs: int = 3
    allocation_tolerance: float = 0.01  # Percentage points
    min_recommended_percent: float = 10.0

    @property
    def enabled_pairs(self) -> List[PairConfig]:
        return [p for p in self.pairs if p.enabled]


# ===========================================
# GRID CONFIGURATION
# ===========================================

@dataclass
class GridConfig:
    """Grid planning and profitability parameters."""

    total_investment: float = 500.0  # USD across all pairs
    grid_count: int = 10  # Default level count per pair
    range_percent: float = 5.0  # Default +/- range per pair
    sizing_mode: SizingMode = SizingMode.HYBRID

    # Sizing curve parameters
    arithmetic_factor: float = 10.0
    geometric_ratio: float = 1.15
    geometric_scaling_factor: float = 5.0
    hybrid_linear_factor: float = 5.0
    hybrid_exponential_ratio: float = 1.1
    hybrid_exponential_factor: float = 15.0
    hybrid_max_multiplier: float = 8.0

    # Execution bounds
    slippage_tolerance: float = 0.02  # 2% minimum-output haircut
    pool_fee: int = 3000

    # Profit margins (fractions)
    base_profit_margin: float = 0.012
    min_profit_margin: float = 0.008  # Used in high volatility
    max_profit_margin: float = 0.015  # Used in low volatility

    # Profitability floors
    min_profit_usd: float = 0.01
    min_profit_percentage: float = 0.0015  # 0.15% of position


@dataclass
class AdaptiveConfig:
    """Volatility tracking and range replanning."""

    enabled: bool = True
    volatility_window: int = 100  # Prices kept for volatility
    min_volatility_samples: int = 10
    volatility_history_size: int = 50

    high_volatility_threshold: float = 0.05
    low_volatility_threshold: float = 0.01

    min_grid_count: int = 6  # High volatility
    max_grid_count: int = 50  # Low volatility

    range_update_threshold: float = 0.03  # Move from center triggering replan
    max_range_deviation: float = 0.08  # Forced replan
    min_update_interval: float = 300.0  # Seconds between replans


# ===========================================
# PRICING CONFIGURATION
# ===========================================

@dataclass
class PricingConfig:
    """Price aggregation, caching and source health."""

    max_attempts: int = 5  # Per source, absorbs feed warm-up
    retry_delay: float = 0.2  # Seconds between attempts
    cache_ttl: float = 30.0
    failure_threshold: int = 3  # Consecutive failures before unavailable
    stream_max_age: float = 30.0  # Stream data older than this is ignored
    stream_url: str = "wss://api.hyperliquid.xyz/ws"
    gas_token_asset: str = "HYPE"

    # Per-asset sanity windows (USD unless the key is a pair)
    plausibility_ranges: Dict[str, Tuple[float, float]] = field(
        default_factory=lambda: {
            "BTC": (50_000.0, 200_000.0),
            "HYPE": (10.0, 200.0),
            "ETH": (1_000.0, 10_000.0),
        }
    )

    # Explicit USD pegs (e.g. {"USDT0": 1.0}); empty means no pegs
    pegged_assets: Dict[str, float] = field(default_factory=dict)

    # Token symbol -> symbol on the mid-price stream (wrapped tokens track native)
    stream_symbols: Dict[str, str] = field(
        default_factory=lambda: {"WHYPE": "HYPE", "UBTC": "BTC", "UETH": "ETH"}
    )

    # Chained quotes route through this token (empty disables chaining)
    intermediate_token: str = "0xB8CE59FC3717ada4C02eaDF9682A9e934F625ebb"
    intermediate_fee: int = 500


# ===========================================
# EXECUTION CONFIGURATION
# ===========================================

@dataclass
class ExecutionConfig:
    """Trade scheduling, batching and commit handling."""

    check_interval: float = 5.0  # Control loop tick, seconds
    batch_orders: bool = True
    batch_size: int = 3
    priority_scoring: bool = True
    max_concurrent_trades: int = 2
    order_timeout: float = 300.0  # Bounded wait for swap confirmation
    max_failures: int = 3  # Per-level circuit breaker
    price_update_threshold: float = 0.0001  # Ignore moves smaller than this

    # Cost model
    gas_cost_native: float = 0.00002  # Gas per swap in native token
    large_trade_usd: float = 100.0
    large_trade_slippage: float = 0.001
    small_trade_slippage: float = 0.0005

    flush_queue_on_stop: QueueFlushMode = QueueFlushMode.DROP
    dry_run: bool = True  # Default to simulated fills for safety
    recipient: str = ""
    router_address: str = ""  # Spender approved for swap inputs, empty skips allowance


# ===========================================
# RISK CONFIGURATION
# ===========================================

@dataclass
class RiskConfig:
    """Risk limits - breaches halt all new commits."""

    max_daily_loss_percent: float = 5.0  # Of total investment
    stop_loss_percent: float = 15.0  # Of total investment
    max_consecutive_losses: int = 5
    max_inventory_imbalance: float = 0.8  # Pause above this
    max_position_percent: float = 15.0  # Single level vs investment


# ===========================================
# OPERATIONAL CONFIGURATION
# ===========================================

@dataclass
class DatabaseConfig:
    """SQLite database configuration."""

    path: str = "data/gridbot.db"


@dataclass
class MonitoringConfig:
    """Health checks and persistence cadence."""

    health_check_interval: float = 60.0
    state_persist_interval: float = 30.0
    stale_price_seconds: float = 120.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file_path: str = "logs/gridbot.log"


# ===========================================
# MAIN BOT CONFIGURATION
# ===========================================

@dataclass
class BotConfig:
    """Complete bot configuration combining all sub-configs."""

    grid: GridConfig = field(default_factory=GridConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    adaptive: AdaptiveConfig = field(default_factory=AdaptiveConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def dry_run(self) -> bool:
        return self.execution.dry_run

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        # Grid
        if self.grid.total_investment <= 0:
            errors.append(
                f"Total investment must be positive, got {self.grid.total_investment}"
            )
        if not 0 <= self.grid.slippage_tolerance < 1:
            errors.append(
                f"Slippage tolerance must be in [0, 1), got {self.grid.slippage_tolerance}"
            )
        if not (
            0 < self.grid.min_profit_margin
            <= self.grid.base_profit_margin
            <= self.grid.max_profit_margin
        ):
            errors.append(
                "Profit margins must satisfy 0 < min <= base <= max, got "
                f"{self.grid.min_profit_margin}/{self.grid.base_profit_margin}/"
                f"{self.grid.max_profit_margin}"
            )
        if self.grid.min_profit_usd < 0 or self.grid.min_profit_percentage < 0:
            errors.append("Profit floors cannot be negative")

        # Adaptive
        if self.adaptive.low_volatility_threshold >= self.adaptive.high_volatility_threshold:
            errors.append(
                "Low volatility threshold must be below high threshold"
            )
        if self.adaptive.min_grid_count < 2:
            errors.append(
                f"Minimum grid count must be at least 2, got {self.adaptive.min_grid_count}"
            )
        if self.adaptive.min_grid_count > self.adaptive.max_grid_count:
            errors.append(
                f"Minimum grid count {self.adaptive.min_grid_count} exceeds "
                f"maximum {self.adaptive.max_grid_count}"
            )
        if self.adaptive.range_update_threshold > self.adaptive.max_range_deviation:
            errors.append(
                "Range update threshold must not exceed max range deviation"
            )

        # Execution
        if self.execution.batch_size < 1:
            errors.append(f"Batch size must be positive, got {self.execution.batch_size}")
        if self.execution.max_concurrent_trades < 1:
            errors.append(
                "Concurrent trade limit must be positive, got "
                f"{self.execution.max_concurrent_trades}"
            )
        if self.execution.max_failures < 1:
            errors.append(f"Max failures must be positive, got {self.execution.max_failures}")
        if self.execution.order_timeout <= 0:
            errors.append(f"Order timeout must be positive, got {self.execution.order_timeout}")

        # Pricing
        for asset, (low, high) in self.pricing.plausibility_ranges.items():
            if low <= 0 or low >= high:
                errors.append(f"Invalid plausibility range for {asset}: ({low}, {high})")

        # Pairs and allocation
        errors.extend(self._validate_pairs())

        return errors

    def _validate_pairs(self) -> List[str]:
        """Check per-pair parameters and the 100% allocation invariant."""
        errors = []
        enabled = self.allocation.enabled_pairs

        if not enabled:
            errors.append("At least one enabled trading pair is required")
            return errors

        if len(enabled) > self.allocation.max_pairs:
            errors.append(
                f"{len(enabled)} pairs enabled, maximum is {self.allocation.max_pairs}"
            )

        seen = set()
        for pair in enabled:
            if pair.pair_id in seen:
                errors.append(f"Duplicate pair id: {pair.pair_id}")
            seen.add(pair.pair_id)

            if not 0 < pair.allocation_percent <= 100:
                errors.append(
                    f"{pair.pair_id}: allocation must be in (0, 100], "
                    f"got {pair.allocation_percent}"
                )
            if pair.grid_count < 2:
                errors.append(
                    f"{pair.pair_id}: grid count must be at least 2, got {pair.grid_count}"
                )
            if not 0 < pair.range_percent < 100:
                errors.append(
                    f"{pair.pair_id}: range percent must be in (0, 100), "
                    f"got {pair.range_percent}"
                )
            if pair.pool_fee < 0:
                errors.append(f"{pair.pair_id}: pool fee cannot be negative")
            if pair.trading_interval < 0:
                errors.append(f"{pair.pair_id}: trading interval cannot be negative")

        total = sum(p.allocation_percent for p in enabled)
        if abs(total - 100.0) > self.allocation.allocation_tolerance:
            errors.append(
                f"Pair allocations must sum to 100%, got {total:.2f}%"
            )

        return errors

    def validate_or_raise(self) -> None:
        """
        Validate and fail fast.

        Raises:
            ConfigurationError: If any invariant is violated
        """
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
