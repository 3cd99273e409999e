"""
Configuration loader for the grid market-making engine.

Loads configuration from:
1. YAML file (config/config.yaml)
2. Environment variables (GRIDBOT_* prefix)
3. .env file (via python-dotenv)

Environment variables override YAML values. Trading pairs come from the
YAML ``pairs`` list or from GRIDBOT_PAIR_<i>_* variables.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from config.settings import (
    BotConfig,
    PairConfig,
    AllocationConfig,
    GridConfig,
    AdaptiveConfig,
    PricingConfig,
    ExecutionConfig,
    RiskConfig,
    DatabaseConfig,
    MonitoringConfig,
    LoggingConfig,
    SizingMode,
    QueueFlushMode,
)

logger = logging.getLogger(__name__)


class ConfigLoader:
    """
    Loads and validates bot configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (GRIDBOT_*)
    2. YAML config file
    3. Default values in dataclasses
    """

    ENV_PREFIX = "GRIDBOT_"

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_file: Optional[str] = None,
    ):
        """
        Initialize config loader.

        Args:
            config_path: Path to YAML config file. If None, uses config/config.yaml
            env_file: Path to .env file. If None, uses .env in project root
        """
        self._config_path = Path(config_path) if config_path else Path("config/config.yaml")
        self._env_file = Path(env_file) if env_file else Path(".env")

        if self._env_file.exists():
            load_dotenv(self._env_file)
            logger.debug(f"Loaded environment from {self._env_file}")

    def load(self) -> BotConfig:
        """
        Load complete bot configuration.

        Validation problems are logged here; callers decide whether they
        are fatal (the orchestrator treats them as fatal).

        Returns:
            BotConfig with all settings populated
        """
        yaml_config = self._load_yaml()
        config = self._build_config(yaml_config)

        for error in config.validate():
            logger.warning(f"Config problem: {error}")

        return config

    def _load_yaml(self) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not self._config_path.exists():
            logger.warning(f"Config file not found: {self._config_path}, using defaults")
            return {}

        with open(self._config_path) as f:
            config = yaml.safe_load(f) or {}

        logger.info(f"Loaded config from {self._config_path}")
        return config

    def _get_env(self, key: str, default: Any = None) -> Any:
        """
        Get environment variable with GRIDBOT_ prefix.

        Args:
            key: Variable name (without prefix)
            default: Default value if not set

        Returns:
            Environment variable value converted to the default's type
        """
        full_key = f"{self.ENV_PREFIX}{key}"
        value = os.environ.get(full_key)

        if value is None:
            return default

        if isinstance(default, bool):
            return value.lower() in ("true", "1", "yes")
        elif isinstance(default, int):
            return int(value)
        elif isinstance(default, float):
            return float(value)

        return value

    def _build_config(self, yaml_config: Dict[str, Any]) -> BotConfig:
        """Build BotConfig from YAML and environment."""

        # Build Grid config
        grid_yaml = yaml_config.get("grid", {})
        defaults = GridConfig()
        sizing_str = self._get_env(
            "SIZING_MODE",
            grid_yaml.get("sizing_mode", defaults.sizing_mode.value),
        )
        grid = GridConfig(
            total_investment=self._get_env(
                "TOTAL_INVESTMENT",
                float(grid_yaml.get("total_investment", defaults.total_investment)),
            ),
            grid_count=self._get_env(
                "GRID_COUNT",
                int(grid_yaml.get("grid_count", defaults.grid_count)),
            ),
            range_percent=self._get_env(
                "RANGE_PERCENT",
                float(grid_yaml.get("range_percent", defaults.range_percent)),
            ),
            sizing_mode=SizingMode(sizing_str),
            arithmetic_factor=grid_yaml.get("arithmetic_factor", defaults.arithmetic_factor),
            geometric_ratio=grid_yaml.get("geometric_ratio", defaults.geometric_ratio),
            geometric_scaling_factor=grid_yaml.get(
                "geometric_scaling_factor", defaults.geometric_scaling_factor
            ),
            hybrid_linear_factor=grid_yaml.get(
                "hybrid_linear_factor", defaults.hybrid_linear_factor
            ),
            hybrid_exponential_ratio=grid_yaml.get(
                "hybrid_exponential_ratio", defaults.hybrid_exponential_ratio
            ),
            hybrid_exponential_factor=grid_yaml.get(
                "hybrid_exponential_factor", defaults.hybrid_exponential_factor
            ),
            hybrid_max_multiplier=grid_yaml.get(
                "hybrid_max_multiplier", defaults.hybrid_max_multiplier
            ),
            slippage_tolerance=self._get_env(
                "SLIPPAGE_TOLERANCE",
                float(grid_yaml.get("slippage_tolerance", defaults.slippage_tolerance)),
            ),
            pool_fee=self._get_env(
                "POOL_FEE",
                int(grid_yaml.get("pool_fee", defaults.pool_fee)),
            ),
            base_profit_margin=self._get_env(
                "PROFIT_MARGIN",
                float(grid_yaml.get("base_profit_margin", defaults.base_profit_margin)),
            ),
            min_profit_margin=self._get_env(
                "MIN_PROFIT_MARGIN",
                float(grid_yaml.get("min_profit_margin", defaults.min_profit_margin)),
            ),
            max_profit_margin=self._get_env(
                "MAX_PROFIT_MARGIN",
                float(grid_yaml.get("max_profit_margin", defaults.max_profit_margin)),
            ),
            min_profit_usd=self._get_env(
                "MIN_PROFIT_USD",
                float(grid_yaml.get("min_profit_usd", defaults.min_profit_usd)),
            ),
            min_profit_percentage=self._get_env(
                "MIN_PROFIT_PERCENTAGE",
                float(grid_yaml.get("min_profit_percentage", defaults.min_profit_percentage)),
            ),
        )

        # Build Adaptive config
        adaptive_yaml = yaml_config.get("adaptive", {})
        adaptive_defaults = AdaptiveConfig()
        adaptive = AdaptiveConfig(
            enabled=adaptive_yaml.get("enabled", adaptive_defaults.enabled),
            volatility_window=adaptive_yaml.get(
                "volatility_window", adaptive_defaults.volatility_window
            ),
            min_volatility_samples=adaptive_yaml.get(
                "min_volatility_samples", adaptive_defaults.min_volatility_samples
            ),
            volatility_history_size=adaptive_yaml.get(
                "volatility_history_size", adaptive_defaults.volatility_history_size
            ),
            high_volatility_threshold=self._get_env(
                "HIGH_VOLATILITY_THRESHOLD",
                float(adaptive_yaml.get(
                    "high_volatility_threshold", adaptive_defaults.high_volatility_threshold
                )),
            ),
            low_volatility_threshold=self._get_env(
                "LOW_VOLATILITY_THRESHOLD",
                float(adaptive_yaml.get(
                    "low_volatility_threshold", adaptive_defaults.low_volatility_threshold
                )),
            ),
            min_grid_count=self._get_env(
                "MIN_GRID_COUNT",
                int(adaptive_yaml.get("min_grid_count", adaptive_defaults.min_grid_count)),
            ),
            max_grid_count=self._get_env(
                "MAX_GRID_COUNT",
                int(adaptive_yaml.get("max_grid_count", adaptive_defaults.max_grid_count)),
            ),
            range_update_threshold=adaptive_yaml.get(
                "range_update_threshold", adaptive_defaults.range_update_threshold
            ),
            max_range_deviation=adaptive_yaml.get(
                "max_range_deviation", adaptive_defaults.max_range_deviation
            ),
            min_update_interval=adaptive_yaml.get(
                "min_update_interval", adaptive_defaults.min_update_interval
            ),
        )

        # Build Pricing config
        pricing_yaml = yaml_config.get("pricing", {})
        pricing_defaults = PricingConfig()
        ranges = pricing_yaml.get("plausibility_ranges")
        pricing = PricingConfig(
            max_attempts=pricing_yaml.get("max_attempts", pricing_defaults.max_attempts),
            retry_delay=pricing_yaml.get("retry_delay", pricing_defaults.retry_delay),
            cache_ttl=pricing_yaml.get("cache_ttl", pricing_defaults.cache_ttl),
            failure_threshold=pricing_yaml.get(
                "failure_threshold", pricing_defaults.failure_threshold
            ),
            stream_max_age=pricing_yaml.get("stream_max_age", pricing_defaults.stream_max_age),
            stream_url=self._get_env(
                "STREAM_URL", pricing_yaml.get("stream_url", pricing_defaults.stream_url)
            ),
            gas_token_asset=pricing_yaml.get("gas_token_asset", pricing_defaults.gas_token_asset),
            plausibility_ranges=(
                {k: (float(v[0]), float(v[1])) for k, v in ranges.items()}
                if ranges is not None
                else pricing_defaults.plausibility_ranges
            ),
            pegged_assets={
                k: float(v) for k, v in pricing_yaml.get("pegged_assets", {}).items()
            },
            stream_symbols=pricing_yaml.get("stream_symbols", pricing_defaults.stream_symbols),
            intermediate_token=pricing_yaml.get(
                "intermediate_token", pricing_defaults.intermediate_token
            ),
            intermediate_fee=pricing_yaml.get(
                "intermediate_fee", pricing_defaults.intermediate_fee
            ),
        )

        # Build Execution config
        exec_yaml = yaml_config.get("execution", {})
        exec_defaults = ExecutionConfig()
        execution = ExecutionConfig(
            check_interval=self._get_env(
                "CHECK_INTERVAL",
                float(exec_yaml.get("check_interval", exec_defaults.check_interval)),
            ),
            batch_orders=exec_yaml.get("batch_orders", exec_defaults.batch_orders),
            batch_size=exec_yaml.get("batch_size", exec_defaults.batch_size),
            priority_scoring=exec_yaml.get("priority_scoring", exec_defaults.priority_scoring),
            max_concurrent_trades=self._get_env(
                "CONCURRENT_TRADE_LIMIT",
                int(exec_yaml.get("max_concurrent_trades", exec_defaults.max_concurrent_trades)),
            ),
            order_timeout=exec_yaml.get("order_timeout", exec_defaults.order_timeout),
            max_failures=exec_yaml.get("max_failures", exec_defaults.max_failures),
            price_update_threshold=exec_yaml.get(
                "price_update_threshold", exec_defaults.price_update_threshold
            ),
            gas_cost_native=exec_yaml.get("gas_cost_native", exec_defaults.gas_cost_native),
            large_trade_usd=exec_yaml.get("large_trade_usd", exec_defaults.large_trade_usd),
            large_trade_slippage=exec_yaml.get(
                "large_trade_slippage", exec_defaults.large_trade_slippage
            ),
            small_trade_slippage=exec_yaml.get(
                "small_trade_slippage", exec_defaults.small_trade_slippage
            ),
            flush_queue_on_stop=QueueFlushMode(
                exec_yaml.get("flush_queue_on_stop", exec_defaults.flush_queue_on_stop.value)
            ),
            dry_run=self._get_env("DRY_RUN", bool(exec_yaml.get("dry_run", exec_defaults.dry_run))),
            recipient=self._get_env("RECIPIENT", exec_yaml.get("recipient", exec_defaults.recipient)),
            router_address=self._get_env(
                "ROUTER_ADDRESS", exec_yaml.get("router_address", exec_defaults.router_address)
            ),
        )

        # Build Risk config
        risk_yaml = yaml_config.get("risk", {})
        risk_defaults = RiskConfig()
        risk = RiskConfig(
            max_daily_loss_percent=risk_yaml.get(
                "max_daily_loss_percent", risk_defaults.max_daily_loss_percent
            ),
            stop_loss_percent=risk_yaml.get("stop_loss_percent", risk_defaults.stop_loss_percent),
            max_consecutive_losses=risk_yaml.get(
                "max_consecutive_losses", risk_defaults.max_consecutive_losses
            ),
            max_inventory_imbalance=risk_yaml.get(
                "max_inventory_imbalance", risk_defaults.max_inventory_imbalance
            ),
            max_position_percent=risk_yaml.get(
                "max_position_percent", risk_defaults.max_position_percent
            ),
        )

        # Build Allocation config
        alloc_yaml = yaml_config.get("allocation", {})
        alloc_defaults = AllocationConfig()
        max_pairs = self._get_env(
            "MAX_PAIRS", int(alloc_yaml.get("max_pairs", alloc_defaults.max_pairs))
        )
        pairs = self._load_pairs_from_env(max_pairs, grid)
        if not pairs:
            pairs = [
                self._build_pair(p, grid) for p in yaml_config.get("pairs", [])
            ]
        if not pairs:
            pairs = [PairConfig(grid_count=grid.grid_count, range_percent=grid.range_percent)]
            logger.info(f"No pairs configured, defaulting to {pairs[0].pair_id}")

        allocation = AllocationConfig(
            pairs=pairs,
            max_pairs=max_pairs,
            allocation_tolerance=alloc_yaml.get(
                "allocation_tolerance", alloc_defaults.allocation_tolerance
            ),
            min_recommended_percent=alloc_yaml.get(
                "min_recommended_percent", alloc_defaults.min_recommended_percent
            ),
        )

        # Build operational configs
        db_yaml = yaml_config.get("database", {})
        database = DatabaseConfig(path=db_yaml.get("path", DatabaseConfig().path))

        monitoring_yaml = yaml_config.get("monitoring", {})
        monitoring = MonitoringConfig(
            health_check_interval=monitoring_yaml.get("health_check_interval", 60.0),
            state_persist_interval=monitoring_yaml.get("state_persist_interval", 30.0),
            stale_price_seconds=monitoring_yaml.get("stale_price_seconds", 120.0),
        )

        logging_yaml = yaml_config.get("logging", {})
        log_config = LoggingConfig(
            level=self._get_env("LOG_LEVEL", logging_yaml.get("level", "INFO")),
            file_path=logging_yaml.get("file_path", LoggingConfig().file_path),
        )

        return BotConfig(
            grid=grid,
            allocation=allocation,
            adaptive=adaptive,
            pricing=pricing,
            execution=execution,
            risk=risk,
            database=database,
            monitoring=monitoring,
            logging=log_config,
        )

    def _build_pair(self, pair_yaml: Dict[str, Any], grid: GridConfig) -> PairConfig:
        """Build a PairConfig from a YAML mapping, filling grid defaults."""
        defaults = PairConfig()
        base = pair_yaml.get("base_token", defaults.base_token)
        quote = pair_yaml.get("quote_token", defaults.quote_token)
        return PairConfig(
            pair_id=pair_yaml.get("pair_id", f"{base}_{quote}"),
            base_token=base,
            quote_token=quote,
            base_address=pair_yaml.get("base_address", defaults.base_address),
            quote_address=pair_yaml.get("quote_address", defaults.quote_address),
            base_decimals=pair_yaml.get("base_decimals", defaults.base_decimals),
            quote_decimals=pair_yaml.get("quote_decimals", defaults.quote_decimals),
            allocation_percent=float(
                pair_yaml.get("allocation_percent", defaults.allocation_percent)
            ),
            grid_count=pair_yaml.get("grid_count", grid.grid_count),
            range_percent=float(pair_yaml.get("range_percent", grid.range_percent)),
            pool_fee=pair_yaml.get("pool_fee", grid.pool_fee),
            trading_interval=pair_yaml.get("trading_interval", defaults.trading_interval),
            enabled=pair_yaml.get("enabled", True),
            price_asset=pair_yaml.get("price_asset"),
            quote_usd_asset=pair_yaml.get("quote_usd_asset", defaults.quote_usd_asset),
        )

    def _load_pairs_from_env(self, max_pairs: int, grid: GridConfig) -> List[PairConfig]:
        """
        Read GRIDBOT_PAIR_<i>_* variables for i in 1..max_pairs.

        A pair is defined once GRIDBOT_PAIR_<i>_SYMBOL is set (BASE_QUOTE).

        Returns:
            List of pairs in index order (empty if none defined)
        """
        pairs = []
        for i in range(1, max_pairs + 1):
            symbol = self._get_env(f"PAIR_{i}_SYMBOL")
            if not symbol:
                continue

            base, _, quote = symbol.partition("_")
            if not quote:
                raise ValueError(
                    f"{self.ENV_PREFIX}PAIR_{i}_SYMBOL must look like BASE_QUOTE, got {symbol}"
                )

            defaults = PairConfig()
            quote_usd = self._get_env(f"PAIR_{i}_QUOTE_USD_ASSET", defaults.quote_usd_asset)
            pairs.append(
                PairConfig(
                    pair_id=symbol,
                    base_token=base,
                    quote_token=quote,
                    base_address=self._get_env(f"PAIR_{i}_BASE_ADDRESS", defaults.base_address),
                    quote_address=self._get_env(
                        f"PAIR_{i}_QUOTE_ADDRESS", defaults.quote_address
                    ),
                    base_decimals=self._get_env(f"PAIR_{i}_BASE_DECIMALS", defaults.base_decimals),
                    quote_decimals=self._get_env(
                        f"PAIR_{i}_QUOTE_DECIMALS", defaults.quote_decimals
                    ),
                    allocation_percent=self._get_env(f"PAIR_{i}_ALLOCATION", 0.0),
                    grid_count=self._get_env(f"PAIR_{i}_GRID_COUNT", grid.grid_count),
                    range_percent=self._get_env(f"PAIR_{i}_RANGE", grid.range_percent),
                    pool_fee=self._get_env(f"PAIR_{i}_POOL_FEE", grid.pool_fee),
                    trading_interval=self._get_env(
                        f"PAIR_{i}_TRADING_INTERVAL", defaults.trading_interval
                    ),
                    enabled=self._get_env(f"PAIR_{i}_ENABLED", True),
                    quote_usd_asset=quote_usd or None,
                )
            )
            logger.debug(f"Loaded pair {i} from environment: {symbol}")

        return pairs
