"""Configuration module for the grid market-making engine."""

from .settings import (
    BotConfig,
    PairConfig,
    AllocationConfig,
    GridConfig,
    AdaptiveConfig,
    PricingConfig,
    ExecutionConfig,
    RiskConfig,
    ConfigurationError,
    SizingMode,
    QueueFlushMode,
)

__all__ = [
    "BotConfig",
    "PairConfig",
    "AllocationConfig",
    "GridConfig",
    "AdaptiveConfig",
    "PricingConfig",
    "ExecutionConfig",
    "RiskConfig",
    "ConfigurationError",
    "SizingMode",
    "QueueFlushMode",
]
