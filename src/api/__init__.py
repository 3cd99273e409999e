"""
Venue Integration Module.

Provides the boundaries between the engine and the outside world:
- Error taxonomy, retry helpers and error aggregation
- Execution and balance collaborator interfaces (plus a dry-run executor)
- Mid-price stream over WebSocket with reconnection

Usage:
    # Streaming reference prices
    from src.api import MidPriceStream, StreamConfig

    stream = MidPriceStream(StreamConfig(url="wss://api.hyperliquid.xyz/ws"))
    await stream.connect()
    latest = stream.get_latest("BTC")  # (Decimal price, timestamp) or None

    # Execution (simulated)
    from src.api import DryRunSwapExecutor

    executor = DryRunSwapExecutor()
    result = await executor.execute_swap(token_in, token_out, amount_in, min_out, 3000, "")
"""

# Error handling
from .errors import (
    ErrorInfo,
    ErrorCategory,
    ErrorSeverity,
    RetryStrategy,
    GridBotError,
    PriceSourceError,
    ImplausiblePriceError,
    PriceUnavailableError,
    ExecutionError,
    ExecutionTimeoutError,
    InsufficientFundsError,
    RetryConfig,
    calculate_backoff,
    with_async_retry,
    ErrorAggregator,
)

# Execution collaborators
from .execution import (
    SwapStatus,
    SwapRequest,
    SwapResult,
    SwapExecutor,
    BalanceProvider,
    DryRunSwapExecutor,
)

# Streaming
from .stream_feed import (
    ConnectionState,
    StreamConfig,
    MidPriceStream,
)


__all__ = [
    # Errors
    "ErrorInfo",
    "ErrorCategory",
    "ErrorSeverity",
    "RetryStrategy",
    "GridBotError",
    "PriceSourceError",
    "ImplausiblePriceError",
    "PriceUnavailableError",
    "ExecutionError",
    "ExecutionTimeoutError",
    "InsufficientFundsError",
    "RetryConfig",
    "calculate_backoff",
    "with_async_retry",
    "ErrorAggregator",
    # Execution
    "SwapStatus",
    "SwapRequest",
    "SwapResult",
    "SwapExecutor",
    "BalanceProvider",
    "DryRunSwapExecutor",
    # Streaming
    "ConnectionState",
    "StreamConfig",
    "MidPriceStream",
]
