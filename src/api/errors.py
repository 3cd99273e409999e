"""
Error taxonomy for the grid market-making engine.

Provides:
- Error classification (category, severity, recoverability)
- Exceptions for price discovery and swap execution
- Retry helpers with fixed or exponential backoff
- Rolling error aggregation for alerting

Taxonomy:
- PriceSourceError: one price adapter failed (transient, routed to fallback)
- ImplausiblePriceError: a quote fell outside its sanity window (discarded)
- PriceUnavailableError: every source exhausted (caller skips the tick)
- ExecutionError / ExecutionTimeoutError / InsufficientFundsError: commit
  failed (counts toward the level's failure limit)
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum, auto
from functools import wraps
from typing import Optional, List, Dict, Any, Callable, TypeVar, Tuple, Type

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = auto()       # Informational, can continue
    MEDIUM = auto()    # Warning, may need attention
    HIGH = auto()      # Error, operation failed
    CRITICAL = auto()  # Critical, halt trading


class ErrorCategory(Enum):
    """Categories of engine errors."""
    PRICE_SOURCE = "price_source"
    PRICE_UNAVAILABLE = "price_unavailable"
    IMPLAUSIBLE_PRICE = "implausible_price"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    RISK_LIMIT = "risk_limit"
    NETWORK = "network"
    UNKNOWN = "unknown"


class RetryStrategy(Enum):
    """Retry strategies for different error types."""
    NO_RETRY = auto()             # Do not retry
    FIXED_DELAY = auto()          # Constant wait time
    EXPONENTIAL_BACKOFF = auto()  # Exponential wait


@dataclass
class ErrorInfo:
    """Detailed information about an error."""
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    retry_strategy: RetryStrategy = RetryStrategy.NO_RETRY
    recoverable: bool = True
    details: Optional[Dict[str, Any]] = None


class GridBotError(Exception):
    """Base exception for engine errors."""

    category_default = ErrorCategory.UNKNOWN
    severity_default = ErrorSeverity.MEDIUM
    retry_default = RetryStrategy.NO_RETRY
    recoverable_default = True

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_info: Optional[ErrorInfo] = None,
    ):
        self.error_info = error_info or ErrorInfo(
            message=message,
            category=self.category_default,
            severity=self.severity_default,
            retry_strategy=self.retry_default,
            recoverable=self.recoverable_default,
            details=details,
        )
        super().__init__(message)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.error_info.recoverable

    @property
    def should_retry(self) -> bool:
        """Check if the operation should be retried."""
        return self.error_info.retry_strategy != RetryStrategy.NO_RETRY

    @property
    def category(self) -> ErrorCategory:
        """Get error category."""
        return self.error_info.category


class PriceSourceError(GridBotError):
    """A single price source failed to produce a quote."""
    category_default = ErrorCategory.PRICE_SOURCE
    severity_default = ErrorSeverity.LOW
    retry_default = RetryStrategy.FIXED_DELAY

    def __init__(self, source: str, asset: str, message: str):
        self.source = source
        self.asset = asset
        super().__init__(
            f"{source} failed for {asset}: {message}",
            details={"source": source, "asset": asset},
        )


class ImplausiblePriceError(PriceSourceError):
    """A quote fell outside the asset's plausibility window."""
    category_default = ErrorCategory.IMPLAUSIBLE_PRICE
    severity_default = ErrorSeverity.MEDIUM

    def __init__(self, source: str, asset: str, price: Any, bounds: Tuple[float, float]):
        self.price = price
        self.bounds = bounds
        super().__init__(
            source,
            asset,
            f"price {price} outside plausible range [{bounds[0]}, {bounds[1]}]",
        )


class PriceUnavailableError(GridBotError):
    """Every price source is exhausted for an asset."""
    category_default = ErrorCategory.PRICE_UNAVAILABLE
    severity_default = ErrorSeverity.HIGH

    def __init__(self, asset: str, attempted: Optional[List[str]] = None):
        self.asset = asset
        self.attempted = attempted or []
        super().__init__(
            f"No price available for {asset} "
            f"(tried: {', '.join(self.attempted) or 'none'})",
            details={"asset": asset, "attempted": self.attempted},
        )


class ExecutionError(GridBotError):
    """The execution collaborator rejected or failed a swap."""
    category_default = ErrorCategory.EXECUTION
    severity_default = ErrorSeverity.HIGH


class ExecutionTimeoutError(ExecutionError):
    """Swap confirmation did not arrive within the bounded timeout."""
    category_default = ErrorCategory.TIMEOUT

    def __init__(self, level_id: str, timeout: float):
        self.level_id = level_id
        self.timeout = timeout
        super().__init__(
            f"Swap for level {level_id} timed out after {timeout:.0f}s",
            details={"level_id": level_id, "timeout": timeout},
        )


class InsufficientFundsError(ExecutionError):
    """Wallet balance cannot cover the swap input."""

    def __init__(self, asset: str, needed: Any, available: Any):
        self.asset = asset
        self.needed = needed
        self.available = available
        super().__init__(
            f"Insufficient {asset} balance: need {needed}, have {available}",
            details={"asset": asset, "needed": str(needed), "available": str(available)},
        )


T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True  # Add randomness to prevent thundering herd


def calculate_backoff(
    attempt: int,
    strategy: RetryStrategy,
    config: RetryConfig,
) -> float:
    """
    Calculate backoff time for retry.

    Args:
        attempt: Current attempt number (0-indexed)
        strategy: Retry strategy to use
        config: Retry configuration

    Returns:
        Seconds to wait before retry
    """
    if strategy == RetryStrategy.NO_RETRY:
        return 0.0

    if strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
        delay = config.base_delay * (config.exponential_base ** attempt)
    else:
        delay = config.base_delay

    # Apply max delay cap
    delay = min(delay, config.max_delay)

    # Add jitter (up to 25% of delay)
    if config.jitter and delay > 0:
        delay += delay * 0.25 * random.random()

    return delay


def with_async_retry(
    config: Optional[RetryConfig] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable:
    """
    Decorator for async collaborator calls with automatic retry.

    Engine errors that declare NO_RETRY are raised immediately; other
    exceptions listed in ``retry_on`` are retried with exponential backoff.

    Usage:
        @with_async_retry(RetryConfig(max_retries=5))
        async def get_balance(asset):
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except GridBotError as e:
                    if not e.should_retry or attempt >= config.max_retries:
                        raise

                    backoff = calculate_backoff(attempt, e.error_info.retry_strategy, config)
                    logger.warning(
                        f"Async retry {attempt + 1}/{config.max_retries} for "
                        f"{e.category.value}: {e}, waiting {backoff:.1f}s"
                    )
                    await asyncio.sleep(backoff)

                except retry_on as e:
                    if attempt >= config.max_retries:
                        raise

                    backoff = calculate_backoff(
                        attempt, RetryStrategy.EXPONENTIAL_BACKOFF, config
                    )
                    logger.warning(
                        f"Async retry {attempt + 1}/{config.max_retries} for "
                        f"{type(e).__name__}: {e}, waiting {backoff:.1f}s"
                    )
                    await asyncio.sleep(backoff)

            raise RuntimeError("Max retries exceeded")

        return wrapper
    return decorator


class ErrorAggregator:
    """
    Aggregates errors for monitoring and alerting.

    Tracks error patterns to detect systemic issues such as a venue that
    keeps rejecting swaps.
    """

    def __init__(self, window_size: int = 100, clock: Callable[[], float] = time.time):
        """
        Initialize error aggregator.

        Args:
            window_size: Number of recent errors to track
            clock: Time source for the rolling window
        """
        self.window_size = window_size
        self._clock = clock
        self._errors: List[Dict[str, Any]] = []

    def record_error(self, error: GridBotError) -> None:
        """Record an error occurrence."""
        self._errors.append({
            "timestamp": self._clock(),
            "category": error.error_info.category.value,
            "severity": error.error_info.severity.name,
            "message": str(error),
        })

        # Trim to window size
        if len(self._errors) > self.window_size:
            self._errors = self._errors[-self.window_size:]

    def get_stats(self, time_window: float = 300.0) -> Dict[str, Any]:
        """
        Get error statistics for recent window.

        Args:
            time_window: Seconds to look back (default 5 min)

        Returns:
            Dict with error statistics
        """
        cutoff = self._clock() - time_window
        recent = [e for e in self._errors if e["timestamp"] >= cutoff]

        by_category: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}

        for error in recent:
            cat = error["category"]
            sev = error["severity"]
            by_category[cat] = by_category.get(cat, 0) + 1
            by_severity[sev] = by_severity.get(sev, 0) + 1

        return {
            "total": len(recent),
            "by_category": by_category,
            "by_severity": by_severity,
            "rate_per_minute": len(recent) / (time_window / 60),
        }

    def should_alert(self) -> bool:
        """Check if error rate warrants an alert."""
        stats = self.get_stats(time_window=60.0)

        # More than 10 errors per minute
        if stats["rate_per_minute"] > 10:
            return True

        if stats["by_severity"].get("CRITICAL", 0) > 0:
            return True

        # Repeated commit failures point at the venue, not a single level
        execution_errors = (
            stats["by_category"].get("execution", 0)
            + stats["by_category"].get("timeout", 0)
        )
        if execution_errors > 3:
            return True

        return False
