"""
Health Check System for Engine Monitoring.

Provides:
- Price source probing (re-enables recovered sources)
- Price freshness per asset
- Mid-price stream status
- Database connectivity
- Health status reporting
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from .alerts import AlertManager, create_source_health_alert

if TYPE_CHECKING:
    from src.api import MidPriceStream
    from src.pricing import PriceAggregator
    from .state_manager import StateManager

logger = logging.getLogger(__name__)


class HealthLevel(Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass
class HealthStatus:
    """Health check result for a single component."""

    component: str
    healthy: bool
    level: HealthLevel
    message: str
    latency_ms: Optional[float] = None
    consecutive_failures: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "component": self.component,
            "healthy": self.healthy,
            "level": self.level.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "consecutive_failures": self.consecutive_failures,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Complete system health status."""

    timestamp: datetime
    overall_healthy: bool
    overall_level: HealthLevel
    components: Dict[str, HealthStatus]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_healthy": self.overall_healthy,
            "overall_level": self.overall_level.value,
            "components": {k: v.to_dict() for k, v in self.components.items()},
        }


class HealthChecker:
    """
    Monitors engine health on its own timer.

    Checks:
    - Price sources (probes every source for the configured assets)
    - Price freshness per tracked asset
    - Mid-price stream connection
    - Database connectivity

    Usage:
        checker = HealthChecker(
            aggregator=aggregator,
            state_manager=state_mgr,
            stream=stream,
            probe_assets=["HYPE", "WHYPE/UBTC"],
        )

        # From the control loop
        checker.record_price_update("WHYPE/UBTC")

        # From the health task
        health = await checker.run_all_checks()
        if not health.overall_healthy:
            logger.warning(health.to_dict())
    """

    def __init__(
        self,
        aggregator: Optional["PriceAggregator"] = None,
        state_manager: Optional["StateManager"] = None,
        stream: Optional["MidPriceStream"] = None,
        probe_assets: Iterable[str] = (),
        stale_price_seconds: float = 120.0,
        alert_manager: Optional[AlertManager] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize health checker.

        Args:
            aggregator: Price aggregator whose sources are probed
            state_manager: State manager for database checks
            stream: Mid-price stream
            probe_assets: Assets used to probe sources
            stale_price_seconds: Age after which an asset's price is stale
            alert_manager: Receives source down/recovered alerts
            clock: Time source
        """
        self._aggregator = aggregator
        self._state_manager = state_manager
        self._stream = stream
        self._probe_assets = list(probe_assets)
        self._stale_seconds = stale_price_seconds
        self._alert_manager = alert_manager
        self._clock = clock

        self._last_price_update: Dict[str, float] = {}
        self._source_available: Dict[str, bool] = {}
        self._consecutive_failures: Dict[str, int] = {}

        self._startup_time = clock()
        self._checks_run = 0
        self._last_health: Optional[SystemHealth] = None

    # === Tracking ===

    def record_price_update(self, asset: str) -> None:
        """Record a successful price fetch for freshness tracking."""
        self._last_price_update[asset] = self._clock()

    def _track(self, status: HealthStatus) -> HealthStatus:
        """Maintain consecutive failure counts per component."""
        if status.healthy:
            self._consecutive_failures[status.component] = 0
        else:
            self._consecutive_failures[status.component] = (
                self._consecutive_failures.get(status.component, 0) + 1
            )
        status.consecutive_failures = self._consecutive_failures[status.component]
        return status

    # === Health Checks ===

    async def check_price_sources(self) -> HealthStatus:
        """
        Probe every source and report availability.

        A source that succeeds here is re-enabled in the aggregator.
        """
        if self._aggregator is None:
            return HealthStatus(
                component="price_sources",
                healthy=False,
                level=HealthLevel.UNKNOWN,
                message="Price aggregator not configured",
            )

        start_time = self._clock()
        for asset in self._probe_assets:
            try:
                await self._aggregator.probe_sources(asset)
            except Exception as e:
                logger.error(f"Probe of {asset} failed: {e}")
        latency_ms = (self._clock() - start_time) * 1000

        health = self._aggregator.get_source_health()
        self._alert_on_transitions(health)

        down = [name for name, h in health.items() if not h["available"]]
        if health and len(down) == len(health):
            level, healthy = HealthLevel.CRITICAL, False
            message = "All price sources unavailable"
        elif down:
            level, healthy = HealthLevel.WARNING, True
            message = f"Sources unavailable: {', '.join(down)}"
        else:
            level, healthy = HealthLevel.HEALTHY, True
            message = f"{len(health)} price source(s) available"

        return HealthStatus(
            component="price_sources",
            healthy=healthy,
            level=level,
            message=message,
            latency_ms=latency_ms,
            details={"sources": health},
        )

    def _alert_on_transitions(self, health: Dict[str, Dict[str, Any]]) -> None:
        for name, info in health.items():
            previous = self._source_available.get(name, True)
            current = info["available"]
            self._source_available[name] = current
            if previous == current:
                continue

            if current:
                logger.info(f"Price source {name} recovered")
            else:
                logger.warning(f"Price source {name} marked unavailable")
            if self._alert_manager:
                create_source_health_alert(
                    self._alert_manager, name, current, info["consecutive_failures"]
                )

    async def check_price_freshness(self) -> HealthStatus:
        """
        Check that every tracked asset has a recent price.

        Returns:
            HealthStatus for price freshness
        """
        if not self._last_price_update:
            return HealthStatus(
                component="price_freshness",
                healthy=False,
                level=HealthLevel.WARNING,
                message="No price data received yet",
            )

        now = self._clock()
        ages = {asset: now - ts for asset, ts in self._last_price_update.items()}
        stale = {asset: age for asset, age in ages.items() if age > self._stale_seconds}

        if stale:
            return HealthStatus(
                component="price_freshness",
                healthy=False,
                level=HealthLevel.CRITICAL,
                message="Stale prices: " + ", ".join(
                    f"{asset} ({age:.0f}s)" for asset, age in sorted(stale.items())
                ),
                details={"age_seconds": ages},
            )

        if any(age > self._stale_seconds / 2 for age in ages.values()):
            return HealthStatus(
                component="price_freshness",
                healthy=True,
                level=HealthLevel.WARNING,
                message="Prices ageing",
                details={"age_seconds": ages},
            )

        return HealthStatus(
            component="price_freshness",
            healthy=True,
            level=HealthLevel.HEALTHY,
            message=f"{len(ages)} asset(s) fresh",
            details={"age_seconds": ages},
        )

    async def check_stream(self) -> HealthStatus:
        """Check the mid-price stream connection and data flow."""
        if self._stream is None:
            return HealthStatus(
                component="stream",
                healthy=True,
                level=HealthLevel.UNKNOWN,
                message="Stream not configured",
            )

        stats = self._stream.get_stats()
        if not self._stream.is_connected:
            return HealthStatus(
                component="stream",
                healthy=False,
                level=HealthLevel.WARNING,
                message=f"Stream {stats.get('state', 'disconnected')}",
                details=stats,
            )
        if not self._stream.has_recent_data():
            return HealthStatus(
                component="stream",
                healthy=False,
                level=HealthLevel.WARNING,
                message="Stream connected but silent",
                details=stats,
            )
        return HealthStatus(
            component="stream",
            healthy=True,
            level=HealthLevel.HEALTHY,
            message="Stream connected",
            details=stats,
        )

    async def check_database(self) -> HealthStatus:
        """
        Check database connectivity.

        Returns:
            HealthStatus for database component
        """
        if self._state_manager is None:
            return HealthStatus(
                component="database",
                healthy=False,
                level=HealthLevel.UNKNOWN,
                message="State manager not configured",
            )

        start_time = self._clock()
        try:
            self._state_manager.check_connection()
            latency_ms = (self._clock() - start_time) * 1000
            return HealthStatus(
                component="database",
                healthy=True,
                level=HealthLevel.HEALTHY,
                message=f"Database accessible ({latency_ms:.0f}ms)",
                latency_ms=latency_ms,
            )
        except Exception as e:
            latency_ms = (self._clock() - start_time) * 1000
            return HealthStatus(
                component="database",
                healthy=False,
                level=HealthLevel.CRITICAL,
                message=f"Database error: {str(e)[:100]}",
                latency_ms=latency_ms,
            )

    async def run_all_checks(self) -> SystemHealth:
        """
        Run all health checks.

        Returns:
            SystemHealth with overall status and component details
        """
        checks = [
            await self.check_price_sources(),
            await self.check_price_freshness(),
            await self.check_stream(),
            await self.check_database(),
        ]
        components = {status.component: self._track(status) for status in checks}

        all_healthy = all(c.healthy for c in components.values())

        # Overall level is worst of all components
        levels = [c.level for c in components.values()]
        if HealthLevel.CRITICAL in levels:
            overall_level = HealthLevel.CRITICAL
        elif HealthLevel.WARNING in levels:
            overall_level = HealthLevel.WARNING
        else:
            overall_level = HealthLevel.HEALTHY

        self._checks_run += 1
        self._last_health = SystemHealth(
            timestamp=datetime.now(timezone.utc),
            overall_healthy=all_healthy,
            overall_level=overall_level,
            components=components,
        )
        return self._last_health

    @property
    def last_health(self) -> Optional[SystemHealth]:
        return self._last_health

    def get_metrics(self) -> Dict[str, Any]:
        unhealthy: List[str] = [
            name for name, count in self._consecutive_failures.items() if count > 0
        ]
        return {
            "uptime_seconds": self._clock() - self._startup_time,
            "checks_run": self._checks_run,
            "tracked_assets": sorted(self._last_price_update),
            "failing_components": unhealthy,
            "consecutive_failures": dict(self._consecutive_failures),
        }
