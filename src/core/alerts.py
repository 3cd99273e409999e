"""
Alert System for Engine Events.

Provides:
- Alert types and severity levels
- Alert creation and routing
- Alert handlers (logging, callbacks)
- Alert history and deduplication
- Rejection accounting by kind (profitability, risk, circuit breaker, ...)
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "info"  # Informational
    WARNING = "warning"  # Needs attention
    CRITICAL = "critical"  # Immediate action required
    EMERGENCY = "emergency"  # Trading halted


class AlertType(Enum):
    """Types of engine alerts."""

    # Pricing alerts
    PRICE_UNAVAILABLE = auto()  # Every source exhausted for an asset
    SOURCE_DOWN = auto()  # Source marked unavailable
    SOURCE_RECOVERED = auto()  # Source back after a success

    # Trade alerts
    COMMIT_FAILED = auto()  # Swap reverted or errored
    COMMIT_TIMEOUT = auto()  # Swap not confirmed in time
    CIRCUIT_BREAKER = auto()  # Level disabled after repeated failures
    ERROR_RATE = auto()  # Commit failures clustering across levels

    # Risk alerts
    DAILY_LOSS_WARNING = auto()  # Approaching daily loss limit
    DAILY_LOSS_HALT = auto()  # Daily loss limit exceeded
    STOP_LOSS_TRIGGERED = auto()  # Session stop-loss hit
    CONSECUTIVE_LOSSES = auto()  # Too many losing cycles in a row
    INVENTORY_IMBALANCE = auto()  # One-sided inventory
    EMERGENCY_STOP = auto()  # Emergency stop latched
    EMERGENCY_RESET = auto()  # Operator cleared the emergency stop

    # Grid alerts
    GRID_REPLANNED = auto()  # Range moved

    # Trading state
    TRADING_PAUSED = auto()
    TRADING_RESUMED = auto()


class RejectionKind(Enum):
    """Why a triggered level was not committed."""

    PROFITABILITY_FLOOR = "profitability_floor"
    RISK_HALT = "risk_halt"
    CIRCUIT_BREAKER = "circuit_breaker"
    COOLDOWN = "cooldown"
    CONCURRENCY_LIMIT = "concurrency_limit"
    PRICE_UNAVAILABLE = "price_unavailable"


# Operator-facing kinds log louder than routine gating
_REJECTION_LOG_LEVELS = {
    RejectionKind.PROFITABILITY_FLOOR: logging.INFO,
    RejectionKind.RISK_HALT: logging.WARNING,
    RejectionKind.CIRCUIT_BREAKER: logging.WARNING,
    RejectionKind.COOLDOWN: logging.DEBUG,
    RejectionKind.CONCURRENCY_LIMIT: logging.DEBUG,
    RejectionKind.PRICE_UNAVAILABLE: logging.WARNING,
}


@dataclass
class Alert:
    """A single alert instance."""

    alert_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)
    pair_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize alert to dictionary."""
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.name,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "pair_id": self.pair_id,
        }

    def __str__(self) -> str:
        return (
            f"[{self.severity.value.upper()}] {self.alert_type.name}: {self.message}"
        )


@dataclass
class Rejection:
    """One recorded rejection."""

    kind: RejectionKind
    pair_id: str
    reason: str
    level_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "pair_id": self.pair_id,
            "level_id": self.level_id,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


class AlertHandler(ABC):
    """Base class for alert handlers."""

    @abstractmethod
    def handle(self, alert: Alert) -> bool:
        """
        Handle an alert.

        Args:
            alert: Alert to handle

        Returns:
            True if handled successfully
        """
        pass

    @property
    @abstractmethod
    def min_severity(self) -> AlertSeverity:
        """Minimum severity this handler processes."""
        pass


class LoggingAlertHandler(AlertHandler):
    """Handler that logs alerts."""

    def __init__(self, min_severity: AlertSeverity = AlertSeverity.INFO):
        self._min_severity = min_severity

    @property
    def min_severity(self) -> AlertSeverity:
        return self._min_severity

    def handle(self, alert: Alert) -> bool:
        log_method = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.CRITICAL: logger.error,
            AlertSeverity.EMERGENCY: logger.critical,
        }[alert.severity]

        log_method(f"[ALERT] {alert.alert_type.name}: {alert.message} | {alert.details}")
        return True


class CallbackAlertHandler(AlertHandler):
    """Handler that calls a callback function."""

    def __init__(
        self,
        callback: Callable[[Alert], None],
        min_severity: AlertSeverity = AlertSeverity.WARNING,
    ):
        self._callback = callback
        self._min_severity = min_severity

    @property
    def min_severity(self) -> AlertSeverity:
        return self._min_severity

    def handle(self, alert: Alert) -> bool:
        try:
            self._callback(alert)
            return True
        except Exception as e:
            logger.error(f"Alert callback failed: {e}")
            return False


class AlertManager:
    """
    Central alert management system.

    Handles:
    - Alert creation and routing
    - Deduplication (don't spam same alert)
    - Handler registration
    - Alert history
    - Rejection counts per kind and pair

    Usage:
        alert_mgr = AlertManager()
        alert_mgr.add_handler(LoggingAlertHandler())

        alert_mgr.create_alert(
            AlertType.DAILY_LOSS_WARNING,
            AlertSeverity.WARNING,
            "Daily loss at 80% of limit",
            {"daily_pnl": "-20.00", "limit": "25.00"},
        )

        alert_mgr.record_rejection(
            RejectionKind.PROFITABILITY_FLOOR, "WHYPE_UBTC",
            "net $0.004 below min_profit_usd", level_id="WHYPE_UBTC-3-ab12cd34",
        )
    """

    # Deduplication windows by severity
    DEDUP_WINDOWS = {
        AlertSeverity.INFO: timedelta(minutes=5),
        AlertSeverity.WARNING: timedelta(minutes=2),
        AlertSeverity.CRITICAL: timedelta(seconds=30),
        AlertSeverity.EMERGENCY: timedelta(seconds=0),  # Always send
    }

    # Severity ordering for comparison
    SEVERITY_ORDER = [
        AlertSeverity.INFO,
        AlertSeverity.WARNING,
        AlertSeverity.CRITICAL,
        AlertSeverity.EMERGENCY,
    ]

    def __init__(self, max_history: int = 1000):
        self._handlers: List[AlertHandler] = []
        self._alert_history: List[Alert] = []
        self._last_alert_times: Dict[AlertType, datetime] = {}
        self._alert_counter = 0
        self._max_history = max_history

        self._rejection_counts: Dict[RejectionKind, int] = {k: 0 for k in RejectionKind}
        self._rejections_by_pair: Dict[str, Dict[RejectionKind, int]] = {}
        self._recent_rejections: Deque[Rejection] = deque(maxlen=max_history)

    def add_handler(self, handler: AlertHandler) -> None:
        """Add an alert handler."""
        self._handlers.append(handler)
        logger.debug(f"Added alert handler: {handler.__class__.__name__}")

    def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> Optional[Alert]:
        """
        Create and dispatch an alert.

        Args:
            alert_type: Type of alert
            severity: Severity level
            message: Human-readable message
            details: Additional context
            force: Bypass deduplication

        Returns:
            Alert if created, None if deduplicated
        """
        if not force and not self._should_send(alert_type, severity):
            logger.debug(f"Alert deduplicated: {alert_type.name}")
            return None

        now = _utcnow()
        self._alert_counter += 1
        alert = Alert(
            alert_id=f"alert_{self._alert_counter}_{int(now.timestamp())}",
            alert_type=alert_type,
            severity=severity,
            message=message,
            details=details or {},
            timestamp=now,
            pair_id=(details or {}).get("pair_id"),
        )

        self._last_alert_times[alert_type] = now
        self._alert_history.append(alert)
        if len(self._alert_history) > self._max_history:
            self._alert_history = self._alert_history[-self._max_history :]

        self._dispatch(alert)

        return alert

    def _should_send(self, alert_type: AlertType, severity: AlertSeverity) -> bool:
        """Check if alert should be sent (deduplication)."""
        last_time = self._last_alert_times.get(alert_type)
        if last_time is None:
            return True

        window = self.DEDUP_WINDOWS[severity]
        return _utcnow() - last_time > window

    def _dispatch(self, alert: Alert) -> None:
        """Dispatch alert to all applicable handlers."""
        alert_severity_idx = self.SEVERITY_ORDER.index(alert.severity)

        for handler in self._handlers:
            handler_min_idx = self.SEVERITY_ORDER.index(handler.min_severity)
            if alert_severity_idx >= handler_min_idx:
                try:
                    handler.handle(alert)
                except Exception as e:
                    logger.error(f"Handler {handler.__class__.__name__} failed: {e}")

    # === Rejections ===

    def record_rejection(
        self,
        kind: RejectionKind,
        pair_id: str,
        reason: str,
        level_id: Optional[str] = None,
    ) -> Rejection:
        """
        Count and log a rejected trigger.

        Args:
            kind: Rejection kind
            pair_id: Pair the level belongs to
            reason: Human-readable cause
            level_id: Level, when the rejection concerns one

        Returns:
            The recorded Rejection
        """
        rejection = Rejection(kind=kind, pair_id=pair_id, reason=reason, level_id=level_id)

        self._rejection_counts[kind] += 1
        per_pair = self._rejections_by_pair.setdefault(
            pair_id, {k: 0 for k in RejectionKind}
        )
        per_pair[kind] += 1
        self._recent_rejections.append(rejection)

        target = f"{pair_id}/{level_id}" if level_id else pair_id
        logger.log(
            _REJECTION_LOG_LEVELS[kind],
            f"[REJECTED:{kind.name}] {target}: {reason}",
        )
        return rejection

    def get_rejection_counts(self, pair_id: Optional[str] = None) -> Dict[str, int]:
        """Rejection counts keyed by kind value, optionally for one pair."""
        if pair_id is not None:
            counts = self._rejections_by_pair.get(pair_id, {k: 0 for k in RejectionKind})
        else:
            counts = self._rejection_counts
        return {kind.value: count for kind, count in counts.items()}

    def get_recent_rejections(
        self,
        kind: Optional[RejectionKind] = None,
        limit: int = 50,
    ) -> List[Rejection]:
        rejections = list(self._recent_rejections)
        if kind is not None:
            rejections = [r for r in rejections if r.kind == kind]
        return rejections[-limit:]

    # === History ===

    def get_recent_alerts(
        self,
        since: Optional[datetime] = None,
        alert_type: Optional[AlertType] = None,
        min_severity: Optional[AlertSeverity] = None,
        pair_id: Optional[str] = None,
    ) -> List[Alert]:
        """Get recent alerts with optional filters."""
        alerts = self._alert_history
        if pair_id:
            alerts = [a for a in alerts if a.pair_id == pair_id]
        if since:
            alerts = [a for a in alerts if a.timestamp >= since]
        if alert_type:
            alerts = [a for a in alerts if a.alert_type == alert_type]
        if min_severity:
            alerts = self._at_least(alerts, min_severity)
        return list(alerts)

    def _at_least(self, alerts: List[Alert], min_severity: AlertSeverity) -> List[Alert]:
        min_idx = self.SEVERITY_ORDER.index(min_severity)
        return [a for a in alerts if self.SEVERITY_ORDER.index(a.severity) >= min_idx]

    def clear_alert_type(self, alert_type: AlertType) -> None:
        """Clear last alert time for a type (allows immediate resend)."""
        self._last_alert_times.pop(alert_type, None)

    def get_stats(self) -> Dict[str, Any]:
        """Get alert statistics."""
        severity_counts = {s.value: 0 for s in AlertSeverity}
        for alert in self._alert_history:
            severity_counts[alert.severity.value] += 1

        return {
            "total_alerts": len(self._alert_history),
            "by_severity": severity_counts,
            "handler_count": len(self._handlers),
            "rejections": self.get_rejection_counts(),
        }


# === Convenience Functions ===


def create_daily_loss_alert(
    alert_manager: AlertManager,
    daily_pnl: float,
    limit_usd: float,
    warning_ratio: float = 0.8,
) -> Optional[Alert]:
    """
    Create the appropriate daily loss alert.

    Args:
        alert_manager: AlertManager instance
        daily_pnl: Realized P&L since UTC midnight (negative is a loss)
        limit_usd: Daily loss limit as a positive USD amount
        warning_ratio: Fraction of the limit that triggers a warning

    Returns:
        Created alert or None
    """
    loss = -daily_pnl
    if limit_usd <= 0 or loss <= 0:
        return None

    if loss >= limit_usd:
        return alert_manager.create_alert(
            AlertType.DAILY_LOSS_HALT,
            AlertSeverity.EMERGENCY,
            f"DAILY LOSS LIMIT EXCEEDED: ${loss:.2f} - TRADING HALTED",
            {"daily_pnl": daily_pnl, "limit": limit_usd, "action": "halt_trading"},
            force=True,
        )
    elif loss >= limit_usd * warning_ratio:
        return alert_manager.create_alert(
            AlertType.DAILY_LOSS_WARNING,
            AlertSeverity.WARNING,
            f"Daily loss elevated: ${loss:.2f} of ${limit_usd:.2f}",
            {"daily_pnl": daily_pnl, "limit": limit_usd, "remaining": limit_usd - loss},
        )
    return None


def create_circuit_breaker_alert(
    alert_manager: AlertManager,
    pair_id: str,
    level_id: str,
    failures: int,
    last_error: Optional[str] = None,
) -> Optional[Alert]:
    """Alert that a level was permanently disabled."""
    return alert_manager.create_alert(
        AlertType.CIRCUIT_BREAKER,
        AlertSeverity.CRITICAL,
        f"Level {level_id} on {pair_id} disabled after {failures} failed commits",
        {
            "pair_id": pair_id,
            "level_id": level_id,
            "failures": failures,
            "last_error": last_error,
        },
        force=True,
    )


def create_source_health_alert(
    alert_manager: AlertManager,
    source: str,
    available: bool,
    consecutive_failures: int = 0,
) -> Optional[Alert]:
    """Alert on a price source going down or coming back."""
    if available:
        return alert_manager.create_alert(
            AlertType.SOURCE_RECOVERED,
            AlertSeverity.INFO,
            f"Price source {source} recovered",
            {"source": source},
        )
    return alert_manager.create_alert(
        AlertType.SOURCE_DOWN,
        AlertSeverity.WARNING,
        f"Price source {source} unavailable after {consecutive_failures} failures",
        {"source": source, "consecutive_failures": consecutive_failures},
    )
