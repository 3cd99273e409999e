"""
Central Risk Manager.

Enforces engine-wide risk rules:
- Daily realized loss limit (percent of investment, resets at UTC midnight)
- Session stop-loss (percent of investment)
- Consecutive losing cycles
- Inventory imbalance (pauses, recoverable)
- Single position size (rejects the order)

Daily loss, stop-loss and consecutive-loss breaches latch an emergency
stop. Only an explicit operator reset clears it; in-flight commits are
left to resolve.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional

from config.settings import RiskConfig
from src.grid import TradeCycle

from .alerts import (
    AlertManager,
    AlertType,
    AlertSeverity,
    create_daily_loss_alert,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskAction(Enum):
    """Actions the risk manager can take."""

    NONE = auto()  # No action needed
    REJECT_ORDER = auto()  # Skip this order only
    PAUSE_TRADING = auto()  # Pause new commits until the condition clears
    HALT_TRADING = auto()  # Emergency stop until operator reset


@dataclass
class RiskCheckResult:
    """Result of a risk check."""

    passed: bool
    action: RiskAction
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def should_halt(self) -> bool:
        return self.action == RiskAction.HALT_TRADING

    @property
    def should_pause(self) -> bool:
        return self.action in (RiskAction.PAUSE_TRADING, RiskAction.HALT_TRADING)

    def __str__(self) -> str:
        status = "PASSED" if self.passed else "FAILED"
        return f"RiskCheck({status}): {self.reason}"


@dataclass
class RiskState:
    """Mutable risk snapshot."""

    daily_pnl: Decimal = Decimal("0")
    session_pnl: Decimal = Decimal("0")
    consecutive_losses: int = 0
    max_imbalance: float = 0.0
    emergency_stopped: bool = False
    stop_reason: str = ""
    trading_day: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "daily_pnl": str(self.daily_pnl),
            "session_pnl": str(self.session_pnl),
            "consecutive_losses": self.consecutive_losses,
            "max_imbalance": self.max_imbalance,
            "emergency_stopped": self.emergency_stopped,
            "stop_reason": self.stop_reason,
            "trading_day": self.trading_day.isoformat() if self.trading_day else None,
        }


class RiskManager:
    """
    Engine-wide risk gate.

    Key Responsibilities:
    - Track realized P&L per UTC day and per session from closed cycles
    - Count consecutive losing cycles
    - Track the worst per-pair inventory imbalance
    - Latch the emergency stop on limit breaches
    - Generate alerts for risk events

    Usage:
        risk_manager = RiskManager(config.risk, total_investment=Decimal("500"))

        # After each closed cycle
        risk_manager.record_cycle(cycle)

        # Before committing anything
        result = risk_manager.check_trading_allowed()
        if not result.passed:
            skip_commits(result.reason)

        # Operator action only
        risk_manager.reset_emergency_stop(operator_override=True)
    """

    # Fraction of the daily limit that raises a warning
    DAILY_LOSS_WARNING_RATIO = 0.8

    def __init__(
        self,
        config: RiskConfig,
        total_investment: Decimal,
        alert_manager: Optional[AlertManager] = None,
        on_halt: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize risk manager.

        Args:
            config: Risk configuration
            total_investment: Budget the percentage limits apply to
            alert_manager: Alert manager (created if not provided)
            on_halt: Callback when the emergency stop latches
            clock: Returns the current UTC datetime
        """
        self._config = config
        self._investment = Decimal(str(total_investment))
        self._alert_manager = alert_manager or AlertManager()
        self._on_halt = on_halt
        self._clock = clock

        self._state = RiskState(trading_day=clock().date())
        self._imbalances: Dict[str, float] = {}
        self._is_paused = False
        self._pause_reason = ""
        self._cycles_recorded = 0

        # Health tasks read state while the control loop writes it
        self._lock = threading.Lock()

        logger.info(
            f"RiskManager initialized: daily_loss={config.max_daily_loss_percent}%, "
            f"stop_loss={config.stop_loss_percent}%, "
            f"consecutive_losses={config.max_consecutive_losses}, "
            f"max_imbalance={config.max_inventory_imbalance:.0%}"
        )

    # === Limits ===

    @property
    def daily_loss_limit(self) -> Decimal:
        return self._investment * Decimal(str(self._config.max_daily_loss_percent)) / 100

    @property
    def stop_loss_limit(self) -> Decimal:
        return self._investment * Decimal(str(self._config.stop_loss_percent)) / 100

    @property
    def max_position_usd(self) -> Decimal:
        return self._investment * Decimal(str(self._config.max_position_percent)) / 100

    # === Updates ===

    def _roll_day(self) -> None:
        """Reset daily P&L at UTC midnight. The emergency stop is not touched."""
        today = self._clock().date()
        if self._state.trading_day != today:
            logger.info(
                f"New trading day {today}: daily P&L {self._state.daily_pnl:.4f} reset"
            )
            self._state.daily_pnl = Decimal("0")
            self._state.trading_day = today

    def record_cycle(self, cycle: TradeCycle) -> RiskCheckResult:
        """
        Fold a closed cycle into P&L and loss streaks.

        Returns:
            The risk check after the update
        """
        with self._lock:
            self._roll_day()
            self._state.daily_pnl += cycle.net_profit
            self._state.session_pnl += cycle.net_profit
            self._cycles_recorded += 1

            if cycle.net_profit < 0:
                self._state.consecutive_losses += 1
            else:
                self._state.consecutive_losses = 0

        create_daily_loss_alert(
            self._alert_manager,
            float(self._state.daily_pnl),
            float(self.daily_loss_limit),
            self.DAILY_LOSS_WARNING_RATIO,
        )
        return self.check_trading_allowed()

    def update_imbalance(self, pair_id: str, imbalance: float) -> None:
        """Record a pair's inventory imbalance (0 = balanced, 1 = fully one-sided)."""
        with self._lock:
            self._imbalances[pair_id] = imbalance
            self._state.max_imbalance = max(self._imbalances.values())

    # === Checks ===

    def check_trading_allowed(self) -> RiskCheckResult:
        """
        Run every engine-wide limit.

        Returns:
            RiskCheckResult; HALT_TRADING latches the emergency stop
        """
        with self._lock:
            self._roll_day()
            state = self._state

            if state.emergency_stopped:
                return RiskCheckResult(
                    False,
                    RiskAction.HALT_TRADING,
                    f"Emergency stop active: {state.stop_reason}",
                    state.to_dict(),
                )

            breach = self._find_breach()

        if breach is not None:
            alert_type, reason = breach
            self._latch_emergency_stop(alert_type, reason)
            return RiskCheckResult(False, RiskAction.HALT_TRADING, reason, state.to_dict())

        return self._check_imbalance()

    def _find_breach(self) -> Optional[tuple]:
        state = self._state
        if self.daily_loss_limit > 0 and state.daily_pnl <= -self.daily_loss_limit:
            return (
                AlertType.DAILY_LOSS_HALT,
                f"Daily loss ${-state.daily_pnl:.2f} reached limit ${self.daily_loss_limit:.2f}",
            )
        if self.stop_loss_limit > 0 and state.session_pnl <= -self.stop_loss_limit:
            return (
                AlertType.STOP_LOSS_TRIGGERED,
                f"Session loss ${-state.session_pnl:.2f} reached stop-loss "
                f"${self.stop_loss_limit:.2f}",
            )
        if (
            self._config.max_consecutive_losses > 0
            and state.consecutive_losses >= self._config.max_consecutive_losses
        ):
            return (
                AlertType.CONSECUTIVE_LOSSES,
                f"{state.consecutive_losses} consecutive losing cycles",
            )
        return None

    def _check_imbalance(self) -> RiskCheckResult:
        imbalance = self._state.max_imbalance
        limit = self._config.max_inventory_imbalance

        if imbalance > limit:
            reason = f"Inventory imbalance {imbalance:.0%} above {limit:.0%}"
            self.pause_trading(reason)
            return RiskCheckResult(
                False,
                RiskAction.PAUSE_TRADING,
                reason,
                {"max_imbalance": imbalance, "by_pair": dict(self._imbalances)},
            )

        if self._is_paused:
            self.resume_trading()

        return RiskCheckResult(True, RiskAction.NONE, "All risk checks passed")

    def check_order_allowed(self, position_usd: Decimal) -> RiskCheckResult:
        """Reject a single order larger than the position limit."""
        if position_usd > self.max_position_usd:
            return RiskCheckResult(
                False,
                RiskAction.REJECT_ORDER,
                f"Position ${position_usd:.2f} exceeds limit ${self.max_position_usd:.2f}",
                {"position_usd": str(position_usd), "limit": str(self.max_position_usd)},
            )
        return RiskCheckResult(True, RiskAction.NONE, "Order within limits")

    # === Halt/Pause Management ===

    def _latch_emergency_stop(self, alert_type: AlertType, reason: str) -> None:
        with self._lock:
            if self._state.emergency_stopped:
                return
            self._state.emergency_stopped = True
            self._state.stop_reason = reason

        logger.critical(f"EMERGENCY STOP: {reason}")

        self._alert_manager.create_alert(
            alert_type,
            AlertSeverity.CRITICAL,
            reason,
            self._state.to_dict(),
            force=True,
        )
        self._alert_manager.create_alert(
            AlertType.EMERGENCY_STOP,
            AlertSeverity.EMERGENCY,
            f"Trading halted: {reason}",
            {"reason": reason},
            force=True,
        )

        if self._on_halt:
            try:
                self._on_halt(reason)
            except Exception as e:
                logger.error(f"Halt callback failed: {e}")

    def pause_trading(self, reason: str) -> None:
        """Pause trading (recoverable)."""
        with self._lock:
            if self._is_paused:
                return
            self._is_paused = True
            self._pause_reason = reason

        self._alert_manager.create_alert(
            AlertType.INVENTORY_IMBALANCE,
            AlertSeverity.WARNING,
            f"Trading paused: {reason}",
            {"reason": reason, "by_pair": dict(self._imbalances)},
        )
        logger.warning(f"Trading paused: {reason}")

    def resume_trading(self) -> bool:
        """
        Resume trading after a pause.

        Returns:
            True if resumed, False if the emergency stop is active
        """
        with self._lock:
            if self._state.emergency_stopped:
                logger.warning("Cannot resume: emergency stop is active")
                return False
            if not self._is_paused:
                return True
            self._is_paused = False
            self._pause_reason = ""

        self._alert_manager.create_alert(
            AlertType.TRADING_RESUMED,
            AlertSeverity.INFO,
            "Trading resumed",
            {"max_imbalance": self._state.max_imbalance},
        )
        logger.info("Trading resumed")
        return True

    def reset_emergency_stop(self, operator_override: bool = False) -> bool:
        """
        Clear the emergency stop (requires manual intervention).

        Re-baselines the loss counters that can latch a stop so the
        breach that caused it does not re-trip on the next check.

        Args:
            operator_override: Explicit operator authorization

        Returns:
            True if cleared
        """
        if not operator_override:
            logger.error("Cannot reset emergency stop without operator_override=True")
            return False

        with self._lock:
            previous = self._state.stop_reason
            self._state.emergency_stopped = False
            self._state.stop_reason = ""
            self._state.consecutive_losses = 0
            self._state.daily_pnl = Decimal("0")
            self._state.session_pnl = Decimal("0")

        logger.warning(f"EMERGENCY STOP RESET by operator (was: {previous})")

        self._alert_manager.create_alert(
            AlertType.EMERGENCY_RESET,
            AlertSeverity.INFO,
            "Emergency stop reset by operator",
            {"operator_override": True, "previous_reason": previous},
            force=True,
        )
        return True

    # === State Access ===

    @property
    def is_halted(self) -> bool:
        return self._state.emergency_stopped

    @property
    def is_paused(self) -> bool:
        return self._is_paused or self._state.emergency_stopped

    @property
    def halt_reason(self) -> str:
        return self._state.stop_reason

    @property
    def alert_manager(self) -> AlertManager:
        return self._alert_manager

    def get_risk_state(self) -> RiskState:
        """Copy of the current risk state."""
        with self._lock:
            return RiskState(**vars(self._state))

    def get_stats(self) -> Dict[str, Any]:
        """Get risk manager statistics."""
        state = self.get_risk_state()
        return {
            **state.to_dict(),
            "is_paused": self._is_paused,
            "pause_reason": self._pause_reason,
            "daily_loss_limit": str(self.daily_loss_limit),
            "stop_loss_limit": str(self.stop_loss_limit),
            "imbalance_by_pair": dict(self._imbalances),
            "cycles_recorded": self._cycles_recorded,
        }

    # === Persistence ===

    def to_dict(self) -> Dict[str, Any]:
        """Serialize risk manager state."""
        return {
            **self._state.to_dict(),
            "is_paused": self._is_paused,
            "pause_reason": self._pause_reason,
        }

    def restore_from_dict(self, data: Dict[str, Any]) -> None:
        """Restore state from persistence. Daily P&L only survives within the same UTC day."""
        with self._lock:
            self._state.emergency_stopped = data.get("emergency_stopped", False)
            self._state.stop_reason = data.get("stop_reason", "")
            self._state.consecutive_losses = data.get("consecutive_losses", 0)
            self._state.session_pnl = Decimal(data.get("session_pnl", "0"))

            saved_day = data.get("trading_day")
            if saved_day and date.fromisoformat(saved_day) == self._clock().date():
                self._state.daily_pnl = Decimal(data.get("daily_pnl", "0"))

        logger.info(
            f"RiskManager restored: emergency_stopped={self._state.emergency_stopped}, "
            f"daily_pnl={self._state.daily_pnl}"
        )
