"""
Core Engine Module.

Provides:
- Alert system and rejection counters
- Multi-pair allocation, cooldowns, priority queue and batching
- Engine-wide risk enforcement with a latched emergency stop
- Orchestrator for the control loop
- State management for persistence and recovery
- Health monitoring
"""

from .alerts import (
    AlertManager,
    Alert,
    AlertType,
    AlertSeverity,
    AlertHandler,
    LoggingAlertHandler,
    CallbackAlertHandler,
    Rejection,
    RejectionKind,
    create_daily_loss_alert,
    create_circuit_breaker_alert,
    create_source_health_alert,
)
from .allocator import (
    Allocator,
    AllocationValidation,
    PairAllocation,
    PairPerformance,
    ScoredLevel,
)
from .risk_manager import (
    RiskManager,
    RiskAction,
    RiskCheckResult,
    RiskState,
)
from .state_manager import (
    StateManager,
    BotState,
)
from .health_check import (
    HealthChecker,
    HealthStatus,
    SystemHealth,
    HealthLevel,
)
from .orchestrator import (
    Orchestrator,
    OrchestratorConfig,
    OrchestratorState,
)

__all__ = [
    # Alerts
    "AlertManager",
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertHandler",
    "LoggingAlertHandler",
    "CallbackAlertHandler",
    "Rejection",
    "RejectionKind",
    "create_daily_loss_alert",
    "create_circuit_breaker_alert",
    "create_source_health_alert",
    # Allocator
    "Allocator",
    "AllocationValidation",
    "PairAllocation",
    "PairPerformance",
    "ScoredLevel",
    # Risk Manager
    "RiskManager",
    "RiskAction",
    "RiskCheckResult",
    "RiskState",
    # State Manager
    "StateManager",
    "BotState",
    # Health Check
    "HealthChecker",
    "HealthStatus",
    "SystemHealth",
    "HealthLevel",
    # Orchestrator
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorState",
]
