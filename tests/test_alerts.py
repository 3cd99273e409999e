"""
Tests for Alert System module.

Tests:
- Alert creation
- Deduplication (same alert not repeated within window)
- Emergency alerts never deduplicated
- Handler routing by severity
- Per-pair alert filtering
- Rejection accounting by kind and pair
- Convenience alert builders
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from src.core import (
    AlertManager,
    Alert,
    AlertType,
    AlertSeverity,
    LoggingAlertHandler,
    CallbackAlertHandler,
    RejectionKind,
    create_daily_loss_alert,
    create_circuit_breaker_alert,
    create_source_health_alert,
)


class TestAlertCreation:
    """Tests for Alert creation."""

    def test_alert_creation(self):
        """Test basic alert creation."""
        alert = Alert(
            alert_id="test_1",
            alert_type=AlertType.COMMIT_FAILED,
            severity=AlertSeverity.WARNING,
            message="Swap reverted",
            details={"level_id": "HYPE_USDC-2-abc"},
        )

        assert alert.alert_id == "test_1"
        assert alert.alert_type == AlertType.COMMIT_FAILED
        assert alert.details["level_id"] == "HYPE_USDC-2-abc"
        assert alert.pair_id is None

    def test_alert_to_dict(self):
        """Test alert serialization."""
        alert = Alert(
            alert_id="test_1",
            alert_type=AlertType.INVENTORY_IMBALANCE,
            severity=AlertSeverity.CRITICAL,
            message="Inventory one-sided",
            details={"imbalance": 0.8},
            timestamp=datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc),
        )

        data = alert.to_dict()

        assert data["alert_type"] == "INVENTORY_IMBALANCE"
        assert data["severity"] == "critical"
        assert data["timestamp"] == "2025-01-15T12:00:00+00:00"
        assert data["pair_id"] is None

    def test_alert_str(self):
        """Test alert string representation."""
        alert = Alert(
            alert_id="test_1",
            alert_type=AlertType.DAILY_LOSS_HALT,
            severity=AlertSeverity.EMERGENCY,
            message="Trading halted",
            details={},
        )

        s = str(alert)
        assert "EMERGENCY" in s
        assert "DAILY_LOSS_HALT" in s


class TestAlertManager:
    """Tests for AlertManager."""

    def test_alert_history(self):
        """Test alert history tracking."""
        manager = AlertManager()

        manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "A1", force=True)
        manager.create_alert(AlertType.GRID_REPLANNED, AlertSeverity.INFO, "A2", force=True)

        assert len(manager.get_recent_alerts()) == 2
        assert len(manager.get_recent_alerts(alert_type=AlertType.GRID_REPLANNED)) == 1
        assert len(manager.get_recent_alerts(min_severity=AlertSeverity.WARNING)) == 1

    def test_history_is_bounded(self):
        """Test history keeps only the newest entries."""
        manager = AlertManager(max_history=3)

        for i in range(5):
            manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, f"A{i}", force=True)

        messages = [a.message for a in manager.get_recent_alerts()]
        assert messages == ["A2", "A3", "A4"]

    def test_get_stats(self):
        """Test alert statistics."""
        manager = AlertManager()

        manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "W1", force=True)
        manager.create_alert(AlertType.CIRCUIT_BREAKER, AlertSeverity.CRITICAL, "C1", force=True)
        manager.create_alert(AlertType.COMMIT_TIMEOUT, AlertSeverity.WARNING, "W2", force=True)

        stats = manager.get_stats()

        assert stats["total_alerts"] == 3
        assert stats["by_severity"]["warning"] == 2
        assert stats["by_severity"]["critical"] == 1
        assert stats["rejections"]["cooldown"] == 0


class TestAlertDeduplication:
    """Tests for alert deduplication."""

    def test_info_deduplication(self):
        """Test INFO alerts deduplicated within 5 min window."""
        manager = AlertManager()

        alert1 = manager.create_alert(AlertType.TRADING_RESUMED, AlertSeverity.INFO, "Resumed")
        alert2 = manager.create_alert(AlertType.TRADING_RESUMED, AlertSeverity.INFO, "Resumed")

        assert alert1 is not None
        assert alert2 is None

    def test_emergency_never_deduplicated(self):
        """Test EMERGENCY alerts are never deduplicated."""
        manager = AlertManager()

        alert1 = manager.create_alert(AlertType.EMERGENCY_STOP, AlertSeverity.EMERGENCY, "HALT")
        alert2 = manager.create_alert(AlertType.EMERGENCY_STOP, AlertSeverity.EMERGENCY, "HALT")

        assert alert1 is not None
        assert alert2 is not None

    def test_force_bypasses_deduplication(self):
        """Test force=True bypasses deduplication."""
        manager = AlertManager()

        manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "Warning")
        alert2 = manager.create_alert(
            AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "Warning", force=True
        )

        assert alert2 is not None

    def test_different_types_not_deduplicated(self):
        """Test different alert types are not deduplicated."""
        manager = AlertManager()

        alert1 = manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "Failed")
        alert2 = manager.create_alert(AlertType.COMMIT_TIMEOUT, AlertSeverity.WARNING, "Timeout")

        assert alert1 is not None
        assert alert2 is not None

    def test_clear_alert_type(self):
        """Test clearing alert type allows immediate resend."""
        manager = AlertManager()

        manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "Warning")
        manager.clear_alert_type(AlertType.COMMIT_FAILED)

        assert manager.create_alert(AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "Warning")


class TestAlertHandlers:
    """Tests for alert handlers."""

    def test_logging_handler(self):
        """Test LoggingAlertHandler."""
        handler = LoggingAlertHandler(min_severity=AlertSeverity.INFO)
        alert = Alert("test_1", AlertType.SOURCE_DOWN, AlertSeverity.WARNING, "Test", {})

        assert handler.handle(alert) is True

    def test_callback_handler_exception(self):
        """Test CallbackAlertHandler handles exceptions."""
        callback = Mock(side_effect=Exception("Callback failed"))
        handler = CallbackAlertHandler(callback)
        alert = Alert("test_1", AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "Failed", {})

        assert handler.handle(alert) is False

    def test_handler_routing_by_severity(self):
        """Test handlers only receive alerts at or above their min severity."""
        manager = AlertManager()
        info_callback, critical_callback = Mock(), Mock()

        manager.add_handler(CallbackAlertHandler(info_callback, AlertSeverity.INFO))
        manager.add_handler(CallbackAlertHandler(critical_callback, AlertSeverity.CRITICAL))

        manager.create_alert(AlertType.GRID_REPLANNED, AlertSeverity.INFO, "Info", force=True)
        assert info_callback.call_count == 1
        assert critical_callback.call_count == 0

        manager.create_alert(AlertType.CIRCUIT_BREAKER, AlertSeverity.CRITICAL, "Crit", force=True)
        assert info_callback.call_count == 2
        assert critical_callback.call_count == 1

class TestPairAlerts:
    """Tests for per-pair alert filtering."""

    def test_pair_id_taken_from_details(self):
        manager = AlertManager()

        alert = manager.create_alert(
            AlertType.GRID_REPLANNED, AlertSeverity.INFO, "replanned", {"pair_id": "WHYPE_UBTC"}
        )

        assert alert.pair_id == "WHYPE_UBTC"
        assert alert.to_dict()["pair_id"] == "WHYPE_UBTC"

    def test_filter_by_pair(self):
        manager = AlertManager()
        manager.create_alert(
            AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "a", {"pair_id": "WHYPE_UBTC"}, force=True
        )
        manager.create_alert(
            AlertType.COMMIT_FAILED, AlertSeverity.WARNING, "b", {"pair_id": "WHYPE_UETH"}, force=True
        )
        manager.create_alert(AlertType.TRADING_PAUSED, AlertSeverity.WARNING, "c")

        assert [a.message for a in manager.get_recent_alerts(pair_id="WHYPE_UETH")] == ["b"]
        assert len(manager.get_recent_alerts()) == 3

class TestRejections:
    """Tests for rejection accounting."""

    def test_counts_by_kind(self):
        """Test rejections are counted per kind."""
        manager = AlertManager()

        manager.record_rejection(RejectionKind.PROFITABILITY_FLOOR, "HYPE_USDC", "below floor")
        manager.record_rejection(RejectionKind.PROFITABILITY_FLOOR, "WHYPE_UBTC", "below floor")
        manager.record_rejection(RejectionKind.RISK_HALT, "HYPE_USDC", "daily loss")

        counts = manager.get_rejection_counts()
        assert counts["profitability_floor"] == 2
        assert counts["risk_halt"] == 1
        assert counts["circuit_breaker"] == 0

    def test_counts_by_pair(self):
        """Test per-pair counts stay separate."""
        manager = AlertManager()

        manager.record_rejection(RejectionKind.COOLDOWN, "HYPE_USDC", "cooldown")
        manager.record_rejection(RejectionKind.COOLDOWN, "WHYPE_UBTC", "cooldown")

        assert manager.get_rejection_counts("HYPE_USDC")["cooldown"] == 1
        assert manager.get_rejection_counts("UNKNOWN")["cooldown"] == 0

    def test_recent_rejections_filtered(self):
        """Test recent rejections filter by kind."""
        manager = AlertManager()

        manager.record_rejection(RejectionKind.COOLDOWN, "P", "a", level_id="P-1-x")
        rejection = manager.record_rejection(RejectionKind.CIRCUIT_BREAKER, "P", "b", "P-2-y")

        recent = manager.get_recent_rejections(kind=RejectionKind.CIRCUIT_BREAKER)
        assert recent == [rejection]
        assert rejection.to_dict()["kind"] == "circuit_breaker"

    def test_rejections_are_not_alerts(self):
        """Test routine rejections do not create alerts."""
        manager = AlertManager()

        manager.record_rejection(RejectionKind.CONCURRENCY_LIMIT, "P", "limit")

        assert manager.get_recent_alerts() == []


class TestConvenienceBuilders:
    """Tests for alert builder functions."""

    def test_daily_loss_none_when_profitable(self):
        manager = AlertManager()

        assert create_daily_loss_alert(manager, daily_pnl=5.0, limit_usd=25.0) is None
        assert create_daily_loss_alert(manager, daily_pnl=-10.0, limit_usd=25.0) is None

    def test_daily_loss_warning(self):
        """Test a loss past 80% of the limit warns."""
        alert = create_daily_loss_alert(AlertManager(), daily_pnl=-21.0, limit_usd=25.0)

        assert alert.alert_type == AlertType.DAILY_LOSS_WARNING
        assert alert.details["remaining"] == pytest.approx(4.0)

    def test_daily_loss_halt(self):
        """Test a loss at the limit raises an emergency."""
        alert = create_daily_loss_alert(AlertManager(), daily_pnl=-25.0, limit_usd=25.0)

        assert alert.alert_type == AlertType.DAILY_LOSS_HALT
        assert alert.severity == AlertSeverity.EMERGENCY

    def test_circuit_breaker_alert(self):
        manager = AlertManager()

        first = create_circuit_breaker_alert(manager, "P", "P-1-x", 3, "reverted")
        second = create_circuit_breaker_alert(manager, "P", "P-2-y", 3)

        assert first.severity == AlertSeverity.CRITICAL
        assert second is not None

    def test_source_health_alerts(self):
        manager = AlertManager()

        down = create_source_health_alert(manager, "stream", available=False, consecutive_failures=3)
        up = create_source_health_alert(manager, "stream", available=True)

        assert down.alert_type == AlertType.SOURCE_DOWN
        assert up.alert_type == AlertType.SOURCE_RECOVERED
