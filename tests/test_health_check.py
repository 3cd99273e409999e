"""
Tests for Health Check module.

Tests:
- Price source probing and availability transitions
- Price freshness per asset
- Stream and database checks
- Overall health status
- Metrics collection
"""

import pytest
from unittest.mock import Mock, AsyncMock

from src.core import (
    AlertManager,
    AlertType,
    HealthChecker,
    HealthLevel,
    HealthStatus,
)


class FakeClock:
    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def source_health(**available):
    return {
        name: {"available": up, "consecutive_failures": 0 if up else 3}
        for name, up in available.items()
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator():
    agg = Mock()
    agg.probe_sources = AsyncMock(return_value={})
    agg.get_source_health = Mock(return_value=source_health(stream=True, rest=True))
    return agg


class TestHealthStatus:
    """Tests for HealthStatus dataclass."""

    def test_to_dict(self):
        status = HealthStatus(
            component="stream",
            healthy=False,
            level=HealthLevel.CRITICAL,
            message="Stream disconnected",
            consecutive_failures=5,
        )

        data = status.to_dict()

        assert data["level"] == "critical"
        assert data["consecutive_failures"] == 5


class TestPriceSources:
    """Tests for source probing."""

    @pytest.mark.asyncio
    async def test_probes_each_asset(self, aggregator):
        checker = HealthChecker(aggregator=aggregator, probe_assets=["HYPE", "WHYPE/UBTC"])

        status = await checker.check_price_sources()

        assert aggregator.probe_sources.await_count == 2
        assert status.level == HealthLevel.HEALTHY

    @pytest.mark.asyncio
    async def test_partial_outage_warns(self, aggregator):
        aggregator.get_source_health.return_value = source_health(stream=False, rest=True)
        checker = HealthChecker(aggregator=aggregator, probe_assets=["HYPE"])

        status = await checker.check_price_sources()

        assert status.healthy is True
        assert status.level == HealthLevel.WARNING
        assert "stream" in status.message

    @pytest.mark.asyncio
    async def test_all_down_is_critical(self, aggregator):
        aggregator.get_source_health.return_value = source_health(stream=False, rest=False)
        checker = HealthChecker(aggregator=aggregator)

        status = await checker.check_price_sources()

        assert status.healthy is False
        assert status.level == HealthLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_probe_errors_are_logged(self, aggregator):
        """Test a failing probe does not abort the check."""
        aggregator.probe_sources.side_effect = RuntimeError("boom")
        checker = HealthChecker(aggregator=aggregator, probe_assets=["HYPE"])

        status = await checker.check_price_sources()

        assert status.level == HealthLevel.HEALTHY

    @pytest.mark.asyncio
    async def test_transition_alerts(self, aggregator):
        """Test down and recovered transitions raise alerts once each."""
        alerts = AlertManager()
        checker = HealthChecker(aggregator=aggregator, alert_manager=alerts)

        aggregator.get_source_health.return_value = source_health(stream=False)
        await checker.check_price_sources()
        await checker.check_price_sources()
        aggregator.get_source_health.return_value = source_health(stream=True)
        await checker.check_price_sources()

        assert len(alerts.get_recent_alerts(alert_type=AlertType.SOURCE_DOWN)) == 1
        assert len(alerts.get_recent_alerts(alert_type=AlertType.SOURCE_RECOVERED)) == 1

    @pytest.mark.asyncio
    async def test_no_aggregator(self):
        status = await HealthChecker().check_price_sources()

        assert status.level == HealthLevel.UNKNOWN


class TestPriceFreshness:
    """Tests for per-asset price age."""

    @pytest.mark.asyncio
    async def test_no_data_yet(self, clock):
        status = await HealthChecker(clock=clock).check_price_freshness()

        assert status.healthy is False
        assert status.level == HealthLevel.WARNING

    @pytest.mark.asyncio
    async def test_fresh(self, clock):
        checker = HealthChecker(stale_price_seconds=120, clock=clock)
        checker.record_price_update("HYPE")

        status = await checker.check_price_freshness()

        assert status.level == HealthLevel.HEALTHY

    @pytest.mark.asyncio
    async def test_ageing_warns(self, clock):
        checker = HealthChecker(stale_price_seconds=120, clock=clock)
        checker.record_price_update("HYPE")
        clock.now += 90

        status = await checker.check_price_freshness()

        assert status.healthy is True
        assert status.level == HealthLevel.WARNING

    @pytest.mark.asyncio
    async def test_stale_asset_named(self, clock):
        """Test one stale asset makes freshness critical."""
        checker = HealthChecker(stale_price_seconds=120, clock=clock)
        checker.record_price_update("BTC")
        clock.now += 200
        checker.record_price_update("HYPE")

        status = await checker.check_price_freshness()

        assert status.level == HealthLevel.CRITICAL
        assert "BTC" in status.message
        assert "HYPE" not in status.message


class TestStreamAndDatabase:
    """Tests for stream and database checks."""

    @pytest.mark.asyncio
    async def test_stream_not_configured(self):
        status = await HealthChecker().check_stream()

        assert status.healthy is True
        assert status.level == HealthLevel.UNKNOWN

    @pytest.mark.asyncio
    async def test_stream_disconnected(self):
        stream = Mock(is_connected=False)
        stream.get_stats.return_value = {"state": "reconnecting"}

        status = await HealthChecker(stream=stream).check_stream()

        assert status.healthy is False
        assert "reconnecting" in status.message

    @pytest.mark.asyncio
    async def test_stream_silent(self):
        stream = Mock(is_connected=True)
        stream.get_stats.return_value = {}
        stream.has_recent_data.return_value = False

        status = await HealthChecker(stream=stream).check_stream()

        assert status.healthy is False
        assert "silent" in status.message

    @pytest.mark.asyncio
    async def test_database_ok(self):
        state_manager = Mock()
        state_manager.check_connection.return_value = True

        status = await HealthChecker(state_manager=state_manager).check_database()

        assert status.healthy is True

    @pytest.mark.asyncio
    async def test_database_error(self):
        state_manager = Mock()
        state_manager.check_connection.side_effect = Exception("disk I/O error")

        status = await HealthChecker(state_manager=state_manager).check_database()

        assert status.level == HealthLevel.CRITICAL
        assert "disk I/O error" in status.message


class TestRunAllChecks:
    """Tests for overall health."""

    @pytest.mark.asyncio
    async def test_overall_worst_level(self, aggregator, clock):
        """Test overall level is the worst component level."""
        state_manager = Mock()
        checker = HealthChecker(
            aggregator=aggregator, state_manager=state_manager, probe_assets=["HYPE"], clock=clock
        )
        checker.record_price_update("HYPE")

        health = await checker.run_all_checks()

        assert health.overall_healthy is True
        assert health.overall_level == HealthLevel.HEALTHY
        assert set(health.components) == {"price_sources", "price_freshness", "stream", "database"}
        assert checker.last_health is health

    @pytest.mark.asyncio
    async def test_consecutive_failures_tracked(self, aggregator, clock):
        state_manager = Mock()
        state_manager.check_connection.side_effect = Exception("locked")
        checker = HealthChecker(aggregator=aggregator, state_manager=state_manager, clock=clock)
        checker.record_price_update("HYPE")

        await checker.run_all_checks()
        health = await checker.run_all_checks()

        assert health.overall_level == HealthLevel.CRITICAL
        assert health.components["database"].consecutive_failures == 2

        metrics = checker.get_metrics()
        assert metrics["checks_run"] == 2
        assert metrics["failing_components"] == ["database"]
        assert metrics["tracked_assets"] == ["HYPE"]
