"""
Tests for State Manager module.

Tests:
- State save and load
- Risk-only state updates
- Execution and cycle history
- Pair performance and totals snapshots
- Session management
"""

import pytest
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from src.core import StateManager, BotState
from src.grid import OrderSide, TradeCosts, TradeLedger, TradeExecution


def make_exec(side, price, pair_id="HYPE_USDC", timestamp=1000.0):
    return TradeExecution(
        id=TradeExecution.new_id(),
        level_id=f"{pair_id}-1-abc",
        pair_id=pair_id,
        side=side,
        exec_price=Decimal(price),
        quantity=Decimal("1"),
        usd_value=Decimal(price),
        costs=TradeCosts(Decimal("0.3"), Decimal("0.001"), Decimal("0.05")),
        tx_ref="0xfeed",
        timestamp=timestamp,
    )


class TestBotState:
    """Tests for BotState dataclass."""

    def test_bot_state_to_dict(self):
        """Test serialization to dictionary."""
        ts = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        state = BotState(
            timestamp=ts,
            is_trading=True,
            grid_snapshot={"HYPE_USDC": {"levels": []}},
            risk_state={"emergency_stopped": False},
        )

        data = state.to_dict()

        assert data["timestamp"] == ts.isoformat()
        assert data["grid_snapshot"] == {"HYPE_USDC": {"levels": []}}
        assert data["risk_state"]["emergency_stopped"] is False

    def test_bot_state_from_dict(self):
        """Test deserialization from dictionary."""
        data = {
            "timestamp": "2025-01-15T12:00:00+00:00",
            "version": "1.0",
            "is_trading": False,
            "risk_state": {"daily_pnl": "-3.5"},
        }

        state = BotState.from_dict(data)

        assert state.timestamp == datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        assert state.risk_state == {"daily_pnl": "-3.5"}
        assert state.grid_snapshot is None


class TestStateManager:
    """Tests for StateManager class."""

    @pytest.fixture
    def temp_db(self):
        """Create temporary database path."""
        with tempfile.TemporaryDirectory() as tmp:
            yield str(Path(tmp) / "state" / "engine.db")

    @pytest.fixture
    def state_manager(self, temp_db):
        """Create state manager with temporary database."""
        return StateManager(db_path=temp_db)

    def test_initialization_creates_parent(self, state_manager, temp_db):
        """Test the database directory is created."""
        assert Path(temp_db).exists()
        assert state_manager.has_state() is False
        assert state_manager.load_state() is None
        assert state_manager.check_connection() is True

    def test_save_and_load_state(self, state_manager):
        """Test saving and loading state."""
        state = BotState(
            timestamp=datetime.now(timezone.utc),
            is_trading=True,
            risk_state={"session_pnl": Decimal("-1.25")},
        )

        state_manager.save_state(state)
        loaded = state_manager.load_state()

        assert loaded.is_trading is True
        assert loaded.risk_state == {"session_pnl": "-1.25"}

    def test_single_row(self, state_manager):
        """Test saves replace the previous state."""
        state_manager.save_state(BotState(timestamp=datetime.now(timezone.utc), session_id="a"))
        state_manager.save_state(BotState(timestamp=datetime.now(timezone.utc), session_id="b"))

        assert state_manager.load_state().session_id == "b"

    def test_clear_state(self, state_manager):
        """Test clearing state."""
        state_manager.save_state(BotState(timestamp=datetime.now(timezone.utc)))

        state_manager.clear_state()

        assert state_manager.has_state() is False

    def test_save_risk_state_keeps_grid(self, state_manager):
        """Test risk-only updates keep the rest of the snapshot."""
        state_manager.save_state(
            BotState(timestamp=datetime.now(timezone.utc), grid_snapshot={"P": {"levels": []}})
        )

        state_manager.save_risk_state({"emergency_stopped": True})

        loaded = state_manager.load_state()
        assert loaded.risk_state == {"emergency_stopped": True}
        assert loaded.grid_snapshot == {"P": {"levels": []}}

    def test_save_risk_state_without_prior(self, state_manager):
        state_manager.save_risk_state({"emergency_stopped": False})

        assert state_manager.load_state().risk_state == {"emergency_stopped": False}


class TestHistory:
    """Tests for execution and cycle history."""

    @pytest.fixture
    def state_manager(self):
        with tempfile.TemporaryDirectory() as tmp:
            yield StateManager(db_path=str(Path(tmp) / "engine.db"))

    def test_executions_newest_first(self, state_manager):
        first = make_exec(OrderSide.BUY, "98", timestamp=1000.0)
        second = make_exec(OrderSide.SELL, "102", timestamp=2000.0)
        state_manager.save_execution(first)
        state_manager.save_execution(second)

        history = state_manager.get_execution_history()

        assert [row["id"] for row in history] == [second.id, first.id]
        assert history[0]["side"] == "sell"
        assert history[0]["pool_fee"] == "0.3"

    def test_execution_idempotent(self, state_manager):
        execution = make_exec(OrderSide.BUY, "98")
        state_manager.save_execution(execution)
        state_manager.save_execution(execution)

        assert state_manager.get_stats()["total_executions"] == 1

    def test_filter_by_pair(self, state_manager):
        state_manager.save_execution(make_exec(OrderSide.BUY, "98"))
        state_manager.save_execution(make_exec(OrderSide.BUY, "0.0005", pair_id="WHYPE_UBTC"))

        assert len(state_manager.get_execution_history(pair_id="WHYPE_UBTC")) == 1

    def test_save_cycle(self, state_manager):
        ledger = TradeLedger()
        ledger.record(make_exec(OrderSide.BUY, "98"))
        cycle = ledger.record(make_exec(OrderSide.SELL, "102"))

        state_manager.save_cycle(cycle)

        rows = state_manager.get_cycle_history("HYPE_USDC")
        assert len(rows) == 1
        assert Decimal(rows[0]["gross_profit"]) == Decimal("4")
        assert Decimal(rows[0]["net_profit"]) == cycle.net_profit

    def test_history_tagged_with_session(self, state_manager):
        session_id = state_manager.start_session(Decimal("500"), dry_run=True)
        state_manager.save_execution(make_exec(OrderSide.BUY, "98"))

        assert state_manager.get_execution_history()[0]["session_id"] == session_id


class TestSnapshots:
    """Tests for performance and totals snapshots."""

    @pytest.fixture
    def state_manager(self):
        with tempfile.TemporaryDirectory() as tmp:
            yield StateManager(db_path=str(Path(tmp) / "engine.db"))

    def test_pair_performance_replaced(self, state_manager):
        state_manager.save_pair_performance("P", {"cycles": 1, "realized_profit": Decimal("1")})
        state_manager.save_pair_performance("P", {"cycles": 2, "realized_profit": Decimal("3")})

        assert state_manager.get_pair_performance("P") == {"cycles": 2, "realized_profit": "3"}
        assert state_manager.get_pair_performance("missing") is None

    def test_latest_totals(self, state_manager):
        assert state_manager.get_latest_totals() is None

        state_manager.save_totals({"trades": 2, "cycles": 1, "realized_profit": Decimal("4")})
        state_manager.save_totals({"trades": 4, "cycles": 2, "realized_profit": Decimal("7.5")})

        totals = state_manager.get_latest_totals()
        assert totals["trades"] == 4
        assert totals["realized_profit"] == "7.5"
        assert totals["unrealized_profit"] == "0"


class TestSessions:
    """Tests for session tracking."""

    @pytest.fixture
    def state_manager(self):
        with tempfile.TemporaryDirectory() as tmp:
            yield StateManager(db_path=str(Path(tmp) / "engine.db"))

    def test_session_lifecycle(self, state_manager):
        session_id = state_manager.start_session(Decimal("500"), dry_run=False)

        assert state_manager.session_id == session_id
        session = state_manager.get_session(session_id)
        assert session["status"] == "active"
        assert session["dry_run"] == 0

        state_manager.end_session(session_id, {"trades": 6, "cycles": 3, "realized_profit": Decimal("2.5")})

        session = state_manager.get_session(session_id)
        assert session["status"] == "completed"
        assert session["total_cycles"] == 3
        assert session["realized_profit"] == "2.5"
        assert state_manager.session_id is None

    def test_unknown_session(self, state_manager):
        assert state_manager.get_session("nope") is None
