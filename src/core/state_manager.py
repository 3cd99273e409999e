"""
State Manager for Engine Persistence.

Provides:
- Single-row engine snapshot (risk latch, grid snapshot) for restarts
- Execution and cycle history for dashboards
- Per-pair performance and running totals snapshots
- Session management
- SQLite-based atomic operations
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.grid import TradeCycle, TradeExecution

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal objects."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


@dataclass
class BotState:
    """Engine state for persistence."""

    timestamp: datetime
    version: str = "1.0"

    # From TradeCycleEngine.snapshot()
    grid_snapshot: Optional[Dict[str, Any]] = None

    # From RiskManager.to_dict()
    risk_state: Optional[Dict[str, Any]] = None

    is_trading: bool = False
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "grid_snapshot": self.grid_snapshot,
            "risk_state": self.risk_state,
            "is_trading": self.is_trading,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotState":
        """Deserialize from dictionary."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            version=data.get("version", "1.0"),
            grid_snapshot=data.get("grid_snapshot"),
            risk_state=data.get("risk_state"),
            is_trading=data.get("is_trading", False),
            session_id=data.get("session_id"),
        )


class StateManager:
    """
    Manages persistent state and write-only history.

    Uses SQLite for atomic operations and durability.

    Usage:
        state_mgr = StateManager("data/gridbot.db")

        # Save state
        state = BotState(
            timestamp=datetime.now(timezone.utc),
            grid_snapshot=engine.snapshot(),
            risk_state=risk_manager.to_dict(),
        )
        state_mgr.save_state(state)

        # History
        state_mgr.save_execution(execution)
        state_mgr.save_cycle(cycle)

        # Load on restart
        state = state_mgr.load_state()
        if state and state.risk_state:
            risk_manager.restore_from_dict(state.risk_state)
    """

    SCHEMA = """
    -- Engine state (single row, updated atomically)
    CREATE TABLE IF NOT EXISTS bot_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        timestamp TEXT NOT NULL,
        version TEXT NOT NULL,
        state_json TEXT NOT NULL,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    -- Confirmed fills
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        session_id TEXT,
        level_id TEXT NOT NULL,
        pair_id TEXT NOT NULL,
        side TEXT NOT NULL,
        exec_price TEXT,
        quantity TEXT,
        usd_value TEXT,
        pool_fee TEXT,
        gas_cost TEXT,
        slippage TEXT,
        tx_ref TEXT,
        timestamp REAL
    );

    -- Closed cycles
    CREATE TABLE IF NOT EXISTS cycles (
        id TEXT PRIMARY KEY,
        session_id TEXT,
        pair_id TEXT NOT NULL,
        open_exec_id TEXT NOT NULL,
        close_exec_id TEXT,
        gross_profit TEXT,
        total_costs TEXT,
        net_profit TEXT,
        closed_at TEXT
    );

    -- Latest per-pair performance
    CREATE TABLE IF NOT EXISTS pair_performance (
        pair_id TEXT PRIMARY KEY,
        summary_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    -- Running totals snapshots
    CREATE TABLE IF NOT EXISTS totals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,
        timestamp TEXT NOT NULL,
        trades INTEGER,
        cycles INTEGER,
        realized_profit TEXT,
        unrealized_profit TEXT,
        total_costs TEXT,
        pool_fees TEXT
    );

    -- Session tracking
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        total_investment TEXT,
        dry_run INTEGER,
        total_trades INTEGER DEFAULT 0,
        total_cycles INTEGER DEFAULT 0,
        realized_profit TEXT,
        status TEXT DEFAULT 'active'
    );

    CREATE INDEX IF NOT EXISTS idx_executions_pair ON executions(pair_id);
    CREATE INDEX IF NOT EXISTS idx_executions_timestamp ON executions(timestamp);
    CREATE INDEX IF NOT EXISTS idx_cycles_pair ON cycles(pair_id);
    CREATE INDEX IF NOT EXISTS idx_totals_session ON totals(session_id);
    CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
    """

    def __init__(self, db_path: str = "data/gridbot.db"):
        """
        Initialize state manager.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._session_id: Optional[str] = None

        self._init_database()
        logger.info(f"StateManager initialized with database: {self._db_path}")

    def _init_database(self) -> None:
        """Initialize database schema."""
        with sqlite3.connect(self._db_path) as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection."""
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    # === Core State Operations ===

    def save_state(self, state: BotState) -> None:
        """
        Save engine state atomically.

        Uses INSERT OR REPLACE to ensure single row.
        """
        state_json = json.dumps(state.to_dict(), cls=DecimalEncoder)

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO bot_state (id, timestamp, version, state_json, updated_at)
                VALUES (1, ?, ?, ?, ?)
                """,
                (
                    state.timestamp.isoformat(),
                    state.version,
                    state_json,
                    _utcnow().isoformat(),
                ),
            )
            conn.commit()

        logger.debug(f"State saved at {state.timestamp}")

    def load_state(self) -> Optional[BotState]:
        """
        Load most recent engine state.

        Returns:
            BotState if exists, None otherwise
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT state_json FROM bot_state WHERE id = 1").fetchone()

        if row is None:
            return None

        state = BotState.from_dict(json.loads(row["state_json"]))
        logger.info(f"Loaded state from {state.timestamp}")
        return state

    def has_state(self) -> bool:
        """Check if saved state exists."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) as count FROM bot_state WHERE id = 1"
            ).fetchone()
            return row["count"] > 0

    def clear_state(self) -> None:
        """Clear saved state (fresh start)."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM bot_state WHERE id = 1")
            conn.commit()
        logger.info("Bot state cleared")

    def save_risk_state(self, risk_dict: Dict[str, Any]) -> None:
        """Update only the risk part of the saved state."""
        state = self.load_state() or BotState(timestamp=_utcnow())
        state.risk_state = risk_dict
        state.timestamp = _utcnow()
        self.save_state(state)

    # === History ===

    def save_execution(self, execution: TradeExecution) -> None:
        """Record a confirmed fill."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO executions
                (id, session_id, level_id, pair_id, side, exec_price, quantity, usd_value,
                 pool_fee, gas_cost, slippage, tx_ref, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    self._session_id,
                    execution.level_id,
                    execution.pair_id,
                    execution.side.value,
                    str(execution.exec_price),
                    str(execution.quantity),
                    str(execution.usd_value),
                    str(execution.costs.pool_fee),
                    str(execution.costs.gas_cost),
                    str(execution.costs.slippage),
                    execution.tx_ref,
                    execution.timestamp,
                ),
            )
            conn.commit()

    def save_cycle(self, cycle: TradeCycle) -> None:
        """Record a closed cycle."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cycles
                (id, session_id, pair_id, open_exec_id, close_exec_id,
                 gross_profit, total_costs, net_profit, closed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cycle.id,
                    self._session_id,
                    cycle.pair_id,
                    cycle.open_exec.id,
                    cycle.close_exec.id if cycle.close_exec else None,
                    str(cycle.gross_profit),
                    str(cycle.total_costs),
                    str(cycle.net_profit),
                    _utcnow().isoformat(),
                ),
            )
            conn.commit()

    def get_execution_history(
        self,
        pair_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent executions first."""
        query = "SELECT * FROM executions"
        params: List[Any] = []
        if pair_id:
            query += " WHERE pair_id = ?"
            params.append(pair_id)
        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def get_cycle_history(
        self,
        pair_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM cycles"
        params: List[Any] = []
        if pair_id:
            query += " WHERE pair_id = ?"
            params.append(pair_id)
        query += " ORDER BY closed_at DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    # === Performance Snapshots ===

    def save_pair_performance(self, pair_id: str, summary: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pair_performance (pair_id, summary_json, updated_at)
                VALUES (?, ?, ?)
                """,
                (pair_id, json.dumps(summary, cls=DecimalEncoder), _utcnow().isoformat()),
            )
            conn.commit()

    def get_pair_performance(self, pair_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT summary_json FROM pair_performance WHERE pair_id = ?",
                (pair_id,),
            ).fetchone()
        return json.loads(row["summary_json"]) if row else None

    def save_totals(self, totals: Dict[str, Any]) -> None:
        """
        Append a running totals snapshot.

        Args:
            totals: trades, cycles, realized_profit, unrealized_profit,
                total_costs, pool_fees
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO totals
                (session_id, timestamp, trades, cycles, realized_profit,
                 unrealized_profit, total_costs, pool_fees)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self._session_id,
                    _utcnow().isoformat(),
                    totals.get("trades", 0),
                    totals.get("cycles", 0),
                    str(totals.get("realized_profit", "0")),
                    str(totals.get("unrealized_profit", "0")),
                    str(totals.get("total_costs", "0")),
                    str(totals.get("pool_fees", "0")),
                ),
            )
            conn.commit()

    def get_latest_totals(self) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM totals ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return dict(row) if row else None

    # === Session Tracking ===

    def start_session(
        self,
        total_investment: Optional[Decimal] = None,
        dry_run: bool = True,
    ) -> str:
        """
        Start new trading session.

        Returns:
            Session ID
        """
        now = _utcnow()
        session_id = f"session_{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, started_at, total_investment, dry_run, status)
                VALUES (?, ?, ?, ?, 'active')
                """,
                (
                    session_id,
                    now.isoformat(),
                    str(total_investment) if total_investment is not None else None,
                    int(dry_run),
                ),
            )
            conn.commit()

        self._session_id = session_id
        logger.info(f"Started session: {session_id}")
        return session_id

    def end_session(self, session_id: str, stats: Dict[str, Any]) -> None:
        """
        End trading session with final stats.

        Args:
            session_id: Session to end
            stats: Final statistics (trades, cycles, realized_profit)
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE sessions SET
                    ended_at = ?,
                    total_trades = ?,
                    total_cycles = ?,
                    realized_profit = ?,
                    status = 'completed'
                WHERE id = ?
                """,
                (
                    _utcnow().isoformat(),
                    stats.get("trades", 0),
                    stats.get("cycles", 0),
                    str(stats.get("realized_profit", "0")),
                    session_id,
                ),
            )
            conn.commit()

        if self._session_id == session_id:
            self._session_id = None
        logger.info(f"Ended session: {session_id}")

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get session by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return dict(row) if row else None

    # === Utilities ===

    def check_connection(self) -> bool:
        """Run a trivial query; used by health checks."""
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        with self._get_connection() as conn:
            execution_count = conn.execute(
                "SELECT COUNT(*) as count FROM executions"
            ).fetchone()["count"]
            cycle_count = conn.execute(
                "SELECT COUNT(*) as count FROM cycles"
            ).fetchone()["count"]
            session_count = conn.execute(
                "SELECT COUNT(*) as count FROM sessions"
            ).fetchone()["count"]

        return {
            "total_executions": execution_count,
            "total_cycles": cycle_count,
            "total_sessions": session_count,
            "has_state": self.has_state(),
            "session_id": self._session_id,
            "db_path": str(self._db_path),
        }
