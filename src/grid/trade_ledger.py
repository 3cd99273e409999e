"""
Trade ledger with FIFO cycle matching.

Every confirmed fill becomes an immutable TradeExecution. A fill on the
opposite side of an open position for the same pair closes the oldest such
position into a TradeCycle:

    gross = quantity * (exit - entry)   for a BUY opened cycle
    gross = quantity * (entry - exit)   for a SELL opened cycle
    net   = gross - (open costs + close costs)

Gross profit is converted to USD with the closing fill's quote price.
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Deque, Dict, List, Optional, Any

import pandas as pd

from .grid_planner import OrderSide
from .profitability import TradeCosts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeExecution:
    """A confirmed fill."""
    id: str
    level_id: str
    pair_id: str
    side: OrderSide
    exec_price: Decimal  # Quote per base
    quantity: Decimal  # Base tokens
    usd_value: Decimal
    costs: TradeCosts
    tx_ref: str
    timestamp: float = field(default_factory=time.time)
    quote_usd: Decimal = Decimal("1")

    @staticmethod
    def new_id() -> str:
        return f"exec-{uuid.uuid4().hex[:12]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level_id": self.level_id,
            "pair_id": self.pair_id,
            "side": self.side.value,
            "exec_price": str(self.exec_price),
            "quantity": str(self.quantity),
            "usd_value": str(self.usd_value),
            "pool_fee": str(self.costs.pool_fee),
            "gas_cost": str(self.costs.gas_cost),
            "slippage": str(self.costs.slippage),
            "tx_ref": self.tx_ref,
            "timestamp": self.timestamp,
            "quote_usd": str(self.quote_usd),
        }


@dataclass
class TradeCycle:
    """An open execution matched with its closing execution."""
    id: str
    pair_id: str
    open_exec: TradeExecution
    close_exec: Optional[TradeExecution] = None
    gross_profit: Decimal = Decimal("0")
    total_costs: Decimal = Decimal("0")
    net_profit: Decimal = Decimal("0")
    is_complete: bool = False

    def complete(self, close_exec: TradeExecution) -> None:
        """
        Close the cycle.

        Raises:
            RuntimeError: If already complete
            ValueError: If close_exec is on the same side or another pair
        """
        if self.is_complete:
            raise RuntimeError(f"Cycle {self.id} is already complete")
        if close_exec.pair_id != self.pair_id:
            raise ValueError(f"Cannot close {self.pair_id} cycle with {close_exec.pair_id} fill")
        if close_exec.side == self.open_exec.side:
            raise ValueError("Closing execution must be on the opposite side")

        quantity = min(self.open_exec.quantity, close_exec.quantity)
        if self.open_exec.side == OrderSide.BUY:
            move = close_exec.exec_price - self.open_exec.exec_price
        else:
            move = self.open_exec.exec_price - close_exec.exec_price

        self.close_exec = close_exec
        self.gross_profit = quantity * move * close_exec.quote_usd
        self.total_costs = self.open_exec.costs.total + close_exec.costs.total
        self.net_profit = self.gross_profit - self.total_costs
        self.is_complete = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pair_id": self.pair_id,
            "open_exec_id": self.open_exec.id,
            "close_exec_id": self.close_exec.id if self.close_exec else None,
            "open_side": self.open_exec.side.value,
            "entry_price": str(self.open_exec.exec_price),
            "exit_price": str(self.close_exec.exec_price) if self.close_exec else None,
            "gross_profit": str(self.gross_profit),
            "total_costs": str(self.total_costs),
            "net_profit": str(self.net_profit),
            "is_complete": self.is_complete,
        }


@dataclass
class PairProfitSummary:
    """Per-pair realized performance."""
    pair_id: str
    trades: int = 0
    cycles: int = 0
    open_positions: int = 0
    gross_profit: Decimal = Decimal("0")
    realized_profit: Decimal = Decimal("0")  # Net of costs
    pool_fees: Decimal = Decimal("0")
    gas_costs: Decimal = Decimal("0")
    slippage_costs: Decimal = Decimal("0")
    wins: int = 0

    @property
    def total_costs(self) -> Decimal:
        return self.pool_fees + self.gas_costs + self.slippage_costs

    @property
    def win_rate(self) -> float:
        return self.wins / self.cycles if self.cycles else 0.0

    @property
    def avg_profit_per_cycle(self) -> Decimal:
        return self.realized_profit / self.cycles if self.cycles else Decimal("0")

    @property
    def cost_per_trade(self) -> Decimal:
        return self.total_costs / self.trades if self.trades else Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "trades": self.trades,
            "cycles": self.cycles,
            "open_positions": self.open_positions,
            "gross_profit": str(self.gross_profit),
            "realized_profit": str(self.realized_profit),
            "pool_fees": str(self.pool_fees),
            "gas_costs": str(self.gas_costs),
            "slippage_costs": str(self.slippage_costs),
            "total_costs": str(self.total_costs),
            "win_rate": self.win_rate,
            "avg_profit_per_cycle": str(self.avg_profit_per_cycle),
            "cost_per_trade": str(self.cost_per_trade),
        }


class TradeLedger:
    """
    Records fills and closes cycles FIFO per pair.

    Example:
        ledger = TradeLedger()
        ledger.record(buy_exec)             # opens a position
        cycle = ledger.record(sell_exec)    # closes it
        print(cycle.net_profit)
    """

    def __init__(self):
        self._executions: List[TradeExecution] = []
        self._cycles: List[TradeCycle] = []
        self._open: Dict[str, Deque[TradeExecution]] = {}
        self._summaries: Dict[str, PairProfitSummary] = {}

    def record(self, execution: TradeExecution) -> Optional[TradeCycle]:
        """
        Record a fill and match it against open positions.

        Returns:
            The completed TradeCycle, or None if the fill opened a position
        """
        self._executions.append(execution)
        summary = self._summary(execution.pair_id)
        summary.trades += 1
        summary.pool_fees += execution.costs.pool_fee
        summary.gas_costs += execution.costs.gas_cost
        summary.slippage_costs += execution.costs.slippage

        queue = self._open.setdefault(execution.pair_id, deque())
        match = self._oldest_opposite(queue, execution.side)

        if match is None:
            queue.append(execution)
            summary.open_positions = len(queue)
            logger.debug(
                f"Opened {execution.side.value} position on {execution.pair_id} "
                f"at {execution.exec_price:.8g}"
            )
            return None

        queue.remove(match)
        summary.open_positions = len(queue)

        if match.quantity != execution.quantity:
            logger.warning(
                f"Cycle quantity mismatch on {execution.pair_id}: "
                f"{match.quantity} vs {execution.quantity}, using the smaller"
            )

        cycle = TradeCycle(
            id=f"cycle-{uuid.uuid4().hex[:12]}",
            pair_id=execution.pair_id,
            open_exec=match,
        )
        cycle.complete(execution)
        self._cycles.append(cycle)

        summary.cycles += 1
        summary.gross_profit += cycle.gross_profit
        summary.realized_profit += cycle.net_profit
        if cycle.net_profit > 0:
            summary.wins += 1

        logger.info(
            f"Cycle closed on {cycle.pair_id}: {match.side.value} {match.exec_price:.8g} -> "
            f"{execution.side.value} {execution.exec_price:.8g}, "
            f"gross ${cycle.gross_profit:.4f}, net ${cycle.net_profit:.4f}"
        )
        return cycle

    @staticmethod
    def _oldest_opposite(
        queue: Deque[TradeExecution], side: OrderSide
    ) -> Optional[TradeExecution]:
        for candidate in queue:
            if candidate.side != side:
                return candidate
        return None

    def _summary(self, pair_id: str) -> PairProfitSummary:
        if pair_id not in self._summaries:
            self._summaries[pair_id] = PairProfitSummary(pair_id=pair_id)
        return self._summaries[pair_id]

    # === Queries ===

    @property
    def executions(self) -> List[TradeExecution]:
        return list(self._executions)

    @property
    def cycles(self) -> List[TradeCycle]:
        return list(self._cycles)

    def open_positions(self, pair_id: Optional[str] = None) -> List[TradeExecution]:
        if pair_id is not None:
            return list(self._open.get(pair_id, ()))
        return [e for queue in self._open.values() for e in queue]

    def unrealized_profit(
        self,
        pair_id: str,
        current_price: Decimal,
        quote_usd: Decimal = Decimal("1"),
    ) -> Decimal:
        """Mark-to-market of open positions for a pair, before closing costs."""
        total = Decimal("0")
        for position in self._open.get(pair_id, ()):
            if position.side == OrderSide.BUY:
                move = current_price - position.exec_price
            else:
                move = position.exec_price - current_price
            total += position.quantity * move * quote_usd
        return total

    def get_pair_summary(self, pair_id: str) -> PairProfitSummary:
        return self._summary(pair_id)

    def get_totals(self) -> Dict[str, Any]:
        summaries = list(self._summaries.values())
        realized = sum((s.realized_profit for s in summaries), Decimal("0"))
        costs = sum((s.total_costs for s in summaries), Decimal("0"))
        cycles = sum(s.cycles for s in summaries)
        wins = sum(s.wins for s in summaries)
        return {
            "trades": len(self._executions),
            "cycles": cycles,
            "open_positions": sum(len(q) for q in self._open.values()),
            "realized_profit": realized,
            "total_costs": costs,
            "pool_fees": sum((s.pool_fees for s in summaries), Decimal("0")),
            "win_rate": wins / cycles if cycles else 0.0,
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Executions as a DataFrame (one row per fill)."""
        columns = [
            "id", "level_id", "pair_id", "side", "exec_price", "quantity", "usd_value",
            "pool_fee", "gas_cost", "slippage", "tx_ref", "timestamp", "quote_usd",
        ]
        if not self._executions:
            return pd.DataFrame(columns=columns)

        df = pd.DataFrame([e.to_dict() for e in self._executions], columns=columns)
        for col in ("exec_price", "quantity", "usd_value", "pool_fee", "gas_cost",
                    "slippage", "quote_usd"):
            df[col] = df[col].astype(float)
        df["timestamp"] = pd.to_datetime(df["timestamp"], unit="s", utc=True)
        return df

    def cycles_dataframe(self) -> pd.DataFrame:
        columns = [
            "id", "pair_id", "open_exec_id", "close_exec_id", "open_side", "entry_price",
            "exit_price", "gross_profit", "total_costs", "net_profit", "is_complete",
        ]
        if not self._cycles:
            return pd.DataFrame(columns=columns)

        df = pd.DataFrame([c.to_dict() for c in self._cycles], columns=columns)
        for col in ("entry_price", "exit_price", "gross_profit", "total_costs", "net_profit"):
            df[col] = df[col].astype(float)
        return df
