"""
Execution and balance collaborators.

The engine never encodes or signs transactions. It hands a fully sized
swap to a SwapExecutor and reads back a SwapResult.

Provides:
- SwapStatus / SwapResult: outcome of a swap submission
- SwapExecutor: abstract execution collaborator
- BalanceProvider: abstract balance/allowance collaborator
- DryRunSwapExecutor: confirms every swap immediately without touching a chain
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)


class SwapStatus(Enum):
    """Final status of a submitted swap."""
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    FAILED = "failed"


@dataclass
class SwapRequest:
    """A swap as handed to the execution collaborator."""
    token_in: str
    token_out: str
    amount_in: int  # Smallest units of token_in
    min_amount_out: int  # Smallest units of token_out
    pool_fee: int
    recipient: str


@dataclass
class SwapResult:
    """Outcome reported by the execution collaborator."""
    tx_ref: str
    status: SwapStatus
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None
    amount_out: Optional[int] = None  # None when the collaborator does not report it
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.status == SwapStatus.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_ref": self.tx_ref,
            "status": self.status.value,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "error": self.error,
            "amount_out": self.amount_out,
            "timestamp": self.timestamp.isoformat(),
        }


class SwapExecutor(ABC):
    """Submits a swap and waits for its confirmation."""

    @abstractmethod
    async def execute_swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
        pool_fee: int,
        recipient: str,
    ) -> SwapResult:
        """
        Execute a single-hop swap.

        Returns:
            SwapResult describing the confirmed, reverted or failed swap

        Raises:
            Exception: Any collaborator failure; the engine counts it as a
                commit failure
        """
        pass


class BalanceProvider(ABC):
    """Balance and allowance queries."""

    @abstractmethod
    async def get_balance(self, asset: str) -> Decimal:
        """Wallet balance of a token address in human units."""
        pass

    @abstractmethod
    async def ensure_allowance(self, asset: str, spender: str, amount: int) -> None:
        pass


class DryRunSwapExecutor(SwapExecutor):
    """
    Simulated execution for paper trading.

    Every swap is confirmed immediately with a synthetic reference. Fills
    are recorded by the engine at the trigger price.

    Example:
        executor = DryRunSwapExecutor()
        result = await executor.execute_swap(weth, usdc, 10**18, 0, 3000, "")
        assert result.succeeded
    """

    def __init__(self):
        self._block_number = 0
        self.submitted: List[SwapRequest] = []

    async def execute_swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
        pool_fee: int,
        recipient: str,
    ) -> SwapResult:
        self._block_number += 1
        self.submitted.append(
            SwapRequest(token_in, token_out, amount_in, min_amount_out, pool_fee, recipient)
        )

        tx_ref = f"dryrun-{uuid.uuid4().hex[:16]}"
        logger.info(
            f"[DRY RUN] Swap {amount_in} {token_in} -> {token_out} "
            f"(min out {min_amount_out}, fee {pool_fee}): {tx_ref}"
        )

        return SwapResult(
            tx_ref=tx_ref,
            status=SwapStatus.CONFIRMED,
            block_number=self._block_number,
            gas_used=0,
        )
