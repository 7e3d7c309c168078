"""Protection Executor - bounded withdrawals for positions over their IL limit.

Exit sizing is linear in the overshoot and capped per cycle:

    exit % = min(30, overshoot % / 10)

so a position at 20% IL against an 8% limit exits 1.2% of its shares.
No single tick withdraws more than the cap.
"""

import logging
import threading
from decimal import Decimal, ROUND_FLOOR
from typing import Dict, Optional

from .config import settings
from .errors import InsufficientShares, SubmissionFailed
from .interfaces import LedgerSubmitter
from .models import Position, PositionStatus, ProtectionResult

logger = logging.getLogger(__name__)

BPS_PER_PCT = Decimal("100")


def exit_fraction(
    current_il_bps: int,
    max_il_bps: int,
    max_exit_pct: Decimal = Decimal("30"),
    divisor: Decimal = Decimal("10"),
) -> Decimal:
    """Fraction of shares (0-1) to withdraw for the given overshoot."""
    overshoot_pct = Decimal(current_il_bps - max_il_bps) / BPS_PER_PCT
    if overshoot_pct <= 0:
        return Decimal("0")
    exit_pct = min(Decimal(max_exit_pct), overshoot_pct / Decimal(divisor))
    return exit_pct / 100


def exit_amount(shares: int, fraction: Decimal) -> int:
    """Whole shares to withdraw, rounded down."""
    return int((Decimal(shares) * fraction).to_integral_value(rounding=ROUND_FLOOR))


class PositionLocks:
    """One re-entrant lock per position id."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, position_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(position_id)
            if lock is None:
                lock = self._locks[position_id] = threading.RLock()
            return lock

    def discard(self, position_id: str) -> None:
        with self._guard:
            self._locks.pop(position_id, None)


class ProtectionExecutor:
    """Computes an exit for a violating position and submits it to the ledger.

    The position is only mutated after the ledger confirms the withdrawal.
    On ``SubmissionFailed`` it is left exactly as it was, still in
    VIOLATION, so the next tick retries.
    """

    def __init__(
        self,
        ledger: LedgerSubmitter,
        max_exit_pct: Optional[Decimal] = None,
        exit_divisor: Optional[Decimal] = None,
        locks: Optional[PositionLocks] = None,
    ):
        self.ledger = ledger
        self.max_exit_pct = max_exit_pct if max_exit_pct is not None else settings.max_exit_pct
        self.exit_divisor = exit_divisor or settings.exit_divisor
        self.locks = locks or PositionLocks()

    def plan_exit(self, position: Position) -> tuple:
        """Return ``(fraction, amount)`` for ``position`` without side effects."""
        fraction = exit_fraction(
            position.current_il_bps,
            position.max_il_bps,
            max_exit_pct=self.max_exit_pct,
            divisor=self.exit_divisor,
        )
        return fraction, exit_amount(position.shares, fraction)

    def protect(self, position: Position) -> ProtectionResult:
        """Withdraw a bounded slice of ``position``.

        Raises:
            ValueError: the position is not in VIOLATION.
            InsufficientShares: the exit rounds to zero or exceeds holdings.
            SubmissionFailed: the ledger rejected or never confirmed it.
        """
        with self.locks.get(position.position_id):
            if position.status != PositionStatus.VIOLATION:
                raise ValueError(
                    f"Position {position.position_id} is {position.status.value}, not in violation"
                )

            fraction, amount = self.plan_exit(position)
            if amount <= 0 or amount > position.shares:
                logger.warning(
                    f"No protective exit for {position.position_id}: computed {amount} "
                    f"of {position.shares} shares (fraction {fraction})"
                )
                raise InsufficientShares(
                    f"Exit of {amount} shares not possible for {position.position_id} "
                    f"holding {position.shares}"
                )

            logger.info(
                f"Executing protection for {position.position_id}: "
                f"exit {fraction * 100}% ({amount} of {position.shares} shares)"
            )

            position.status = PositionStatus.PROTECTING
            try:
                tx_reference = self.ledger.submit_withdrawal(position.position_id, amount)
            except SubmissionFailed:
                position.status = PositionStatus.VIOLATION
                raise
            except Exception as e:
                position.status = PositionStatus.VIOLATION
                raise SubmissionFailed(f"Withdrawal for {position.position_id} failed: {e}") from e

            position.shares -= amount
            position.status = PositionStatus.PROTECTED

            logger.info(
                f"Protection confirmed for {position.position_id}: tx {tx_reference}, "
                f"{position.shares} shares remaining"
            )
            return ProtectionResult(
                position_id=position.position_id,
                exit_fraction=fraction,
                shares_withdrawn=amount,
                remaining_shares=position.shares,
                tx_reference=tx_reference,
            )
