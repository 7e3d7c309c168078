"""Risk Evaluator - compares a position's IL against its limit."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .il_calculator import calculate_il, il_to_bps, reserve_ratio
from .models import ILResult, PoolState, Position, PositionStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RiskVerdict:
    """IL result plus the status transition it caused."""
    result: ILResult
    previous_status: PositionStatus
    status: PositionStatus

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status

    @property
    def is_violation(self) -> bool:
        return self.status == PositionStatus.VIOLATION

    @property
    def entered_violation(self) -> bool:
        return self.is_violation and self.previous_status != PositionStatus.VIOLATION


class RiskEvaluator:
    """Derives current IL for a position and moves it through its states.

    SAFE -> VIOLATION when IL exceeds the limit (strictly greater; equal is
    safe). PROTECTING -> PROTECTED when a post-exit evaluation is within
    bounds. PROTECTED and VIOLATION fall back to SAFE on a clean
    evaluation. There is no terminal state.

    The comparison runs on IL rounded half-up to whole basis points, the
    unit it is stored in, so the saved ``current_il_bps`` always agrees
    with the saved status. IL of 8.004% against an 800 bps limit rounds to
    800 and is safe; 8.005% rounds to 801 and is a violation.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock

    def evaluate(self, position: Position, pool_state: PoolState) -> RiskVerdict:
        """Evaluate ``position`` against ``pool_state``, updating it in place.

        Only ``current_il_bps`` and ``status`` are touched.

        Raises:
            InvalidRatio: degenerate reserves or entry ratio.
        """
        if position.pool_id != pool_state.pool_id:
            raise ValueError(
                f"Position {position.position_id} belongs to pool {position.pool_id}, "
                f"not {pool_state.pool_id}"
            )

        current_ratio = reserve_ratio(pool_state.reserve_a, pool_state.reserve_b)
        il = calculate_il(position.entry_ratio, current_ratio)
        result = ILResult(
            pool_id=pool_state.pool_id,
            position_id=position.position_id,
            entry_ratio=position.entry_ratio,
            current_ratio=current_ratio,
            il=il,
            computed_at=self._clock(),
        )

        previous = position.status
        position.current_il_bps = il_to_bps(il)
        position.status = self._next_status(previous, position.is_violating)

        if position.status == PositionStatus.VIOLATION:
            logger.warning(
                f"IL violation for {position.position_id}: "
                f"{position.current_il_bps / 100:.2f}% > {position.max_il_bps / 100:.2f}%"
            )
        else:
            logger.debug(
                f"Position {position.position_id} within limits: "
                f"{position.current_il_bps / 100:.2f}% <= {position.max_il_bps / 100:.2f}%"
            )

        return RiskVerdict(result=result, previous_status=previous, status=position.status)

    @staticmethod
    def _next_status(current: PositionStatus, violating: bool) -> PositionStatus:
        if violating:
            return PositionStatus.VIOLATION
        if current == PositionStatus.PROTECTING:
            return PositionStatus.PROTECTED
        return PositionStatus.SAFE
