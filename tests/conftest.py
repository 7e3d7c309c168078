"""Shared fakes for the collaborator interfaces."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import pytest

from il_guardian.errors import (
    DataSourceUnavailable,
    PersistenceError,
    PositionNotFound,
    SubmissionFailed,
)
from il_guardian.interfaces import LedgerSubmitter, MarketDataProvider, PositionStore
from il_guardian.models import Position, PositionStatus, ReserveSnapshot

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_snapshot(reserve_a, reserve_b, total_shares="100000") -> ReserveSnapshot:
    return ReserveSnapshot(
        reserve_a=Decimal(str(reserve_a)),
        reserve_b=Decimal(str(reserve_b)),
        total_shares=Decimal(str(total_shares)),
        timestamp=FIXED_NOW,
    )


def make_position(
    position_id: str = "vault_1",
    pool_id: str = "ada_usdc",
    entry_ratio="100",
    shares: int = 1000,
    max_il_bps: int = 800,
    current_il_bps: int = 0,
    status: PositionStatus = PositionStatus.SAFE,
) -> Position:
    return Position(
        position_id=position_id,
        owner_address=f"addr_test_{position_id}",
        pool_id=pool_id,
        entry_ratio=Decimal(str(entry_ratio)),
        shares=shares,
        max_il_bps=max_il_bps,
        current_il_bps=current_il_bps,
        status=status,
    )


class FakeMarketData(MarketDataProvider):
    def __init__(self, snapshots: Optional[Dict[str, ReserveSnapshot]] = None):
        self.snapshots = dict(snapshots or {})
        self.failing: set = set()
        self.calls: List[str] = []

    def fetch_reserves(self, pool_id: str) -> ReserveSnapshot:
        self.calls.append(pool_id)
        if pool_id in self.failing:
            raise DataSourceUnavailable(f"{pool_id} feed down")
        if pool_id not in self.snapshots:
            raise DataSourceUnavailable(f"no data for {pool_id}")
        return self.snapshots[pool_id]


class FakeLedger(LedgerSubmitter):
    def __init__(self):
        self.submissions: List[tuple] = []
        self.fail = False

    def submit_withdrawal(self, position_id: str, share_amount: int) -> str:
        if self.fail:
            raise SubmissionFailed("ledger rejected")
        self.submissions.append((position_id, share_amount))
        return f"tx_{len(self.submissions)}"


class FakePositionStore(PositionStore):
    """Keeps copies so callers never share objects with the 'database'."""

    def __init__(self, positions: Iterable[Position] = ()):
        self.records: Dict[str, Position] = {p.position_id: p.copy() for p in positions}
        self.saves: List[Position] = []
        self.protections: List[tuple] = []
        self.fail_saves = False
        self.fail_list = False
        self.connect_checks = 0

    def ensure_connected(self) -> None:
        self.connect_checks += 1

    def load_position(self, position_id: str) -> Position:
        if position_id not in self.records:
            raise PositionNotFound(position_id)
        return self.records[position_id].copy()

    def save_position(self, position: Position) -> None:
        if self.fail_saves:
            raise PersistenceError("database unavailable")
        self.records[position.position_id] = position.copy()
        self.saves.append(position.copy())

    def list_position_ids(self, pool_ids: Iterable[str]) -> List[str]:
        if self.fail_list:
            raise PersistenceError("database unavailable")
        pool_ids = set(pool_ids)
        return sorted(pid for pid, p in self.records.items() if p.pool_id in pool_ids)

    def record_protection(self, position, shares_withdrawn, exit_fraction, tx_reference) -> None:
        self.protections.append((position.position_id, shares_withdrawn, exit_fraction, tx_reference))


@pytest.fixture
def market_data():
    return FakeMarketData()


@pytest.fixture
def ledger():
    return FakeLedger()
