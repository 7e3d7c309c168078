"""Collaborator interfaces consumed by the guardian core.

Concrete implementations live in ``redis_client``, ``ledger_client`` and
``db.repository``; tests substitute in-memory fakes.
"""

import abc
from typing import Iterable, List

from .models import Position, ReserveSnapshot


class MarketDataProvider(abc.ABC):
    """Source of pool reserve snapshots. Must be side-effect free."""

    @abc.abstractmethod
    def fetch_reserves(self, pool_id: str) -> ReserveSnapshot:
        """Return the latest reserves or raise ``DataSourceUnavailable``."""


class LedgerSubmitter(abc.ABC):
    """Submits protective withdrawals to the ledger."""

    @abc.abstractmethod
    def submit_withdrawal(self, position_id: str, share_amount: int) -> str:
        """Return a transaction reference or raise ``SubmissionFailed``."""


class PositionStore(abc.ABC):
    """Source of truth for position records."""

    @abc.abstractmethod
    def load_position(self, position_id: str) -> Position:
        """Return the stored position or raise ``PositionNotFound``."""

    @abc.abstractmethod
    def save_position(self, position: Position) -> None:
        """Persist the position or raise ``PersistenceError``."""

    @abc.abstractmethod
    def list_position_ids(self, pool_ids: Iterable[str]) -> List[str]:
        """Ids of all positions referencing any of ``pool_ids``."""

    def ensure_connected(self) -> None:
        """Re-establish any dropped connection before a tick."""
        return None

    def record_protection(self, position: Position, shares_withdrawn: int, exit_fraction, tx_reference: str) -> None:
        """Audit a confirmed withdrawal. Optional for stores without an audit trail."""
        return None
