"""Pool State Store - latest reserve snapshot per tracked pool."""

import logging
import threading
from typing import Dict, Iterator, Optional

from .errors import AlreadyTracked, DataSourceUnavailable, PoolNotFound, PoolNotTracked
from .interfaces import MarketDataProvider
from .models import PoolState

logger = logging.getLogger(__name__)


class PoolStateStore:
    """Tracks pools and holds the most recent reserves fetched for each.

    Registering an already tracked pool raises ``AlreadyTracked``;
    unregistering an unknown pool is a no-op. Each pool has its own lock,
    so concurrent refreshes of different pools never wait on each other.
    No retries happen here: a failed fetch surfaces as
    ``DataSourceUnavailable`` and the caller decides when to try again.
    """

    def __init__(self, market_data: MarketDataProvider):
        self.market_data = market_data
        # pool_id -> latest state (None until the first successful refresh)
        self._states: Dict[str, Optional[PoolState]] = {}
        self._pool_locks: Dict[str, threading.Lock] = {}
        # Guards membership only, never held across I/O.
        self._registry_lock = threading.Lock()

    def register_pool(self, pool_id: str) -> None:
        with self._registry_lock:
            if pool_id in self._states:
                raise AlreadyTracked(f"Pool {pool_id} is already tracked")
            self._states[pool_id] = None
            self._pool_locks[pool_id] = threading.Lock()
        logger.info(f"Added pool {pool_id} to monitoring")

    def unregister_pool(self, pool_id: str) -> None:
        with self._registry_lock:
            if pool_id not in self._states:
                return
            del self._states[pool_id]
            del self._pool_locks[pool_id]
        logger.info(f"Removed pool {pool_id} from monitoring")

    def is_tracked(self, pool_id: str) -> bool:
        with self._registry_lock:
            return pool_id in self._states

    def refresh(self, pool_id: str) -> PoolState:
        """Fetch fresh reserves for ``pool_id`` and overwrite the stored state.

        Raises:
            PoolNotTracked: the pool is not registered.
            DataSourceUnavailable: the market data provider failed or
                returned an unusable snapshot.
        """
        with self._registry_lock:
            lock = self._pool_locks.get(pool_id)
        if lock is None:
            raise PoolNotTracked(f"Pool {pool_id} is not tracked")

        with lock:
            try:
                snapshot = self.market_data.fetch_reserves(pool_id)
            except DataSourceUnavailable:
                raise
            except Exception as e:
                raise DataSourceUnavailable(f"Reserve fetch failed for {pool_id}: {e}") from e

            try:
                state = PoolState.from_snapshot(pool_id, snapshot)
            except ValueError as e:
                raise DataSourceUnavailable(f"Malformed reserves for {pool_id}: {e}") from e

            with self._registry_lock:
                if pool_id not in self._states:
                    # Unregistered while the fetch was in flight.
                    raise PoolNotTracked(f"Pool {pool_id} was unregistered during refresh")
                self._states[pool_id] = state

        logger.debug(
            f"Refreshed pool {pool_id}: reserve_a={state.reserve_a} "
            f"reserve_b={state.reserve_b} shares={state.total_shares}"
        )
        return state

    def get(self, pool_id: str) -> PoolState:
        with self._registry_lock:
            state = self._states.get(pool_id)
        if state is None:
            raise PoolNotFound(f"No reserve snapshot for pool {pool_id}")
        return state

    def list_tracked(self) -> Iterator[str]:
        """Iterate over the pool ids tracked at call time.

        The iterator is a snapshot: later registrations are not reflected,
        and it cannot be restarted. Call again for a fresh view.
        """
        with self._registry_lock:
            pool_ids = list(self._states)
        return iter(pool_ids)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._states)
