"""IL Guardian - Monitoring control loop.

Each tick refreshes every tracked pool, evaluates every position in the
pools that refreshed, and withdraws a bounded slice from positions whose
impermanent loss is over their limit. Failures stay scoped to the pool or
position they came from.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .alerting.dispatcher import AlertDispatcher
from .config import settings
from .errors import (
    DataSourceUnavailable,
    InsufficientShares,
    InvalidRatio,
    PersistenceError,
    PoolNotTracked,
    PositionNotFound,
    SubmissionFailed,
)
from .interfaces import LedgerSubmitter, MarketDataProvider, PositionStore
from .models import HealthSnapshot, PoolState, Position
from .pool_store import PoolStateStore
from .protection import PositionLocks, ProtectionExecutor
from .risk_evaluator import RiskEvaluator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Per-position outcomes of a tick
OUTCOME_SAFE = "safe"
OUTCOME_VIOLATION = "violation"
OUTCOME_PROTECTED = "protected"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


@dataclass
class TickReport:
    """Summary of one monitoring tick."""
    started_at: datetime
    refreshed_pools: List[str] = field(default_factory=list)
    failed_pools: List[str] = field(default_factory=list)
    outcomes: Dict[str, str] = field(default_factory=dict)

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)


class ILGuardian:
    """Owns the pool store and drives refresh -> evaluate -> protect.

    The loop runs on its own thread. ``stop()`` is observed between ticks:
    a tick in progress, including any withdrawal already submitted, always
    runs to completion.
    """

    # Consecutive loop-level failures before a degraded-service alert.
    _ERROR_ALERT_THRESHOLD = 5

    def __init__(
        self,
        market_data: MarketDataProvider,
        ledger: LedgerSubmitter,
        repository: PositionStore,
        dispatcher: Optional[AlertDispatcher] = None,
        check_interval: Optional[float] = None,
        error_backoff: Optional[float] = None,
        max_workers: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repo = repository
        self.dispatcher = dispatcher
        self.pool_store = PoolStateStore(market_data)
        self.evaluator = RiskEvaluator(clock=clock)
        self.locks = PositionLocks()
        self.executor = ProtectionExecutor(ledger, locks=self.locks)

        self.check_interval = check_interval if check_interval is not None else settings.check_interval_seconds
        self.error_backoff = error_backoff if error_backoff is not None else settings.error_backoff_seconds
        self.max_workers = max_workers or settings.max_workers
        self._clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._started_monotonic: Optional[float] = None
        self._last_tick_at: Optional[datetime] = None
        self._consecutive_errors = 0
        self._monitored_positions = 0
        # position_id -> consecutive SubmissionFailed count
        self._protection_failures: Dict[str, int] = {}
        self._failures_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the monitoring loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            if self._stop_event.is_set():
                logger.warning("IL Guardian is still finishing its last tick, not restarting")
            else:
                logger.warning("IL Guardian is already running")
            return
        logger.info(f"Starting IL Guardian (interval: {self.check_interval}s, backoff: {self.error_backoff}s)")
        self._stop_event.clear()
        self._running = True
        self._started_monotonic = time.monotonic()
        self._thread = threading.Thread(target=self._run_monitoring_loop, name="il-guardian", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Request shutdown and wait for the current tick to finish.

        If ``timeout`` expires first the guardian keeps reporting as running
        until the loop thread exits. Safe to call multiple times.
        """
        if not self._running and self._thread is None:
            return
        logger.info("Stopping IL Guardian...")
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"IL Guardian tick still in progress after {timeout}s, loop will exit when it ends")
                return
        self._thread = None
        self._running = False
        logger.info("IL Guardian stopped")

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the loop thread exits."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._running

    def register_pool(self, pool_id: str) -> None:
        self.pool_store.register_pool(pool_id)

    def unregister_pool(self, pool_id: str) -> None:
        self.pool_store.unregister_pool(pool_id)

    def register_pools(self, pool_ids: Iterable[str]) -> None:
        """Register several pools, ignoring ones already tracked."""
        for pool_id in pool_ids:
            if not self.pool_store.is_tracked(pool_id):
                self.pool_store.register_pool(pool_id)

    def health_snapshot(self) -> HealthSnapshot:
        uptime = time.monotonic() - self._started_monotonic if self._started_monotonic and self._running else 0.0
        return HealthSnapshot(
            running=self._running,
            tracked_pool_count=len(self.pool_store),
            last_tick_timestamp=self._last_tick_at,
            monitored_position_count=self._monitored_positions,
            consecutive_errors=self._consecutive_errors,
            uptime_seconds=uptime,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run_monitoring_loop(self) -> None:
        consecutive_errors = 0

        while not self._stop_event.is_set():
            try:
                self.run_tick()

                if consecutive_errors > 0:
                    logger.info(f"Monitoring loop recovered after {consecutive_errors} consecutive error(s)")
                consecutive_errors = 0
                delay = self.check_interval

            except Exception as e:
                consecutive_errors += 1
                logger.error(
                    f"Error in monitoring loop (consecutive: {consecutive_errors}): {e}",
                    exc_info=True,
                )
                if consecutive_errors == self._ERROR_ALERT_THRESHOLD:
                    logger.critical(
                        f"IL Guardian: {consecutive_errors} consecutive monitoring failures. "
                        f"Positions may be UNPROTECTED. Last error: {e}"
                    )
                    self._send_alert(
                        "send_degraded_alert",
                        f"{consecutive_errors} consecutive monitoring failures. "
                        f"Positions may be UNPROTECTED. Last error: {e}",
                    )
                delay = self.error_backoff

            self._consecutive_errors = consecutive_errors
            # Interruptible: stop() wakes this immediately.
            self._stop_event.wait(delay)

        self._running = False
        logger.info("Monitoring loop exited")

    def run_tick(self) -> TickReport:
        """Run one refresh -> evaluate -> protect pass over every tracked pool.

        Errors from a single pool or position are logged and recorded in the
        report. Anything raised from here is a loop-level failure.
        """
        report = TickReport(started_at=self._clock())
        self.repo.ensure_connected()
        pool_ids = list(self.pool_store.list_tracked())

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="il-guardian-worker") as pool:
            states = self._refresh_pools(pool, pool_ids, report)

            position_ids = self.repo.list_position_ids(states.keys()) if states else []
            self._monitored_positions = len(position_ids)

            futures = {pool.submit(self._check_position, pid, states): pid for pid in position_ids}
            for future in as_completed(futures):
                report.outcomes[futures[future]] = future.result()

        self._last_tick_at = self._clock()
        logger.info(
            f"Tick complete: {len(report.refreshed_pools)}/{len(pool_ids)} pools refreshed, "
            f"{len(report.outcomes)} positions checked, "
            f"{report.count(OUTCOME_VIOLATION)} in violation, "
            f"{report.count(OUTCOME_PROTECTED)} protected, "
            f"{report.count(OUTCOME_FAILED)} failed"
        )
        return report

    def _refresh_pools(
        self,
        pool: ThreadPoolExecutor,
        pool_ids: List[str],
        report: TickReport,
    ) -> Dict[str, PoolState]:
        """Refresh pools concurrently; return the snapshots that succeeded."""
        states: Dict[str, PoolState] = {}
        futures = {pool.submit(self.pool_store.refresh, pid): pid for pid in pool_ids}
        for future in as_completed(futures):
            pool_id = futures[future]
            try:
                states[pool_id] = future.result()
                report.refreshed_pools.append(pool_id)
            except DataSourceUnavailable as e:
                logger.warning(f"Reserve data unavailable for {pool_id}, retrying next tick: {e}")
                report.failed_pools.append(pool_id)
            except PoolNotTracked:
                logger.info(f"Pool {pool_id} was unregistered during the tick")
            except Exception as e:
                logger.error(f"Error refreshing pool {pool_id}: {e}", exc_info=True)
                report.failed_pools.append(pool_id)
        return states

    def _check_position(self, position_id: str, states: Dict[str, PoolState]) -> str:
        """Evaluate and, if needed, protect one position. Never raises."""
        try:
            with self.locks.get(position_id):
                return self._evaluate_and_protect(position_id, states)
        except Exception as e:
            logger.error(f"Error checking position {position_id}: {e}", exc_info=True)
            return OUTCOME_FAILED

    def _evaluate_and_protect(self, position_id: str, states: Dict[str, PoolState]) -> str:
        # Always start from the last durably saved record.
        try:
            position = self.repo.load_position(position_id)
        except PositionNotFound:
            logger.info(f"Position {position_id} no longer exists, skipping")
            self.locks.discard(position_id)
            return OUTCOME_SKIPPED
        except PersistenceError as e:
            logger.error(f"Could not load position {position_id}: {e}")
            return OUTCOME_FAILED

        state = states.get(position.pool_id)
        if state is None:
            logger.debug(f"Pool {position.pool_id} not refreshed this tick, skipping {position_id}")
            return OUTCOME_SKIPPED

        stored_il_bps = position.current_il_bps
        try:
            verdict = self.evaluator.evaluate(position, state)
        except InvalidRatio as e:
            logger.error(f"Skipping {position_id} this tick, invalid ratio: {e}")
            return OUTCOME_SKIPPED

        if verdict.changed or position.current_il_bps != stored_il_bps:
            try:
                self.repo.save_position(position)
            except PersistenceError as e:
                logger.error(f"Status change for {position_id} not persisted, will re-derive next tick: {e}")
                return OUTCOME_FAILED

        if verdict.entered_violation:
            self._send_alert("send_violation_alert", position, verdict.result)

        if not verdict.is_violation:
            return OUTCOME_SAFE

        return self._protect(position)

    def _protect(self, position: Position) -> str:
        try:
            protection = self.executor.protect(position)
        except InsufficientShares as e:
            logger.warning(f"No protective action for {position.position_id}: {e}")
            return OUTCOME_VIOLATION
        except SubmissionFailed as e:
            failures = self._record_protection_failure(position.position_id)
            logger.error(
                f"Protective withdrawal for {position.position_id} failed "
                f"({failures} consecutive), retrying next tick: {e}"
            )
            self._send_alert("send_protection_failed_alert", position, e, failures)
            return OUTCOME_FAILED

        self._clear_protection_failures(position.position_id)

        try:
            self.repo.save_position(position)
        except PersistenceError as e:
            logger.critical(
                f"Withdrawal {protection.tx_reference} for {position.position_id} confirmed "
                f"but the position record was not updated: {e}"
            )
            self._send_alert(
                "send_degraded_alert",
                f"Withdrawal {protection.tx_reference} confirmed but position record not saved: {e}. "
                f"Reconcile shares manually.",
                position.position_id,
            )
            return OUTCOME_FAILED

        try:
            self.repo.record_protection(
                position,
                protection.shares_withdrawn,
                protection.exit_fraction,
                protection.tx_reference,
            )
        except PersistenceError as e:
            logger.error(f"Failed to audit protection for {position.position_id}: {e}")

        self._send_alert("send_protection_alert", position, protection)
        return OUTCOME_PROTECTED

    def _record_protection_failure(self, position_id: str) -> int:
        with self._failures_lock:
            count = self._protection_failures.get(position_id, 0) + 1
            self._protection_failures[position_id] = count
            return count

    def _clear_protection_failures(self, position_id: str) -> None:
        with self._failures_lock:
            self._protection_failures.pop(position_id, None)

    def _send_alert(self, method: str, *args) -> None:
        if self.dispatcher is None:
            return
        try:
            getattr(self.dispatcher, method)(*args)
        except Exception as alert_exc:
            logger.error(f"Failed to send {method} alert: {alert_exc}")
