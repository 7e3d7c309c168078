"""
Tests for the ILGuardian monitoring loop.

Covers:
  - one tick end to end (refresh -> evaluate -> protect -> write back)
  - isolation of pool and position failures within a tick
  - persistence as the source of truth after a failed write
  - loop cadence, error backoff and stop semantics
"""

import threading
import time
import unittest.mock
from decimal import Decimal

import pytest

from conftest import FakeLedger, FakeMarketData, FakePositionStore, fixed_clock, make_position, make_snapshot
from il_guardian.alerting.dispatcher import AlertDispatcher
from il_guardian.errors import AlreadyTracked, PersistenceError
from il_guardian.guardian import (
    ILGuardian,
    OUTCOME_FAILED,
    OUTCOME_PROTECTED,
    OUTCOME_SAFE,
    OUTCOME_SKIPPED,
)
from il_guardian.interfaces import LedgerSubmitter
from il_guardian.models import PositionStatus


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_guardian(market_data, ledger, store, dispatcher=None, **kwargs) -> ILGuardian:
    return ILGuardian(
        market_data=market_data,
        ledger=ledger,
        repository=store,
        dispatcher=dispatcher,
        check_interval=kwargs.get("check_interval", 60),
        error_backoff=kwargs.get("error_backoff", 10),
        max_workers=4,
        clock=fixed_clock,
    )


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# Entry ratio 100, current 400:1 -> 20% IL, over an 8% limit.
VIOLATING_RESERVES = ("400", "1")
FLAT_RESERVES = ("100", "1")


@pytest.fixture
def dispatcher():
    return unittest.mock.MagicMock(spec=AlertDispatcher)


# ---------------------------------------------------------------------------
# Single tick
# ---------------------------------------------------------------------------

class TestTick:

    def test_violation_is_protected_and_written_back(self, ledger, dispatcher):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position(shares=1000, max_il_bps=800)])
        guardian = _make_guardian(market_data, ledger, store, dispatcher)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_PROTECTED}
        assert ledger.submissions == [("vault_1", 12)]
        saved = store.records["vault_1"]
        assert saved.shares == 988
        assert saved.current_il_bps == 2000
        assert saved.status == PositionStatus.PROTECTED
        assert store.protections == [("vault_1", 12, Decimal("0.012"), "tx_1")]
        dispatcher.send_violation_alert.assert_called_once()
        dispatcher.send_protection_alert.assert_called_once()

    def test_safe_position_is_not_rewritten(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*FLAT_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_SAFE}
        assert store.saves == []
        assert ledger.submissions == []

    def test_protected_position_returns_to_safe_when_prices_recover(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*FLAT_RESERVES)})
        store = FakePositionStore([make_position(status=PositionStatus.PROTECTED, current_il_bps=2000)])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        guardian.run_tick()

        assert store.records["vault_1"].status == PositionStatus.SAFE
        assert store.records["vault_1"].current_il_bps == 0

    def test_repeated_violation_withdraws_again_each_tick(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position(shares=1000)])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        guardian.run_tick()
        guardian.run_tick()

        # floor(988 * 0.012) == 11
        assert ledger.submissions == [("vault_1", 12), ("vault_1", 11)]
        assert store.records["vault_1"].shares == 977

    def test_positions_use_snapshot_from_current_tick(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*FLAT_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        guardian.run_tick()
        market_data.snapshots["ada_usdc"] = make_snapshot(*VIOLATING_RESERVES)
        guardian.run_tick()

        assert store.records["vault_1"].current_il_bps == 2000

    def test_positions_of_untracked_pools_are_ignored(self, ledger):
        market_data = FakeMarketData({
            "ada_usdc": make_snapshot(*VIOLATING_RESERVES),
            "ada_djed": make_snapshot(*VIOLATING_RESERVES),
        })
        store = FakePositionStore([
            make_position("vault_1", pool_id="ada_usdc"),
            make_position("vault_2", pool_id="ada_djed"),
        ])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")
        guardian.register_pool("ada_djed")
        guardian.unregister_pool("ada_djed")

        report = guardian.run_tick()

        assert set(report.outcomes) == {"vault_1"}
        assert market_data.calls == ["ada_usdc"]


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------

class TestIsolation:

    def test_one_failing_pool_of_five(self, ledger):
        pools = [f"pool_{i}" for i in range(1, 6)]
        market_data = FakeMarketData({p: make_snapshot(*VIOLATING_RESERVES) for p in pools})
        market_data.failing.add("pool_3")
        store = FakePositionStore([
            make_position(f"vault_{i}", pool_id=p, status=PositionStatus.VIOLATION, current_il_bps=1500)
            for i, p in enumerate(pools, start=1)
        ])
        guardian = _make_guardian(market_data, ledger, store)
        for p in pools:
            guardian.register_pool(p)

        report = guardian.run_tick()

        assert report.failed_pools == ["pool_3"]
        assert sorted(report.refreshed_pools) == ["pool_1", "pool_2", "pool_4", "pool_5"]
        assert "vault_3" not in report.outcomes
        assert report.count(OUTCOME_PROTECTED) == 4
        untouched = store.records["vault_3"]
        assert untouched.status == PositionStatus.VIOLATION
        assert untouched.shares == 1000
        assert untouched.current_il_bps == 1500
        assert ("vault_3", 12) not in ledger.submissions

    def test_failing_pool_is_retried_next_tick(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        market_data.failing.add("ada_usdc")
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        guardian.run_tick()
        market_data.failing.clear()
        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_PROTECTED}
        assert market_data.calls == ["ada_usdc", "ada_usdc"]

    def test_invalid_ratio_skips_only_that_position(self, ledger):
        market_data = FakeMarketData({
            "broken": make_snapshot("100", "0"),
            "ada_usdc": make_snapshot(*VIOLATING_RESERVES),
        })
        store = FakePositionStore([
            make_position("vault_1", pool_id="broken"),
            make_position("vault_2", pool_id="ada_usdc"),
        ])
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("broken")
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_SKIPPED, "vault_2": OUTCOME_PROTECTED}
        assert store.records["vault_1"].status == PositionStatus.SAFE

    def test_position_deleted_mid_tick_is_skipped(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*FLAT_RESERVES)})
        store = FakePositionStore([make_position()])
        original_list = store.list_position_ids
        store.list_position_ids = lambda pool_ids: original_list(pool_ids) + ["ghost"]
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes["ghost"] == OUTCOME_SKIPPED
        assert report.outcomes["vault_1"] == OUTCOME_SAFE


# ---------------------------------------------------------------------------
# Persistence and submission failures
# ---------------------------------------------------------------------------

class TestFailures:

    def test_unsaved_status_change_blocks_protection(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        store.fail_saves = True
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_FAILED}
        assert ledger.submissions == []
        assert store.records["vault_1"].status == PositionStatus.SAFE

    def test_next_tick_rederives_from_saved_record(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        store.fail_saves = True
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        guardian.run_tick()
        store.fail_saves = False
        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_PROTECTED}
        assert store.records["vault_1"].shares == 988

    def test_submission_failure_keeps_violation(self, dispatcher):
        ledger = FakeLedger()
        ledger.fail = True
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store, dispatcher)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_FAILED}
        saved = store.records["vault_1"]
        assert saved.status == PositionStatus.VIOLATION
        assert saved.shares == 1000
        assert store.protections == []

    def test_failure_count_grows_and_resets(self, dispatcher):
        ledger = FakeLedger()
        ledger.fail = True
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store, dispatcher)
        guardian.register_pool("ada_usdc")

        for _ in range(3):
            guardian.run_tick()

        counts = [c.args[2] for c in dispatcher.send_protection_failed_alert.call_args_list]
        assert counts == [1, 2, 3]
        # Entered violation once; staying there does not re-alert.
        dispatcher.send_violation_alert.assert_called_once()

        ledger.fail = False
        guardian.run_tick()
        ledger.fail = True
        guardian.run_tick()
        assert dispatcher.send_protection_failed_alert.call_args_list[-1].args[2] == 1

    def test_divergence_after_confirmed_withdrawal_alerts(self, dispatcher):
        ledger = FakeLedger()
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position(status=PositionStatus.VIOLATION, current_il_bps=2000)])
        store.fail_saves = True
        guardian = _make_guardian(market_data, ledger, store, dispatcher)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        # Nothing changed at evaluation, so the first write is after the withdrawal.
        assert ledger.submissions == [("vault_1", 12)]
        assert report.outcomes == {"vault_1": OUTCOME_FAILED}
        dispatcher.send_degraded_alert.assert_called_once()

    def test_alert_failure_does_not_break_tick(self, ledger, dispatcher):
        dispatcher.send_violation_alert.side_effect = RuntimeError("telegram down")
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store, dispatcher)
        guardian.register_pool("ada_usdc")

        report = guardian.run_tick()

        assert report.outcomes == {"vault_1": OUTCOME_PROTECTED}

    def test_listing_failure_is_loop_level(self, ledger):
        store = FakePositionStore([make_position()])
        store.fail_list = True
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*FLAT_RESERVES)})
        guardian = _make_guardian(market_data, ledger, store)
        guardian.register_pool("ada_usdc")

        with pytest.raises(PersistenceError):
            guardian.run_tick()


# ---------------------------------------------------------------------------
# Control surface and loop cadence
# ---------------------------------------------------------------------------

class TestControlSurface:

    def test_register_twice_propagates(self, market_data, ledger):
        guardian = _make_guardian(market_data, ledger, FakePositionStore())
        guardian.register_pool("ada_usdc")
        with pytest.raises(AlreadyTracked):
            guardian.register_pool("ada_usdc")

    def test_register_pools_skips_known(self, market_data, ledger):
        guardian = _make_guardian(market_data, ledger, FakePositionStore())
        guardian.register_pool("a")
        guardian.register_pools(["a", "b"])
        assert guardian.health_snapshot().tracked_pool_count == 2

    def test_health_snapshot_before_start(self, market_data, ledger):
        guardian = _make_guardian(market_data, ledger, FakePositionStore())
        guardian.register_pool("ada_usdc")
        snapshot = guardian.health_snapshot()

        assert snapshot.running is False
        assert snapshot.tracked_pool_count == 1
        assert snapshot.last_tick_timestamp is None
        assert snapshot.status == "stopped"

    def test_start_runs_first_tick_then_stop(self, ledger):
        market_data = FakeMarketData({"ada_usdc": make_snapshot(*FLAT_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, ledger, store, check_interval=60)
        guardian.register_pool("ada_usdc")

        guardian.start()
        try:
            assert _wait_for(lambda: guardian.health_snapshot().last_tick_timestamp is not None)
            snapshot = guardian.health_snapshot()
            assert snapshot.running is True
            assert snapshot.status == "running"
            assert snapshot.monitored_position_count == 1
        finally:
            started = time.monotonic()
            guardian.stop(timeout=5)

        # The 60s sleep is interrupted, not waited out.
        assert time.monotonic() - started < 5
        assert guardian.health_snapshot().running is False
        assert store.connect_checks == 1

    def test_start_twice_is_harmless(self, market_data, ledger):
        guardian = _make_guardian(market_data, ledger, FakePositionStore())
        guardian.start()
        try:
            guardian.start()
            assert guardian.running
        finally:
            guardian.stop(timeout=5)

    def test_stop_is_idempotent(self, market_data, ledger):
        guardian = _make_guardian(market_data, ledger, FakePositionStore())
        guardian.stop()
        guardian.start()
        guardian.stop(timeout=5)
        guardian.stop(timeout=5)
        assert not guardian.running

    def test_loop_error_uses_short_backoff(self, market_data, ledger):
        store = FakePositionStore()
        store.ensure_connected = unittest.mock.MagicMock(side_effect=RuntimeError("db down"))
        guardian = _make_guardian(market_data, ledger, store, check_interval=60, error_backoff=0.01)

        guardian.start()
        try:
            # With a 60s interval only the backoff can produce repeated ticks.
            assert _wait_for(lambda: store.ensure_connected.call_count >= 3)
            assert _wait_for(lambda: guardian.health_snapshot().status == "degraded")
        finally:
            guardian.stop(timeout=5)

    def test_loop_recovers_to_normal_cadence(self, market_data, ledger):
        store = FakePositionStore()
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")

        store.ensure_connected = flaky
        guardian = _make_guardian(market_data, ledger, store, check_interval=60, error_backoff=0.01)

        guardian.start()
        try:
            assert _wait_for(lambda: guardian.health_snapshot().last_tick_timestamp is not None)
            time.sleep(0.1)
            # Second tick succeeded, third is 60s away.
            assert calls["n"] == 2
            assert guardian.health_snapshot().consecutive_errors == 0
        finally:
            guardian.stop(timeout=5)

    def test_degraded_alert_after_repeated_loop_errors(self, market_data, ledger, dispatcher):
        store = FakePositionStore()
        store.ensure_connected = unittest.mock.MagicMock(side_effect=RuntimeError("db down"))
        guardian = _make_guardian(market_data, ledger, store, dispatcher, error_backoff=0.001)

        guardian.start()
        try:
            assert _wait_for(lambda: dispatcher.send_degraded_alert.called)
        finally:
            guardian.stop(timeout=5)

    def test_stop_waits_for_in_flight_withdrawal(self):
        entered = threading.Event()
        release = threading.Event()

        class BlockingLedger(LedgerSubmitter):
            def submit_withdrawal(self, position_id, share_amount):
                entered.set()
                release.wait(timeout=5)
                return "tx_slow"

        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, BlockingLedger(), store)
        guardian.register_pool("ada_usdc")

        guardian.start()
        assert entered.wait(timeout=5)

        stopper = threading.Thread(target=guardian.stop, kwargs={"timeout": 5})
        stopper.start()
        time.sleep(0.05)
        # Stop requested while the withdrawal is in flight; the tick must finish.
        assert store.records["vault_1"].shares == 1000
        release.set()
        stopper.join(timeout=5)

        assert store.records["vault_1"].shares == 988
        assert store.records["vault_1"].status == PositionStatus.PROTECTED
        assert not guardian.running

    def test_timed_out_stop_does_not_allow_second_loop(self):
        entered = threading.Event()
        release = threading.Event()

        class BlockingLedger(LedgerSubmitter):
            def submit_withdrawal(self, position_id, share_amount):
                entered.set()
                release.wait(timeout=5)
                return "tx_slow"

        market_data = FakeMarketData({"ada_usdc": make_snapshot(*VIOLATING_RESERVES)})
        store = FakePositionStore([make_position()])
        guardian = _make_guardian(market_data, BlockingLedger(), store)
        guardian.register_pool("ada_usdc")

        guardian.start()
        try:
            assert entered.wait(timeout=5)

            guardian.stop(timeout=0.05)
            # The tick is still submitting, so the guardian is not stopped yet.
            assert guardian.running
            assert guardian.health_snapshot().status != "stopped"

            guardian.start()
            loops = [t for t in threading.enumerate() if t.name == "il-guardian"]
            assert len(loops) == 1
        finally:
            release.set()
            guardian.stop(timeout=5)

        assert not guardian.running
        assert not [t for t in threading.enumerate() if t.name == "il-guardian"]
        assert store.records["vault_1"].shares == 988
