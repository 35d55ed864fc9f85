"""
Tests for engine/scalping_monitor.py (ScalpingMonitor)

Runs the monitor end to end against the in-memory PaperBroker.
"""

import sys
import threading
import time
from datetime import datetime
from pathlib import Path

import pytest
import pytz

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker.paper_broker import PaperBroker
from core.config import ConfigStore, ScalpingConfig
from core.exit_rules import ExitAction, ExitReason
from core.market_session import SessionPhase
from engine.scalping_monitor import ScalpingMonitor, TickReport

IST = pytz.timezone("Asia/Kolkata")
ACTIVE = IST.localize(datetime(2024, 1, 15, 10, 0))
PRE_OPEN = IST.localize(datetime(2024, 1, 15, 9, 0))
AWAITING = IST.localize(datetime(2024, 1, 15, 15, 5))
PAST = IST.localize(datetime(2024, 1, 15, 15, 20))

CE = "NIFTY24JAN22000CE"
PE = "NIFTY24JAN21800PE"


@pytest.fixture
def broker():
    b = PaperBroker()
    b.add_instrument(CE, lot_size=50, underlying="NIFTY", expiry="2024-01-25", strike=22000, instrument_type="CE")
    b.add_instrument(PE, lot_size=50, underlying="NIFTY", expiry="2024-01-25", strike=21800, instrument_type="PE")
    return b


@pytest.fixture
def monitor(broker):
    return ScalpingMonitor(broker, ConfigStore())


def test_partial_then_profit_target(broker, monitor):
    broker.open_position(CE, 100, 100.0)

    broker.set_last_price(CE, 110.0)
    report = monitor.tick(ACTIVE)
    assert report.phase is SessionPhase.ACTIVE
    assert report.positions_seen == 1
    assert report.outcomes == []
    assert monitor.tracking.get(CE).entry_price == 100.0

    broker.set_last_price(CE, 115.0)
    report = monitor.tick(ACTIVE)
    [outcome] = report.outcomes
    assert outcome.ok
    assert outcome.decision.action is ExitAction.PARTIAL
    assert outcome.decision.quantity == 50
    assert broker.get_position(CE).quantity == 50
    assert broker.orders[-1].side == "SELL"
    assert monitor.tracking.get(CE).partial_exit_done is True

    # Still above the partial trigger: must not partial again.
    broker.set_last_price(CE, 116.0)
    assert monitor.tick(ACTIVE).outcomes == []

    broker.set_last_price(CE, 126.0)
    [outcome] = monitor.tick(ACTIVE).outcomes
    assert outcome.decision.reason is ExitReason.PROFIT_TARGET
    assert outcome.decision.quantity == 50
    assert broker.get_position(CE).quantity == 0
    assert CE not in monitor.tracking

    # Flat positions are skipped entirely.
    report = monitor.tick(ACTIVE)
    assert report.positions_seen == 0
    assert CE not in monitor.tracking

    counters = monitor.counters.snapshot()
    assert counters["orders_submitted"] == 2
    assert counters["by_reason"] == {"PARTIAL_PROFIT": 1, "PROFIT_TARGET": 1}


def test_short_stop_loss_buys_back(broker, monitor):
    broker.open_position(PE, -50, 100.0)
    monitor.tick(ACTIVE)

    broker.set_last_price(PE, 116.0)
    [outcome] = monitor.tick(ACTIVE).outcomes
    assert outcome.decision.reason is ExitReason.STOP_LOSS
    assert broker.orders[-1].side == "BUY"
    assert broker.get_position(PE).quantity == 0
    assert PE not in monitor.tracking


def test_trailing_stop_uses_watermark_across_ticks(broker):
    monitor = ScalpingMonitor(broker, ConfigStore(ScalpingConfig(trailing_stop_pct=0.07)))
    broker.open_position(PE, 50, 100.0)
    for price in (105.0, 112.0, 120.0):
        broker.set_last_price(PE, price)
        assert monitor.tick(ACTIVE).outcomes == []

    # Lots of 50 with a 50 position: partial never applies.
    broker.set_last_price(PE, 111.0)
    [outcome] = monitor.tick(ACTIVE).outcomes
    assert outcome.decision.reason is ExitReason.TRAILING_STOP
    assert monitor.tracking.get(PE) is None


def test_order_failure_keeps_state_for_retry(broker, monitor):
    broker.open_position(CE, 100, 100.0)
    monitor.tick(ACTIVE)

    broker.reject_orders = True
    broker.set_last_price(CE, 115.0)
    [outcome] = monitor.tick(ACTIVE).outcomes
    assert not outcome.ok
    assert "503" in outcome.error
    state = monitor.tracking.get(CE)
    assert state is not None
    assert state.partial_exit_done is False
    assert broker.get_position(CE).quantity == 100

    broker.reject_orders = False
    [retry] = monitor.tick(ACTIVE).outcomes
    assert retry.ok
    assert retry.decision.reason is ExitReason.PARTIAL_PROFIT
    assert monitor.counters.snapshot()["orders_failed"] == 1


def test_upstream_failure_aborts_tick_without_touching_state(broker, monitor):
    broker.open_position(CE, 100, 100.0)
    monitor.tick(ACTIVE)
    before = monitor.tracking.get(CE).to_dict()

    broker.fail_fetch = True
    broker.set_last_price(CE, 200.0)
    report = monitor.tick(ACTIVE)
    assert report.error
    assert report.outcomes == []
    assert monitor.tracking.get(CE).to_dict() == before
    assert len(broker.orders) == 1
    assert monitor.counters.snapshot()["ticks_failed"] == 1


def test_holds_outside_trading_window(broker, monitor):
    broker.open_position(CE, 100, 100.0)
    broker.set_last_price(CE, 150.0)

    for now, phase in ((PRE_OPEN, SessionPhase.PRE_OPEN), (AWAITING, SessionPhase.AWAITING_SQUAREOFF)):
        report = monitor.tick(now)
        assert report.phase is phase
        assert report.outcomes == []
    assert len(broker.orders) == 1
    assert len(monitor.tracking) == 0


def test_square_off_closes_everything(broker, monitor):
    broker.open_position(CE, 100, 100.0)
    broker.open_position(PE, -50, 80.0)
    monitor.tick(ACTIVE)
    assert len(monitor.tracking) == 2

    report = monitor.tick(PAST)
    assert report.phase is SessionPhase.PAST_SQUAREOFF
    assert {o.decision.reason for o in report.outcomes} == {ExitReason.FORCE_SQUARE_OFF}
    assert {o.symbol: o.decision.quantity for o in report.outcomes} == {CE: 100, PE: 50}
    assert broker.get_position(CE).quantity == 0
    assert broker.get_position(PE).quantity == 0
    assert len(monitor.tracking) == 0


def test_failed_square_off_retries_next_tick(broker, monitor):
    broker.open_position(CE, 50, 100.0)
    monitor.tick(ACTIVE)

    broker.reject_orders = True
    [outcome] = monitor.tick(PAST).outcomes
    assert not outcome.ok
    assert CE in monitor.tracking

    broker.reject_orders = False
    [outcome] = monitor.tick(PAST).outcomes
    assert outcome.ok
    assert CE not in monitor.tracking


def test_overlapping_tick_is_skipped(broker, monitor):
    broker.open_position(CE, 100, 100.0)
    monitor._tick_lock.acquire()
    try:
        report = monitor.tick(ACTIVE)
    finally:
        monitor._tick_lock.release()
    assert report.skipped
    assert len(monitor.tracking) == 0
    assert monitor.counters.snapshot()["ticks_skipped"] == 1


class _UpdatingBroker(PaperBroker):
    """Applies a config update while the tick is fetching positions."""

    def __init__(self, store, patch):
        super().__init__()
        self.store = store
        self.patch = patch

    def fetch_positions(self):
        if self.patch:
            self.store.update(self.patch)
            self.patch = None
        return super().fetch_positions()


def test_config_update_mid_tick_applies_from_next_tick():
    store = ConfigStore()
    broker = _UpdatingBroker(store, {"profit_target_pct": 0.5})
    broker.open_position(CE, 50, 100.0)
    broker.set_last_price(CE, 126.0)

    # Tick started with the 25% target and must finish with it.
    [outcome] = ScalpingMonitor(broker, store).tick(ACTIVE).outcomes
    assert outcome.decision.reason is ExitReason.PROFIT_TARGET
    assert store.current().profit_target_pct == 0.5

    broker.open_position(PE, 50, 100.0)
    broker.set_last_price(PE, 126.0)
    assert ScalpingMonitor(broker, store).tick(ACTIVE).outcomes == []


def test_oversize_position_is_logged_not_blocked(broker, monitor, caplog):
    broker.open_position(CE, 400, 100.0)
    broker.set_last_price(CE, 126.0)
    [outcome] = monitor.tick(ACTIVE).outcomes
    assert outcome.ok
    assert "RISK_BLOCK" in caplog.text


def test_state_snapshot_shape(broker, monitor):
    broker.open_position(CE, 100, 100.0)
    monitor.tick(ACTIVE)
    data = monitor.state_snapshot()
    assert [s["symbol"] for s in data["states"]] == [CE]
    assert data["config"]["profit_target_pct"] == 0.25
    assert data["counters"]["ticks_run"] == 1
    assert data["last_tick"]["phase"] == "ACTIVE"


def test_run_forever_survives_failures_and_stops(broker):
    store = ConfigStore(ScalpingConfig(check_interval_seconds=0.01))
    broker.fail_fetch = True
    monitor = ScalpingMonitor(broker, store)

    monitor.start()
    deadline = time.monotonic() + 2.0
    while monitor.counters.snapshot()["ticks_run"] < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert monitor.running
    monitor.stop(timeout=2.0)

    assert not monitor.running
    assert monitor.counters.snapshot()["ticks_run"] >= 3
    assert not any(t.name == "scalping-monitor" and t.is_alive() for t in threading.enumerate())


def test_upstream_error_type_is_reported(broker, monitor):
    broker.fail_fetch = True
    report = monitor.tick(ACTIVE)
    assert "unavailable" in report.error
    assert report.positions_seen == 0


def test_position_closed_outside_monitor_resets_tracking(broker, monitor):
    broker.open_position(CE, 50, 100.0)
    monitor.tick(ACTIVE)
    assert monitor.tracking.get(CE).entry_price == 100.0

    # Closed by hand at the broker.
    broker.submit_order("SELL", CE, 50, 100.0)
    report = monitor.tick(ACTIVE)
    assert report.positions_seen == 0
    assert CE not in monitor.tracking

    # Reopened at a new price: no exit on the old entry.
    broker.open_position(CE, 50, 200.0)
    broker.set_last_price(CE, 200.0)
    assert monitor.tick(ACTIVE).outcomes == []
    state = monitor.tracking.get(CE)
    assert state.entry_price == 200.0
    assert state.high_watermark == 200.0


def test_symbol_missing_from_snapshot_is_cleared(broker, monitor):
    broker.open_position(CE, 50, 100.0)
    broker.open_position(PE, -50, 80.0)
    monitor.tick(ACTIVE)
    assert len(monitor.tracking) == 2

    del broker.positions[PE]
    monitor.tick(ACTIVE)
    assert monitor.tracking.symbols() == [CE]


def test_stale_state_is_not_kept_after_upstream_failure_recovers(broker, monitor):
    broker.open_position(CE, 50, 100.0)
    monitor.tick(ACTIVE)
    broker.submit_order("SELL", CE, 50, 100.0)

    broker.fail_fetch = True
    monitor.tick(ACTIVE)
    assert CE in monitor.tracking

    broker.fail_fetch = False
    monitor.tick(ACTIVE)
    assert CE not in monitor.tracking


def test_oversize_warning_logged_once_per_position(broker, monitor, caplog):
    broker.open_position(CE, 400, 100.0)
    for _ in range(3):
        assert monitor.tick(ACTIVE).outcomes == []
    warnings = [r for r in caplog.records if "[KIND:RISK_BLOCK]" in r.getMessage()]
    assert len(warnings) == 1


def test_restart_while_previous_loop_is_finishing(broker):
    monitor = ScalpingMonitor(broker, ConfigStore(ScalpingConfig(check_interval_seconds=0.01)))
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def slow_tick(now=None):
        calls.append(now)
        if len(calls) == 1:
            entered.set()
            release.wait(2.0)
        return TickReport()

    monitor.tick = slow_tick
    monitor.start()
    assert entered.wait(2.0)

    monitor.stop()
    threading.Timer(0.05, release.set).start()
    monitor.start()

    deadline = time.monotonic() + 2.0
    while len(calls) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert monitor.running
    assert len(calls) >= 3
    monitor.stop(timeout=2.0)
    assert not monitor.running
