"""
Scalping exit monitor.

Periodic, non-reentrant driver that ties the pieces together:

    SessionClock -> SnapshotBuilder -> TrackingStore -> ExitRuleEngine -> OrderGateway

Per tick:
- PRE_OPEN / AWAITING_SQUAREOFF: nothing to do (hold).
- ACTIVE: evaluate the rule ladder for every non-flat position.
- PAST_SQUAREOFF: close every non-flat position.

Tracking state changes only after the gateway acknowledges an exit; a failed
order leaves the state as it was so the next tick decides again. After every
successful snapshot, state for symbols that are flat or missing upstream is
dropped, so a reopened symbol starts from its new entry. Snapshot failures
abort the tick but never the loop.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from broker.gateway import OrderAck, OrderGateway
from core.config import ConfigStore, ScalpingConfig
from core.errors import OrderError, UpstreamUnavailable
from core.event_logging import log_event
from core.exit_rules import ExitDecision, ExitRuleEngine
from core.market_session import SessionClock, SessionPhase
from core.position_snapshot import PositionSnapshot, SnapshotBuilder
from core.trade_monitor import TradeMonitor
from core.tracking_store import TrackingStore

logger = logging.getLogger(__name__)


@dataclass
class ExitOutcome:
    symbol: str
    decision: ExitDecision
    ack: Optional[OrderAck] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.ack is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "decision": self.decision.to_dict(),
            "order_id": self.ack.order_id if self.ack else None,
            "error": self.error,
        }


@dataclass
class TickReport:
    phase: Optional[SessionPhase] = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    skipped: bool = False
    error: Optional[str] = None
    positions_seen: int = 0
    outcomes: List[ExitOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value if self.phase else None,
            "started_at": self.started_at,
            "skipped": self.skipped,
            "error": self.error,
            "positions_seen": self.positions_seen,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ScalpingMonitor:
    def __init__(
        self,
        gateway: OrderGateway,
        config_store: Optional[ConfigStore] = None,
        *,
        tracking: Optional[TrackingStore] = None,
        counters: Optional[TradeMonitor] = None,
    ) -> None:
        self.gateway = gateway
        self.config_store = config_store or ConfigStore()
        self.tracking = tracking or TrackingStore()
        self.counters = counters or TradeMonitor()
        self.builder = SnapshotBuilder(gateway)

        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_phase: Optional[SessionPhase] = None
        self.last_report: Optional[TickReport] = None

    # ------------------------------------------------------------------ tick
    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one scan. If another tick is still in flight the call returns
        immediately with ``skipped=True``.
        """
        if not self._tick_lock.acquire(blocking=False):
            self.counters.increment("ticks_skipped")
            logger.warning("Previous tick still running; skipping this one")
            return TickReport(skipped=True)
        try:
            report = self._run_tick(now)
            self.last_report = report
            return report
        finally:
            self._tick_lock.release()

    def _run_tick(self, now: Optional[datetime]) -> TickReport:
        # One config object for the whole tick; admin updates land before or after.
        config = self.config_store.current()
        phase = SessionClock(config).classify(now)
        report = TickReport(phase=phase)
        self._note_phase_change(phase)
        self.counters.increment("ticks_run")

        if phase in (SessionPhase.PRE_OPEN, SessionPhase.AWAITING_SQUAREOFF):
            return report

        try:
            snapshots = self.builder.build(config)
        except UpstreamUnavailable as exc:
            self.counters.increment("ticks_failed")
            report.error = str(exc)
            log_event("WARN", f"Snapshot unavailable, skipping tick: {exc}")
            return report
        except Exception as exc:  # noqa: BLE001
            self.counters.increment("ticks_failed")
            report.error = str(exc)
            logger.exception("Unexpected snapshot failure: %s", exc)
            return report

        open_positions = [s for s in snapshots if not s.is_flat]
        report.positions_seen = len(open_positions)
        self._prune_closed(open_positions)

        if phase is SessionPhase.PAST_SQUAREOFF:
            self._square_off(open_positions, report)
        else:
            self._scan(open_positions, config, report)

        return report

    def _scan(self, positions: List[PositionSnapshot], config: ScalpingConfig, report: TickReport) -> None:
        engine = ExitRuleEngine(config)
        for snap in positions:
            state = self.tracking.upsert(snap)
            self.tracking.touch(snap.symbol, snap.ltp, snap.is_short)
            self._check_size(snap, config)

            decision = engine.evaluate(snap, state)
            log_event(
                "SCAN",
                f"{snap.symbol} entry={state.entry_price:.2f} ltp={snap.ltp:.2f} pnl={decision.pnl_pct or 0.0:.2f}%",
                level=logging.DEBUG,
            )
            if decision.is_exit:
                report.outcomes.append(self._execute(snap, decision))

    def _square_off(self, positions: List[PositionSnapshot], report: TickReport) -> None:
        for snap in positions:
            decision = ExitRuleEngine.force_exit(snap)
            log_event("SQUARE_OFF", f"Force square off {snap.abs_quantity} x {snap.symbol}", symbol=snap.symbol)
            report.outcomes.append(self._execute(snap, decision))

    def _execute(self, snap: PositionSnapshot, decision: ExitDecision) -> ExitOutcome:
        reason = decision.reason.value if decision.reason else None
        self.counters.increment("exits_decided")
        log_event(
            "EXIT_DECISION",
            f"{decision.action.value} exit {decision.quantity} x {snap.symbol} via {snap.exit_side}",
            symbol=snap.symbol,
            reason=reason,
            extra={"ltp": snap.ltp, "pnl_pct": round(decision.pnl_pct, 2) if decision.pnl_pct is not None else None},
        )
        log_event(
            "ORDER_NEW",
            f"{snap.exit_side} {decision.quantity} x {snap.symbol} @ ~{snap.ltp:.2f} MARKET",
            symbol=snap.symbol,
            reason=reason,
        )
        try:
            ack = self.gateway.submit_order(snap.exit_side, snap.symbol, decision.quantity, snap.ltp)
        except OrderError as exc:
            return self._order_failed(snap, decision, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected gateway failure for %s", snap.symbol)
            return self._order_failed(snap, decision, str(exc))

        if decision.closes_position:
            self.tracking.clear(snap.symbol)
        else:
            self.tracking.mark_partial_exit(snap.symbol)
        self.counters.increment("orders_submitted")
        if reason:
            self.counters.record_exit(reason)
        log_event(
            "ORDER_FILL",
            f"Exited {decision.quantity} x {snap.symbol} (order {ack.order_id})",
            symbol=snap.symbol,
            reason=reason,
        )
        return ExitOutcome(symbol=snap.symbol, decision=decision, ack=ack)

    def _order_failed(self, snap: PositionSnapshot, decision: ExitDecision, error: str) -> ExitOutcome:
        self.counters.increment("orders_failed")
        log_event(
            "ORDER_FAIL",
            f"Exit for {snap.symbol} failed, state kept for next tick: {error}",
            symbol=snap.symbol,
            reason=decision.reason.value if decision.reason else None,
        )
        return ExitOutcome(symbol=snap.symbol, decision=decision, error=error)

    def _check_size(self, snap: PositionSnapshot, config: ScalpingConfig) -> None:
        if not snap.lot_size:
            return
        lots = snap.abs_quantity / snap.lot_size
        if lots > config.max_position_size and self.tracking.flag_oversize(snap.symbol):
            log_event(
                "RISK_BLOCK",
                f"{snap.symbol} holds {lots:g} lots, above max_position_size={config.max_position_size}",
                symbol=snap.symbol,
            )

    def _prune_closed(self, open_positions: List[PositionSnapshot]) -> None:
        # Anything flat or gone upstream starts fresh if it reopens.
        for symbol in self.tracking.prune(s.symbol for s in open_positions):
            log_event("INFO", f"{symbol} no longer open upstream; tracking cleared", symbol=symbol)

    def _note_phase_change(self, phase: SessionPhase) -> None:
        if phase is self._last_phase:
            return
        previous = self._last_phase
        self._last_phase = phase
        if phase is SessionPhase.AWAITING_SQUAREOFF:
            log_event("TIME_BLOCK", "Trading window closed; holding until square-off")
        elif phase is SessionPhase.PAST_SQUAREOFF:
            log_event("SQUARE_OFF", "Square-off time reached; closing all positions")
        else:
            log_event("INFO", f"Session phase {previous.value if previous else None} -> {phase.value}")

    # ------------------------------------------------------------------ loop
    def run_forever(self) -> None:
        """
        Tick every ``check_interval_seconds`` until stop(). Periods missed by
        an overrunning tick are skipped, not queued.
        """
        self._stop.clear()
        logger.info("ScalpingMonitor loop starting (interval=%.1fs)", self.config_store.current().check_interval_seconds)
        next_run = time.monotonic()
        try:
            while not self._stop.is_set():
                try:
                    self.tick()
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Tick crashed: %s", exc)

                interval = self.config_store.current().check_interval_seconds
                next_run += interval
                now = time.monotonic()
                if next_run <= now:
                    missed = int((now - next_run) // interval) + 1
                    next_run += missed * interval
                    self.counters.increment("ticks_skipped", missed)
                    logger.warning("Tick overran its period; skipped %d tick(s)", missed)
                self._stop.wait(max(0.0, next_run - now))
        finally:
            logger.info("ScalpingMonitor loop stopped")

    def start(self) -> None:
        thread = self._thread
        if thread and thread.is_alive():
            if not self._stop.is_set():
                return
            # A stopping loop may still be inside a tick; let it finish first.
            thread.join()
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="scalping-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loop to stop. In-flight orders are not awaited unless a
        timeout is given for joining the thread.
        """
        self._stop.set()
        thread = self._thread
        if thread and timeout is not None:
            thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self._stop.is_set())

    def state_snapshot(self) -> Dict[str, Any]:
        return {
            "states": self.tracking.snapshot(),
            "config": self.config_store.current().to_dict(),
            "counters": self.counters.snapshot(),
            "last_tick": self.last_report.to_dict() if self.last_report else None,
        }
