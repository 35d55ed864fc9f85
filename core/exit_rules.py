"""
Exit rule engine.

Fixed ladder, first match wins:

    1. PROFIT_TARGET   pnl% >= target                              -> FULL
    2. STOP_LOSS       pnl% <= -stop                               -> FULL
    3. PARTIAL_PROFIT  pnl% >= target * trigger_fraction, once,
                       position of at least two lots               -> PARTIAL
    4. TRAILING_STOP   pnl% > 0 and pullback from watermark >= trail -> FULL
    5. LOW_PREMIUM     ltp < min_premium and pnl% > threshold      -> FULL

Forced square-off skips the ladder and closes everything.

Decisions are pure: the engine never mutates tracking state. The monitor
applies the state change only after the gateway acknowledges the order.
Watermarks must already be extended for the current ltp (TrackingStore.touch).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.config import ScalpingConfig
from core.position_snapshot import PositionSnapshot
from core.tracking_store import PositionTrackingState


class ExitAction(str, Enum):
    NONE = "NONE"
    PARTIAL = "PARTIAL"
    FULL = "FULL"


class ExitReason(str, Enum):
    PROFIT_TARGET = "PROFIT_TARGET"
    STOP_LOSS = "STOP_LOSS"
    PARTIAL_PROFIT = "PARTIAL_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    LOW_PREMIUM = "LOW_PREMIUM"
    FORCE_SQUARE_OFF = "FORCE_SQUARE_OFF"


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    quantity: int = 0
    reason: Optional[ExitReason] = None
    pnl_pct: Optional[float] = None

    @property
    def is_exit(self) -> bool:
        return self.action is not ExitAction.NONE

    @property
    def closes_position(self) -> bool:
        return self.action is ExitAction.FULL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "quantity": self.quantity,
            "reason": self.reason.value if self.reason else None,
            "pnl_pct": self.pnl_pct,
        }


NO_EXIT = ExitDecision(action=ExitAction.NONE)


def pnl_percent(entry_price: float, ltp: float, is_short: bool) -> float:
    if entry_price <= 0:
        return 0.0
    if is_short:
        return (entry_price - ltp) / entry_price * 100
    return (ltp - entry_price) / entry_price * 100


def pullback_percent(state: PositionTrackingState, ltp: float, is_short: bool) -> float:
    """Adverse move from the favorable watermark, in percent."""
    if is_short:
        low = state.low_watermark
        return (ltp - low) / low * 100 if low > 0 else 0.0
    high = state.high_watermark
    return (high - ltp) / high * 100 if high > 0 else 0.0


class ExitRuleEngine:
    def __init__(self, config: ScalpingConfig) -> None:
        self.config = config

    def evaluate(self, snapshot: PositionSnapshot, state: PositionTrackingState) -> ExitDecision:
        if snapshot.is_flat:
            return NO_EXIT

        cfg = self.config
        is_short = snapshot.is_short
        qty = snapshot.abs_quantity
        ltp = snapshot.ltp
        pnl = pnl_percent(state.entry_price, ltp, is_short)

        target = cfg.profit_target_pct * 100
        if pnl >= target:
            return ExitDecision(ExitAction.FULL, qty, ExitReason.PROFIT_TARGET, pnl)

        if pnl <= -cfg.stop_loss_pct * 100:
            return ExitDecision(ExitAction.FULL, qty, ExitReason.STOP_LOSS, pnl)

        partial = self._partial_decision(snapshot, state, pnl, target)
        if partial is not None:
            return partial

        if pnl > 0 and pullback_percent(state, ltp, is_short) >= cfg.trailing_stop_pct * 100:
            return ExitDecision(ExitAction.FULL, qty, ExitReason.TRAILING_STOP, pnl)

        if ltp < cfg.min_premium and pnl > cfg.low_premium_min_pnl_pct:
            return ExitDecision(ExitAction.FULL, qty, ExitReason.LOW_PREMIUM, pnl)

        return ExitDecision(ExitAction.NONE, pnl_pct=pnl)

    def _partial_decision(
        self,
        snapshot: PositionSnapshot,
        state: PositionTrackingState,
        pnl: float,
        target: float,
    ) -> Optional[ExitDecision]:
        if state.partial_exit_done or snapshot.lot_size is None:
            return None
        qty = snapshot.abs_quantity
        if pnl < target * self.config.partial_trigger_fraction or qty < snapshot.lot_size * 2:
            return None
        exit_qty = int(math.floor(qty * self.config.partial_exit_fraction))
        if exit_qty <= 0:
            return None
        return ExitDecision(ExitAction.PARTIAL, exit_qty, ExitReason.PARTIAL_PROFIT, pnl)

    @staticmethod
    def force_exit(snapshot: PositionSnapshot) -> ExitDecision:
        if snapshot.is_flat:
            return NO_EXIT
        return ExitDecision(ExitAction.FULL, snapshot.abs_quantity, ExitReason.FORCE_SQUARE_OFF)
