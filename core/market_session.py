"""
Market session helpers for the scalping monitor.

The trading day is split by three configured boundaries (local time in the
configured timezone, Asia/Kolkata by default):

    PRE_OPEN            before trading_start
    ACTIVE              trading_start <= t < trading_end
    AWAITING_SQUAREOFF  trading_end <= t < square_off_time  (hold, no exits)
    PAST_SQUAREOFF      t >= square_off_time               (force exits)
"""

from __future__ import annotations

from datetime import datetime, time
from enum import Enum
from typing import Optional

import pytz

from core.config import ScalpingConfig


class SessionPhase(str, Enum):
    PRE_OPEN = "PRE_OPEN"
    ACTIVE = "ACTIVE"
    AWAITING_SQUAREOFF = "AWAITING_SQUAREOFF"
    PAST_SQUAREOFF = "PAST_SQUAREOFF"


def classify_time(t: time, start: time, end: time, square_off: time) -> SessionPhase:
    if t >= square_off:
        return SessionPhase.PAST_SQUAREOFF
    if end <= t:
        return SessionPhase.AWAITING_SQUAREOFF
    if start <= t:
        return SessionPhase.ACTIVE
    return SessionPhase.PRE_OPEN


class SessionClock:
    def __init__(self, config: ScalpingConfig) -> None:
        self.config = config
        self.tz = pytz.timezone(config.timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def to_local(self, now: datetime) -> datetime:
        """Naive datetimes are taken as already local."""
        if now.tzinfo is None:
            return now
        return now.astimezone(self.tz)

    def classify(self, now: Optional[datetime] = None) -> SessionPhase:
        local = self.to_local(now) if now is not None else self.now()
        cfg = self.config
        return classify_time(
            local.time().replace(tzinfo=None),
            cfg.trading_start,
            cfg.trading_end,
            cfg.square_off_time,
        )
