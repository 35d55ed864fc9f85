from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict


@dataclass
class ExitFlowSnapshot:
    date: str
    ticks_run: int = 0
    ticks_skipped: int = 0
    ticks_failed: int = 0
    exits_decided: int = 0
    orders_submitted: int = 0
    orders_failed: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


class TradeMonitor:
    """
    In-memory daily counters for the exit monitor. Reset when date changes.
    This is per-process; fine for the admin API.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshot = self._new_snapshot()

    def _new_snapshot(self) -> ExitFlowSnapshot:
        today = datetime.now().strftime("%Y-%m-%d")
        return ExitFlowSnapshot(date=today)

    def _ensure_today(self) -> None:
        today = datetime.now().strftime("%Y-%m-%d")
        if self._snapshot.date != today:
            self._snapshot = self._new_snapshot()

    def increment(self, field_name: str, value: int = 1) -> None:
        with self._lock:
            self._ensure_today()
            if hasattr(self._snapshot, field_name) and field_name != "by_reason":
                setattr(self._snapshot, field_name, getattr(self._snapshot, field_name) + value)

    def record_exit(self, reason: str) -> None:
        with self._lock:
            self._ensure_today()
            self._snapshot.by_reason[reason] = self._snapshot.by_reason.get(reason, 0) + 1

    def snapshot(self) -> Dict:
        with self._lock:
            self._ensure_today()
            return self._snapshot.to_dict()
