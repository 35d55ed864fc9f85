"""
Per-position tracking state, keyed by symbol.

Only the monitor's tick mutates the store. The lock exists so the admin API
thread can read a consistent ``snapshot()`` while a tick is running.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.position_snapshot import PositionSnapshot


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PositionTrackingState:
    entry_price: float
    high_watermark: float
    low_watermark: float
    partial_exit_done: bool = False
    size_flagged: bool = False
    first_seen_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TrackingStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[str, PositionTrackingState] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, symbol: object) -> bool:
        with self._lock:
            return symbol in self._states

    def get(self, symbol: str) -> Optional[PositionTrackingState]:
        with self._lock:
            return self._states.get(symbol)

    def upsert(self, snapshot: PositionSnapshot) -> PositionTrackingState:
        """Create state from the snapshot if the symbol is untracked; otherwise leave it."""
        with self._lock:
            state = self._states.get(snapshot.symbol)
            if state is None:
                state = PositionTrackingState(
                    entry_price=snapshot.avg_price,
                    high_watermark=snapshot.ltp,
                    low_watermark=snapshot.ltp,
                )
                self._states[snapshot.symbol] = state
            return state

    def touch(self, symbol: str, ltp: float, is_short: bool) -> Optional[PositionTrackingState]:
        """Extend the favorable watermark: low for shorts, high for longs."""
        with self._lock:
            state = self._states.get(symbol)
            if state is None:
                return None
            if is_short:
                state.low_watermark = min(state.low_watermark, ltp)
            else:
                state.high_watermark = max(state.high_watermark, ltp)
            return state

    def mark_partial_exit(self, symbol: str) -> None:
        with self._lock:
            state = self._states.get(symbol)
            if state is not None:
                state.partial_exit_done = True

    def flag_oversize(self, symbol: str) -> bool:
        """Mark the symbol as reported oversize; True only the first time."""
        with self._lock:
            state = self._states.get(symbol)
            if state is None or state.size_flagged:
                return False
            state.size_flagged = True
            return True

    def clear(self, symbol: str) -> bool:
        with self._lock:
            return self._states.pop(symbol, None) is not None

    def prune(self, open_symbols: Iterable[str]) -> List[str]:
        """Drop state for every symbol not in ``open_symbols``; returns the dropped symbols."""
        keep = set(open_symbols)
        with self._lock:
            stale = [symbol for symbol in self._states if symbol not in keep]
            for symbol in stale:
                del self._states[symbol]
        return stale

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._states)

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [{"symbol": symbol, **state.to_dict()} for symbol, state in self._states.items()]
