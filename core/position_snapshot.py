"""
Position snapshot builder.

Merges the upstream's per-underlying position groups with instrument
reference data into one normalized PositionSnapshot per symbol. Snapshots are
rebuilt from scratch every tick and never mutated by consumers.

Canonical raw shapes (every gateway adapter produces these):

    group:      {"underlying": "NIFTY", "positions": [{"symbol", "quantity",
                 "average_price", "last_price", "realized_pnl",
                 "unrealized_pnl"}, ...]}
    instrument: {"symbol", "expiry", "strike", "lot_size", "instrument_type"}
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.config import ScalpingConfig
from core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionSnapshot:
    symbol: str
    quantity: int
    avg_price: float
    ltp: float
    underlying: Optional[str] = None
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    lot_size: Optional[int] = None
    expiry: Optional[str] = None
    strike: Optional[float] = None
    instrument_type: Optional[str] = None
    default_stop_loss: Optional[float] = None

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0

    @property
    def is_short(self) -> bool:
        return self.quantity < 0

    @property
    def abs_quantity(self) -> int:
        return abs(self.quantity)

    @property
    def exit_side(self) -> str:
        """Closing a short is a BUY, closing a long is a SELL."""
        return "BUY" if self.is_short else "SELL"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_to_tick(value: float, tick_size: float = 0.05) -> float:
    """Round to the nearest multiple of tick_size (half away from zero)."""
    if tick_size <= 0:
        raise ValueError("tick_size must be > 0")
    steps = math.floor(abs(value) / tick_size + 0.5)
    rounded = math.copysign(steps * tick_size, value)
    # Trim float noise (e.g. 0.30000000000000004) to the tick's precision.
    decimals = max(0, -int(math.floor(math.log10(tick_size))) + 1)
    return round(rounded, decimals)


def compute_default_stop_loss(avg_price: float, quantity: int, config: ScalpingConfig) -> float:
    multiplier = config.short_stop_loss_multiplier if quantity < 0 else config.long_stop_loss_multiplier
    return round_to_tick(avg_price * multiplier, config.tick_size)


def _required_float(record: Mapping[str, Any], *keys: str) -> float:
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"Malformed {key}={value!r} in position record") from exc
    raise UpstreamUnavailable(f"Position record missing {keys[0]}: {dict(record)}")


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_lot_size(value: Any) -> Optional[int]:
    size = _optional_float(value)
    if size is None or size <= 0:
        return None
    return int(size)


def flatten_position_groups(groups: Any) -> List[Dict[str, Any]]:
    """
    Flatten per-underlying groups to one record per position, attaching the
    underlying's name. Raises UpstreamUnavailable on malformed input.
    """
    if not isinstance(groups, list):
        raise UpstreamUnavailable(f"Expected a list of position groups, got {type(groups).__name__}")

    rows: List[Dict[str, Any]] = []
    for group in groups:
        if not isinstance(group, Mapping):
            raise UpstreamUnavailable(f"Malformed position group: {group!r}")
        positions = group.get("positions")
        if not isinstance(positions, list):
            raise UpstreamUnavailable(f"Position group without a positions list: {dict(group)}")
        underlying = group.get("underlying")
        for record in positions:
            if not isinstance(record, Mapping):
                raise UpstreamUnavailable(f"Malformed position record: {record!r}")
            symbol = record.get("symbol")
            if not symbol:
                raise UpstreamUnavailable(f"Position record without symbol: {dict(record)}")
            quantity = _required_float(record, "quantity")
            if quantity != int(quantity):
                raise UpstreamUnavailable(f"Fractional quantity for {symbol}: {quantity}")
            rows.append(
                {
                    "symbol": str(symbol),
                    "underlying": underlying,
                    "quantity": int(quantity),
                    "avg_price": _required_float(record, "average_price"),
                    "ltp": _required_float(record, "last_price"),
                    "realized_pnl": _optional_float(record.get("realized_pnl")) or 0.0,
                    "unrealized_pnl": _optional_float(record.get("unrealized_pnl")) or 0.0,
                }
            )
    return rows


def index_instruments(instruments: Any) -> Dict[str, Dict[str, Any]]:
    """Index instrument metadata by symbol. Raises UpstreamUnavailable on malformed input."""
    if not isinstance(instruments, list):
        raise UpstreamUnavailable(f"Expected a list of instruments, got {type(instruments).__name__}")
    index: Dict[str, Dict[str, Any]] = {}
    for inst in instruments:
        if not isinstance(inst, Mapping):
            raise UpstreamUnavailable(f"Malformed instrument record: {inst!r}")
        symbol = inst.get("symbol")
        if not symbol:
            continue
        index[str(symbol)] = dict(inst)
    return index


def enrich_positions(
    rows: Iterable[Mapping[str, Any]],
    instruments: Mapping[str, Mapping[str, Any]],
    config: ScalpingConfig,
) -> List[PositionSnapshot]:
    """Left-join positions with instrument metadata; rows are never dropped."""
    snapshots: List[PositionSnapshot] = []
    for row in rows:
        meta = instruments.get(row["symbol"]) or {}
        if not meta:
            logger.debug("No instrument metadata for %s", row["symbol"])
        expiry = meta.get("expiry")
        instrument_type = meta.get("instrument_type")
        snapshots.append(
            PositionSnapshot(
                symbol=row["symbol"],
                underlying=row.get("underlying"),
                quantity=row["quantity"],
                avg_price=row["avg_price"],
                ltp=row["ltp"],
                realized_pnl=row.get("realized_pnl", 0.0),
                unrealized_pnl=row.get("unrealized_pnl", 0.0),
                lot_size=_optional_lot_size(meta.get("lot_size")),
                expiry=str(expiry) if expiry is not None else None,
                strike=_optional_float(meta.get("strike")),
                instrument_type=str(instrument_type) if instrument_type is not None else None,
                default_stop_loss=compute_default_stop_loss(row["avg_price"], row["quantity"], config),
            )
        )
    return snapshots


class SnapshotBuilder:
    """
    Builds the per-tick position view from an OrderGateway.

    Any failure to fetch or parse either data set raises UpstreamUnavailable;
    callers must skip the tick rather than treat positions as flat.
    """

    def __init__(self, gateway: Any) -> None:
        self.gateway = gateway

    def build(self, config: ScalpingConfig) -> List[PositionSnapshot]:
        try:
            groups = self.gateway.fetch_positions()
        except UpstreamUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise UpstreamUnavailable(f"Failed to fetch positions: {exc}") from exc
        rows = flatten_position_groups(groups)

        try:
            instruments = self.gateway.fetch_instruments()
        except UpstreamUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise UpstreamUnavailable(f"Failed to fetch instruments: {exc}") from exc
        index = index_instruments(instruments)

        snapshots = enrich_positions(rows, index, config)
        logger.debug("Built %d position snapshots (%d instruments)", len(snapshots), len(index))
        return snapshots
