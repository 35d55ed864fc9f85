"""
In-memory paper broker.

- Tracks positions and P&L locally; orders fill immediately at the
  reference price.
- Implements the OrderGateway contract, so the monitor can run end to end
  without any upstream (dry runs, tests).
- Failure switches (``fail_fetch``, ``reject_orders``) simulate an unhealthy
  upstream.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from broker.gateway import OrderAck, OrderGateway, normalize_side
from core.errors import OrderError, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class PaperPosition:
    symbol: str
    quantity: int = 0
    avg_price: float = 0.0
    realized_pnl: float = 0.0
    underlying: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaperOrder:
    order_id: str
    symbol: str
    side: str           # "BUY" or "SELL"
    quantity: int
    price: float
    status: str = "FILLED"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaperBroker(OrderGateway):
    positions: Dict[str, PaperPosition] = field(default_factory=dict)
    orders: List[PaperOrder] = field(default_factory=list)
    last_prices: Dict[str, float] = field(default_factory=dict)
    instruments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    fail_fetch: bool = False
    reject_orders: bool = False
    _ids: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    # ------------------------------------------------------------------ setup
    def add_instrument(
        self,
        symbol: str,
        *,
        lot_size: int,
        underlying: Optional[str] = None,
        expiry: Optional[str] = None,
        strike: Optional[float] = None,
        instrument_type: Optional[str] = None,
    ) -> None:
        self.instruments[symbol] = {
            "symbol": symbol,
            "expiry": expiry,
            "strike": strike,
            "lot_size": lot_size,
            "instrument_type": instrument_type,
            "underlying": underlying,
        }

    def open_position(self, symbol: str, quantity: int, price: float) -> PaperPosition:
        """Seed a position as if an entry order filled (negative quantity = short)."""
        side = "BUY" if quantity > 0 else "SELL"
        self._fill(symbol, side, abs(quantity), price)
        self.last_prices.setdefault(symbol, price)
        return self.positions[symbol]

    def set_last_price(self, symbol: str, price: float) -> None:
        self.last_prices[symbol] = float(price)

    # ------------------------------------------------------------------ gateway
    def fetch_positions(self) -> List[Dict[str, Any]]:
        if self.fail_fetch:
            raise UpstreamUnavailable("paper broker: positions unavailable")
        groups: Dict[Optional[str], List[Dict[str, Any]]] = {}
        for pos in self.positions.values():
            last = self.last_prices.get(pos.symbol, pos.avg_price)
            underlying = pos.underlying or (self.instruments.get(pos.symbol) or {}).get("underlying")
            groups.setdefault(underlying, []).append(
                {
                    "symbol": pos.symbol,
                    "quantity": pos.quantity,
                    "average_price": pos.avg_price,
                    "last_price": last,
                    "realized_pnl": pos.realized_pnl,
                    "unrealized_pnl": (last - pos.avg_price) * pos.quantity,
                }
            )
        return [{"underlying": name, "positions": rows} for name, rows in groups.items()]

    def fetch_instruments(self) -> List[Dict[str, Any]]:
        if self.fail_fetch:
            raise UpstreamUnavailable("paper broker: instruments unavailable")
        return [
            {k: v for k, v in inst.items() if k != "underlying"}
            for inst in self.instruments.values()
        ]

    def submit_order(self, side: str, symbol: str, quantity: int, price: float) -> OrderAck:
        if self.reject_orders:
            raise OrderError(f"paper broker rejected order for {symbol}", status_code=503)
        if quantity <= 0:
            raise OrderError(f"quantity must be > 0 (got {quantity})", status_code=400)
        order = self._fill(symbol, normalize_side(side), quantity, price)
        return OrderAck(
            order_id=order.order_id,
            symbol=symbol,
            side=order.side,
            quantity=quantity,
            price=price,
            status=order.status,
        )

    # ------------------------------------------------------------------ accounting
    def _fill(self, symbol: str, side: str, quantity: int, price: float) -> PaperOrder:
        order = PaperOrder(
            order_id=f"PAPER-{next(self._ids)}",
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=float(price),
        )
        self.orders.append(order)
        self._update_position(order)
        logger.debug("Paper fill: %s %d x %s @ %.2f", side, quantity, symbol, price)
        return order

    def _update_position(self, order: PaperOrder) -> None:
        pos = self.positions.get(order.symbol)
        if pos is None:
            pos = PaperPosition(symbol=order.symbol)
            self.positions[order.symbol] = pos

        qty = order.quantity if order.side == "BUY" else -order.quantity

        if pos.quantity == 0:
            pos.quantity = qty
            pos.avg_price = order.price
            return

        # Same direction averaging
        if (pos.quantity > 0) == (qty > 0):
            total_qty = abs(pos.quantity) + abs(qty)
            pos.avg_price = (pos.avg_price * abs(pos.quantity) + order.price * abs(qty)) / total_qty
            pos.quantity += qty
            return

        # Opposite direction: partial or full exit (maybe reverse)
        closed = min(abs(qty), abs(pos.quantity))
        pnl_per_unit = (order.price - pos.avg_price) if pos.quantity > 0 else (pos.avg_price - order.price)
        pos.realized_pnl += pnl_per_unit * closed

        remaining = pos.quantity + qty
        if abs(qty) > abs(pos.quantity):
            pos.avg_price = order.price
        elif remaining == 0:
            pos.avg_price = 0.0
        pos.quantity = remaining

    def get_position(self, symbol: str) -> PaperPosition | None:
        return self.positions.get(symbol)
