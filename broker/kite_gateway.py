"""
Kite (Zerodha) adapter for the order gateway contract.

- Net positions come from kite.positions()["net"] and are grouped by the
  instrument's underlying ``name``.
- Instrument metadata comes from kite.instruments(exchange), cached per day.
- Exits are MARKET orders with the configured product (MIS by default).
"""

from __future__ import annotations

import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from kiteconnect import KiteConnect, exceptions as kite_exceptions

from broker.gateway import OrderAck, OrderGateway, normalize_side
from core.errors import OrderError, UpstreamUnavailable

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
ENV_PATH = BASE_DIR / ".env"


def make_kite_client(
    api_key: Optional[str] = None,
    access_token: Optional[str] = None,
    timeout: float = 7.0,
) -> KiteConnect:
    """
    Create an authenticated KiteConnect client.

    Reads KITE_API_KEY / KITE_ACCESS_TOKEN from .env or the environment when
    not passed explicitly. Login/token minting happens outside this project.
    """
    load_dotenv(ENV_PATH)
    api_key = api_key or os.getenv("KITE_API_KEY")
    access_token = access_token or os.getenv("KITE_ACCESS_TOKEN")
    if not api_key:
        raise RuntimeError("KITE_API_KEY not set in .env")
    if not access_token:
        raise RuntimeError("KITE_ACCESS_TOKEN not set in .env")

    kite = KiteConnect(api_key=api_key, timeout=timeout)
    kite.set_access_token(access_token)
    return kite


def _status_code(exc: Exception) -> Optional[int]:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


class KiteGateway(OrderGateway):
    def __init__(
        self,
        kite: KiteConnect,
        *,
        exchange: str = "NFO",
        product: str = "MIS",
    ) -> None:
        self.kite = kite
        self.exchange = exchange
        self.product = product
        self._instruments: List[Dict[str, Any]] = []
        self._instruments_day: Optional[date] = None
        self._names: Dict[str, str] = {}

    # ------------------------------------------------------------------ instruments
    def _load_instruments(self) -> List[Dict[str, Any]]:
        today = date.today()
        if self._instruments_day == today and self._instruments:
            return self._instruments
        try:
            raw = self.kite.instruments(self.exchange)
        except Exception as exc:  # noqa: BLE001
            raise UpstreamUnavailable(f"Kite instruments({self.exchange}) failed: {exc}") from exc
        if not isinstance(raw, list):
            raise UpstreamUnavailable(f"Unexpected Kite instruments payload: {type(raw).__name__}")

        instruments = []
        names: Dict[str, str] = {}
        for inst in raw:
            symbol = inst.get("tradingsymbol")
            if not symbol:
                continue
            expiry = inst.get("expiry")
            instruments.append(
                {
                    "symbol": symbol,
                    "expiry": expiry.isoformat() if isinstance(expiry, date) else expiry,
                    "strike": inst.get("strike"),
                    "lot_size": inst.get("lot_size"),
                    "instrument_type": inst.get("instrument_type"),
                }
            )
            if inst.get("name"):
                names[symbol] = inst["name"]
        self._instruments = instruments
        self._names = names
        self._instruments_day = today
        logger.info("Loaded %d Kite instruments for %s", len(instruments), self.exchange)
        return instruments

    def fetch_instruments(self) -> List[Dict[str, Any]]:
        return self._load_instruments()

    # ------------------------------------------------------------------ positions
    def fetch_positions(self) -> List[Dict[str, Any]]:
        try:
            payload = self.kite.positions()
        except Exception as exc:  # noqa: BLE001
            raise UpstreamUnavailable(f"Kite positions() failed: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("net"), list):
            raise UpstreamUnavailable("Kite positions() returned no 'net' list")

        # Underlying names live on the instrument master; a stale cache just
        # leaves the group name empty.
        if not self._names:
            try:
                self._load_instruments()
            except UpstreamUnavailable as exc:
                logger.warning("Could not resolve underlying names: %s", exc)

        groups: Dict[Optional[str], List[Dict[str, Any]]] = {}
        for pos in payload["net"]:
            symbol = pos.get("tradingsymbol")
            if pos.get("exchange") and pos.get("exchange") != self.exchange:
                continue
            groups.setdefault(self._names.get(symbol), []).append(
                {
                    "symbol": symbol,
                    "quantity": pos.get("quantity"),
                    "average_price": pos.get("average_price"),
                    "last_price": pos.get("last_price"),
                    "realized_pnl": pos.get("realised"),
                    "unrealized_pnl": pos.get("unrealised"),
                }
            )
        return [{"underlying": name, "positions": rows} for name, rows in groups.items()]

    # ------------------------------------------------------------------ orders
    def submit_order(self, side: str, symbol: str, quantity: int, price: float) -> OrderAck:
        side = normalize_side(side)
        if quantity <= 0:
            raise OrderError(f"Invalid quantity {quantity} for {symbol}")
        transaction_type = self.kite.TRANSACTION_TYPE_BUY if side == "BUY" else self.kite.TRANSACTION_TYPE_SELL
        try:
            order_id = self.kite.place_order(
                variety=self.kite.VARIETY_REGULAR,
                exchange=self.exchange,
                tradingsymbol=symbol,
                transaction_type=transaction_type,
                quantity=int(quantity),
                product=self.product,
                order_type=self.kite.ORDER_TYPE_MARKET,
            )
        except kite_exceptions.KiteException as exc:
            raise OrderError(f"Kite rejected order for {symbol}: {exc}", status_code=_status_code(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            raise OrderError(f"Kite order for {symbol} failed: {exc}") from exc

        logger.info("Kite order placed: %s %d x %s (id=%s)", side, quantity, symbol, order_id)
        return OrderAck(
            order_id=str(order_id),
            symbol=symbol,
            side=side,
            quantity=int(quantity),
            price=float(price),
        )
