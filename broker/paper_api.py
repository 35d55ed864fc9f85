"""
Paper-trading REST API adapter.

Talks to the upstream paper brokerage over HTTP with ``requests``:

    GET  {base_url}/portfolios/{portfolio_id}/positions
    GET  {base_url}/instruments
    POST {base_url}/portfolios/{portfolio_id}/orders

Responses are normalized to the canonical shapes documented in
core.position_snapshot. Field names seen across API revisions are accepted
as aliases.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from broker.gateway import OrderAck, OrderGateway, SessionContext, normalize_side
from core.errors import OrderError, UpstreamUnavailable

logger = logging.getLogger(__name__)

_GROUP_NAME_KEYS = ("underlying", "name", "underlying_name")
_GROUP_ITEMS_KEYS = ("positions", "legs", "items")
_POSITION_KEYS = {
    "symbol": ("symbol", "tradingsymbol", "trading_symbol"),
    "quantity": ("quantity", "net_quantity", "open_quantity", "netQty"),
    "average_price": ("average_price", "avg_price", "averagePrice"),
    "last_price": ("last_price", "ltp", "lastPrice"),
    "realized_pnl": ("realized_pnl", "realised", "realizedPnl"),
    "unrealized_pnl": ("unrealized_pnl", "unrealised", "unrealizedPnl"),
}
_INSTRUMENT_KEYS = {
    "symbol": ("symbol", "tradingsymbol", "trading_symbol"),
    "expiry": ("expiry", "expiry_date"),
    "strike": ("strike", "strike_price"),
    "lot_size": ("lot_size", "lotSize"),
    "instrument_type": ("instrument_type", "instrumentType", "option_type"),
}


def _pick(record: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _unwrap_list(payload: Any, *keys: str) -> Any:
    """Accept a bare list or a {"data": [...]}-style envelope."""
    if isinstance(payload, dict):
        for key in keys:
            if key in payload:
                return payload[key]
    return payload


def normalize_position_groups(payload: Any) -> List[Dict[str, Any]]:
    groups = _unwrap_list(payload, "data", "groups", "positions")
    if not isinstance(groups, list):
        raise UpstreamUnavailable(f"Unexpected positions payload: {type(payload).__name__}")
    normalized: List[Dict[str, Any]] = []
    for group in groups:
        if not isinstance(group, Mapping):
            raise UpstreamUnavailable(f"Malformed position group: {group!r}")
        items = _pick(group, _GROUP_ITEMS_KEYS)
        if not isinstance(items, list):
            raise UpstreamUnavailable(f"Position group without positions: {dict(group)}")
        positions = []
        for item in items:
            if not isinstance(item, Mapping):
                raise UpstreamUnavailable(f"Malformed position record: {item!r}")
            positions.append({name: _pick(item, aliases) for name, aliases in _POSITION_KEYS.items()})
        normalized.append({"underlying": _pick(group, _GROUP_NAME_KEYS), "positions": positions})
    return normalized


def normalize_instruments(payload: Any) -> List[Dict[str, Any]]:
    instruments = _unwrap_list(payload, "data", "instruments")
    if not isinstance(instruments, list):
        raise UpstreamUnavailable(f"Unexpected instruments payload: {type(payload).__name__}")
    normalized = []
    for inst in instruments:
        if not isinstance(inst, Mapping):
            raise UpstreamUnavailable(f"Malformed instrument record: {inst!r}")
        normalized.append({name: _pick(inst, aliases) for name, aliases in _INSTRUMENT_KEYS.items()})
    return normalized


class PaperTradingGateway(OrderGateway):
    def __init__(self, context: SessionContext, session: Optional[requests.Session] = None) -> None:
        self.context = context
        self.session = session or requests.Session()
        if context.access_token:
            self.session.headers["Authorization"] = f"Bearer {context.access_token}"
        self.session.headers.setdefault("Accept", "application/json")

    def _url(self, path: str) -> str:
        return f"{self.context.base_url}/{path.lstrip('/')}"

    def _get_json(self, path: str) -> Any:
        url = self._url(path)
        try:
            response = self.session.get(url, timeout=self.context.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as exc:
            raise UpstreamUnavailable(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"GET {url} returned invalid JSON: {exc}") from exc

    def fetch_positions(self) -> List[Dict[str, Any]]:
        payload = self._get_json(f"portfolios/{self.context.portfolio_id}/positions")
        return normalize_position_groups(payload)

    def fetch_instruments(self) -> List[Dict[str, Any]]:
        return normalize_instruments(self._get_json("instruments"))

    def submit_order(self, side: str, symbol: str, quantity: int, price: float) -> OrderAck:
        side = normalize_side(side)
        if quantity <= 0:
            raise OrderError(f"Invalid quantity {quantity} for {symbol}")
        url = self._url(f"portfolios/{self.context.portfolio_id}/orders")
        body = {
            "transaction_type": side,
            "symbol": symbol,
            "quantity": int(quantity),
            "price": float(price),
            "order_type": "MARKET",
        }
        try:
            response = self.session.post(url, json=body, timeout=self.context.timeout)
        except requests.exceptions.Timeout as exc:
            raise OrderError(f"Order for {symbol} timed out after {self.context.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            raise OrderError(f"Order for {symbol} failed: {exc}") from exc

        if response.status_code >= 400:
            raise OrderError(
                f"Order for {symbol} rejected: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("status") in (False, "error", "failed", "rejected"):
            message = data.get("message") or data.get("error") or "rejected"
            raise OrderError(f"Order for {symbol} rejected: {message}", status_code=response.status_code)

        order_id = None
        if isinstance(data, dict):
            order_id = data.get("order_id") or data.get("id")
            nested = data.get("data")
            if order_id is None and isinstance(nested, dict):
                order_id = nested.get("order_id") or nested.get("id")
        ack = OrderAck(
            order_id=str(order_id or uuid.uuid4().hex[:12]),
            symbol=symbol,
            side=side,
            quantity=int(quantity),
            price=float(price),
        )
        logger.info("Paper API order accepted: %s %d x %s (id=%s)", side, quantity, symbol, ack.order_id)
        return ack
