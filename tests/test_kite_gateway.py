"""
Tests for broker/kite_gateway.py (KiteGateway) with a mocked KiteConnect client.
"""

import sys
from datetime import date
from pathlib import Path
from unittest.mock import Mock

import pytest
from kiteconnect import exceptions as kite_exceptions

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker.kite_gateway import KiteGateway, make_kite_client
from core.errors import OrderError, UpstreamUnavailable

INSTRUMENTS = [
    {
        "tradingsymbol": "NIFTY24JAN22000CE",
        "name": "NIFTY",
        "expiry": date(2024, 1, 25),
        "strike": 22000.0,
        "lot_size": 50,
        "instrument_type": "CE",
    },
    {
        "tradingsymbol": "BANKNIFTY24JAN46000PE",
        "name": "BANKNIFTY",
        "expiry": date(2024, 1, 25),
        "strike": 46000.0,
        "lot_size": 15,
        "instrument_type": "PE",
    },
]

NET = [
    {
        "tradingsymbol": "NIFTY24JAN22000CE",
        "exchange": "NFO",
        "quantity": 100,
        "average_price": 101.5,
        "last_price": 110.0,
        "realised": 0.0,
        "unrealised": 850.0,
    },
    {
        "tradingsymbol": "BANKNIFTY24JAN46000PE",
        "exchange": "NFO",
        "quantity": -15,
        "average_price": 300.0,
        "last_price": 280.0,
        "realised": 0.0,
        "unrealised": 300.0,
    },
    {
        "tradingsymbol": "INFY",
        "exchange": "NSE",
        "quantity": 10,
        "average_price": 1500.0,
        "last_price": 1510.0,
    },
]


def _kite():
    kite = Mock()
    kite.instruments.return_value = INSTRUMENTS
    kite.positions.return_value = {"net": NET, "day": []}
    kite.place_order.return_value = "240115000001"
    return kite


def test_fetch_instruments_maps_and_caches():
    kite = _kite()
    gateway = KiteGateway(kite)
    first = gateway.fetch_instruments()
    second = gateway.fetch_instruments()

    kite.instruments.assert_called_once_with("NFO")
    assert first is second
    assert first[0] == {
        "symbol": "NIFTY24JAN22000CE",
        "expiry": "2024-01-25",
        "strike": 22000.0,
        "lot_size": 50,
        "instrument_type": "CE",
    }


def test_fetch_positions_groups_by_underlying_and_filters_exchange():
    gateway = KiteGateway(_kite())
    groups = {g["underlying"]: g["positions"] for g in gateway.fetch_positions()}
    assert set(groups) == {"NIFTY", "BANKNIFTY"}
    [ce] = groups["NIFTY"]
    assert ce == {
        "symbol": "NIFTY24JAN22000CE",
        "quantity": 100,
        "average_price": 101.5,
        "last_price": 110.0,
        "realized_pnl": 0.0,
        "unrealized_pnl": 850.0,
    }
    assert groups["BANKNIFTY"][0]["quantity"] == -15


def test_fetch_positions_failure_is_upstream_unavailable():
    kite = _kite()
    kite.positions.side_effect = kite_exceptions.NetworkException("gateway timeout", code=504)
    with pytest.raises(UpstreamUnavailable):
        KiteGateway(kite).fetch_positions()

    kite = _kite()
    kite.positions.return_value = {"day": []}
    with pytest.raises(UpstreamUnavailable):
        KiteGateway(kite).fetch_positions()


def test_submit_order_places_market_order():
    kite = _kite()
    ack = KiteGateway(kite, product="NRML").submit_order("SELL", "NIFTY24JAN22000CE", 50, 115.0)
    kite.place_order.assert_called_once_with(
        variety=kite.VARIETY_REGULAR,
        exchange="NFO",
        tradingsymbol="NIFTY24JAN22000CE",
        transaction_type=kite.TRANSACTION_TYPE_SELL,
        quantity=50,
        product="NRML",
        order_type=kite.ORDER_TYPE_MARKET,
    )
    assert ack.order_id == "240115000001"
    assert ack.side == "SELL"


def test_submit_order_rejection_maps_to_order_error():
    kite = _kite()
    kite.place_order.side_effect = kite_exceptions.InputException("Insufficient funds", code=400)
    with pytest.raises(OrderError) as excinfo:
        KiteGateway(kite).submit_order("BUY", "BANKNIFTY24JAN46000PE", 15, 280.0)
    assert excinfo.value.status_code == 400


def test_make_kite_client_requires_credentials(monkeypatch):
    monkeypatch.setattr("broker.kite_gateway.load_dotenv", lambda *a, **k: False)
    monkeypatch.delenv("KITE_API_KEY", raising=False)
    monkeypatch.delenv("KITE_ACCESS_TOKEN", raising=False)
    with pytest.raises(RuntimeError, match="KITE_API_KEY"):
        make_kite_client()
    with pytest.raises(RuntimeError, match="KITE_ACCESS_TOKEN"):
        make_kite_client(api_key="key")
