"""
Execution router:

- "paper":     in-memory PaperBroker (no upstream, dry runs).
- "paper-api": the upstream paper-trading REST API.
- "kite":      Zerodha Kite via kiteconnect.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from broker.gateway import OrderGateway, SessionContext
from broker.kite_gateway import KiteGateway, make_kite_client
from broker.paper_api import PaperTradingGateway
from broker.paper_broker import PaperBroker

logger = logging.getLogger(__name__)

GATEWAY_KINDS = ("paper", "paper-api", "kite")


def build_gateway(kind: Optional[str], broker_cfg: Optional[Dict[str, Any]] = None) -> OrderGateway:
    broker_cfg = broker_cfg or {}
    kind_norm = str(kind or broker_cfg.get("kind") or "paper").strip().lower()
    if kind_norm not in GATEWAY_KINDS:
        raise ValueError(f"Unsupported broker kind '{kind}'. Valid kinds: {list(GATEWAY_KINDS)}")

    timeout = float(broker_cfg.get("request_timeout_seconds", 5.0))
    if kind_norm == "paper":
        gateway: OrderGateway = PaperBroker()
    elif kind_norm == "paper-api":
        gateway = PaperTradingGateway(SessionContext.from_config(broker_cfg))
    else:
        gateway = KiteGateway(
            make_kite_client(timeout=timeout),
            exchange=str(broker_cfg.get("exchange", "NFO")).upper(),
            product=str(broker_cfg.get("product", "MIS")).upper(),
        )
    logger.info("Using %s gateway (%s)", kind_norm, type(gateway).__name__)
    return gateway
