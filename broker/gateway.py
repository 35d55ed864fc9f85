"""
Order gateway contract shared by every upstream adapter.

The monitor needs exactly three upstream operations:

- fetch_positions(): per-underlying position groups (canonical shape, see
  core.position_snapshot)
- fetch_instruments(): per-symbol instrument metadata
- submit_order(side, symbol, quantity, price): returns an OrderAck or raises
  OrderError
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

VALID_SIDES = ("BUY", "SELL")


def normalize_side(side: str) -> str:
    side_norm = str(side).strip().upper()
    if side_norm not in VALID_SIDES:
        raise ValueError(f"side must be BUY or SELL (got {side!r})")
    return side_norm


@dataclass
class OrderAck:
    order_id: str
    symbol: str
    side: str
    quantity: int
    price: float
    status: str = "SUBMITTED"
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionContext:
    """
    Account/session details for one upstream portfolio.

    Owned by the monitor and handed to the gateway explicitly, so tests can
    build as many independent sessions as they like.
    """

    base_url: str
    portfolio_id: str
    access_token: Optional[str] = None
    timeout: float = 5.0

    @classmethod
    def from_config(cls, broker_cfg: Dict[str, Any]) -> "SessionContext":
        """Config values win; environment (.env) fills the gaps."""
        base_url = broker_cfg.get("base_url") or os.getenv("PAPER_API_BASE_URL")
        portfolio_id = broker_cfg.get("portfolio_id") or os.getenv("PAPER_PORTFOLIO_ID")
        if not base_url:
            raise RuntimeError("Paper API base URL not set (broker.base_url or PAPER_API_BASE_URL)")
        if not portfolio_id:
            raise RuntimeError("Portfolio id not set (broker.portfolio_id or PAPER_PORTFOLIO_ID)")
        return cls(
            base_url=str(base_url).rstrip("/"),
            portfolio_id=str(portfolio_id),
            access_token=broker_cfg.get("access_token") or os.getenv("PAPER_API_TOKEN"),
            timeout=float(broker_cfg.get("request_timeout_seconds", 5.0)),
        )


class OrderGateway(ABC):
    @abstractmethod
    def fetch_positions(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_instruments(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def submit_order(self, side: str, symbol: str, quantity: int, price: float) -> OrderAck:
        ...
