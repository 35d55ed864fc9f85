"""
Scalping Monitor API Endpoints

Operator surface for the exit monitor:
- read / partially update the live scalping config
- inspect per-position tracking state and exit counters
- current session phase and health
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from core.errors import ConfigValidationError
from core.market_session import SessionClock
from engine.scalping_monitor import ScalpingMonitor

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== Pydantic Models ====================

class ScalpingConfigResponse(BaseModel):
    """Effective scalping config."""
    profit_target_pct: float
    stop_loss_pct: float
    trailing_stop_pct: float
    max_position_size: int
    min_premium: float
    low_premium_min_pnl_pct: float
    partial_trigger_fraction: float
    partial_exit_fraction: float
    long_stop_loss_multiplier: float
    short_stop_loss_multiplier: float
    tick_size: float
    check_interval_seconds: float
    trading_start: str
    trading_end: str
    square_off_time: str
    timezone: str


class ScalpingConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""
    profit_target_pct: Optional[float] = Field(None, ge=0, description="Profit target as a fraction (0.25 = 25%)")
    stop_loss_pct: Optional[float] = Field(None, ge=0, description="Stop loss as a fraction (0.15 = 15%)")
    trailing_stop_pct: Optional[float] = Field(None, ge=0, description="Trailing stop pullback as a fraction")
    max_position_size: Optional[int] = Field(None, gt=0, description="Maximum lots per position")
    min_premium: Optional[float] = Field(None, ge=0, description="Premium floor for the low-premium exit")


class TrackingStateItem(BaseModel):
    symbol: str
    entry_price: float
    high_watermark: float
    low_watermark: float
    partial_exit_done: bool
    first_seen_at: str


class ScalpingStateResponse(BaseModel):
    states: List[TrackingStateItem]
    config: ScalpingConfigResponse
    counters: Dict[str, Any]
    last_tick: Optional[Dict[str, Any]] = None


def _monitor(request: Request) -> ScalpingMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Scalping monitor not initialised")
    return monitor


# ==================== API Endpoints ====================

@router.get("/config", response_model=ScalpingConfigResponse)
async def get_scalping_config(request: Request):
    return ScalpingConfigResponse(**_monitor(request).config_store.current().to_dict())


@router.post("/config", response_model=ScalpingConfigResponse)
async def update_scalping_config(update: ScalpingConfigUpdate, request: Request):
    """
    Update scalping config.

    Only provided fields change. A rejected update leaves the config as it was.
    """
    monitor = _monitor(request)
    patch = {}

    if update.profit_target_pct is not None:
        patch["profit_target_pct"] = update.profit_target_pct

    if update.stop_loss_pct is not None:
        patch["stop_loss_pct"] = update.stop_loss_pct

    if update.trailing_stop_pct is not None:
        patch["trailing_stop_pct"] = update.trailing_stop_pct

    if update.max_position_size is not None:
        patch["max_position_size"] = update.max_position_size

    if update.min_premium is not None:
        patch["min_premium"] = update.min_premium

    if not patch:
        raise HTTPException(status_code=400, detail="No fields provided to update")

    try:
        updated = monitor.config_store.update(patch)
    except ConfigValidationError as exc:
        logger.warning("Rejected scalping config update %s: %s", patch, exc)
        raise HTTPException(status_code=400, detail=str(exc))

    return ScalpingConfigResponse(**updated.to_dict())


@router.get("/state", response_model=ScalpingStateResponse)
async def get_scalping_state(request: Request):
    """Tracked positions (entry / high / low / partial flag), counters and the last tick."""
    return ScalpingStateResponse(**_monitor(request).state_snapshot())


@router.get("/session")
async def get_session(request: Request):
    clock = SessionClock(_monitor(request).config_store.current())
    now = clock.now()
    return {
        "phase": clock.classify(now).value,
        "local_time": now.isoformat(),
        "timezone": clock.config.timezone,
    }


@router.get("/health")
async def health(request: Request):
    monitor = _monitor(request)
    return {"status": "ok", "monitor_running": monitor.running}
