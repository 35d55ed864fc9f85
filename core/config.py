"""
Config loading utilities.

- Loads YAML config (e.g., configs/dev.yaml).
- Provides a simple dict-like object for other modules.
- ScalpingConfig holds the exit-rule parameters; ConfigStore swaps it
  atomically when the admin API applies an update.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict, dataclass, fields, replace
from datetime import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import pytz
import yaml

from core.errors import ConfigValidationError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = BASE_DIR / "configs" / "dev.yaml"
CONFIG_ENV_VAR = "SCALP_CONFIG"


@dataclass
class AppConfig:
    raw: Dict[str, Any]

    @property
    def scalping(self) -> Dict[str, Any]:
        return self.raw.get("scalping") or {}

    @property
    def broker(self) -> Dict[str, Any]:
        return self.raw.get("broker") or {}

    @property
    def logging(self) -> Dict[str, Any]:
        return self.raw.get("logging") or {}

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server") or {}


def resolve_config_path(path: Optional[str] = None) -> Path:
    candidate = path or os.getenv(CONFIG_ENV_VAR) or str(DEFAULT_CONFIG_PATH)
    resolved = Path(candidate).expanduser()
    if not resolved.is_absolute():
        resolved = (BASE_DIR / resolved).resolve()
    return resolved


def load_config(path: Optional[str] = None) -> AppConfig:
    resolved = resolve_config_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {resolved}")
    with open(resolved, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"Config root must be a mapping: {resolved}")
    logger.info("Loaded config from %s (sections=%s)", resolved, ", ".join(raw.keys()))
    return AppConfig(raw=raw)


# ---------------------------------------------------------------- scalping

def parse_time_of_day(value: Any) -> time:
    """
    Accept "HH:MM", "HH:MM:SS", datetime.time, or an int of minutes since
    midnight (PyYAML reads unquoted 15:00 as the base-60 integer 900).
    """
    if isinstance(value, time):
        return value
    if isinstance(value, bool):
        raise ConfigValidationError(f"Invalid time of day: {value!r}")
    if isinstance(value, int):
        if not 0 <= value < 24 * 60:
            raise ConfigValidationError(f"Invalid time of day: {value!r}")
        return time(value // 60, value % 60)
    if isinstance(value, str):
        parts = value.strip().split(":")
        try:
            if len(parts) == 2:
                return time(int(parts[0]), int(parts[1]))
            if len(parts) == 3:
                return time(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError as exc:
            raise ConfigValidationError(f"Invalid time of day: {value!r}") from exc
    raise ConfigValidationError(f"Invalid time of day: {value!r}")


_NON_NEGATIVE_FIELDS = (
    "profit_target_pct",
    "stop_loss_pct",
    "trailing_stop_pct",
    "min_premium",
    "low_premium_min_pnl_pct",
    "partial_trigger_fraction",
    "partial_exit_fraction",
    "long_stop_loss_multiplier",
    "short_stop_loss_multiplier",
)
_FRACTION_FIELDS = ("partial_trigger_fraction", "partial_exit_fraction")
_TIME_FIELDS = ("trading_start", "trading_end", "square_off_time")

# Fields the admin API may change at runtime.
UPDATABLE_FIELDS = (
    "profit_target_pct",
    "stop_loss_pct",
    "trailing_stop_pct",
    "max_position_size",
    "min_premium",
)


@dataclass(frozen=True)
class ScalpingConfig:
    profit_target_pct: float = 0.25
    stop_loss_pct: float = 0.15
    trailing_stop_pct: float = 0.10
    max_position_size: int = 5
    min_premium: float = 10.0
    low_premium_min_pnl_pct: float = 5.0
    partial_trigger_fraction: float = 0.6
    partial_exit_fraction: float = 0.5
    long_stop_loss_multiplier: float = 0.5
    short_stop_loss_multiplier: float = 1.5
    tick_size: float = 0.05
    check_interval_seconds: float = 2.0
    trading_start: time = time(9, 30)
    trading_end: time = time(15, 0)
    square_off_time: time = time(15, 15)
    timezone: str = "Asia/Kolkata"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ScalpingConfig":
        data = dict(data or {})
        field_names = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in field_names)
        if unknown:
            logger.warning("Ignoring unknown scalping config keys: %s", ", ".join(unknown))
        kwargs = {k: _coerce(k, v) for k, v in data.items() if k in field_names}
        cfg = cls(**kwargs)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        for name in _NON_NEGATIVE_FIELDS:
            if getattr(self, name) < 0:
                raise ConfigValidationError(f"{name} must be non-negative (got {getattr(self, name)})")
        for name in _FRACTION_FIELDS:
            if getattr(self, name) > 1:
                raise ConfigValidationError(f"{name} must be <= 1 (got {getattr(self, name)})")
        if self.tick_size <= 0:
            raise ConfigValidationError("tick_size must be > 0")
        if self.check_interval_seconds <= 0:
            raise ConfigValidationError("check_interval_seconds must be > 0")
        if self.max_position_size <= 0:
            raise ConfigValidationError("max_position_size must be > 0")
        if not self.trading_start < self.trading_end <= self.square_off_time:
            raise ConfigValidationError(
                "Expected trading_start < trading_end <= square_off_time "
                f"(got {self.trading_start}, {self.trading_end}, {self.square_off_time})"
            )
        try:
            pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError as exc:
            raise ConfigValidationError(f"Unknown timezone: {self.timezone}") from exc

    def with_updates(self, patch: Mapping[str, Any]) -> "ScalpingConfig":
        """Return a validated copy with ``patch`` applied; self is untouched."""
        field_names = {f.name for f in fields(self)}
        unknown = sorted(k for k in patch if k not in field_names)
        if unknown:
            raise ConfigValidationError(f"Unknown config fields: {', '.join(unknown)}")
        updated = replace(self, **{k: _coerce(k, v) for k, v in patch.items()})
        updated.validate()
        return updated

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _TIME_FIELDS:
            data[name] = getattr(self, name).strftime("%H:%M")
        return data


def _coerce(name: str, value: Any) -> Any:
    if name in _TIME_FIELDS:
        return parse_time_of_day(value)
    if name == "timezone":
        return str(value)
    try:
        if name == "max_position_size":
            return int(value)
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"{name} must be numeric (got {value!r})") from exc


class ConfigStore:
    """
    Holder for the live ScalpingConfig.

    Readers take one immutable snapshot per tick via ``current()``; writers
    replace the whole object under the lock, so a tick never sees a
    half-applied update.
    """

    def __init__(self, config: Optional[ScalpingConfig] = None) -> None:
        self._lock = threading.Lock()
        self._config = config or ScalpingConfig()

    def current(self) -> ScalpingConfig:
        with self._lock:
            return self._config

    def update(self, patch: Mapping[str, Any]) -> ScalpingConfig:
        with self._lock:
            updated = self._config.with_updates(patch)
            self._config = updated
        logger.info("Scalping config updated: %s", dict(patch))
        return updated
