"""
Error taxonomy for the scalping monitor.

- UpstreamUnavailable: positions/instruments could not be fetched or parsed.
  The current tick is aborted; the next tick tries again.
- OrderError: an exit order was rejected or failed. Tracking state is kept so
  the next tick can re-decide.
- ConfigValidationError: a config update was rejected. The previous config
  stays in effect.
"""

from __future__ import annotations

from typing import Optional


class ScalpingError(Exception):
    """Base class for monitor errors."""


class UpstreamUnavailable(ScalpingError):
    pass


class OrderError(ScalpingError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status={self.status_code})"


class ConfigValidationError(ScalpingError, ValueError):
    pass
