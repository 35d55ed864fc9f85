"""
Event log lines for the exit monitor.

Every engine event is one log record whose message starts with
``[KIND:<kind>]`` followed by free text and ``key=value`` tags, e.g.:

    [KIND:ORDER_FAIL] Exit for NIFTY24JAN22000CE failed | sym=NIFTY24JAN22000CE | reason=STOP_LOSS

The kind picks the log level and, on a TTY, the colour of the tag.
"""

from __future__ import annotations

import inspect
import logging
import os
from typing import Any, Dict, Literal, Mapping, Optional, TextIO, Tuple

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

EventKind = Literal[
    "SCAN",
    "EXIT_DECISION",
    "ORDER_NEW",
    "ORDER_FILL",
    "ORDER_FAIL",
    "SQUARE_OFF",
    "RISK_BLOCK",
    "TIME_BLOCK",
    "INFO",
    "WARN",
    "ERROR",
]

# kind -> (default level, ANSI colour)
EVENT_KINDS: Dict[str, Tuple[int, str]] = {
    "SCAN": (logging.INFO, "\033[36m"),
    "EXIT_DECISION": (logging.INFO, "\033[34m"),
    "ORDER_NEW": (logging.INFO, "\033[35m"),
    "ORDER_FILL": (logging.INFO, "\033[32m"),
    "ORDER_FAIL": (logging.ERROR, "\033[31m"),
    "SQUARE_OFF": (logging.WARNING, "\033[33m"),
    "RISK_BLOCK": (logging.WARNING, "\033[33m"),
    "TIME_BLOCK": (logging.WARNING, "\033[33m"),
    "INFO": (logging.INFO, "\033[37m"),
    "WARN": (logging.WARNING, "\033[33m"),
    "ERROR": (logging.ERROR, "\033[31m"),
}
_RESET = "\033[0m"
_FALLBACK_LOGGER = "scalp-monitor.events"


def event_level(kind: str) -> int:
    return EVENT_KINDS.get(kind, (logging.INFO, ""))[0]


def wants_color(stream: TextIO) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class EventLogFormatter(logging.Formatter):
    """Plain formatter that can colour the ``[KIND:...]`` tag of event records."""

    def __init__(self, *, use_color: bool = False) -> None:
        super().__init__(fmt=DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        kind = getattr(record, "event_kind", None)
        if not self.use_color or kind not in EVENT_KINDS:
            return text
        tag = f"[KIND:{kind}]"
        colour = EVENT_KINDS[kind][1]
        return text.replace(tag, f"{colour}{tag}{_RESET}", 1)


def build_stream_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(EventLogFormatter(use_color=wants_color(handler.stream)))
    return handler


def _caller_module() -> str:
    # First frame outside this module names the logger.
    frame = inspect.currentframe()
    try:
        while frame is not None:
            name = frame.f_globals.get("__name__")
            if name and name != __name__:
                return name
            frame = frame.f_back
    finally:
        del frame
    return _FALLBACK_LOGGER


def format_event(
    kind: str,
    msg: str,
    *,
    symbol: Optional[str] = None,
    reason: Optional[str] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    tags = []
    if symbol:
        tags.append(f"sym={symbol}")
    if reason:
        tags.append(f"reason={reason}")
    if extra:
        tags.append(",".join(f"{key}={value}" for key, value in extra.items()))
    line = f"[KIND:{kind}] {msg}"
    return f"{line} | {' | '.join(tags)}" if tags else line


def log_event(
    kind: EventKind,
    msg: str,
    *,
    symbol: Optional[str] = None,
    reason: Optional[str] = None,
    extra: Optional[Mapping[str, Any]] = None,
    level: Optional[int] = None,
) -> None:
    """Log one engine event on the calling module's logger."""
    logging.getLogger(_caller_module()).log(
        event_level(kind) if level is None else level,
        format_event(kind, msg, symbol=symbol, reason=reason, extra=extra),
        extra={"event_kind": kind},
    )
