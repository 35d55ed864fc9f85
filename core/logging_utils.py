"""
Logging setup helpers.

Usage:
    from core.logging_utils import setup_logging
    setup_logging(config.logging)
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from core.event_logging import (
    DEFAULT_DATE_FORMAT,
    DEFAULT_FORMAT,
    build_stream_handler,
)


def setup_logging(logging_cfg: Optional[Dict[str, Any]] = None) -> None:
    logging_cfg = logging_cfg or {}
    level_name = str(os.getenv("LOG_LEVEL") or logging_cfg.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers = [build_stream_handler()]

    log_dir = logging_cfg.get("directory", "logs")
    if log_dir:
        prefix = logging_cfg.get("file_prefix", "scalp_monitor")
        os.makedirs(log_dir, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d")
        log_file = os.path.join(log_dir, f"{prefix}_{ts}.log")
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
