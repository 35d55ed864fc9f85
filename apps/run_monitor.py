"""
Scalping monitor launcher.

Usage:
    python -m apps.run_monitor --config configs/dev.yaml
    python -m apps.run_monitor --broker paper-api --serve
    python -m apps.run_monitor --broker kite --once

Without --serve the monitor loop runs in the foreground until Ctrl+C. With
--serve the admin API is started and the loop runs alongside it.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from broker.execution_router import GATEWAY_KINDS, build_gateway
from core.config import ConfigStore, ScalpingConfig, load_config
from core.errors import ConfigValidationError
from core.logging_utils import setup_logging
from engine.scalping_monitor import ScalpingMonitor

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the option scalping exit monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Brokers:
  paper      - in-memory paper broker (no upstream)
  paper-api  - upstream paper-trading REST API
  kite       - Zerodha Kite

Examples:
  python -m apps.run_monitor --broker paper-api --serve
  python -m apps.run_monitor --once
        """,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (default: $SCALP_CONFIG or configs/dev.yaml)",
    )
    parser.add_argument(
        "--broker",
        choices=list(GATEWAY_KINDS),
        default=None,
        help="Upstream to monitor (default: broker.kind from config, else paper)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and print its report")
    parser.add_argument("--serve", action="store_true", help="Start the admin API alongside the loop")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(BASE_DIR / ".env")

    try:
        cfg = load_config(args.config)
        scalping = ScalpingConfig.from_dict(cfg.scalping)
    except (FileNotFoundError, ConfigValidationError) as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", exc)
        return 1

    setup_logging(cfg.logging)
    try:
        gateway = build_gateway(args.broker, cfg.broker)
    except (RuntimeError, ValueError) as exc:
        logger.error("Could not create broker gateway: %s", exc)
        return 1

    monitor = ScalpingMonitor(gateway, ConfigStore(scalping))
    logger.info(
        "Scalping config: target=%.0f%% stop=%.0f%% trail=%.0f%% window=%s-%s squareoff=%s (%s)",
        scalping.profit_target_pct * 100,
        scalping.stop_loss_pct * 100,
        scalping.trailing_stop_pct * 100,
        scalping.trading_start.strftime("%H:%M"),
        scalping.trading_end.strftime("%H:%M"),
        scalping.square_off_time.strftime("%H:%M"),
        scalping.timezone,
    )

    if args.once:
        report = monitor.tick()
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.error is None else 2

    if args.serve:
        from apps.server import serve

        serve(monitor, cfg)
        return 0

    try:
        monitor.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping scalping monitor (keyboard interrupt)")
        monitor.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
