from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from apps.api_scalping import router as scalping_router
from core.config import AppConfig
from engine.scalping_monitor import ScalpingMonitor

logger = logging.getLogger(__name__)


def create_app(monitor: ScalpingMonitor, *, run_monitor: bool = True) -> FastAPI:
    """
    Build the admin app around an existing monitor.

    With ``run_monitor`` the monitor loop starts with the app and is signalled
    to stop on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_monitor:
            monitor.start()
            logger.info("Scalping monitor started with API server")
        try:
            yield
        finally:
            if run_monitor:
                monitor.stop()
                logger.info("Scalping monitor stop requested")

    app = FastAPI(title="Scalping Exit Monitor", lifespan=lifespan)
    app.state.monitor = monitor
    app.include_router(scalping_router, prefix="/api/scalping", tags=["scalping"])
    return app


def serve(monitor: ScalpingMonitor, cfg: Optional[AppConfig] = None) -> None:
    server_cfg = cfg.server if cfg else {}
    host = str(server_cfg.get("host", "127.0.0.1"))
    port = int(server_cfg.get("port", 3050))
    logger.info("Admin API listening on http://%s:%s/api/scalping", host, port)
    uvicorn.run(create_app(monitor), host=host, port=port, log_level="info")
