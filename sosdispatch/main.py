"""sos-dispatch FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sosdispatch.api import admin, alerts, health, notifications, responders, safe_zones, ws
from sosdispatch.core.config import settings
from sosdispatch.core.ws_manager import ws_manager
from sosdispatch.db.session import SessionLocal
from sosdispatch.services.dispatch_service import build_dispatch_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatch = build_dispatch_service(settings, SessionLocal, ws_manager)
    app.state.dispatch = dispatch
    await dispatch.start()
    logger.info("%s started", settings.app_name)
    try:
        yield
    finally:
        await dispatch.stop()
        logger.info("%s stopped", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(alerts.router)
app.include_router(responders.router)
app.include_router(safe_zones.router)
app.include_router(notifications.router)
app.include_router(admin.router)
app.include_router(ws.router)
