"""FastAPI application entrypoint for the TourDesk back office."""
from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router as api_router
from .api.deps import get_db
from .config import LOG_LEVEL
from .constants import APP_NAME
from .database import Base, engine

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)


def create_application() -> FastAPI:
    app = FastAPI(title=f"{APP_NAME} API", version="1.0.0")
    app.include_router(api_router)

    @app.get("/health", tags=["health"], summary="Service healthcheck")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok", "message": f"{APP_NAME} API is running"}

    logger.debug("Application routes registered")
    return app


app = create_application()

__all__ = ["app", "create_application", "get_db"]
