from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.api import router
from logging_config import configure_logging
from models.errors import HistoryError
from services.query import build_default_query_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    service = build_default_query_service()
    logger.info("History service ready", extra={"reason": type(service.source).__name__})
    try:
        yield
    finally:
        service.shutdown()
        build_default_query_service.cache_clear()
        logger.info("History service stopped")


async def history_error_handler(_request: Request, exc: HistoryError) -> JSONResponse:
    logger.error("Unhandled history error", extra={"reason": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "History service failure."},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Sensor History",
        description="Last-value, history and aggregate queries over device sensor readings.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(HistoryError, history_error_handler)
    app.include_router(router)
    return app


app = create_app()
