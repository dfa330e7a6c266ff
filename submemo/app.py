"""
FastAPI application entry point for the SubMemo backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from submemo.config import get_settings
from submemo.routes import router

logger = logging.getLogger(__name__)


async def _storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "The data service is temporarily unavailable. Please try again."},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="SubMemo Backend (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(SQLAlchemyError, _storage_error_handler)
    return app


app = create_app()
