"""
FastAPI application entry point for the Capstone API.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from capstone_backend.config import Settings, get_settings
from capstone_backend.db import DbClient
from capstone_backend.dependencies import (
    build_db_client,
    build_speech_synthesizer,
    build_storage_client,
)
from capstone_backend.errors import ApiError, UpstreamError
from capstone_backend.media import MediaService
from capstone_backend.routes import SERVICE_NAME, SERVICE_VERSION, root_router, router
from capstone_backend.schemas import envelope
from capstone_backend.speech import SpeechSynthesizer
from capstone_backend.storage import StorageClient

logger = logging.getLogger(__name__)


def _server_error(app: FastAPI, message: str, exc: Exception) -> JSONResponse:
    detail = None if app.state.settings.is_production else str(exc)
    return JSONResponse(
        status_code=500,
        content=envelope(success=False, message=message, error=detail),
    )


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            if isinstance(exc, UpstreamError):
                logger.error("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
                return _server_error(app, "Upstream service error", exc)
            return _server_error(app, "Internal server error", exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(success=False, message=exc.message),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content=envelope(
                success=False,
                message="Validation error",
                error=f"Invalid field(s): {', '.join(f for f in fields if f) or 'body'}",
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        message = "Route not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope(success=False, message=message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _server_error(app, "Internal server error", exc)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[DbClient] = None,
    storage: Optional[StorageClient] = None,
    speech: Optional[SpeechSynthesizer] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)

    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.db = db if db is not None else build_db_client(settings)
    app.state.media = MediaService(
        speech=speech if speech is not None else build_speech_synthesizer(settings),
        storage=storage if storage is not None else build_storage_client(settings),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    app.include_router(root_router)
    app.include_router(router, prefix=settings.api_prefix)
    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()
    app = create_app(settings)
    logger.info("Serving %s on %s:%s", SERVICE_NAME, settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
