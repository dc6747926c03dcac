"""FastAPI application for Sellibra."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sellibra import __version__
from sellibra.api.routes import router as api_router
from sellibra.config import Settings
from sellibra.errors import SellibraError, WaitTimeoutError
from sellibra.main import Application

logger = logging.getLogger(__name__)


def create_app(
    application: Application | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        application: Prebuilt application, mainly for tests
        settings: Settings used when ``application`` is not given
    """
    application = application or Application(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan events."""
        logger.info("Starting Sellibra API...")
        await application.start()
        yield
        logger.info("Shutting down Sellibra API...")
        await application.stop()

    app = FastAPI(
        title="Sellibra",
        description="Token quota and AI job processing for Etsy sellers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.application = application

    @app.exception_handler(SellibraError)
    async def sellibra_error_handler(request: Request, exc: SellibraError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        body = {"success": False, "error": exc.code, "message": str(exc)}
        if isinstance(exc, WaitTimeoutError):
            body["job_id"] = exc.job_id
        return JSONResponse(status_code=exc.status_code, content=body)

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    app.include_router(api_router, prefix="/v1")

    @app.get("/health")
    async def health_check():
        report = await application.health()
        status_code = 200 if report["database"] else 503
        return JSONResponse(
            status_code=status_code,
            content={**report, "version": __version__},
        )

    @app.get("/")
    async def root():
        return {
            "name": "Sellibra",
            "version": __version__,
            "docs": "/docs",
        }

    return app
