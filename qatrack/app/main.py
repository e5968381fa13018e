import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlmodel import SQLModel

from qatrack import version
from qatrack.app.admin import router as admin_router
from qatrack.config.settings import settings
from qatrack.core.database import async_session_maker, engine
from qatrack.core.exceptions import QATrackError, Unauthenticated
from qatrack.core.logger import configure_logging
from qatrack.domain.testing.router import router as testing_router
from qatrack.domain.users.catalog import ensure_bootstrap_admin, seed_catalog
from qatrack.domain.users.router import router as auth_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages the startup and shutdown lifecycle of the FastAPI application."""
    configure_logging()

    # Initialize SQLite schema
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async with async_session_maker() as session:
        await seed_catalog(session)
        await ensure_bootstrap_admin(session, settings.BOOTSTRAP_ADMIN_USERNAME, settings.BOOTSTRAP_ADMIN_PASSWORD)

    yield

    await engine.dispose()


# --- Application Setup ---
app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Injects a unique Request-ID into the logging context and response headers.

    Args:
        request: The incoming HTTP request.
        call_next: The next middleware or route handler in the pipeline.

    Returns:
        Response: The HTTP response with injected tracking headers.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    with logger.contextualize(request_id=request_id):
        logger.info(f"Started {request.method} {request.url.path}")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            process_time = time.perf_counter() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(process_time)

            logger.info(f"Completed {response.status_code} in {process_time:.4f}s")
            return response
        except Exception as e:
            process_time = time.perf_counter() - start_time
            logger.error(f"Request failed after {process_time:.4f}s: {e}")
            raise


# --- Exception Handlers ---
@app.exception_handler(QATrackError)
async def domain_exception_handler(request: Request, exc: QATrackError) -> JSONResponse:
    """Maps domain errors onto ``{"error": message, **details}`` with the error's status code.

    Args:
        request: The incoming HTTP request.
        exc: The raised domain error.

    Returns:
        JSONResponse: The error payload.
    """
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, **exc.details}, headers=headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catches unhandled exceptions and returns a standardized JSON response.

    Args:
        request: The incoming HTTP request.
        exc: The raised exception.

    Returns:
        JSONResponse: A 500 Internal Server Error payload.
    """
    logger.exception("Unhandled server exception")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


# --- Routing ---
app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(testing_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Provides a basic health check for the application.

    Returns:
        dict: The application status and name.
    """
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "version": version.VERSION,
        "build_time": version.BUILD_TIMESTAMP,
    }
