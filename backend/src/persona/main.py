"""Persona - FastAPI Application

This module creates and configures the FastAPI application.
"""

import traceback
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.characters import router as characters_router
from .api.chats import router as chats_router
from .api.health import router as health_router
from .api.knowledge_bases import router as knowledge_bases_router
from .api.plugins import router as plugins_router
from .core.config import get_settings_instance
from .core.database import close_db
from .core.exceptions import PersonaException
from .core.logging import get_logger, setup_logging
from .core.middleware import RequestIDMiddleware, TimingMiddleware
from .llm.chat_client import close_chat_client
from .llm.embedding_client import close_embedding_client

logger = get_logger(__name__)
settings = get_settings_instance()


def generate_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return f"ERR-{uuid.uuid4().hex[:8].upper()}"


def get_request_context(request: Request) -> dict[str, Any]:
    """Extract relevant context from request for error logging."""
    return {
        "method": request.method,
        "path": request.url.path,
        "query_params": dict(request.query_params),
        "client": request.client.host if request.client else None,
        "request_id": getattr(request.state, "request_id", None),
    }


def error_body(code: str, message: str, details: Any = None, error_id: str | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message, "details": details or {}}
    if error_id:
        error["error_id"] = error_id
    return jsonable_encoder({"error": error})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    logger.info(f"Starting {settings.app_name}", extra={"version": settings.version, "environment": settings.environment})

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    for name, closer in (
        ("chat model client", close_chat_client),
        ("embedding client", close_embedding_client),
        ("database", close_db),
    ):
        try:
            await closer()
            logger.info(f"Closed {name}")
        except Exception as e:
            logger.error(f"Error closing {name}: {e}")
    logger.info(f"{settings.app_name} shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Persona character chat API",
        version=settings.version,
        debug=settings.debug,
        docs_url="/docs" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app)
    setup_exception_handlers(app)
    setup_routes(app)

    logger.info("FastAPI application created")
    return app


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Map exceptions to ``{"error": {...}}`` envelopes; 5xx responses carry an error id."""

    @app.exception_handler(PersonaException)
    async def persona_exception_handler(request: Request, exc: PersonaException):
        error_id = generate_error_id() if exc.status_code >= 500 else None
        if exc.status_code >= 500:
            logger.error(
                "Server error",
                extra={
                    "error_id": error_id,
                    "error_code": exc.error_code,
                    "error_message": exc.message,
                    "details": exc.details,
                    "request_context": get_request_context(request),
                },
            )
        else:
            logger.warning(
                "Client error",
                extra={
                    "error_code": exc.error_code,
                    "error_message": exc.message,
                    "request_context": get_request_context(request),
                },
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.error_code, exc.message, exc.details, error_id),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_body(
                "VALIDATION_ERROR", "Request validation failed", {"errors": jsonable_errors(exc.errors())}
            ),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        error_id = generate_error_id() if exc.status_code >= 500 else None
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(f"HTTP_{exc.status_code}", str(exc.detail), None, error_id),
            headers=getattr(exc, "headers", None) or None,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        error_id = generate_error_id()
        include_traceback = settings.debug or settings.environment == "development"
        logger.error(
            "Unhandled exception",
            extra={
                "error_id": error_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
                "request_context": get_request_context(request),
            },
            exc_info=include_traceback,
        )
        details: dict[str, Any] = {}
        if include_traceback:
            details = {
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
                "traceback": traceback.format_exc().split("\n"),
            }
        return JSONResponse(
            status_code=500,
            content=error_body("INTERNAL_SERVER_ERROR", "Internal server error", details, error_id),
        )


def jsonable_errors(errors) -> list[dict[str, Any]]:
    """Pydantic error entries with the non-serializable ``ctx``/``input`` values stringified."""
    cleaned = []
    for error in errors:
        entry = {k: v for k, v in error.items() if k not in ("ctx", "input", "url")}
        entry["loc"] = [str(part) for part in error.get("loc", ())]
        cleaned.append(entry)
    return cleaned


def setup_routes(app: FastAPI) -> None:
    """Configure application routes."""
    app.include_router(health_router, prefix=settings.api_v1_prefix)
    app.include_router(knowledge_bases_router, prefix=settings.api_v1_prefix)
    app.include_router(chats_router, prefix=settings.api_v1_prefix)
    app.include_router(plugins_router, prefix=settings.api_v1_prefix)
    app.include_router(characters_router, prefix=settings.api_v1_prefix)


app = create_app()
