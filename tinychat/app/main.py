############################################################
#
# tinychat - Streaming LLM Chat Service
#
# main.py: FastAPI application entry point and configuration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""FastAPI application entry point."""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tinychat.app.api import api_router
from tinychat.app.core.adapters import AdapterRegistry
from tinychat.app.db import chat_crud, crud
from tinychat.app.db.session import Database
from tinychat.app.logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from tinychat.app.services.relay import ChatRelay
from tinychat.app.settings import Settings, get_settings

# Setup logging first
setup_logging()
logger = get_logger(__name__)


def attach_resources(app: FastAPI, database: Database, registry: AdapterRegistry) -> None:
    """Store the process-lifetime resources on the application."""
    app.state.database = database
    app.state.registry = registry
    app.state.relay = ChatRelay(database, registry, app.state.settings)


async def _startup_maintenance(database: Database, registry: AdapterRegistry, settings: Settings) -> None:
    """Register stored model descriptors and purge expired soft-deleted chats."""
    async with database.session() as db:
        added = registry.register_descriptors(await crud.get_active_models(db))
        purged = await chat_crud.purge_deleted_conversations(
            db, settings.deleted_conversation_retention_days
        )
        await db.commit()
    logger.info("startup_maintenance", descriptors_registered=added, conversations_purged=purged)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    logger.info("Starting TinyChat...")

    # Initialize components
    database = Database.from_settings(settings)
    if settings.database_create_tables:
        await database.create_all()
    registry = AdapterRegistry.from_settings(settings)
    attach_resources(app, database, registry)

    try:
        await _startup_maintenance(database, registry, settings)
    except Exception as e:
        logger.warning("startup_maintenance_failed", error=str(e))

    logger.info("TinyChat started successfully", models=registry.model_ids())

    yield

    # Shutdown
    logger.info("Shutting down TinyChat...")
    await app.state.relay.drain()
    await registry.aclose()
    await database.dispose()
    logger.info("TinyChat shutdown complete")


class RequestIDMiddleware:
    """Raw ASGI middleware for request ID injection.

    Unlike @app.middleware("http") which wraps in BaseHTTPMiddleware,
    this does NOT run the handler in a separate task, so client disconnects
    won't cancel in-flight DB operations and leak connections.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = (
            headers.get(b"x-request-id", b"").decode()
            or str(uuid.uuid4())
        )

        bind_request_context(request_id=request_id)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (b"x-request-id", request_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_request_context()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Streaming chat relay for OpenAI, DeepSeek, Qwen and OpenRouter models",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Chat-Id", "X-Request-ID"],
    )

    app.add_middleware(RequestIDMiddleware)

    # Exception handlers
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.exception("unhandled_exception", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "server_error"}},
        )

    app.include_router(api_router)

    return app


# Create application instance
app = create_app()


def main():
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "tinychat.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
