# backend/main.py

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import Settings, settings as default_settings
from core.errors import ChatError
from core.logging import setup_logging, get_logger
from core.state import build_state
from api.routes import root, health, metrics, rooms, publish
from api import websocket as websocket_module
from services.chat_store import ChatStore

# Configure logging first
setup_logging(default_settings.LOG_LEVEL)
logger = get_logger(__name__)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
    )


def create_app(settings: Settings | None = None, store: ChatStore | None = None) -> FastAPI:
    """
    Build the FastAPI app with its own store, registry, broker and sessions.

    Each call returns an independent instance; nothing is shared through
    module globals.
    """
    settings = settings or default_settings
    state = build_state(settings, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Application starting - realtime rooms enabled")
        yield
        logger.info("Shutting down: closing %d sessions", state.connection_manager.connection_count())
        await state.connection_manager.close_all()

    app = FastAPI(title="Topic Rooms - Realtime Chat", lifespan=lifespan)
    app.state.chat = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)

    # REST routes
    app.include_router(root.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(rooms.router)
    app.include_router(publish.router)

    # WebSocket routes
    app.include_router(websocket_module.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
