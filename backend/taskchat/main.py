"""Taskchat Backend Application.

This is the main entry point for the taskchat messaging service, the
real-time chat layer of the task management app (admins and students).

Modules:
    - chat: WebSocket push delivery, DuckDB message store, pull-sync routes
    - auth: JWT bearer credential verification
    - users: user lookups for receiver checks and display names
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskchat.auth.service import TokenVerifier, set_verifier
from taskchat.chat.channel import ChatChannel, set_channel
from taskchat.chat.registry import ConnectionRegistry
from taskchat.chat.router import router as chat_router
from taskchat.chat.store import MessageStore
from taskchat.config import AppSettings, get_config
from taskchat.database import Database
from taskchat.users.service import UserDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn/httpx log every connection; not useful when debugging chat flow
for _noisy in ("httpx", "httpcore", "websockets"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Explicit settings (tests); defaults to get_config().
    """
    config = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        # Fails fast if no JWT secret was injected
        verifier = TokenVerifier(
            secret_key=config.jwt_secret(),
            algorithm=config.auth.algorithm,
            leeway=config.auth.leeway_seconds,
        )
        set_verifier(verifier)

        db = Database.get_instance(config.database.path)
        channel = ChatChannel(
            verifier=verifier,
            store=MessageStore(db),
            users=UserDirectory(db),
            registry=ConnectionRegistry(),
            max_content_length=config.chat.max_content_length,
            support_user_id=config.chat.support_user_id,
        )
        set_channel(channel)
        logger.info(
            "Chat channel ready: db=%s max_content_length=%d support_user_id=%d",
            db.path,
            channel.max_content_length,
            channel.support_user_id,
        )

        yield  # Application runs here

        # Shutdown: live connections are not resumable across restarts
        await channel.registry.clear()
        set_channel(None)
        set_verifier(None)
        Database.reset_instance()
        logger.info("Application shutdown complete")

    # Create FastAPI application with metadata
    app = FastAPI(
        title="Taskchat API",
        description="Real-time messaging for the task management app",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "taskchat.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )


if __name__ == "__main__":
    run()
