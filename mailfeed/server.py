"""FastAPI server hosting the background feed processor."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mailfeed.background.config import BackgroundConfig
from mailfeed.background.supervisor import ServiceSupervisor
from mailfeed.config import settings
from mailfeed.database.connection import init_database
from mailfeed.database.repository import FeedRepository
from mailfeed.handlers.background_handler import router as background_router
from mailfeed.handlers.config_handler import router as config_router
from mailfeed.mail.imap_client import ImapMailClient

logger = logging.getLogger(__name__)


def create_app(
    repository=None, mail_client=None, config: BackgroundConfig = None, autostart: bool = None, init_db: bool = True
) -> FastAPI:
    """Build the application. Collaborators default to the configured database and IMAP."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown."""
        logger.info("Starting Mail Feed Server...")

        if init_db:
            init_database()

        repo = repository or FeedRepository()
        supervisor = ServiceSupervisor(
            repo,
            mail_client or ImapMailClient(),
            config=config or BackgroundConfig.from_settings(settings),
            description_length=settings.feed_description_length,
        )
        app.state.repository = repo
        app.state.supervisor = supervisor

        should_start = settings.background_autostart if autostart is None else autostart
        if should_start and supervisor.config.enabled:
            result = await supervisor.start()
            if not result.success:
                logger.error(f"Background processing did not start: {result.message}")

        logger.info("Mail Feed Server started successfully")

        yield

        logger.info("Shutting down Mail Feed Server...")
        await supervisor.stop()
        logger.info("Mail Feed Server shut down complete")

    app = FastAPI(
        title="Mail Feed Server API",
        description="Turns mailing-list email into RSS/Atom feeds",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        supervisor = getattr(request.app.state, "supervisor", None)
        return {
            "status": "healthy",
            "service": "mailfeed",
            "background_state": supervisor.state.kind.value if supervisor else None,
        }

    @app.get("/")
    async def api_root():
        return {
            "service": "Mail Feed Server API",
            "version": "1.0.0",
            "api_docs": "/docs",
            "health": "/health",
        }

    app.include_router(background_router)
    app.include_router(config_router)
    return app


app = create_app()
