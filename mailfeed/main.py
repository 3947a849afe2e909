#!/usr/bin/env python3
"""Main entry point for the Mail Feed Server."""

import logging
import sys

import uvicorn

from mailfeed.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.log_file) if settings.log_file else logging.NullHandler()
    ]
)

logger = logging.getLogger(__name__)


def run_server():
    """Run the FastAPI server."""
    logger.info(f"Starting Mail Feed Server on {settings.api_host}:{settings.api_port}")
    logger.info(f"Database: {settings.database_url}")
    logger.info(
        f"Background processing: enabled={settings.background_enabled}, "
        f"autostart={settings.background_autostart}"
    )
    logger.info("HTTP API available at: /api/v1")

    uvicorn.run(
        "mailfeed.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower()
    )


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Mail Feed Server")
    parser.add_argument(
        "--host",
        default=settings.api_host,
        help=f"Server host (default: {settings.api_host})"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.api_port,
        help=f"Server port (default: {settings.api_port})"
    )
    parser.add_argument(
        "--no-background",
        action="store_true",
        help="Serve the API without starting background processing"
    )

    args = parser.parse_args()

    # Update settings if provided
    if args.host:
        settings.api_host = args.host
    if args.port:
        settings.api_port = args.port
    if args.no_background:
        settings.background_autostart = False

    try:
        run_server()
    except KeyboardInterrupt:
        logger.info("Shutting down Mail Feed Server...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
