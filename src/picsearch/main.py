"""
Main entry point for PicSearch application.

This module provides the main function and CLI interface
for running the PicSearch server.
"""

import logging

import uvicorn

from .api import create_app
from .config import Settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def main():
    """Main application entry point."""
    try:
        settings = Settings()
        logging.getLogger().setLevel(settings.log_level.upper())

        app = create_app(settings)

        logger.info(f"Starting PicSearch server on port {settings.server_port}...")
        uvicorn.run(
            app,
            host=settings.server_host,
            port=settings.server_port,
            log_level=settings.log_level.lower(),
        )

    except Exception as e:
        logger.error(f"Failed to start server: {e}")
        raise


if __name__ == "__main__":
    main()
