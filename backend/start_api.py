#!/usr/bin/env python3
"""
Attribution Engine API Startup Script

Starts the FastAPI server (Swagger UI at /docs, ReDoc at /redoc).
"""

import logging
import sys
from pathlib import Path

import uvicorn

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    """Start the attribution engine API server."""
    if not Path(".env").exists():
        logger.warning("No .env file found. Set DATABASE_URL and TOKEN_ENCRYPTION_KEY in the environment.")

    try:
        uvicorn.run(
            "attribution_engine.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["attribution_engine"],
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Shutting down attribution engine API server")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
