#!/usr/bin/env python3
"""
Decorated Tile Server

Serves tiles from the source named by ``DECORATOR_URI``, decorated with
attributes from Redis, e.g.::

    DECORATOR_URI='decorator+mbtiles:///data/nyc.mbtiles?key=BoroCode&redis=redis://localhost:6379' \\
        python scripts/tile-server.py
"""

import os

import structlog
import uvicorn

from tile_decorator import TileDecorator
from tile_decorator.server import create_app
from tile_decorator.utils import configure_logging

# Configuration
DECORATOR_URI = os.getenv("DECORATOR_URI", "")
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "0.0.0.0")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")

configure_logging(LOG_LEVEL)
logger = structlog.get_logger()

if not DECORATOR_URI:
    raise SystemExit("DECORATOR_URI is not set")

decorator = TileDecorator.from_uri(DECORATOR_URI)
app = create_app(decorator)

if __name__ == "__main__":
    logger.info("Starting tile server", host=HOST, port=PORT)
    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL,
        access_log=True
    )
