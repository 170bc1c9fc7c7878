"""
Decorated Tile Server

FastAPI application serving decorated vector tiles from one
``TileDecorator``. The decoration pipeline blocks on the tile source and
on Redis, so each request runs it in a worker thread.
"""

import asyncio
import json
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST

from . import __version__
from .decoration import TileDecorator
from .errors import (
    DecodeError,
    DecoratorError,
    InvalidAttributeDataError,
    StoreTransportError,
    TileNotFoundError,
    UpstreamFetchError,
)

logger = structlog.get_logger(component="TileServer")

TILE_FORMATS = ("pbf", "mvt")
MAX_ZOOM = 30


def error_status(error: DecoratorError) -> int:
    """HTTP status for a failed decoration request."""
    if isinstance(error, TileNotFoundError):
        return 404
    if isinstance(error, StoreTransportError):
        return 503
    if isinstance(error, (InvalidAttributeDataError, DecodeError, UpstreamFetchError)):
        return 502
    return 500


def create_app(decorator: TileDecorator) -> FastAPI:
    """
    Build the tile server application around a decorator.

    The decorator is closed when the application shuts down.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down tile server")
        decorator.close()

    app = FastAPI(
        title="Tile Decorator",
        description="Vector tiles decorated with live attributes",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "tile-decorator",
            "version": __version__,
            "join_key": decorator.config.key,
            "cached_records": len(decorator.loader.cache)
        }

    @app.get("/metadata")
    async def get_metadata():
        """Tileset metadata from the upstream source."""
        try:
            return await asyncio.to_thread(decorator.get_info)
        except DecoratorError as e:
            raise HTTPException(status_code=error_status(e), detail=str(e))

    @app.get("/metrics")
    async def get_metrics(format: str = "prometheus"):
        """Decorator metrics as Prometheus exposition text, or JSON with ``?format=json``."""
        if format == "json":
            return JSONResponse(json.loads(decorator.metrics.export_metrics("json")))
        if format != "prometheus":
            raise HTTPException(status_code=400, detail="Unsupported metrics format")
        return PlainTextResponse(
            decorator.metrics.export_metrics("prometheus"),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/tiles/{z}/{x}/{y}.{format}")
    async def get_tile(z: int, x: int, y: int, format: str):
        """
        Serve a decorated tile.

        Args:
            z: Zoom level
            x: Tile X coordinate
            y: Tile Y coordinate
            format: Tile format (pbf, mvt)
        """
        if z < 0 or z > MAX_ZOOM:
            raise HTTPException(status_code=400, detail="Invalid zoom level")
        if x < 0 or y < 0 or x >= 2 ** z or y >= 2 ** z:
            raise HTTPException(status_code=400, detail="Invalid tile coordinates")
        if format not in TILE_FORMATS:
            raise HTTPException(status_code=400, detail="Unsupported format")

        try:
            data = await asyncio.to_thread(decorator.get_tile, z, x, y)
        except DecoratorError as e:
            raise HTTPException(status_code=error_status(e), detail=str(e))

        return Response(
            content=data,
            media_type="application/x-protobuf",
            headers={
                "Content-Encoding": "gzip",
                "Cache-Control": "no-cache"
            }
        )

    return app
