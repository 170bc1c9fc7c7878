"""
Tile Decorator

Enriches pre-rendered Mapbox Vector Tiles with per-feature attributes
stored in Redis at request time, and re-emits a valid, compacted tile.
Geometry stays static while frequently-changing attributes (prices, live
status) are joined in on every request.
"""

__version__ = "1.0.0"

from .config import DecoratorConfig, StageConfig
from .decoration import TileDecorator
from .errors import (
    ConfigurationError,
    DecodeError,
    DecoratorError,
    InvalidAttributeDataError,
    StoreTransportError,
    TileNotFoundError,
    UpstreamFetchError,
)

__all__ = [
    "DecoratorConfig",
    "StageConfig",
    "TileDecorator",
    "DecoratorError",
    "ConfigurationError",
    "UpstreamFetchError",
    "TileNotFoundError",
    "DecodeError",
    "InvalidAttributeDataError",
    "StoreTransportError",
]
