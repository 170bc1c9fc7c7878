"""
Decorator Errors

Every failure of a decoration request is terminal: nothing is retried and
no partially decorated tile is ever returned.
"""

from typing import Any


class DecoratorError(Exception):
    """Base class for all tile decorator failures."""


class ConfigurationError(DecoratorError, ValueError):
    """Raised at construction time when options cannot be normalised."""


class UpstreamFetchError(DecoratorError):
    """The backing tile source failed to produce a tile."""


class TileNotFoundError(UpstreamFetchError):
    """The backing tile source has no tile at the requested coordinates."""

    def __init__(self, z: int, x: int, y: int):
        super().__init__(f"Tile does not exist: {z}/{x}/{y}")
        self.z = z
        self.x = x
        self.y = y


class DecodeError(DecoratorError):
    """The tile payload is malformed or carries no layers."""


class InvalidAttributeDataError(DecoratorError):
    """A store record does not resolve to an attribute mapping."""

    def __init__(self, payload: Any):
        super().__init__(f"Invalid attribute data: {payload}")
        self.payload = payload


class StoreTransportError(DecoratorError):
    """Talking to the attribute store failed."""
