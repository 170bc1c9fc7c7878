"""
Tile Decorator

Fetches a tile from an upstream source, joins attribute records from Redis
onto the features of its first layer and re-encodes the result.

A request moves through a fixed sequence of states and never retries: any
failure ends it in ``ERRORED`` and propagates to the caller, so a caller
either gets a fully decorated and compacted tile or an exception.
"""

import gzip
import time
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog
from google.protobuf.message import DecodeError as ProtobufDecodeError
from mapbox_vector_tile.Mapbox import vector_tile_pb2

from ..config import DecoratorConfig
from ..errors import DecodeError, DecoratorError, UpstreamFetchError
from ..monitoring.metrics import MetricsCollector
from ..sources import BaseTileSource, load_source
from ..storage.attribute_loader import AttributeLoader
from .join_keys import extract_join_keys
from .property_stages import PropertyStagePipeline
from .tag_codec import LayerDictionary, compact

GZIP_MAGIC = b"\x1f\x8b"


class DecorationState(Enum):
    FETCHING = "fetching"
    DECODING = "decoding"
    PRE_FILTER = "pre_filter"
    EXTRACTING_KEYS = "extracting_keys"
    LOADING = "loading"
    VALIDATING = "validating"
    MERGING = "merging"
    POST_FILTER = "post_filter"
    COMPACTING = "compacting"
    ENCODING = "encoding"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class DecorationStats:
    """Counters for one decorated layer."""
    features_in: int = 0
    removed_pre_merge: int = 0
    records_merged: int = 0
    fetched_from_store: int = 0
    removed_post_merge: int = 0
    features_out: int = 0


class _Request:
    """Tracks the state of one decoration request for logging."""

    def __init__(self, logger, **context):
        self.logger = logger.bind(**context)
        self.state = None

    def enter(self, state: DecorationState) -> None:
        self.state = state
        self.logger.debug("Decoration state", state=state.value)


def decode_tile(payload: bytes) -> vector_tile_pb2.tile:
    """
    Decode a (possibly gzip-compressed) tile payload.

    Raises:
        DecodeError: payload is not a readable tile
    """
    if payload[:2] == GZIP_MAGIC:
        try:
            payload = gzip.decompress(payload)
        except (OSError, EOFError, zlib.error) as e:
            raise DecodeError(f"Invalid gzip payload: {e}") from e

    tile = vector_tile_pb2.tile()
    try:
        tile.ParseFromString(payload)
    except ProtobufDecodeError as e:
        raise DecodeError(f"Invalid vector tile: {e}") from e
    if not tile.IsInitialized():
        missing = ", ".join(tile.FindInitializationErrors())
        raise DecodeError(f"Invalid vector tile: missing required fields {missing}")
    return tile


def encode_tile(tile: vector_tile_pb2.tile) -> bytes:
    """Serialize and gzip a tile."""
    return gzip.compress(tile.SerializeToString())


class TileDecorator:
    """
    Decorates tiles from an upstream source with attributes from Redis.

    One instance is shared by all requests for a tileset; it owns the Redis
    client and the attribute cache through its ``AttributeLoader``.
    """

    def __init__(
        self,
        config: DecoratorConfig,
        source: BaseTileSource,
        loader: Optional[AttributeLoader] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize the tile decorator.

        Args:
            config: Decorator configuration
            source: Upstream tile source
            loader: Attribute loader; one connected to ``config.redis_url``
                is created if omitted
            metrics: Metrics collector; a private one is created if omitted
        """
        self.config = config
        self.source = source
        self.metrics = metrics or MetricsCollector()

        if loader is None:
            loader = AttributeLoader.from_url(
                config.redis_url,
                cache_size=config.cache_size,
                use_hashes=config.use_hashes,
                fields=self._hash_fields(config),
                metrics=self.metrics
            )
        self.loader = loader

        self.stages = PropertyStagePipeline(
            source_props=config.source_props,
            redis_props=config.redis_props,
            output_props=config.output_props
        )

        self.logger = structlog.get_logger(
            component="TileDecorator",
            join_key=config.key
        )
        self.logger.info(
            "Tile decorator initialized",
            store_mode="hashes" if config.use_hashes else "flat",
            cache_size=config.cache_size
        )

    @staticmethod
    def _hash_fields(config: DecoratorConfig):
        # With a keep list only those fields (plus the required ones) matter,
        # so hashes are read with HMGET instead of HGETALL.
        if not config.use_hashes or config.redis_props.keep is None:
            return None
        fields = list(config.redis_props.keep)
        for name in config.redis_props.required or ():
            if name not in fields:
                fields.append(name)
        return fields

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        source: Optional[BaseTileSource] = None,
        **kwargs
    ) -> "TileDecorator":
        """
        Build a decorator from option mapping.

        The upstream source is taken from ``source``, else from
        ``options["source"]`` (a source object or a source URI).
        """
        source = source or options.get("source")
        if isinstance(source, str):
            source = load_source(source)
        if source is None:
            raise DecoratorError("A tile source is required")
        return cls(DecoratorConfig.from_options(options), source, **kwargs)

    @classmethod
    def from_uri(cls, uri: str, **kwargs) -> "TileDecorator":
        """Build a decorator from a ``decorator+<scheme>://`` URI."""
        config, source_uri = DecoratorConfig.from_uri(uri)
        return cls(config, load_source(source_uri), **kwargs)

    def get_info(self) -> Dict[str, Any]:
        return self.source.get_info()

    def close(self) -> None:
        """Release the Redis client and the upstream source."""
        self.loader.close()
        self.source.close()
        self.logger.info("Tile decorator closed")

    def get_tile(self, z: int, x: int, y: int) -> bytes:
        """
        Fetch, decorate and re-encode one tile.

        Args:
            z: Zoom level
            x: Tile column
            y: Tile row

        Returns:
            Gzip-compressed decorated tile

        Raises:
            DecoratorError: any stage of the request failed
        """
        request = _Request(self.logger, z=z, x=x, y=y)
        start_time = time.perf_counter()

        try:
            request.enter(DecorationState.FETCHING)
            try:
                payload = self.source.get_tile(z, x, y)
            except DecoratorError:
                raise
            except Exception as e:
                raise UpstreamFetchError(f"Tile source failed: {e}") from e

            request.enter(DecorationState.DECODING)
            tile = decode_tile(payload)

            stats = self._decorate(tile, request)

            request.enter(DecorationState.ENCODING)
            data = encode_tile(tile)
            request.enter(DecorationState.DONE)

        except DecoratorError as e:
            request.logger.error(
                "Tile decoration failed",
                state=request.state.value,
                error=str(e),
                error_type=type(e).__name__
            )
            request.state = DecorationState.ERRORED
            self.metrics.increment_counter("tiles_decorated_total", labels={"status": "error"})
            raise

        duration = time.perf_counter() - start_time
        self.metrics.increment_counter("tiles_decorated_total", labels={"status": "success"})
        self.metrics.record_histogram("tile_decoration_duration_seconds", duration)
        self.metrics.set_gauge("attribute_cache_entries", len(self.loader.cache))

        request.logger.info(
            "Tile decorated",
            features_in=stats.features_in,
            features_out=stats.features_out,
            records_merged=stats.records_merged,
            fetched_from_store=stats.fetched_from_store,
            duration_seconds=round(duration, 6),
            size_bytes=len(data)
        )
        return data

    def decorate_tile(self, tile: vector_tile_pb2.tile) -> DecorationStats:
        """
        Decorate the first layer of a decoded tile in place.

        Raises:
            DecodeError: the tile has no layers
            InvalidAttributeDataError: a store record is malformed
            StoreTransportError: the store request failed
        """
        return self._decorate(tile, _Request(self.logger))

    def _decorate(self, tile: vector_tile_pb2.tile, request: _Request) -> DecorationStats:
        if not tile.layers:
            raise DecodeError("No layers found")
        layer = tile.layers[0]
        stats = DecorationStats(features_in=len(layer.features))

        request.enter(DecorationState.PRE_FILTER)
        stats.removed_pre_merge = self.stages.apply_pre_merge(layer)

        request.enter(DecorationState.EXTRACTING_KEYS)
        join_keys = extract_join_keys(layer, self.config.key)

        request.enter(DecorationState.LOADING)
        records, stats.fetched_from_store = self.loader.load(join_keys)

        request.enter(DecorationState.VALIDATING)
        records = self.stages.filter_records(records)

        request.enter(DecorationState.MERGING)
        dictionary = LayerDictionary(layer)
        for feature, record in zip(layer.features, records):
            if record:
                dictionary.merge_record(feature, record)
                stats.records_merged += 1

        request.enter(DecorationState.POST_FILTER)
        stats.removed_post_merge = self.stages.apply_post_merge(layer)

        request.enter(DecorationState.COMPACTING)
        compact(layer)

        stats.features_out = len(layer.features)
        return stats
