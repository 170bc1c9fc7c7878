"""
Attribute Loader

Resolves join values to attribute records through a bounded in-process LRU
cache and a single batched Redis round trip for the cache misses.

Two store layouts are supported:

- flat: one JSON document per key, fetched with ``MGET``
- hashes: one Redis hash per key, fetched with pipelined ``HGETALL`` (or
  ``HMGET`` of a fixed field list)

Cached records may be stale; entries are only replaced when a later miss
fetches the key again or when they are evicted.
"""

import json
import threading
from collections import OrderedDict
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import redis
import structlog

from ..errors import InvalidAttributeDataError, StoreTransportError
from ..monitoring.metrics import MetricsCollector

MISSING = object()

# Cached in place of a record when the store had nothing for a key
_NO_RECORD = object()


class LoadResult(NamedTuple):
    records: List[Optional[Dict[str, Any]]]
    fetched: int


class AttributeCache:
    """Thread-safe bounded mapping with least-recently-used eviction."""

    def __init__(self, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = MISSING) -> Any:
        with self._lock:
            try:
                value = self._entries[key]
            except KeyError:
                return default
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


def _text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def parse_flat_record(payload: Any) -> Optional[Dict[str, Any]]:
    """
    Parse an ``MGET`` payload into a record.

    Raises:
        InvalidAttributeDataError: payload is not JSON or not a JSON object
    """
    if payload is None:
        return None

    payload = _text(payload)
    try:
        attrs = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise InvalidAttributeDataError(payload) from e

    if attrs is None:
        return None
    if not isinstance(attrs, dict):
        raise InvalidAttributeDataError(attrs)
    return attrs


def parse_hash_record(reply: Any, fields: Optional[Sequence[str]] = None) -> Optional[Dict[str, Any]]:
    """
    Turn an ``HGETALL`` mapping, or an ``HMGET`` reply zipped with
    ``fields``, into a record. Empty hashes mean no record.

    Raises:
        InvalidAttributeDataError: reply has the wrong shape
    """
    if reply is None:
        return None

    if fields is not None:
        if not isinstance(reply, (list, tuple)) or len(reply) != len(fields):
            raise InvalidAttributeDataError(reply)
        record = {
            name: _text(value)
            for name, value in zip(fields, reply)
            if value is not None
        }
    else:
        if not isinstance(reply, dict):
            raise InvalidAttributeDataError(reply)
        record = {_text(name): _text(value) for name, value in reply.items()}

    return record or None


class AttributeLoader:
    """
    Owns the Redis client and the attribute cache of one decorator.

    One loader is shared by every request against its decorator; ``load``
    may be called from several threads at once.
    """

    def __init__(
        self,
        client: redis.Redis,
        cache_size: int = 10000,
        use_hashes: bool = False,
        fields: Optional[Sequence[str]] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize the attribute loader.

        Args:
            client: Redis client, reused for every batch
            cache_size: Maximum number of cached join values
            use_hashes: Read Redis hashes instead of JSON strings
            fields: With hashes, fetch only these fields via HMGET
            metrics: Optional metrics collector
        """
        self.client = client
        self.cache = AttributeCache(cache_size)
        self.use_hashes = use_hashes
        self.fields = tuple(fields) if fields else None
        self.metrics = metrics

        self.logger = structlog.get_logger(
            component="AttributeLoader",
            store_mode="hashes" if use_hashes else "flat"
        )

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "AttributeLoader":
        """
        Create a loader with its own Redis connection pool.

        Raises:
            StoreTransportError: the store is unreachable
        """
        client = redis.Redis.from_url(url, decode_responses=True)
        try:
            client.ping()
        except redis.exceptions.RedisError as e:
            client.close()
            raise StoreTransportError(f"Attribute store unreachable at {url}: {e}") from e
        return cls(client, **kwargs)

    def _fetch(self, keys: List[str]) -> List[Any]:
        try:
            if not self.use_hashes:
                return self.client.mget(keys)

            pipe = self.client.pipeline(transaction=False)
            for key in keys:
                if self.fields is not None:
                    pipe.hmget(key, list(self.fields))
                else:
                    pipe.hgetall(key)
            # Per-command errors come back in place of their reply
            return pipe.execute(raise_on_error=False)
        except redis.exceptions.RedisError as e:
            self.logger.error("Attribute store request failed", keys=len(keys), error=str(e))
            raise StoreTransportError(f"Attribute store request failed: {e}") from e

    def _parse(self, payload: Any) -> Optional[Dict[str, Any]]:
        if isinstance(payload, redis.exceptions.ResponseError) and str(payload).startswith("WRONGTYPE"):
            # The key holds something other than a hash
            raise InvalidAttributeDataError(str(payload)) from payload
        if isinstance(payload, redis.exceptions.RedisError):
            self.logger.error("Attribute store command failed", error=str(payload))
            raise StoreTransportError(f"Attribute store request failed: {payload}") from payload
        if self.use_hashes:
            return parse_hash_record(payload, self.fields)
        return parse_flat_record(payload)

    def load(self, keys: Sequence[Optional[str]]) -> LoadResult:
        """
        Resolve join values to records.

        Args:
            keys: Join values; ``None`` entries are never looked up

        Returns:
            LoadResult with records aligned to ``keys`` and the number of
            keys fetched from the store

        Raises:
            InvalidAttributeDataError: any fetched record is malformed
            StoreTransportError: the store request failed
        """
        records: List[Optional[Dict[str, Any]]] = [None] * len(keys)
        load_keys = []
        load_positions = []

        for i, key in enumerate(keys):
            if key is None:
                continue
            cached = self.cache.get(key)
            if cached is MISSING:
                load_keys.append(key)
                load_positions.append(i)
            elif cached is not _NO_RECORD:
                records[i] = cached

        hits = sum(1 for key in keys if key is not None) - len(load_keys)
        if self.metrics and hits:
            self.metrics.increment_counter("attribute_cache_hits_total", hits)

        if not load_keys:
            return LoadResult(records, 0)

        loaded = self._fetch(load_keys)
        if len(loaded) != len(load_keys):
            raise StoreTransportError(
                f"Attribute store returned {len(loaded)} replies for {len(load_keys)} keys"
            )

        # Validate the whole batch before touching the cache
        parsed = [self._parse(payload) for payload in loaded]

        for key, position, record in zip(load_keys, load_positions, parsed):
            records[position] = record
            self.cache.set(key, _NO_RECORD if record is None else record)

        if self.metrics:
            self.metrics.increment_counter("attribute_store_fetches_total", len(load_keys))

        self.logger.debug(
            "Loaded attributes",
            requested=len(keys),
            cache_hits=hits,
            fetched=len(load_keys)
        )
        return LoadResult(records, len(load_keys))

    def close(self) -> None:
        self.client.close()
