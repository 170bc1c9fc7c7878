"""
Decorator Configuration

Typed configuration for the tile decorator. Options arrive either as a plain
mapping (programmatic construction) or as the query string of a
``decorator+<scheme>://`` URI; both forms are normalised here, once, and
rejected inputs fail construction rather than first use.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

from .errors import ConfigurationError

URI_PREFIX = "decorator+"

DEFAULT_REDIS_URL = "redis://localhost:6379"
DEFAULT_CACHE_SIZE = 10000

# Options consumed by the decorator; everything else in a URI query belongs
# to the upstream source.
DECORATOR_OPTIONS = (
    "key",
    "redis",
    "hashes",
    "cacheSize",
    "sourceProps",
    "redisProps",
    "outputProps",
    "keepKeys",
    "requiredKeys",
    "requiredKeysRedis",
)

_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("", "0", "false", "no", "off")


def parse_name_list(value: Any, option: str) -> Optional[Tuple[str, ...]]:
    """
    Normalise a ``keep``/``required`` value to an ordered tuple of names.

    Accepts a comma-separated string or a list of strings. Order is kept and
    repeated names are collapsed. ``None`` and blank strings mean "not set".
    """
    if value is None:
        return None

    if isinstance(value, str):
        names = [name.strip() for name in value.split(",")]
        names = [name for name in names if name]
        if not names:
            return None
    elif isinstance(value, (list, tuple)):
        names = []
        for name in value:
            if not isinstance(name, str):
                raise ConfigurationError(
                    f"{option} must contain only strings, got {name!r}"
                )
            names.append(name)
    else:
        raise ConfigurationError(
            f"{option} must be a comma-separated string or a list, got {type(value).__name__}"
        )

    return tuple(dict.fromkeys(names))


def parse_bool(value: Any, option: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS:
        return True
    if isinstance(value, str) and value.strip().lower() in _FALSE_STRINGS:
        return False
    raise ConfigurationError(f"{option} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class StageConfig:
    """Keep/required policy for one stage of the property pipeline."""
    keep: Optional[Tuple[str, ...]] = None
    required: Optional[Tuple[str, ...]] = None

    @property
    def is_empty(self) -> bool:
        return self.keep is None and self.required is None

    @classmethod
    def parse(cls, value: Any, option: str) -> "StageConfig":
        """
        Build a stage config from a mapping, a JSON object string or ``None``.

        Args:
            value: Raw option value
            option: Option name, used in error messages

        Returns:
            Normalised StageConfig
        """
        if value is None:
            return cls()

        if isinstance(value, StageConfig):
            return value

        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise ConfigurationError(f"{option} is not valid JSON: {e}") from e

        if not isinstance(value, Mapping):
            raise ConfigurationError(
                f"{option} must be an object with keep/required, got {type(value).__name__}"
            )

        unknown = set(value) - {"keep", "required"}
        if unknown:
            raise ConfigurationError(
                f"{option} has unknown fields: {', '.join(sorted(unknown))}"
            )

        return cls(
            keep=parse_name_list(value.get("keep"), f"{option}.keep"),
            required=parse_name_list(value.get("required"), f"{option}.required"),
        )


@dataclass(frozen=True)
class DecoratorConfig:
    """Immutable decorator configuration."""
    key: str
    source_props: StageConfig = field(default_factory=StageConfig)
    redis_props: StageConfig = field(default_factory=StageConfig)
    output_props: StageConfig = field(default_factory=StageConfig)
    redis_url: str = DEFAULT_REDIS_URL
    use_hashes: bool = False
    cache_size: int = DEFAULT_CACHE_SIZE

    def __post_init__(self):
        if not isinstance(self.key, str) or not self.key:
            raise ConfigurationError("key is required and must be a non-empty string")
        if not isinstance(self.cache_size, int) or isinstance(self.cache_size, bool) or self.cache_size < 1:
            raise ConfigurationError(f"cacheSize must be a positive integer, got {self.cache_size!r}")

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "DecoratorConfig":
        """
        Build the configuration from decorator options.

        Args:
            options: Mapping using the public option names (``key``,
                ``sourceProps``, ``redisProps``, ``outputProps``, ``redis``,
                ``hashes``, ``cacheSize`` and the legacy ``keepKeys``,
                ``requiredKeys``, ``requiredKeysRedis``)

        Returns:
            Normalised DecoratorConfig
        """
        source_props = StageConfig.parse(options.get("sourceProps"), "sourceProps")
        redis_props = StageConfig.parse(options.get("redisProps"), "redisProps")
        output_props = StageConfig.parse(options.get("outputProps"), "outputProps")

        # Legacy flat options only fill fields the stage objects leave unset
        if source_props.keep is None and options.get("keepKeys") is not None:
            source_props = StageConfig(
                keep=parse_name_list(options["keepKeys"], "keepKeys"),
                required=source_props.required,
            )
        if source_props.required is None and options.get("requiredKeys") is not None:
            source_props = StageConfig(
                keep=source_props.keep,
                required=parse_name_list(options["requiredKeys"], "requiredKeys"),
            )
        if redis_props.required is None and options.get("requiredKeysRedis") is not None:
            redis_props = StageConfig(
                keep=redis_props.keep,
                required=parse_name_list(options["requiredKeysRedis"], "requiredKeysRedis"),
            )

        cache_size = options.get("cacheSize", DEFAULT_CACHE_SIZE)
        if isinstance(cache_size, str):
            try:
                cache_size = int(cache_size)
            except ValueError as e:
                raise ConfigurationError(f"cacheSize must be an integer, got {cache_size!r}") from e

        redis_url = options.get("redis") or DEFAULT_REDIS_URL
        if not isinstance(redis_url, str):
            raise ConfigurationError(f"redis must be a URL string, got {redis_url!r}")

        return cls(
            key=options.get("key"),
            source_props=source_props,
            redis_props=redis_props,
            output_props=output_props,
            redis_url=redis_url,
            use_hashes=parse_bool(options.get("hashes", False), "hashes"),
            cache_size=cache_size,
        )

    @classmethod
    def from_uri(cls, uri: str) -> Tuple["DecoratorConfig", str]:
        """
        Split a ``decorator+<scheme>://`` URI into decorator configuration
        and the URI of the upstream source.

        Args:
            uri: e.g. ``decorator+mbtiles:///data/nyc.mbtiles?key=BoroCode``

        Returns:
            Tuple of (config, source URI)
        """
        parts = urlsplit(uri)
        if not parts.scheme.startswith(URI_PREFIX):
            raise ConfigurationError(f"Not a decorator URI: {uri}")

        query = parse_qsl(parts.query, keep_blank_values=True)
        options: Dict[str, Any] = {}
        passthrough: List[Tuple[str, str]] = []
        for name, value in query:
            if name in DECORATOR_OPTIONS:
                options[name] = value
            else:
                passthrough.append((name, value))

        # Keep the "//" even when the authority is empty (mbtiles:///path)
        source_uri = f"{parts.scheme[len(URI_PREFIX):]}://{parts.netloc}{parts.path}"
        if passthrough:
            source_uri += "?" + urlencode(passthrough)
        if parts.fragment:
            source_uri += "#" + parts.fragment
        return cls.from_options(options), source_uri
