"""
Tile Sources

Upstream sources the decorator reads undecorated tiles from. A source
returns the tile payload exactly as stored (usually gzip-compressed
protobuf); decompression and decoding happen in the decorator.
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union
from urllib.parse import urlsplit

import structlog

from .errors import ConfigurationError, TileNotFoundError, UpstreamFetchError


class BaseTileSource(ABC):
    """Interface of an upstream tile source."""

    @abstractmethod
    def get_tile(self, z: int, x: int, y: int) -> bytes:
        """
        Fetch a stored tile.

        Raises:
            TileNotFoundError: no tile at these coordinates
            UpstreamFetchError: the source failed
        """

    @abstractmethod
    def get_info(self) -> Dict[str, Any]:
        """Return tileset metadata."""

    def close(self) -> None:
        """Release resources held by the source."""


class DirectoryTileSource(BaseTileSource):
    """Tiles stored as ``{root}/{z}/{x}/{y}.<ext>`` files."""

    DEFAULT_EXTENSIONS = ("pbf", "mvt", "pbfz")

    def __init__(self, root: Union[str, Path], extensions: Optional[Sequence[str]] = None):
        self.root = Path(root)
        self.extensions = tuple(extensions or self.DEFAULT_EXTENSIONS)
        if not self.root.is_dir():
            raise ConfigurationError(f"Tile directory does not exist: {self.root}")

    def get_tile(self, z: int, x: int, y: int) -> bytes:
        tile_dir = self.root / str(z) / str(x)
        for extension in self.extensions:
            tile_path = tile_dir / f"{y}.{extension}"
            if tile_path.exists():
                try:
                    return tile_path.read_bytes()
                except OSError as e:
                    raise UpstreamFetchError(f"Failed to read {tile_path}: {e}") from e
        raise TileNotFoundError(z, x, y)

    def get_info(self) -> Dict[str, Any]:
        zoom_levels = sorted(
            int(path.name) for path in self.root.iterdir()
            if path.is_dir() and path.name.isdigit()
        )
        info: Dict[str, Any] = {
            "name": self.root.name,
            "format": "pbf",
        }
        if zoom_levels:
            info["minzoom"] = zoom_levels[0]
            info["maxzoom"] = zoom_levels[-1]
        return info


class MBTilesTileSource(BaseTileSource):
    """Tiles stored in an MBTiles (SQLite) file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        if not self.path.is_file():
            raise ConfigurationError(f"MBTiles file does not exist: {self.path}")

        self.logger = structlog.get_logger(component="MBTilesTileSource", path=str(self.path))
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            f"file:{self.path}?mode=ro", uri=True, check_same_thread=False
        )

    def get_tile(self, z: int, x: int, y: int) -> bytes:
        # MBTiles rows are in TMS order (y flipped)
        tms_y = (2 ** z - 1) - y
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT tile_data FROM tiles WHERE zoom_level=? AND tile_column=? AND tile_row=?",
                    (z, x, tms_y),
                ).fetchone()
        except sqlite3.Error as e:
            raise UpstreamFetchError(f"MBTiles query failed: {e}") from e

        if row is None:
            raise TileNotFoundError(z, x, y)
        return bytes(row[0])

    def get_info(self) -> Dict[str, Any]:
        try:
            with self._lock:
                rows = self._conn.execute("SELECT name, value FROM metadata").fetchall()
        except sqlite3.Error as e:
            raise UpstreamFetchError(f"MBTiles metadata query failed: {e}") from e

        info: Dict[str, Any] = dict(rows)
        for name in ("minzoom", "maxzoom"):
            if name in info:
                try:
                    info[name] = int(info[name])
                except (TypeError, ValueError):
                    self.logger.warning("Ignoring non-integer metadata", name=name, value=info[name])
                    del info[name]
        return info

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def load_source(uri: str) -> BaseTileSource:
    """
    Open a tile source from a URI.

    Supported: ``file:///path/to/dir`` and ``mbtiles:///path/to/file.mbtiles``.
    """
    parts = urlsplit(uri)
    path = parts.netloc + parts.path

    if parts.scheme == "file":
        return DirectoryTileSource(path)
    if parts.scheme == "mbtiles":
        return MBTilesTileSource(path)
    raise ConfigurationError(f"Unsupported tile source scheme: {parts.scheme or uri}")
