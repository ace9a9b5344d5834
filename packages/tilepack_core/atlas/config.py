"""Tile geometry shared by every atlas component."""

from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_TILE_SIZE = 16
DEFAULT_TILES_PER_ROW = 150


@dataclass(frozen=True)
class AtlasGeometry:
    """Fixed tile size and row width for a family of tilesets.

    ``tile_origin`` is the only place where a tile index is turned into a
    pixel position; everything else goes through it.
    """

    tile_size: int = DEFAULT_TILE_SIZE
    tiles_per_row: int = DEFAULT_TILES_PER_ROW

    def __post_init__(self) -> None:
        if int(self.tile_size) <= 0 or int(self.tiles_per_row) <= 0:
            raise ValueError("tile_size and tiles_per_row must be positive")

    @property
    def width_px(self) -> int:
        return self.tiles_per_row * self.tile_size

    def tile_origin(self, index: int) -> tuple[int, int]:
        if index < 0:
            raise ValueError(f"Tile index must be non-negative: {index}")
        x = (index % self.tiles_per_row) * self.tile_size
        y = (index // self.tiles_per_row) * self.tile_size
        return x, y

    def row_of(self, index: int) -> int:
        return index // self.tiles_per_row

    def rows_for(self, tile_count: int) -> int:
        if tile_count <= 0:
            return 0
        return -(-tile_count // self.tiles_per_row)

    def height_px(self, rows: int) -> int:
        return rows * self.tile_size


DEFAULT_GEOMETRY = AtlasGeometry()


def _int_env(name: str, default: int) -> int:
    raw = str(os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def geometry_from_env() -> AtlasGeometry:
    tile_size = _int_env("TILEPACK_TILE_SIZE", DEFAULT_TILE_SIZE)
    tiles_per_row = _int_env("TILEPACK_TILES_PER_ROW", DEFAULT_TILES_PER_ROW)
    if (tile_size, tiles_per_row) == (DEFAULT_TILE_SIZE, DEFAULT_TILES_PER_ROW):
        return DEFAULT_GEOMETRY
    return AtlasGeometry(tile_size=tile_size, tiles_per_row=tiles_per_row)
