"""In-memory tileset raster that grows and shrinks in whole tile rows."""

from __future__ import annotations

from logging import getLogger

from PIL import Image

from .config import DEFAULT_GEOMETRY, AtlasGeometry

logger = getLogger("tilepack_core.atlas.canvas")

TRANSPARENT = (0, 0, 0, 0)
MIN_ROWS = 1


def new_raster(width: int, height: int) -> Image.Image:
    return Image.new("RGBA", (width, height), TRANSPARENT)


class AtlasCanvas:
    """A named tileset image plus the geometry used to address its tiles."""

    def __init__(self, name: str, image: Image.Image, geometry: AtlasGeometry = DEFAULT_GEOMETRY) -> None:
        self.name = name
        self.geometry = geometry
        self.image = image if image.mode == "RGBA" else image.convert("RGBA")

    @classmethod
    def create(cls, name: str, geometry: AtlasGeometry = DEFAULT_GEOMETRY, rows: int = MIN_ROWS) -> "AtlasCanvas":
        rows = max(MIN_ROWS, int(rows))
        return cls(name, new_raster(geometry.width_px, geometry.height_px(rows)), geometry)

    @property
    def width_px(self) -> int:
        return self.image.width

    @property
    def height_px(self) -> int:
        return self.image.height

    @property
    def rows(self) -> int:
        return self.image.height // self.geometry.tile_size

    @property
    def capacity(self) -> int:
        return self.rows * self.geometry.tiles_per_row

    def tile_origin(self, index: int) -> tuple[int, int]:
        return self.geometry.tile_origin(index)

    def grow_height(self, new_row_count: int) -> bool:
        """Extend to ``new_row_count`` rows, keeping existing pixels in place."""
        if new_row_count <= self.rows:
            return False
        grown = new_raster(self.image.width, self.geometry.height_px(new_row_count))
        grown.paste(self.image, (0, 0))
        logger.debug("[CANVAS] Grew '%s' from %d to %d rows", self.name, self.rows, new_row_count)
        self.image = grown
        return True

    def ensure_index(self, index: int) -> bool:
        """Grow until tile ``index`` has a row to live in."""
        return self.grow_height(self.geometry.row_of(index) + 1)

    def shrink_to_fit(self, used_tile_count: int) -> bool:
        """Crop trailing rows no tile below ``used_tile_count`` needs."""
        target_rows = max(MIN_ROWS, self.geometry.rows_for(used_tile_count))
        if target_rows >= self.rows:
            return False
        logger.debug("[CANVAS] Shrinking '%s' from %d to %d rows", self.name, self.rows, target_rows)
        self.image = self.image.crop((0, 0, self.image.width, self.geometry.height_px(target_rows)))
        return True
