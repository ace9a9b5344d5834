"""Read-only views over an atlas: item previews and slot usage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from PIL import Image

from .allocator import next_free_index, used_indices
from .canvas import AtlasCanvas, new_raster
from .pixels import copy_tile
from .records import TileIndexRecord, records_for_atlas


def render_item_preview(record: TileIndexRecord, canvas: AtlasCanvas) -> Image.Image:
    """Lay an item's frames out row-major over its ``width_span`` columns."""
    geometry = canvas.geometry
    size = geometry.tile_size
    frames = record.frame_indices()
    columns = max(1, int(record.width_span))
    rows = max(int(record.height_span), -(-len(frames) // columns), 1)
    out = new_raster(columns * size, rows * size)
    for position, frame in enumerate(frames):
        src_x, src_y = geometry.tile_origin(frame)
        dst_x = (position % columns) * size
        dst_y = (position // columns) * size
        copy_tile(canvas.image, out, src_x, src_y, dst_x, dst_y, size)
    return out


@dataclass(frozen=True)
class AtlasUsage:
    name: str
    item_count: int
    live_tiles: int
    next_free_index: int
    holes: tuple[int, ...]
    rows: int
    required_rows: int
    capacity: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "item_count": self.item_count,
            "live_tiles": self.live_tiles,
            "next_free_index": self.next_free_index,
            "hole_count": len(self.holes),
            "holes": list(self.holes),
            "rows": self.rows,
            "required_rows": self.required_rows,
            "capacity": self.capacity,
            "fragmented": bool(self.holes),
        }


def atlas_usage(records: Iterable[TileIndexRecord], canvas: AtlasCanvas) -> AtlasUsage:
    mine = records_for_atlas(records, canvas.name)
    used = used_indices(mine)
    next_index = next_free_index(mine)
    holes = tuple(i for i in range(next_index) if i not in used)
    return AtlasUsage(
        name=canvas.name,
        item_count=len(mine),
        live_tiles=len(used),
        next_free_index=next_index,
        holes=holes,
        rows=canvas.rows,
        required_rows=canvas.geometry.rows_for(next_index),
        capacity=canvas.capacity,
    )
