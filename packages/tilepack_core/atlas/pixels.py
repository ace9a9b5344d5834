"""Bounds-checked tile block copy between two RGBA rasters."""

from __future__ import annotations

from PIL import Image


def copy_tile(
    src: Image.Image,
    dst: Image.Image,
    src_x: int,
    src_y: int,
    dst_x: int,
    dst_y: int,
    tile_size: int,
) -> int:
    """Copy one ``tile_size`` square from ``src`` into ``dst``.

    Pixels whose source or destination coordinate falls outside its image
    are skipped, so partial edge tiles copy only their overlapping part and
    the destination keeps its existing bytes elsewhere. All four channels
    are replaced as-is, no alpha blending. Returns the number of pixels copied.
    """
    # Clip the tile square against both images at once.
    left = max(0, -src_x, -dst_x)
    top = max(0, -src_y, -dst_y)
    right = min(tile_size, src.width - src_x, dst.width - dst_x)
    bottom = min(tile_size, src.height - src_y, dst.height - dst_y)
    if right <= left or bottom <= top:
        return 0

    block = src.crop((src_x + left, src_y + top, src_x + right, src_y + bottom))
    if block.mode != dst.mode:
        block = block.convert(dst.mode)
    dst.paste(block, (dst_x + left, dst_y + top))
    return (right - left) * (bottom - top)
