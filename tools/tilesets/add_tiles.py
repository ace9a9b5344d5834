#!/usr/bin/env python3
"""Pack the tiles of a PNG into a tileset as one new item."""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from PIL import Image

from packages.tilepack_core.atlas.engine import SaveItem
from packages.tilepack_core.atlas.errors import EngineError
from tools.tilesets._cli import add_store_arguments, engine_from_args, print_json


def grid_cells(image: Image.Image, tile_size: int, *, skip_empty: bool) -> tuple[list[int], list[int]]:
    columns = -(-image.width // tile_size)
    rows = -(-image.height // tile_size)
    a_coords: list[int] = []
    b_coords: list[int] = []
    alpha = image.getchannel("A")
    for row in range(rows):
        for col in range(columns):
            if skip_empty:
                box = (col * tile_size, row * tile_size, (col + 1) * tile_size, (row + 1) * tile_size)
                if alpha.crop(box).getbbox() is None:
                    continue
            a_coords.append(col)
            b_coords.append(row)
    return a_coords, b_coords


def main() -> int:
    parser = argparse.ArgumentParser(description="Add artwork from a PNG to a tileset")
    parser.add_argument("tileset", help="Tileset name, e.g. gen1")
    parser.add_argument("image_path", type=Path, help="Cropped source PNG")
    parser.add_argument("--name", default=None, help="Item name stored as metadata `n`")
    parser.add_argument(
        "--skip-empty",
        action="store_true",
        help="Leave fully transparent source cells out of the footprint",
    )
    add_store_arguments(parser)
    args = parser.parse_args()

    engine = engine_from_args(args)
    with Image.open(args.image_path) as src:
        image = src.convert("RGBA")

    a_coords, b_coords = grid_cells(image, engine.geometry.tile_size, skip_empty=args.skip_empty)
    metadata = {"n": args.name} if args.name else {}

    try:
        item = SaveItem(image=image, a_coords=a_coords, b_coords=b_coords, metadata=metadata)
        outcome = engine.save(args.tileset, [item])
    except EngineError as exc:
        print(f"ERROR: {exc}")
        return 1

    if not outcome.uids:
        for skipped in outcome.skipped:
            print(f"ERR: {skipped.reason}")
        return 1

    records = engine.records()
    print_json({uid: records[uid].to_payload() for uid in outcome.uids})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
