#!/usr/bin/env python3
"""Report slot usage and fragmentation for one tileset or all of them."""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packages.tilepack_core.atlas.errors import EngineError
from packages.tilepack_core.atlas.preview import render_item_preview
from tools.tilesets._cli import add_store_arguments, engine_from_args, print_json


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect tileset usage")
    parser.add_argument("tileset", nargs="?", default=None, help="Tileset name (default: all)")
    parser.add_argument("--preview-dir", type=Path, default=None, help="Write one preview PNG per item here")
    add_store_arguments(parser)
    args = parser.parse_args()

    engine = engine_from_args(args)
    names = [args.tileset] if args.tileset else engine.list_atlases()

    report = {}
    exit_code = 0
    for name in names:
        try:
            report[name] = engine.usage(name).to_dict()
        except EngineError as exc:
            print(f"ERR: {name}: {exc}", file=sys.stderr)
            exit_code = 1
            continue

        if args.preview_dir:
            args.preview_dir.mkdir(parents=True, exist_ok=True)
            canvas = engine.load_canvas(name)
            for record in engine.records_for(name):
                render_item_preview(record, canvas).save(args.preview_dir / f"{record.uid}.png")

    print_json(report)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
