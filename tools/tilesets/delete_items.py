#!/usr/bin/env python3
"""Delete items and compact the tilesets they lived on."""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packages.tilepack_core.atlas.errors import EngineError
from tools.tilesets._cli import add_store_arguments, engine_from_args, print_json


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete tileset items and defragment their tilesets")
    parser.add_argument("item_ids", nargs="*", help="Item uids to delete")
    add_store_arguments(parser)
    args = parser.parse_args()

    engine = engine_from_args(args)
    try:
        outcome = engine.delete(args.item_ids)
    except EngineError as exc:
        print(f"ERROR: {exc}")
        return 1

    for uid in outcome.missing_uids:
        print(f"WARN: no such item: {uid}", file=sys.stderr)
    print_json(
        {
            "deleted": outcome.uids,
            "compacted_atlases": outcome.committed_atlases,
            "failed": {name: str(exc) for name, exc in outcome.failed.items()},
        }
    )
    return 0 if outcome.ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
