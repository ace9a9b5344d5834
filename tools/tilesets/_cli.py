"""Shared argument handling for the tileset command line tools."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from apps.api.tilepack_api.storage.atlases import FileSystemAtlasStore
from apps.api.tilepack_api.storage.object_index import JsonFileObjectIndexStore
from packages.tilepack_core.atlas.config import geometry_from_env
from packages.tilepack_core.atlas.engine import AtlasPackingEngine

ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ATLAS_DIR = ROOT / "assets" / "img" / "tiles"
DEFAULT_INDEX_PATH = ROOT / "assets" / "json" / "objectData.json"


def add_store_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--atlas-dir",
        type=Path,
        default=DEFAULT_ATLAS_DIR,
        help="Directory holding <tileset>.png files",
    )
    parser.add_argument(
        "--index",
        type=Path,
        default=DEFAULT_INDEX_PATH,
        help="Object index JSON file (objectData.json layout)",
    )


def engine_from_args(args: argparse.Namespace) -> AtlasPackingEngine:
    return AtlasPackingEngine(
        JsonFileObjectIndexStore(args.index),
        FileSystemAtlasStore(args.atlas_dir),
        geometry=geometry_from_env(),
    )


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))
