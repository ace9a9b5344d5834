"""Tileset packing primitives: frame ranges, canvases, allocation and the engine."""

from .allocator import next_free_index
from .canvas import AtlasCanvas
from .codec import RasterCodec
from .config import DEFAULT_GEOMETRY, AtlasGeometry, geometry_from_env
from .engine import AtlasPackingEngine, BatchOutcome, SaveItem, SaveOutcome
from .errors import (
    DecodeError,
    EngineError,
    IndexConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .frames import parse_frame_ranges, serialize_frame_ranges
from .pixels import copy_tile
from .records import TileIndexRecord

__all__ = [
    "next_free_index",
    "AtlasCanvas",
    "RasterCodec",
    "DEFAULT_GEOMETRY",
    "AtlasGeometry",
    "geometry_from_env",
    "AtlasPackingEngine",
    "BatchOutcome",
    "SaveItem",
    "SaveOutcome",
    "DecodeError",
    "EngineError",
    "IndexConflictError",
    "NotFoundError",
    "StoreError",
    "ValidationError",
    "parse_frame_ranges",
    "serialize_frame_ranges",
    "copy_tile",
    "TileIndexRecord",
]
