"""Process-wide packing engine wired to the configured storage backends."""

from __future__ import annotations

from functools import lru_cache
import logging

from packages.tilepack_core.atlas.config import geometry_from_env
from packages.tilepack_core.atlas.engine import AtlasPackingEngine
from packages.tilepack_core.atlas.locks import AtlasLockRegistry

from ..storage.atlases import get_atlas_store
from ..storage.atlases import reset_backend_cache_for_tests as reset_atlas_backend
from ..storage.object_index import get_object_index_store
from ..storage.object_index import reset_backend_cache_for_tests as reset_index_backend

logger = logging.getLogger("tilepack_api.packing")

# One lock set per process, kept across engine rebuilds.
_LOCKS = AtlasLockRegistry()


@lru_cache(maxsize=1)
def get_engine() -> AtlasPackingEngine:
    geometry = geometry_from_env()
    logger.info(
        "[PACKING] Building engine: tile_size=%d, tiles_per_row=%d",
        geometry.tile_size,
        geometry.tiles_per_row,
    )
    return AtlasPackingEngine(
        get_object_index_store(),
        get_atlas_store(),
        geometry=geometry,
        locks=_LOCKS,
    )


def reset_engine_for_tests() -> None:
    reset_index_backend()
    reset_atlas_backend()
    get_engine.cache_clear()
