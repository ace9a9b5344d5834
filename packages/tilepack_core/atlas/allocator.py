"""Next free tile slot for an atlas."""

from __future__ import annotations

from typing import Iterable

from .records import TileIndexRecord


def next_free_index(records_for_atlas: Iterable[TileIndexRecord]) -> int:
    """Return one past the highest index referenced, or 0 for an unused atlas.

    Holes below the maximum are never reused; only a delete-triggered
    compaction closes them.
    """
    highest = -1
    for record in records_for_atlas:
        indices = record.frame_indices()
        if indices and indices[-1] > highest:
            highest = indices[-1]
    return highest + 1


def used_indices(records_for_atlas: Iterable[TileIndexRecord]) -> set[int]:
    used: set[int] = set()
    for record in records_for_atlas:
        used.update(record.frame_indices())
    return used
