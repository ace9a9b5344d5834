"""Save / move / delete orchestration over tileset rasters and the object index.

Each operation reads the whole object index plus the rasters it touches,
mutates them in memory and writes them back. For the whole of that
cycle the engine holds its in-process locks and the index store's
``operation_lock``, which excludes other processes sharing the same stores.
The index write is also a compare-and-swap against the revision read at the
start, so a writer that bypasses the lock surfaces as ``IndexConflictError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Callable, Iterable, Optional, Sequence
import uuid

from PIL import Image

from .allocator import next_free_index
from .canvas import AtlasCanvas
from .config import DEFAULT_GEOMETRY, AtlasGeometry
from .errors import DecodeError, EngineError, NotFoundError, StoreError, ValidationError
from .frames import serialize_frame_ranges
from .locks import AtlasLockRegistry
from .pixels import copy_tile
from .preview import AtlasUsage, atlas_usage, render_item_preview
from .records import RESERVED_KEYS, TileIndexRecord, records_for_atlas
from .stores import AtlasStore, ObjectIndexStore, validate_atlas_name

logger = getLogger("tilepack_core.atlas.engine")

# Read failures that abort a single atlas without failing the whole batch.
ATLAS_READ_ERRORS = (NotFoundError, DecodeError, StoreError)


@dataclass
class SaveItem:
    """Artwork to add: a cropped source image and its footprint cells.

    ``a_coords[k]``/``b_coords[k]`` are the column/row of the k-th cell in
    source-tile units. ``metadata`` is stored on the record as-is, minus the
    reserved record keys.
    """

    image: Optional[Image.Image]
    a_coords: Optional[Sequence[Any]]
    b_coords: Optional[Sequence[Any]]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SkippedItem:
    position: int
    reason: str


@dataclass
class SaveOutcome:
    atlas_name: str
    uids: list[str] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)


@dataclass
class BatchOutcome:
    uids: list[str] = field(default_factory=list)
    committed_atlases: list[str] = field(default_factory=list)
    failed: dict[str, EngineError] = field(default_factory=dict)
    missing_uids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def place_cells(
    source: Image.Image,
    source_origins: Iterable[tuple[int, int]],
    target: AtlasCanvas,
    allocator: int,
) -> tuple[list[int], int]:
    """Copy each source cell into the next free target slot.

    Returns the slot indices used and the advanced allocator value.
    """
    tile_size = target.geometry.tile_size
    placed: list[int] = []
    for src_x, src_y in source_origins:
        target.ensure_index(allocator)
        dst_x, dst_y = target.tile_origin(allocator)
        copy_tile(source, target.image, src_x, src_y, dst_x, dst_y, tile_size)
        placed.append(allocator)
        allocator += 1
    return placed, allocator


def _footprint(item: SaveItem) -> list[tuple[int, int]]:
    if item.image is None:
        raise ValidationError("missing image", error_code="missing_image")
    if item.a_coords is None or item.b_coords is None:
        raise ValidationError("missing footprint coordinates", error_code="missing_footprint")
    if isinstance(item.a_coords, (str, bytes)) or isinstance(item.b_coords, (str, bytes)):
        raise ValidationError("footprint coordinates must be lists", error_code="invalid_footprint")
    if len(item.a_coords) != len(item.b_coords):
        raise ValidationError("footprint coordinate lists differ in length", error_code="invalid_footprint")
    if not item.a_coords:
        raise ValidationError("empty footprint", error_code="empty_footprint")

    cells: list[tuple[int, int]] = []
    for a, b in zip(item.a_coords, item.b_coords):
        if isinstance(a, bool) or isinstance(b, bool):
            raise ValidationError("footprint coordinates must be integers", error_code="invalid_footprint")
        try:
            col, row = int(a), int(b)
        except (TypeError, ValueError) as exc:
            raise ValidationError("footprint coordinates must be integers", error_code="invalid_footprint") from exc
        if col < 0 or row < 0:
            raise ValidationError("footprint coordinates must be non-negative", error_code="invalid_footprint")
        cells.append((col, row))
    return cells


def _dedupe(ids: Iterable[Any]) -> list[str]:
    return list(dict.fromkeys(str(uid) for uid in ids))


class AtlasPackingEngine:
    def __init__(
        self,
        index_store: ObjectIndexStore,
        atlas_store: AtlasStore,
        *,
        geometry: AtlasGeometry = DEFAULT_GEOMETRY,
        locks: Optional[AtlasLockRegistry] = None,
        uid_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.index_store = index_store
        self.atlas_store = atlas_store
        self.geometry = geometry
        self.locks = locks or AtlasLockRegistry()
        self._uid_factory = uid_factory or (lambda: str(uuid.uuid4()))

    # -- reads -------------------------------------------------------------

    def list_atlases(self) -> list[str]:
        return self.atlas_store.list_names()

    def records(self) -> dict[str, TileIndexRecord]:
        with self.locks.hold_index():
            return self.index_store.get_all()

    def records_for(self, atlas_name: str) -> list[TileIndexRecord]:
        name = validate_atlas_name(atlas_name)
        return records_for_atlas(self.records().values(), name)

    def get_record(self, uid: str) -> TileIndexRecord:
        record = self.records().get(str(uid))
        if record is None:
            raise NotFoundError(f"Item not found: {uid}", error_code="item_not_found")
        return record

    def load_canvas(self, atlas_name: str) -> AtlasCanvas:
        name = validate_atlas_name(atlas_name)
        with self.locks.hold([name]):
            return AtlasCanvas(name, self.atlas_store.read(name), self.geometry)

    def usage(self, atlas_name: str) -> AtlasUsage:
        canvas = self.load_canvas(atlas_name)
        return atlas_usage(self.records().values(), canvas)

    def preview(self, uid: str) -> Image.Image:
        record = self.get_record(uid)
        return render_item_preview(record, self.load_canvas(record.tileset_name))

    # -- save --------------------------------------------------------------

    def save(self, atlas_name: str, items: Sequence[SaveItem]) -> SaveOutcome:
        name = validate_atlas_name(atlas_name)
        outcome = SaveOutcome(atlas_name=name)
        logger.info("[ENGINE] Save request: atlas='%s', items=%d", name, len(items))

        prepared: list[tuple[SaveItem, list[tuple[int, int]]]] = []
        for position, item in enumerate(items):
            try:
                prepared.append((item, _footprint(item)))
            except ValidationError as exc:
                logger.warning("[ENGINE] Skipping save item %d for atlas '%s': %s", position, name, exc)
                outcome.skipped.append(SkippedItem(position=position, reason=str(exc)))

        if not prepared:
            logger.info("[ENGINE] Save produced no placements: atlas='%s', skipped=%d", name, len(outcome.skipped))
            return outcome

        with self.locks.hold_index(), self.index_store.operation_lock(), self.locks.hold([name]):
            revision = self.index_store.revision()
            records = self.index_store.get_all()
            canvas = self._load_or_create(name)
            allocator = next_free_index(records_for_atlas(records.values(), name))
            logger.debug("[ENGINE] Save allocator start: atlas='%s', index=%d", name, allocator)

            size = self.geometry.tile_size
            for item, cells in prepared:
                origins = [(col * size, row * size) for col, row in cells]
                placed, allocator = place_cells(item.image, origins, canvas, allocator)
                uid = self._new_uid(records)
                cols = [col for col, _ in cells]
                rows = [row for _, row in cells]
                records[uid] = TileIndexRecord(
                    uid=uid,
                    tileset_name=name,
                    frame_ranges=serialize_frame_ranges(placed),
                    width_span=max(cols) - min(cols) + 1,
                    height_span=max(rows) - min(rows) + 1,
                    metadata={k: v for k, v in item.metadata.items() if k not in RESERVED_KEYS},
                )
                outcome.uids.append(uid)

            # Raster first: orphaned tiles past the index maximum are simply
            # overwritten by the next save if the index write fails.
            self.atlas_store.write(name, canvas.image)
            self.index_store.put_all(records, expected_revision=revision)

        logger.info(
            "[ENGINE] Save complete: atlas='%s', saved=%d, skipped=%d, next_index=%d, rows=%d",
            name,
            len(outcome.uids),
            len(outcome.skipped),
            allocator,
            canvas.rows,
        )
        return outcome

    # -- move --------------------------------------------------------------

    def move(self, item_ids: Sequence[str], target_atlas_name: str) -> BatchOutcome:
        ids = _dedupe(item_ids)
        if not ids:
            raise ValidationError("Move requires at least one item id", error_code="empty_item_ids")
        target = validate_atlas_name(target_atlas_name)
        outcome = BatchOutcome()
        logger.info("[ENGINE] Move request: items=%d, target='%s'", len(ids), target)

        with self.locks.hold_index(), self.index_store.operation_lock():
            revision = self.index_store.revision()
            records = self.index_store.get_all()

            missing = [uid for uid in ids if uid not in records]
            if missing:
                raise NotFoundError(f"Items not found: {', '.join(missing)}", error_code="item_not_found")

            groups: dict[str, list[TileIndexRecord]] = {}
            for uid in ids:
                record = records[uid]
                if record.tileset_name == target:
                    logger.debug("[ENGINE] Item '%s' already on '%s'; leaving in place", uid, target)
                    continue
                groups.setdefault(record.tileset_name, []).append(record)

            if not groups:
                logger.info("[ENGINE] Move had nothing to do: target='%s'", target)
                return outcome

            with self.locks.hold([target, *groups]):
                canvas = self._load_or_create(target)
                allocator = next_free_index(records_for_atlas(records.values(), target))
                logger.debug("[ENGINE] Move allocator start: target='%s', index=%d", target, allocator)

                new_ranges: dict[str, list[str]] = {}
                for source_name, group in groups.items():
                    try:
                        source = self.atlas_store.read(source_name)
                    except ATLAS_READ_ERRORS as exc:
                        logger.warning("[ENGINE] Move aborted for source '%s': %s", source_name, exc)
                        outcome.failed[source_name] = exc
                        continue

                    for record in group:
                        origins = [self.geometry.tile_origin(i) for i in record.frame_indices()]
                        placed, allocator = place_cells(source, origins, canvas, allocator)
                        new_ranges[record.uid] = serialize_frame_ranges(placed)
                    outcome.committed_atlases.append(source_name)

                if not new_ranges:
                    raise next(iter(outcome.failed.values()))

                self.atlas_store.write(target, canvas.image)
                for uid, ranges in new_ranges.items():
                    records[uid].tileset_name = target
                    records[uid].frame_ranges = ranges
                self.index_store.put_all(records, expected_revision=revision)

        outcome.uids = list(new_ranges)
        outcome.committed_atlases.append(target)
        logger.info(
            "[ENGINE] Move complete: target='%s', moved=%d, failed_sources=%d, next_index=%d",
            target,
            len(outcome.uids),
            len(outcome.failed),
            allocator,
        )
        return outcome

    # -- delete ------------------------------------------------------------

    def delete(self, item_ids: Sequence[str]) -> BatchOutcome:
        ids = _dedupe(item_ids)
        outcome = BatchOutcome()
        if not ids:
            logger.info("[ENGINE] Delete called with no ids; nothing to do")
            return outcome
        logger.info("[ENGINE] Delete request: items=%d", len(ids))

        with self.locks.hold_index(), self.index_store.operation_lock():
            revision = self.index_store.revision()
            records = self.index_store.get_all()

            outcome.missing_uids = [uid for uid in ids if uid not in records]
            doomed = {uid for uid in ids if uid in records}
            if not doomed:
                logger.info("[ENGINE] Delete matched no records: missing=%d", len(outcome.missing_uids))
                return outcome

            affected = sorted({records[uid].tileset_name for uid in doomed})
            with self.locks.hold(affected):
                previous: dict[str, Image.Image] = {}
                rebuilt: dict[str, AtlasCanvas] = {}
                new_ranges: dict[str, list[str]] = {}

                for name in affected:
                    try:
                        old = self.atlas_store.read(name)
                    except ATLAS_READ_ERRORS as exc:
                        logger.warning("[ENGINE] Delete aborted for atlas '%s': %s", name, exc)
                        outcome.failed[name] = exc
                        continue

                    survivors = [
                        r for r in records_for_atlas(records.values(), name) if r.uid not in doomed
                    ]
                    # Ties on the minimum frame fall back to uid order.
                    survivors.sort(key=lambda r: (r.min_frame(), r.uid))

                    fresh = AtlasCanvas.create(name, self.geometry)
                    allocator = 0
                    for record in survivors:
                        origins = [self.geometry.tile_origin(i) for i in record.frame_indices()]
                        placed, allocator = place_cells(old, origins, fresh, allocator)
                        new_ranges[record.uid] = serialize_frame_ranges(placed)
                    fresh.shrink_to_fit(allocator)

                    logger.debug(
                        "[ENGINE] Compacted atlas '%s': survivors=%d, tiles=%d, rows=%d",
                        name,
                        len(survivors),
                        allocator,
                        fresh.rows,
                    )
                    previous[name] = old
                    rebuilt[name] = fresh

                if not rebuilt:
                    raise next(iter(outcome.failed.values()))

                written = self._write_rasters(rebuilt, previous)

                removed = [uid for uid in ids if uid in doomed and records[uid].tileset_name in rebuilt]
                for uid in removed:
                    del records[uid]
                for uid, ranges in new_ranges.items():
                    records[uid].frame_ranges = ranges

                try:
                    self.index_store.put_all(records, expected_revision=revision)
                except StoreError:
                    logger.error("[ENGINE] Index write failed after compaction; restoring %d rasters", len(written))
                    self._restore_rasters(written, previous)
                    raise

        outcome.uids = removed
        outcome.committed_atlases = list(rebuilt)
        logger.info(
            "[ENGINE] Delete complete: removed=%d, compacted=%d, failed=%d, missing=%d",
            len(outcome.uids),
            len(outcome.committed_atlases),
            len(outcome.failed),
            len(outcome.missing_uids),
        )
        return outcome

    # -- helpers -----------------------------------------------------------

    def _load_or_create(self, name: str) -> AtlasCanvas:
        try:
            image = self.atlas_store.read(name)
        except NotFoundError:
            logger.info("[ENGINE] Creating new atlas '%s'", name)
            return AtlasCanvas.create(name, self.geometry)
        return AtlasCanvas(name, image, self.geometry)

    def _new_uid(self, records: dict[str, TileIndexRecord]) -> str:
        uid = self._uid_factory()
        while uid in records:
            uid = self._uid_factory()
        return uid

    def _write_rasters(self, rebuilt: dict[str, AtlasCanvas], previous: dict[str, Image.Image]) -> list[str]:
        written: list[str] = []
        try:
            for name, canvas in rebuilt.items():
                self.atlas_store.write(name, canvas.image)
                written.append(name)
        except StoreError:
            logger.error("[ENGINE] Raster write failed; restoring %d rasters", len(written))
            self._restore_rasters(written, previous)
            raise
        return written

    def _restore_rasters(self, names: Iterable[str], previous: dict[str, Image.Image]) -> None:
        for name in names:
            try:
                self.atlas_store.write(name, previous[name])
            except StoreError as exc:
                logger.error("[ENGINE] Could not restore atlas '%s': %s", name, exc)
