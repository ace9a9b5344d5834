"""Tileset packing endpoints: save artwork, move items between atlases, delete and compact."""

from __future__ import annotations

import io
import logging
from typing import Any, Optional

from fastapi import APIRouter
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

from packages.tilepack_core.atlas.codec import DEFAULT_CODEC
from packages.tilepack_core.atlas.engine import BatchOutcome, SaveItem
from packages.tilepack_core.atlas.errors import DecodeError
from packages.tilepack_core.atlas.records import TileIndexRecord

from ..services.packing import get_engine

logger = logging.getLogger("tilepack_api.tilesets")

router = APIRouter(prefix="/api/v1/tilesets", tags=["tilesets"])


class SaveTilesetItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data: Optional[str] = Field(
        default=None,
        alias="imageData",
        description="Base64 PNG of the cropped artwork, optionally as a data: URL",
    )
    new_object: dict[str, Any] = Field(
        default_factory=dict,
        alias="newObject",
        description="Item metadata plus footprint arrays `a` (columns) and `b` (rows)",
    )


class SaveTilesetRequest(BaseModel):
    items: list[SaveTilesetItemRequest] = Field(default_factory=list)


class MoveItemsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_ids: list[str] = Field(alias="itemIds")
    target: str = Field(description="Destination tileset name")


class DeleteItemsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_ids: list[str] = Field(default_factory=list, alias="itemIds")


def _record_out(record: TileIndexRecord) -> dict[str, Any]:
    out = record.to_payload()
    out["uid"] = record.uid
    return out


def _png_response(image) -> Response:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


def _batch_out(outcome: BatchOutcome) -> dict[str, Any]:
    return {
        "ok": outcome.ok,
        "uids": outcome.uids,
        "committed_atlases": outcome.committed_atlases,
        "failed": {
            name: {"error_code": exc.error_code, "detail": str(exc)} for name, exc in outcome.failed.items()
        },
        "missing_uids": outcome.missing_uids,
    }


@router.get("")
@router.get("/")
def list_tilesets() -> dict[str, Any]:
    logger.info("[TILESETS] List tilesets request")
    engine = get_engine()
    records = engine.records()
    counts: dict[str, int] = {}
    for record in records.values():
        counts[record.tileset_name] = counts.get(record.tileset_name, 0) + 1
    names = sorted(set(engine.list_atlases()) | set(counts))
    tilesets = [{"name": name, "item_count": counts.get(name, 0)} for name in names]
    return {"count": len(tilesets), "tilesets": tilesets}


@router.get("/items/{uid}/preview")
def item_preview(uid: str) -> Response:
    logger.info("[TILESETS] Item preview request: uid='%s'", uid)
    return _png_response(get_engine().preview(uid))


@router.get("/{atlas_name}")
def tileset_usage(atlas_name: str) -> dict[str, Any]:
    logger.info("[TILESETS] Usage request: atlas='%s'", atlas_name)
    return get_engine().usage(atlas_name).to_dict()


@router.get("/{atlas_name}/image")
def tileset_image(atlas_name: str) -> Response:
    return _png_response(get_engine().load_canvas(atlas_name).image)


@router.get("/{atlas_name}/items")
def tileset_items(atlas_name: str) -> dict[str, Any]:
    records = get_engine().records_for(atlas_name)
    return {"count": len(records), "items": [_record_out(r) for r in records]}


@router.post("/{atlas_name}/items")
def save_tileset_items(atlas_name: str, req: SaveTilesetRequest) -> dict[str, Any]:
    logger.info("[TILESETS] Save request: atlas='%s', items=%d", atlas_name, len(req.items))
    engine = get_engine()

    # Undecodable uploads are skipped like any other malformed item.
    skipped: list[dict[str, Any]] = []
    positions: list[int] = []
    save_items: list[SaveItem] = []
    for position, item in enumerate(req.items):
        image = None
        if item.image_data:
            try:
                image = DEFAULT_CODEC.decode_base64(item.image_data)
            except DecodeError as exc:
                logger.warning("[TILESETS] Item %d image rejected: %s", position, exc)
                skipped.append({"position": position, "reason": str(exc)})
                continue
        metadata = dict(item.new_object)
        a_coords = metadata.pop("a", None)
        b_coords = metadata.pop("b", None)
        positions.append(position)
        save_items.append(SaveItem(image=image, a_coords=a_coords, b_coords=b_coords, metadata=metadata))

    outcome = engine.save(atlas_name, save_items)
    skipped.extend({"position": positions[s.position], "reason": s.reason} for s in outcome.skipped)
    skipped.sort(key=lambda s: s["position"])

    records = engine.records()
    saved = [_record_out(records[uid]) for uid in outcome.uids if uid in records]
    logger.info(
        "[TILESETS] Save complete: atlas='%s', saved=%d, skipped=%d",
        outcome.atlas_name,
        len(saved),
        len(skipped),
    )
    return {
        "ok": True,
        "atlas": outcome.atlas_name,
        "uids": outcome.uids,
        "items": saved,
        "skipped": skipped,
    }


@router.post("/move")
def move_items(req: MoveItemsRequest) -> dict[str, Any]:
    logger.info("[TILESETS] Move request: items=%d, target='%s'", len(req.item_ids), req.target)
    outcome = get_engine().move(req.item_ids, req.target)
    return _batch_out(outcome)


@router.post("/delete")
def delete_items(req: DeleteItemsRequest) -> dict[str, Any]:
    logger.info("[TILESETS] Delete request: items=%d", len(req.item_ids))
    outcome = get_engine().delete(req.item_ids)
    return _batch_out(outcome)
