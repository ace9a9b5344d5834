"""Object index records: which tile slots belong to which placed graphic."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .errors import StoreError, ValidationError
from .frames import parse_frame_ranges

TILESET_KEY = "t"
FRAMES_KEY = "i"
WIDTH_KEY = "a"
HEIGHT_KEY = "b"
RESERVED_KEYS = (TILESET_KEY, FRAMES_KEY, WIDTH_KEY, HEIGHT_KEY)


def canonical_atlas_name(name: Any) -> str:
    """Strip whitespace and a trailing ``.png`` so every alias of a file compares equal."""
    cleaned = str(name or "").strip()
    if cleaned.lower().endswith(".png"):
        cleaned = cleaned[:-4]
    return cleaned


@dataclass
class TileIndexRecord:
    uid: str
    tileset_name: str
    frame_ranges: list[str]
    width_span: int
    height_span: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def frame_indices(self) -> list[int]:
        return parse_frame_ranges(self.frame_ranges)

    def min_frame(self) -> int:
        indices = self.frame_indices()
        return indices[0] if indices else -1

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.metadata)
        payload[TILESET_KEY] = self.tileset_name
        payload[FRAMES_KEY] = list(self.frame_ranges)
        payload[WIDTH_KEY] = int(self.width_span)
        payload[HEIGHT_KEY] = int(self.height_span)
        return payload

    @classmethod
    def from_payload(cls, uid: str, payload: Any) -> "TileIndexRecord":
        # objectData.json wraps each object in a one-element list; lists holding
        # one entry per tileset are not supported.
        if isinstance(payload, list):
            if len(payload) != 1:
                raise ValidationError(f"Record '{uid}' must wrap exactly one object", error_code="malformed_record")
            payload = payload[0]
        if not isinstance(payload, dict):
            raise ValidationError(f"Record '{uid}' is not an object", error_code="malformed_record")

        tileset = payload.get(TILESET_KEY)
        if isinstance(tileset, str):
            tileset = canonical_atlas_name(tileset)
        if not isinstance(tileset, str) or not tileset:
            raise ValidationError(f"Record '{uid}' has no tileset name", error_code="malformed_record")

        raw_frames = payload.get(FRAMES_KEY, [])
        if isinstance(raw_frames, (str, int)) and not isinstance(raw_frames, bool):
            raw_frames = [raw_frames]
        if not isinstance(raw_frames, list):
            raise ValidationError(f"Record '{uid}' frame ranges must be a list", error_code="malformed_record")
        # Validates the grammar; ints are normalised to their string form.
        parse_frame_ranges(raw_frames)
        frames = [str(token).strip() for token in raw_frames]

        try:
            width = int(payload.get(WIDTH_KEY, 0) or 0)
            height = int(payload.get(HEIGHT_KEY, 0) or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Record '{uid}' has non-numeric spans", error_code="malformed_record") from exc

        metadata = {k: v for k, v in payload.items() if k not in RESERVED_KEYS}
        return cls(
            uid=str(uid),
            tileset_name=tileset,
            frame_ranges=frames,
            width_span=width,
            height_span=height,
            metadata=metadata,
        )


def records_from_document(document: Any) -> dict[str, TileIndexRecord]:
    if not isinstance(document, dict):
        raise ValidationError("Object index must be a JSON object", error_code="malformed_index")
    return {str(uid): TileIndexRecord.from_payload(str(uid), payload) for uid, payload in document.items()}


def records_to_document(records: Mapping[str, TileIndexRecord]) -> dict[str, list[dict[str, Any]]]:
    return {uid: [record.to_payload()] for uid, record in records.items()}


def records_for_atlas(records: Iterable[TileIndexRecord], atlas_name: str) -> list[TileIndexRecord]:
    return [record for record in records if record.tileset_name == atlas_name]


def decode_index_document(document: Any) -> dict[str, TileIndexRecord]:
    """Parse a stored index; any malformed entry fails the whole read."""
    try:
        return records_from_document(document)
    except ValidationError as exc:
        raise StoreError(f"Object index is malformed: {exc}", error_code="malformed_index") from exc
