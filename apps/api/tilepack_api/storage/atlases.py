"""Tileset raster storage: one PNG per atlas name in a directory."""

from __future__ import annotations

from functools import lru_cache
from logging import getLogger
from pathlib import Path
import os

from PIL import Image

from packages.tilepack_core.atlas.codec import DEFAULT_CODEC, RasterCodec
from packages.tilepack_core.atlas.errors import DecodeError, NotFoundError, StoreError, ValidationError
from packages.tilepack_core.atlas.stores import VALID_ATLAS_NAME_RE, AtlasStore, validate_atlas_name

logger = getLogger("tilepack_api.storage.atlases")


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]


class FileSystemAtlasStore(AtlasStore):
    def __init__(self, root_dir: Path, codec: RasterCodec = DEFAULT_CODEC) -> None:
        self.root_dir = root_dir
        self.codec = codec

    def path_for(self, name: str) -> Path:
        return self.root_dir / f"{validate_atlas_name(name)}.png"

    def read_bytes(self, name: str) -> bytes:
        # Index records may name tilesets no file can be stored under.
        try:
            path = self.path_for(name)
        except ValidationError as exc:
            raise NotFoundError(f"Tileset not found: {name}", error_code="atlas_not_found", atlas_name=name) from exc
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"Tileset not found: {name}", error_code="atlas_not_found", atlas_name=name) from exc
        except OSError as exc:
            raise StoreError(f"Could not read tileset '{name}': {exc}", error_code="atlas_io_error", atlas_name=name) from exc

    def read(self, name: str) -> Image.Image:
        data = self.read_bytes(name)
        try:
            return self.codec.decode(data)
        except DecodeError as exc:
            raise DecodeError(f"Tileset '{name}' is corrupt: {exc}", error_code=exc.error_code, atlas_name=name) from exc

    def write(self, name: str, image: Image.Image) -> None:
        path = self.path_for(name)
        data = self.codec.encode(image)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreError(
                f"Failed to save updated tileset image '{name}': {exc}",
                error_code="atlas_io_error",
                atlas_name=name,
            ) from exc
        logger.info("[STORAGE] Tileset written: name='%s', size=%dx%d, bytes=%d", name, image.width, image.height, len(data))

    def exists(self, name: str) -> bool:
        try:
            return self.path_for(name).is_file()
        except ValidationError:
            return False

    def list_names(self) -> list[str]:
        if not self.root_dir.is_dir():
            return []
        return sorted(
            p.stem for p in self.root_dir.glob("*.png") if p.is_file() and VALID_ATLAS_NAME_RE.fullmatch(p.stem)
        )


def _resolve_atlas_dir() -> Path:
    raw = os.environ.get("TILEPACK_ATLAS_DIR", str(WORKSPACE_ROOT / "assets" / "img" / "tiles"))
    p = Path(raw)
    if not p.is_absolute():
        p = (WORKSPACE_ROOT / p).resolve()
    return p


@lru_cache(maxsize=1)
def _backend() -> FileSystemAtlasStore:
    return FileSystemAtlasStore(_resolve_atlas_dir())


def get_atlas_store() -> FileSystemAtlasStore:
    return _backend()


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_storage() -> None:
    root = _backend().root_dir
    logger.info("[STORAGE] Tileset directory: '%s'", root)
    root.mkdir(parents=True, exist_ok=True)
