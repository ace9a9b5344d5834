"""Storage contracts the packing engine reads from and writes to."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ContextManager, Iterator, Mapping, Optional
import copy
import re
import threading

from PIL import Image

from .codec import DEFAULT_CODEC, RasterCodec
from .errors import IndexConflictError, NotFoundError, ValidationError
from .records import TileIndexRecord, canonical_atlas_name, decode_index_document, records_to_document

VALID_ATLAS_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,63}$")


def validate_atlas_name(name: str) -> str:
    cleaned = canonical_atlas_name(name)
    if not VALID_ATLAS_NAME_RE.fullmatch(cleaned):
        raise ValidationError(
            "Atlas name must match [a-zA-Z0-9][a-zA-Z0-9_-]{0,63}",
            error_code="invalid_atlas_name",
            atlas_name=cleaned or None,
        )
    return cleaned


class ObjectIndexStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def operation_lock(self) -> ContextManager[None]:
        """Exclusive hold across processes for one read-modify-write of the index and its rasters."""
        raise NotImplementedError

    @abstractmethod
    def revision(self) -> str:
        """Opaque token that changes on every successful ``put_all``."""
        raise NotImplementedError

    @abstractmethod
    def get_all(self) -> dict[str, TileIndexRecord]:
        raise NotImplementedError

    @abstractmethod
    def put_all(
        self,
        records: Mapping[str, TileIndexRecord],
        *,
        expected_revision: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class AtlasStore(ABC):
    @abstractmethod
    def read(self, name: str) -> Image.Image:
        """Raise ``NotFoundError`` for any name without a raster, addressable or not."""
        raise NotImplementedError

    @abstractmethod
    def write(self, name: str, image: Image.Image) -> None:
        raise NotImplementedError

    @abstractmethod
    def exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_names(self) -> list[str]:
        raise NotImplementedError


class InMemoryObjectIndexStore(ObjectIndexStore):
    """Keeps the serialized document so reads never alias engine state."""

    def __init__(self, document: Optional[dict] = None) -> None:
        self._document: dict = copy.deepcopy(document or {})
        self._revision = 0
        self._lock = threading.Lock()
        self._operation_lock = threading.RLock()

    def init_db(self) -> None:
        return None

    @contextmanager
    def operation_lock(self) -> Iterator[None]:
        with self._operation_lock:
            yield

    def revision(self) -> str:
        with self._lock:
            return str(self._revision)

    def get_all(self) -> dict[str, TileIndexRecord]:
        with self._lock:
            document = copy.deepcopy(self._document)
        return decode_index_document(document)

    def put_all(
        self,
        records: Mapping[str, TileIndexRecord],
        *,
        expected_revision: Optional[str] = None,
    ) -> None:
        with self._lock:
            if expected_revision is not None and expected_revision != str(self._revision):
                raise IndexConflictError("Object index changed since it was read", error_code="index_conflict")
            self._document = copy.deepcopy(records_to_document(records))
            self._revision += 1

    def document(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._document)


class InMemoryAtlasStore(AtlasStore):
    """Holds encoded PNG bytes per atlas name."""

    def __init__(self, codec: RasterCodec = DEFAULT_CODEC) -> None:
        self.codec = codec
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read(self, name: str) -> Image.Image:
        with self._lock:
            blob = self._blobs.get(name)
        if blob is None:
            raise NotFoundError(f"Tileset not found: {name}", error_code="atlas_not_found", atlas_name=name)
        return self.codec.decode(blob)

    def write(self, name: str, image: Image.Image) -> None:
        blob = self.codec.encode(image)
        with self._lock:
            self._blobs[name] = blob

    def write_bytes(self, name: str, blob: bytes) -> None:
        with self._lock:
            self._blobs[name] = blob

    def read_bytes(self, name: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(name)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._blobs

    def list_names(self) -> list[str]:
        with self._lock:
            return sorted(self._blobs)
