"""Error taxonomy for atlas packing operations."""

from __future__ import annotations

from typing import Optional


class EngineError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, atlas_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.atlas_name = atlas_name


class ValidationError(EngineError):
    pass


class NotFoundError(EngineError):
    pass


class StoreError(EngineError):
    pass


class IndexConflictError(StoreError):
    """The object index changed between read and write."""


class DecodeError(EngineError):
    pass
