"""PNG encode/decode for tileset rasters and uploaded artwork."""

from __future__ import annotations

import base64
import binascii
import io
import re

from PIL import Image, UnidentifiedImageError

from .errors import DecodeError

_DATA_URL_PREFIX_RE = re.compile(r"^data:image/\w+;base64,", re.IGNORECASE)


class RasterCodec:
    """RGBA8 row-major rasters stored as PNG."""

    format = "PNG"

    def decode(self, data: bytes) -> Image.Image:
        if not data:
            raise DecodeError("Empty image data", error_code="empty_image")
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                return img.convert("RGBA")
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise DecodeError(f"Could not decode image: {exc}", error_code="corrupt_image") from exc

    def encode(self, image: Image.Image) -> bytes:
        buf = io.BytesIO()
        image.convert("RGBA").save(buf, format=self.format)
        return buf.getvalue()

    def decode_base64(self, payload: str) -> Image.Image:
        """Decode a base64 image, with or without a ``data:image/...`` prefix."""
        text = _DATA_URL_PREFIX_RE.sub("", str(payload or "").strip())
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError("Failed to decode base64 image data", error_code="invalid_base64") from exc
        return self.decode(raw)


DEFAULT_CODEC = RasterCodec()
