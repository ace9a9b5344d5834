"""Frame range strings (``"12"``, ``"40-57"``) <-> flat tile index lists."""

from __future__ import annotations

import re
from typing import Any, Iterable

from .errors import ValidationError

RANGE_TOKEN_RE = re.compile(r"^\d+(-\d+)?$")


def _parse_token(token: Any) -> tuple[int, int]:
    if isinstance(token, bool):
        raise ValidationError(f"Invalid frame range token: {token!r}", error_code="invalid_frame_range")
    if isinstance(token, int):
        text = str(token)
    elif isinstance(token, str):
        text = token.strip()
    else:
        raise ValidationError(f"Invalid frame range token: {token!r}", error_code="invalid_frame_range")

    if not RANGE_TOKEN_RE.fullmatch(text):
        raise ValidationError(f"Invalid frame range token: {token!r}", error_code="invalid_frame_range")

    start_s, _, end_s = text.partition("-")
    start = int(start_s)
    end = int(end_s) if end_s else start
    if start > end:
        raise ValidationError(f"Descending frame range: {text}", error_code="invalid_frame_range")
    return start, end


def parse_frame_ranges(ranges: Iterable[Any]) -> list[int]:
    """Expand range tokens into a sorted list of unique tile indices."""
    indices: set[int] = set()
    for token in ranges:
        start, end = _parse_token(token)
        indices.update(range(start, end + 1))
    return sorted(indices)


def serialize_frame_ranges(indices: Iterable[int]) -> list[str]:
    """Collapse ascending unique indices into the minimal list of range tokens."""
    tokens: list[str] = []
    run_start: int | None = None
    previous: int | None = None

    for index in indices:
        value = int(index)
        if previous is not None and value <= previous:
            raise ValidationError("Frame indices must be ascending and unique", error_code="invalid_frame_range")
        if run_start is None:
            run_start = value
        elif value != previous + 1:
            tokens.append(_token(run_start, previous))
            run_start = value
        previous = value

    if run_start is not None and previous is not None:
        tokens.append(_token(run_start, previous))
    return tokens


def _token(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"


def frame_count(ranges: Iterable[Any]) -> int:
    return len(parse_frame_ranges(ranges))
