from __future__ import annotations

import os
from typing import Sequence, Tuple

from .errors import CorruptArchiveError


def validate_segments(segments: Sequence[str]) -> Tuple[str, ...]:
    """Check that ``segments`` form a safe relative archive path.

    Rules:
    - At least one segment
    - No empty, '.' or '..' segments
    - No separators or NUL inside a segment
    """
    if not segments:
        raise CorruptArchiveError("Archive path is empty")
    for seg in segments:
        if seg in ("", ".", ".."):
            raise CorruptArchiveError(f"Archive path has an invalid segment: {'/'.join(segments)!r}")
        if "/" in seg or "\x00" in seg:
            raise CorruptArchiveError(f"Archive path segment contains a separator: {seg!r}")
    return tuple(segments)


def segments_to_bytes(segments: Sequence[str]) -> bytes:
    # surrogateescape carries undecodable filesystem names through unchanged
    return "/".join(segments).encode("utf-8", "surrogateescape")


def bytes_to_segments(raw: bytes) -> Tuple[str, ...]:
    try:
        text = raw.decode("utf-8", "surrogateescape")
    except UnicodeDecodeError as exc:  # pragma: no cover - surrogateescape accepts any bytes
        raise CorruptArchiveError(f"Archive path is not decodable: {raw!r}") from exc
    return validate_segments(text.split("/"))


def relative_segments(path: str, root: str) -> Tuple[str, ...]:
    rel = os.path.relpath(path, start=root)
    return validate_segments(rel.split(os.sep))


def join_under(root: str, segments: Sequence[str]) -> str:
    """Join validated ``segments`` onto ``root`` and confirm the result stays inside it."""
    segments = validate_segments(segments)
    target = os.path.join(root, *segments)
    root_abs = os.path.abspath(root)
    if os.path.commonpath([root_abs, os.path.abspath(target)]) != root_abs:
        raise CorruptArchiveError(f"Archive path escapes destination: {'/'.join(segments)!r}")
    return target
