from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .constants import CHECKSUM_SIZE
from .pathutil import relative_segments, validate_segments


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRecord:
    """One stored file: where it lives, how long it is, what it hashes to."""

    relative_path: Tuple[str, ...]
    size: int
    checksum: bytes

    def __post_init__(self):
        validate_segments(self.relative_path)
        if self.size < 0:
            raise ValueError("FileRecord size must be non-negative")
        if len(self.checksum) != CHECKSUM_SIZE:
            raise ValueError(f"FileRecord checksum must be {CHECKSUM_SIZE} bytes")

    @property
    def path(self) -> str:
        return "/".join(self.relative_path)


@dataclass(frozen=True)
class SourceFile:
    relative_path: Tuple[str, ...]
    fs_path: str


def enumerate_files(root: str, exclude: Optional[str] = None) -> List[SourceFile]:
    """List every regular file under ``root`` ordered by its path segments.

    Symbolic links (files and directories) and other non-regular entries
    are skipped. ``exclude`` names one filesystem path to leave out,
    typically the archive being written.
    """
    exclude_real = os.path.realpath(exclude) if exclude else None
    found: List[SourceFile] = []

    def _on_error(exc: OSError):
        raise exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
        # prune symlinked directories so the walk never leaves the tree
        kept = []
        for d in dirnames:
            if os.path.islink(os.path.join(dirpath, d)):
                logger.debug("skipping symlinked directory %s", os.path.join(dirpath, d))
                continue
            kept.append(d)
        dirnames[:] = kept
        for fn in filenames:
            full = os.path.join(dirpath, fn)
            st = os.lstat(full)
            if not stat.S_ISREG(st.st_mode):
                logger.debug("skipping non-regular file %s", full)
                continue
            if exclude_real is not None and os.path.realpath(full) == exclude_real:
                logger.debug("skipping destination archive %s", full)
                continue
            found.append(SourceFile(relative_segments(full, root), full))
    found.sort(key=lambda sf: sf.relative_path)
    return found
