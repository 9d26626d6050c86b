"""Read-only file mappings and an arena that keeps buffers alive."""

from __future__ import annotations

import mmap
import os
from typing import Any


def map_file(path: str | os.PathLike[str], length: int | None = None, offset: int = 0) -> mmap.mmap | None:
    """Map ``length`` bytes of ``path`` starting at ``offset`` read-only.

    When ``length`` is ``None`` the rest of the file from ``offset`` is
    mapped. Returns ``None`` if the file cannot be opened or mapped; the
    offset must be a multiple of the allocation granularity.
    """
    try:
        with open(path, "rb") as handle:
            if length is None:
                length = os.fstat(handle.fileno()).st_size - offset
            if length <= 0 or offset < 0:
                return None
            return mmap.mmap(handle.fileno(), length, access=mmap.ACCESS_READ, offset=offset)
    except (OSError, ValueError, OverflowError):
        return None


class Stash:
    """Keeps allocated buffers and mappings alive as long as the stash is."""

    def __init__(self) -> None:
        self._buffers: list[bytearray] = []
        self._mmaps: list[Any] = []

    def allocate(self, size: int) -> bytearray:
        """Return a new zero-filled buffer of ``size`` bytes owned by the stash."""
        buffer = bytearray(size)
        self._buffers.append(buffer)
        return buffer

    def cache_mmap(self, data: Any) -> Any:
        """Keep ``data`` alive for the stash's lifetime and return it."""
        self._mmaps.append(data)
        return data