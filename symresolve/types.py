"""A string that is either raw bytes or UTF-16 code units."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

_REPLACEMENT = "\ufffd"


def _decode_utf16_lossy(units: Iterable[int]) -> str:
    """Decode UTF-16 code units, replacing each unpaired surrogate with U+FFFD."""
    out: list[str] = []
    pending_high: int | None = None
    for unit in units:
        if pending_high is not None:
            if 0xDC00 <= unit <= 0xDFFF:
                code = 0x10000 + ((pending_high - 0xD800) << 10) + (unit - 0xDC00)
                out.append(chr(code))
                pending_high = None
                continue
            out.append(_REPLACEMENT)
            pending_high = None
        if 0xD800 <= unit <= 0xDBFF:
            pending_high = unit
        elif 0xDC00 <= unit <= 0xDFFF:
            out.append(_REPLACEMENT)
        else:
            out.append(chr(unit))
    if pending_high is not None:
        out.append(_REPLACEMENT)
    return "".join(out)


@dataclass(frozen=True)
class BytesOrWideString:
    """Either a byte string (typical on Unix) or a sequence of UTF-16 units.

    Passing ``bytes``-like data makes a byte string; passing an iterable of
    integers in ``0..=0xFFFF`` makes a wide string.
    """

    data: bytes | tuple[int, ...]

    def __post_init__(self) -> None:
        if isinstance(self.data, (bytes, bytearray, memoryview)):
            object.__setattr__(self, "data", bytes(self.data))
            return
        units = tuple(self.data)
        for unit in units:
            if not isinstance(unit, int) or not 0 <= unit <= 0xFFFF:
                raise ValueError(f"invalid UTF-16 code unit: {unit!r}")
        object.__setattr__(self, "data", units)

    @property
    def is_wide(self) -> bool:
        """True when this holds UTF-16 code units rather than bytes."""
        return not isinstance(self.data, bytes)

    def to_str_lossy(self) -> str:
        """Decode to text, replacing invalid sequences with U+FFFD."""
        if isinstance(self.data, bytes):
            return self.data.decode("utf-8", errors="replace")
        return _decode_utf16_lossy(self.data)

    def into_path(self) -> Path:
        """Return a filesystem path for this string."""
        if isinstance(self.data, bytes):
            return Path(os.fsdecode(self.data))
        return Path(_decode_utf16_lossy(self.data))

    def __str__(self) -> str:
        return self.to_str_lossy()