"""Describing the shared objects loaded into the current process."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from symresolve.maps import MapsEntry, MapsParseError, parse_maps

_WRAP = 1 << 64


@dataclass(frozen=True)
class LibrarySegment:
    """A segment's address as stated in the object file, and its size."""

    stated_virtual_memory_address: int
    length: int


@dataclass
class Library:
    """A loaded object: its path, segments and load bias."""

    name: str
    segments: list[LibrarySegment] = field(default_factory=list)
    bias: int = 0

    def contains(self, addr: int) -> bool:
        """Whether ``addr`` falls in any segment once relocated by the bias."""
        for segment in self.segments:
            start = (segment.stated_virtual_memory_address + self.bias) % _WRAP
            end = (start + segment.length) % _WRAP
            if start <= addr < end:
                return True
        return False


def libraries_from_maps(entries: Iterable[MapsEntry]) -> list[Library]:
    """Group file-backed map entries into libraries, in order of appearance.

    The bias of each library is taken from its first mapping's start
    address minus its file offset.
    """
    grouped: dict[str, list[MapsEntry]] = {}
    for entry in entries:
        name = entry.pathname
        if not name or name.startswith("["):
            continue
        grouped.setdefault(name, []).append(entry)
    libraries = []
    for name, group in grouped.items():
        first = group[0]
        bias = (first.address[0] - first.offset) % _WRAP
        segments = [
            LibrarySegment((e.address[0] - bias) % _WRAP, e.address[1] - e.address[0]) for e in group
        ]
        libraries.append(Library(name=name, segments=segments, bias=bias))
    return libraries


def native_libraries() -> list[Library]:
    """Return the libraries mapped into this process, or none if unknown."""
    try:
        return libraries_from_maps(parse_maps())
    except MapsParseError:
        return []