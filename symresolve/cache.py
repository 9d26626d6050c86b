"""Cache of loaded object files used to turn addresses into symbol names."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from symresolve.coff import CoffObject
from symresolve.elf import (
    ElfObject,
    load_dwarf_package,
    locate_build_id,
)
from symresolve.libraries import Library, native_libraries
from symresolve.lru import Lru
from symresolve.macho import MachObject, find_header, load_dsym
from symresolve.stash import Stash, map_file

MAPPINGS_CACHE_SIZE = 4
_WRAP = 1 << 64


@dataclass(frozen=True)
class ResolvedSymbol:
    """What was learned about one address: a name and, when known, a location."""

    name: bytes | None = None
    addr: int | None = None
    filename: str | None = None
    lineno: int | None = None
    colno: int | None = None


@dataclass
class Mapping:
    """A parsed object file together with the buffers it borrows from."""

    object: Any
    stash: Stash = field(default_factory=Stash)
    data: Any = None
    sup: Any = None
    dwp: Any = None

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> Mapping | None:
        """Map and parse the object file at ``path``.

        ELF files prefer an external debug file found by build ID or
        ``.gnu_debuglink``; Mach-O files prefer a matching ``.dSYM`` bundle.
        Returns ``None`` if the file cannot be read or is not understood.
        """
        mapped = map_file(path)
        if mapped is None:
            return None
        magic = bytes(mapped[:4])
        if magic == b"\x7fELF":
            return cls._from_elf(Path(path), mapped)
        if magic[:2] == b"MZ":
            obj = CoffObject.parse(mapped)
            return None if obj is None else cls(object=obj, data=mapped)
        return cls._from_macho(Path(path), mapped)

    @classmethod
    def _from_elf(cls, path: Path, mapped: Any) -> Mapping | None:
        obj = ElfObject.parse(mapped)
        if obj is None:
            return None

        build_id = obj.build_id()
        if build_id is not None:
            debug_path = locate_build_id(build_id)
            if debug_path is not None:
                mapping = cls._new_debug(path, debug_path, None)
                if mapping is not None:
                    return mapping

        link = obj.gnu_debuglink_path(path)
        if link is not None:
            debug_path, crc = link
            mapping = cls._new_debug(path, debug_path, crc)
            if mapping is not None:
                return mapping

        stash = Stash()
        dwp = load_dwarf_package(path, stash)
        return cls(object=obj, stash=stash, data=mapped, dwp=dwp)

    @classmethod
    def _new_debug(cls, original: Path, path: Path, crc: int | None) -> Mapping | None:
        mapped = map_file(path)
        if mapped is None:
            return None
        obj = ElfObject.parse(mapped)
        if obj is None:
            return None
        stash = Stash()

        sup = None
        alt = obj.gnu_debugaltlink_path(path)
        if alt is not None:
            sup_path, sup_build_id = alt
            sup_map = map_file(sup_path)
            if sup_map is not None:
                stash.cache_mmap(sup_map)
                candidate = ElfObject.parse(sup_map)
                if candidate is not None and candidate.build_id() == sup_build_id:
                    sup = candidate

        dwp = load_dwarf_package(original, stash)
        return cls(object=obj, stash=stash, data=mapped, sup=sup, dwp=dwp)

    @classmethod
    def _from_macho(cls, path: Path, mapped: Any) -> Mapping | None:
        thin = find_header(mapped)
        if thin is None:
            return None
        obj = MachObject.parse(thin)
        if obj is None:
            return None
        uuid = obj.uuid()
        if uuid is not None:
            dsym = load_dsym(path.parent, uuid)
            if dsym is not None:
                return cls(object=dsym, data=dsym.data)
        return cls(object=obj, data=thin)

    def search_symtab(self, addr: int) -> bytes | None:
        """Return the symbol-table name covering the stated address ``addr``."""
        return self.object.search_symtab(addr)


class Cache:
    """Known libraries plus a small LRU cache of their parsed mappings."""

    def __init__(self, libraries: list[Library] | None = None) -> None:
        self.libraries: list[Library] = list(native_libraries() if libraries is None else libraries)
        self.mappings: Lru[tuple[int, Mapping]] = Lru(MAPPINGS_CACHE_SIZE)

    def avma_to_svma(self, addr: int) -> tuple[int, int] | None:
        """Find the library holding ``addr``; return its index and stated address."""
        for index, lib in enumerate(self.libraries):
            if lib.contains(addr):
                return index, (addr - lib.bias) % _WRAP
        return None

    def mapping_for_lib(self, lib: int) -> Mapping | None:
        """Return the cached mapping for library ``lib``, creating it if needed."""
        for position, (lib_id, _) in enumerate(self.mappings):
            if lib_id == lib:
                entry = self.mappings.move_to_front(position)
                return None if entry is None else entry[1]
        if not 0 <= lib < len(self.libraries):
            return None
        mapping = Mapping.from_path(self.libraries[lib].name)
        if mapping is None:
            return None
        entry = self.mappings.push_front((lib, mapping))
        return None if entry is None else entry[1]

    def resolve(self, addr: int) -> list[ResolvedSymbol]:
        """Return the symbols found for the in-memory address ``addr``."""
        found = self.avma_to_svma(addr)
        if found is None:
            return []
        lib, svma = found
        mapping = self.mapping_for_lib(lib)
        if mapping is None:
            return []
        name = mapping.search_symtab(svma)
        if name is None:
            return []
        return [ResolvedSymbol(name=bytes(name))]

    def clear(self) -> None:
        """Drop every cached mapping."""
        self.mappings.clear()


_global_cache: Cache | None = None
_global_lock = threading.Lock()


def global_cache() -> Cache:
    """Return the process-wide cache, built from the native libraries on first use."""
    global _global_cache
    with _global_lock:
        if _global_cache is None:
            _global_cache = Cache(native_libraries())
        return _global_cache