"""Reading symbols, sections, notes and debug links from ELF objects."""

from __future__ import annotations

import os
import struct
import sys
import zlib
from bisect import bisect_right
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from symresolve.stash import Stash, map_file

DEBUG_PATH = "/usr/lib/debug"
_BUILD_ID_DIR = ".build-id"
_BUILD_ID_SUFFIX = ".debug"

SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOTE = 7
SHT_NOBITS = 8
SHT_DYNSYM = 11
SHF_COMPRESSED = 0x800
SHN_UNDEF = 0
SHN_XINDEX = 0xFFFF
STT_OBJECT = 1
STT_FUNC = 2
ELFCOMPRESS_ZLIB = 1
ELF_NOTE_GNU = b"GNU"
NT_GNU_BUILD_ID = 3

_ZLIB_GNU_MAGIC = b"ZLIB\0\0\0\0"
_DEBUG_PLATFORMS = ("linux", "freebsd", "gnu")

_debug_path_state: bool | None = None


class _Malformed(Exception):
    """Internal signal that the object data is not well formed."""


def _unpack(fmt: str, data: Any, offset: int) -> tuple[Any, ...]:
    if offset < 0:
        raise _Malformed
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as exc:
        raise _Malformed from exc


def _slice(data: Any, start: int, size: int) -> bytes:
    if start < 0 or size < 0 or start + size > len(data):
        raise _Malformed
    return bytes(data[start : start + size])


def _string_at(table: bytes, offset: int) -> bytes | None:
    if offset >= len(table):
        return None
    end = table.find(b"\0", offset)
    if end < 0:
        return None
    return table[offset:end]


def _align_up(value: int, align: int) -> int:
    return (value + align - 1) & ~(align - 1)


def _to_path(name: bytes | str | os.PathLike[str]) -> Path:
    if isinstance(name, (bytes, bytearray)):
        return Path(os.fsdecode(bytes(name)))
    return Path(name)


def _iter_notes(data: bytes, align: int, endian: str) -> Iterator[tuple[bytes, int, bytes]]:
    pos = 0
    while pos < len(data):
        if len(data) - pos < 12:
            return
        namesz, descsz, note_type = struct.unpack_from(endian + "III", data, pos)
        name_start = pos + 12
        name_end = name_start + namesz
        if name_end > len(data):
            return
        desc_start = _align_up(name_end, align)
        desc_end = desc_start + descsz
        if desc_end > len(data):
            return
        yield data[name_start:name_end].rstrip(b"\0"), note_type, data[desc_start:desc_end]
        pos = _align_up(desc_end, align)


@dataclass(frozen=True)
class _SectionHeader:
    name: int
    type: int
    flags: int
    offset: int
    size: int
    link: int
    addralign: int


@dataclass(frozen=True)
class _ParsedSym:
    address: int
    size: int
    name: int


class ElfObject:
    """A parsed ELF file: its section table and its sorted symbols."""

    def __init__(
        self,
        data: Any,
        is_64: bool,
        little_endian: bool,
        sections: list[_SectionHeader],
        section_names: bytes,
        strings: bytes,
        symbols: list[_ParsedSym],
    ) -> None:
        self.data = data
        self.is_64 = is_64
        self.little_endian = little_endian
        self._sections = sections
        self._section_names = section_names
        self._strings = strings
        self._symbols = symbols
        self._addresses = [sym.address for sym in symbols]

    @property
    def _endian(self) -> str:
        return "<" if self.little_endian else ">"

    @classmethod
    def parse(cls, data: Any) -> ElfObject | None:
        """Parse ``data`` as an ELF file, or return ``None`` if it is not one."""
        try:
            return cls._parse(data)
        except _Malformed:
            return None

    @classmethod
    def _parse(cls, data: Any) -> ElfObject:
        if len(data) < 16:
            raise _Malformed
        ident = bytes(data[:16])
        if ident[:4] != b"\x7fELF":
            raise _Malformed
        if ident[4] not in (1, 2) or ident[5] not in (1, 2) or ident[6] != 1:
            raise _Malformed
        is_64 = ident[4] == 2
        little = ident[5] == 1
        endian = "<" if little else ">"
        fields = _unpack(endian + ("HHIQQQIHHHHHH" if is_64 else "HHIIIIIHHHHHH"), data, 16)
        shoff, shentsize, shnum, shstrndx = fields[5], fields[10], fields[11], fields[12]

        sections, names = cls._read_sections(data, is_64, endian, shoff, shentsize, shnum, shstrndx)

        raw_syms, strings = cls._symbol_table(data, is_64, endian, sections, SHT_SYMTAB)
        if not raw_syms:
            raw_syms, strings = cls._symbol_table(data, is_64, endian, sections, SHT_DYNSYM)

        symbols = [
            _ParsedSym(address=value, size=size, name=name)
            for name, value, size, info, shndx in raw_syms
            if (info & 0xF) in (STT_FUNC, STT_OBJECT) and shndx != SHN_UNDEF
        ]
        symbols.sort(key=lambda sym: sym.address)
        return cls(data, is_64, little, sections, names, strings, symbols)

    @staticmethod
    def _read_header(data: Any, is_64: bool, endian: str, offset: int) -> _SectionHeader:
        if is_64:
            name, kind, flags, _, off, size, link, _, align, _ = _unpack(endian + "IIQQQQIIQQ", data, offset)
        else:
            name, kind, flags, _, off, size, link, _, align, _ = _unpack(endian + "IIIIIIIIII", data, offset)
        return _SectionHeader(name, kind, flags, off, size, link, align)

    @staticmethod
    def _data_of(data: Any, header: _SectionHeader) -> bytes:
        if header.type == SHT_NOBITS:
            return b""
        return _slice(data, header.offset, header.size)

    @classmethod
    def _read_sections(
        cls,
        data: Any,
        is_64: bool,
        endian: str,
        shoff: int,
        shentsize: int,
        shnum: int,
        shstrndx: int,
    ) -> tuple[list[_SectionHeader], bytes]:
        if shoff == 0:
            return [], b""
        entsize = 64 if is_64 else 40
        if shentsize != entsize:
            raise _Malformed
        first = cls._read_header(data, is_64, endian, shoff)
        count = shnum or first.size
        if count == 0:
            return [], b""
        if shoff + count * entsize > len(data):
            raise _Malformed
        headers = [cls._read_header(data, is_64, endian, shoff + i * entsize) for i in range(count)]
        index = first.link if shstrndx == SHN_XINDEX else shstrndx
        if index >= len(headers):
            raise _Malformed
        return headers, cls._data_of(data, headers[index])

    @classmethod
    def _symbol_table(
        cls,
        data: Any,
        is_64: bool,
        endian: str,
        sections: list[_SectionHeader],
        kind: int,
    ) -> tuple[list[tuple[int, int, int, int, int]], bytes]:
        header = next((h for h in sections if h.type == kind), None)
        if header is None:
            return [], b""
        raw = cls._data_of(data, header)
        if header.link >= len(sections):
            raise _Malformed
        strings = cls._data_of(data, sections[header.link])
        entsize = 24 if is_64 else 16
        symbols = []
        for start in range(0, len(raw) - len(raw) % entsize, entsize):
            if is_64:
                name, info, _, shndx, value, size = struct.unpack_from(endian + "IBBHQQ", raw, start)
            else:
                name, value, size, info, _, shndx = struct.unpack_from(endian + "IIIBBH", raw, start)
            symbols.append((name, value, size, info, shndx))
        return symbols, strings

    def _section_name(self, header: _SectionHeader) -> bytes | None:
        return _string_at(self._section_names, header.name)

    def _section_header(self, name: str) -> _SectionHeader | None:
        wanted = name.encode("utf-8")
        return next((h for h in self._sections if self._section_name(h) == wanted), None)

    def _section_data(self, header: _SectionHeader) -> bytes | None:
        try:
            return self._data_of(self.data, header)
        except _Malformed:
            return None

    def section(self, stash: Stash, name: str) -> bytes | bytearray | None:
        """Return the contents of section ``name``, decompressed if needed.

        Decompressed data is allocated in ``stash``. A missing ``.debug_*``
        section is also looked up in its GNU ``.zdebug_*`` compressed form.
        """
        header = self._section_header(name)
        if header is not None:
            data = self._section_data(header)
            if data is None:
                return None
            if not header.flags & SHF_COMPRESSED:
                return data
            if self.is_64:
                fmt = self._endian + "IIQQ"
                if len(data) < struct.calcsize(fmt):
                    return None
                ch_type, _, ch_size, _ = struct.unpack_from(fmt, data, 0)
            else:
                fmt = self._endian + "III"
                if len(data) < struct.calcsize(fmt):
                    return None
                ch_type, ch_size, _ = struct.unpack_from(fmt, data, 0)
            if ch_type != ELFCOMPRESS_ZLIB:
                return None
            return _into_stash(stash, decompress_zlib(data[struct.calcsize(fmt) :], ch_size), ch_size)

        if not name.startswith(".debug_"):
            return None
        debug_name = name[7:].encode("utf-8")
        compressed = None
        for candidate in self._sections:
            section_name = self._section_name(candidate)
            if section_name is not None and section_name.startswith(b".zdebug_") and section_name[8:] == debug_name:
                compressed = candidate
                break
        if compressed is None:
            return None
        data = self._section_data(compressed)
        if data is None or len(data) < 12 or data[:8] != _ZLIB_GNU_MAGIC:
            return None
        (size,) = struct.unpack_from(">I", data, 8)
        return _into_stash(stash, decompress_zlib(data[12:], size), size)

    def search_symtab(self, addr: int) -> bytes | None:
        """Return the name of the symbol covering ``addr``, if any."""
        i = bisect_right(self._addresses, addr) - 1
        if i < 0:
            return None
        sym = self._symbols[i]
        if sym.address <= addr <= sym.address + sym.size:
            return _string_at(self._strings, sym.name)
        return None

    def build_id(self) -> bytes | None:
        """Return the GNU build ID from the first note that carries one."""
        for header in self._sections:
            if header.type != SHT_NOTE:
                continue
            data = self._section_data(header)
            if data is None:
                continue
            if header.addralign <= 4:
                align = 4
            elif header.addralign == 8:
                align = 8
            else:
                continue
            for name, note_type, desc in _iter_notes(data, align, self._endian):
                if name == ELF_NOTE_GNU and note_type == NT_GNU_BUILD_ID:
                    return desc
        return None

    def gnu_debuglink_path(self, path: str | os.PathLike[str]) -> tuple[Path, int] | None:
        """Locate the file named by ``.gnu_debuglink``; return it and its CRC."""
        header = self._section_header(".gnu_debuglink")
        if header is None:
            return None
        data = self._section_data(header)
        if data is None:
            return None
        length = data.find(b"\0")
        if length < 0:
            return None
        filename = data[:length]
        offset = (length + 1 + 3) & ~3
        crc_bytes = data[offset : offset + 4]
        if len(crc_bytes) != 4:
            return None
        crc = int.from_bytes(crc_bytes, "little" if self.little_endian else "big")
        path_debug = locate_debuglink(path, filename)
        if path_debug is None:
            return None
        return path_debug, crc

    def gnu_debugaltlink_path(self, path: str | os.PathLike[str]) -> tuple[Path, bytes] | None:
        """Locate the supplementary file named by ``.gnu_debugaltlink``.

        Returns its path together with the build ID it must carry.
        """
        header = self._section_header(".gnu_debugaltlink")
        if header is None:
            return None
        data = self._section_data(header)
        if data is None:
            return None
        length = data.find(b"\0")
        if length < 0:
            return None
        filename = data[:length]
        build_id = data[length + 1 :]
        path_sup = locate_debugaltlink(path, filename, build_id)
        if path_sup is None:
            return None
        return path_sup, build_id


def _into_stash(stash: Stash, data: bytes | None, size: int) -> bytearray | None:
    if data is None:
        return None
    buffer = stash.allocate(size)
    buffer[:] = data
    return buffer


def decompress_zlib(data: bytes, size: int) -> bytes | None:
    """Inflate a zlib stream that must consume all input and yield ``size`` bytes."""
    decompressor = zlib.decompressobj()
    try:
        out = decompressor.decompress(data, size) if size else decompressor.decompress(data)
    except zlib.error:
        return None
    if (
        decompressor.eof
        and not decompressor.unused_data
        and not decompressor.unconsumed_tail
        and len(out) == size
    ):
        return out
    return None


def debug_path_exists() -> bool:
    """Whether the system debug directory exists; checked once and cached."""
    global _debug_path_state
    if _debug_path_state is None:
        _debug_path_state = sys.platform.startswith(_DEBUG_PLATFORMS) and os.path.isdir(DEBUG_PATH)
    return _debug_path_state


def locate_build_id(build_id: bytes) -> Path | None:
    """Return the conventional debug-file path for ``build_id``."""
    if len(build_id) < 2:
        return None
    if not debug_path_exists():
        return None
    hexed = bytes(build_id).hex()
    return Path(DEBUG_PATH, _BUILD_ID_DIR, hexed[:2], hexed[2:] + _BUILD_ID_SUFFIX)


def locate_debuglink(path: str | os.PathLike[str], filename: bytes | str) -> Path | None:
    """Find the file named in a ``.gnu_debuglink`` section of ``path``.

    Tries the object's directory, its ``.debug`` subdirectory, then the
    system debug directory.
    """
    try:
        resolved = Path(path).resolve(strict=True)
    except (OSError, RuntimeError):
        return None
    parent = resolved.parent
    if parent == resolved:
        return None
    name = _to_path(filename)

    candidate = parent / name
    if candidate != resolved and candidate.is_file():
        return candidate

    candidate = parent / ".debug" / name
    if candidate.is_file():
        return candidate

    if debug_path_exists():
        candidate = Path(DEBUG_PATH) / parent.relative_to(parent.anchor) / name
        if candidate.is_file():
            return candidate

    return None


def locate_debugaltlink(
    path: str | os.PathLike[str], filename: bytes | str, build_id: bytes
) -> Path | None:
    """Find the file named in a ``.gnu_debugaltlink`` section of ``path``.

    ``filename`` is absolute or relative to the object's directory; the
    build-ID path is the fallback.
    """
    name = _to_path(filename)
    if name.is_absolute():
        if name.is_file():
            return name
    else:
        try:
            resolved = Path(path).resolve(strict=True)
        except (OSError, RuntimeError):
            return None
        parent = resolved.parent
        if parent == resolved:
            return None
        candidate = parent / name
        if candidate.is_file():
            return candidate
    return locate_build_id(build_id)


def load_dwarf_package(path: str | os.PathLike[str], stash: Stash) -> ElfObject | None:
    """Load the ``.dwp`` DWARF package that sits next to ``path``."""
    original = Path(path)
    try:
        if original.suffix:
            dwp = original.with_suffix(original.suffix + ".dwp")
        else:
            dwp = original.with_suffix(".dwp")
    except ValueError:
        return None
    mapped = map_file(dwp)
    if mapped is None:
        return None
    stash.cache_mmap(mapped)
    return ElfObject.parse(mapped)