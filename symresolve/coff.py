"""Reading the symbol table and sections of PE/COFF images."""

from __future__ import annotations

import struct
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any

from symresolve.stash import Stash

IMAGE_SYM_DTYPE_FUNCTION = 2
_PE32_MAGIC = 0x10B
_PE32_PLUS_MAGIC = 0x20B
_SYMBOL_SIZE = 18
_SECTION_SIZE = 40


class _Malformed(Exception):
    """Internal signal that the image data is not well formed."""


def _unpack(fmt: str, data: Any, offset: int) -> tuple[Any, ...]:
    if offset < 0:
        raise _Malformed
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as exc:
        raise _Malformed from exc


def _string_at(table: bytes, offset: int) -> bytes | None:
    if offset >= len(table):
        return None
    end = table.find(b"\0", offset)
    if end < 0:
        return None
    return table[offset:end]


@dataclass(frozen=True)
class _Section:
    raw_name: bytes
    virtual_size: int
    virtual_address: int
    size_of_raw_data: int
    pointer_to_raw_data: int


@dataclass(frozen=True)
class _NtHeaders:
    image_base: int
    sections_offset: int
    number_of_sections: int
    symbol_table_offset: int
    number_of_symbols: int


def _nt_headers(data: Any) -> _NtHeaders:
    if len(data) < 64 or bytes(data[:2]) != b"MZ":
        raise _Malformed
    (lfanew,) = _unpack("<I", data, 0x3C)
    if bytes(data[lfanew : lfanew + 4]) != b"PE\0\0":
        raise _Malformed
    _, nsections, _, symptr, nsyms, opt_size, _ = _unpack("<HHIIIHH", data, lfanew + 4)
    opt = lfanew + 24
    (magic,) = _unpack("<H", data, opt)
    if magic == _PE32_PLUS_MAGIC:
        (image_base,) = _unpack("<Q", data, opt + 24)
    elif magic == _PE32_MAGIC:
        (image_base,) = _unpack("<I", data, opt + 28)
    else:
        raise _Malformed
    return _NtHeaders(image_base, opt + opt_size, nsections, symptr, nsyms)


def get_image_base(data: Any) -> int | None:
    """Return the preferred load address stated in a PE image's headers."""
    try:
        return _nt_headers(data).image_base
    except _Malformed:
        return None


class CoffObject:
    """A parsed PE image with its function symbols sorted by address."""

    def __init__(
        self,
        data: Any,
        sections: list[_Section],
        strings: bytes,
        symbols: list[tuple[int, bytes]],
    ) -> None:
        self.data = data
        self._sections = sections
        self._strings = strings
        self._symbols = symbols
        self._addresses = [addr for addr, _ in symbols]

    @classmethod
    def parse(cls, data: Any) -> CoffObject | None:
        """Parse ``data`` as a PE image, or return ``None`` if it is not one."""
        try:
            return cls._parse(data)
        except _Malformed:
            return None

    @classmethod
    def _parse(cls, data: Any) -> CoffObject:
        nt = _nt_headers(data)
        end = nt.sections_offset + nt.number_of_sections * _SECTION_SIZE
        if end > len(data):
            raise _Malformed
        sections = []
        for i in range(nt.number_of_sections):
            name, vsize, vaddr, rawsize, rawptr = _unpack("<8sIIII", data, nt.sections_offset + i * _SECTION_SIZE)
            sections.append(_Section(name, vsize, vaddr, rawsize, rawptr))

        raw_symbols: list[tuple[bytes, int, int, int]] = []
        strings = b""
        if nt.symbol_table_offset != 0:
            table_end = nt.symbol_table_offset + nt.number_of_symbols * _SYMBOL_SIZE
            if table_end > len(data):
                raise _Malformed
            (length,) = _unpack("<I", data, table_end)
            if length < 4 or table_end + length > len(data):
                raise _Malformed
            strings = bytes(data[table_end : table_end + length])
            i = 0
            while i < nt.number_of_symbols:
                name, value, section, kind, _, naux = _unpack(
                    "<8sIhHBB", data, nt.symbol_table_offset + i * _SYMBOL_SIZE
                )
                raw_symbols.append((name, value, section, kind))
                i += 1 + naux

        symbols = []
        for raw_name, value, section_number, kind in raw_symbols:
            if (kind >> 4) & 0x3 != IMAGE_SYM_DTYPE_FUNCTION:
                continue
            if section_number <= 0:
                continue
            if section_number > len(sections):
                raise _Malformed
            va = sections[section_number - 1].virtual_address
            name = cls._symbol_name(raw_name, strings)
            if name is None:
                continue
            symbols.append((value + va + nt.image_base, name))
        symbols.sort(key=lambda pair: pair[0])
        return cls(data, sections, strings, symbols)

    @staticmethod
    def _symbol_name(raw: bytes, strings: bytes) -> bytes | None:
        if raw[:4] == b"\0\0\0\0":
            (offset,) = struct.unpack_from("<I", raw, 4)
            return _string_at(strings, offset)
        return raw.rstrip(b"\0")

    def _section_name(self, section: _Section) -> bytes | None:
        raw = section.raw_name.rstrip(b"\0")
        if raw.startswith(b"/") and raw[1:].isdigit():
            return _string_at(self._strings, int(raw[1:]))
        return raw

    def section(self, stash: Stash, name: str) -> bytes | None:
        """Return the file contents of the section called ``name``."""
        wanted = name.encode("utf-8")
        for section in self._sections:
            if self._section_name(section) == wanted:
                size = min(section.virtual_size, section.size_of_raw_data)
                start = section.pointer_to_raw_data
                if start + size > len(self.data):
                    return None
                return bytes(self.data[start : start + size])
        return None

    def search_symtab(self, addr: int) -> bytes | None:
        """Return the name of the closest function symbol at or before ``addr``."""
        i = bisect_right(self._addresses, addr) - 1
        if i < 0:
            return None
        return self._symbols[i][1]