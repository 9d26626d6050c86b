"""Reading Mach-O images, fat archives and ``.dSYM`` bundles."""

from __future__ import annotations

import os
import platform
import struct
from bisect import bisect_right
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from symresolve.stash import Stash, map_file

CPU_TYPE_X86 = 7
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM = 12
CPU_TYPE_ARM64 = 0x0100000C

MH_OBJECT = 1
LC_SEGMENT = 0x1
LC_SYMTAB = 0x2
LC_SEGMENT_64 = 0x19
LC_UUID = 0x1B
N_STAB = 0xE0
N_TYPE = 0x0E
N_SECT = 0x0E
_ZEROFILL_TYPES = (0x1, 0xC, 0x10)

_THIN = {
    b"\xce\xfa\xed\xfe": ("<", False),
    b"\xfe\xed\xfa\xce": (">", False),
    b"\xcf\xfa\xed\xfe": ("<", True),
    b"\xfe\xed\xfa\xcf": (">", True),
}
_FAT32 = (b"\xca\xfe\xba\xbe", b"\xbe\xba\xfe\xca")
_FAT64 = (b"\xca\xfe\xba\xbf", b"\xbf\xba\xfe\xca")


class _Malformed(Exception):
    """Internal signal that the image data is not well formed."""


def _unpack(fmt: str, data: Any, offset: int) -> tuple[Any, ...]:
    if offset < 0:
        raise _Malformed
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as exc:
        raise _Malformed from exc


def _native_cpu() -> int | None:
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return CPU_TYPE_X86_64
    if machine in ("aarch64", "arm64"):
        return CPU_TYPE_ARM64
    if machine.startswith("arm"):
        return CPU_TYPE_ARM
    if machine in ("i386", "i486", "i586", "i686", "x86"):
        return CPU_TYPE_X86
    return None


def find_header(data: Any, cpu_type: int | None = None) -> bytes | None:
    """Return the thin Mach-O image in ``data``.

    A fat archive yields the slice for ``cpu_type`` (the running machine's
    CPU when ``None``); anything else that is not Mach-O yields ``None``.
    """
    magic = bytes(data[:4])
    if magic in _THIN:
        return bytes(data) if _header_size(data) is not None else None
    if magic in _FAT32 or magic in _FAT64:
        desired = cpu_type if cpu_type is not None else _native_cpu()
        fmt, size = (">iiIII", 20) if magic in _FAT32 else (">iiQQII", 32)
        try:
            (nfat,) = _unpack(">I", data, 4)
        except _Malformed:
            return None
        for i in range(nfat):
            try:
                arch = _unpack(fmt, data, 8 + i * size)
            except _Malformed:
                break
            if desired is not None and arch[0] == desired:
                offset, length = arch[2], arch[3]
                if offset + length > len(data):
                    return None
                thin = bytes(data[offset : offset + length])
                if bytes(thin[:4]) in _THIN and _header_size(thin) is not None:
                    return thin
                return None
        return None
    return None


def _header_size(data: Any) -> int | None:
    endian, is_64 = _THIN[bytes(data[:4])]
    size = 32 if is_64 else 28
    return size if len(data) >= size else None


@dataclass(frozen=True)
class _Section:
    name: bytes
    offset: int
    size: int
    flags: int


class MachObject:
    """A parsed thin Mach-O image: its DWARF sections, symbols and UUID."""

    def __init__(
        self,
        data: Any,
        endian: str,
        dwarf: list[_Section] | None,
        syms: list[tuple[bytes, int]],
        syms_sort_by_name: bool,
        uuid: bytes | None,
    ) -> None:
        self.data = data
        self.endian = endian
        self._dwarf = dwarf
        self.syms = syms
        self.syms_sort_by_name = syms_sort_by_name
        self._uuid = uuid
        self._addresses = [addr for _, addr in syms]

    @classmethod
    def parse(cls, data: Any) -> MachObject | None:
        """Parse a thin Mach-O image, or return ``None`` if it is not one."""
        if bytes(data[:4]) not in _THIN:
            return None
        try:
            return cls._parse(data)
        except _Malformed:
            return None

    @classmethod
    def _parse(cls, data: Any) -> MachObject:
        endian, is_64 = _THIN[bytes(data[:4])]
        _, _, _, filetype, ncmds, _, _ = _unpack(endian + "IiiIIII", data, 0)
        is_object = filetype == MH_OBJECT
        pos = 32 if is_64 else 28
        dwarf = None
        syms: list[tuple[bytes, int]] = []
        sort_by_name = False
        uuid = None
        for _ in range(ncmds):
            try:
                cmd, cmdsize = _unpack(endian + "II", data, pos)
            except _Malformed:
                break
            if cmdsize < 8 or pos + cmdsize > len(data):
                break
            if cmd in (LC_SEGMENT, LC_SEGMENT_64):
                segname, sections = cls._segment(data, endian, pos, cmd == LC_SEGMENT_64)
                if segname == b"__DWARF" or (is_object and segname == b""):
                    dwarf = sections
            elif cmd == LC_SYMTAB:
                syms = cls._symbols(data, endian, is_64, pos)
                if is_object:
                    syms.sort(key=lambda pair: pair[0])
                    sort_by_name = True
                else:
                    syms.sort(key=lambda pair: pair[1])
            elif cmd == LC_UUID and cmdsize >= 24:
                uuid = bytes(data[pos + 8 : pos + 24])
            pos += cmdsize
        return cls(data, endian, dwarf, syms, sort_by_name, uuid)

    @staticmethod
    def _segment(data: Any, endian: str, pos: int, is_64: bool) -> tuple[bytes, list[_Section]]:
        if is_64:
            fields = _unpack(endian + "II16sQQQQiiII", data, pos)
            header, entry, fmt = 72, 80, endian + "16s16sQQIIIIIIII"
        else:
            fields = _unpack(endian + "II16sIIIIiiII", data, pos)
            header, entry, fmt = 56, 68, endian + "16s16sIIIIIIIII"
        segname, nsects = fields[2].rstrip(b"\0"), fields[9]
        sections = []
        for i in range(nsects):
            sect = _unpack(fmt, data, pos + header + i * entry)
            sections.append(_Section(sect[0].rstrip(b"\0"), sect[4], sect[3], sect[8]))
        return segname, sections

    @staticmethod
    def _symbols(data: Any, endian: str, is_64: bool, pos: int) -> list[tuple[bytes, int]]:
        _, _, symoff, nsyms, stroff, strsize = _unpack(endian + "IIIIII", data, pos)
        if stroff + strsize > len(data):
            raise _Malformed
        strings = bytes(data[stroff : stroff + strsize])
        fmt, size = (endian + "IBBHQ", 16) if is_64 else (endian + "IBBhI", 12)
        if symoff + nsyms * size > len(data):
            raise _Malformed
        syms = []
        for i in range(nsyms):
            strx, n_type, _, _, value = _unpack(fmt, data, symoff + i * size)
            if strx >= len(strings):
                continue
            end = strings.find(b"\0", strx)
            if end < 0:
                continue
            name = strings[strx:end]
            if name and n_type & N_STAB == 0 and n_type & N_TYPE == N_SECT:
                syms.append((name, value))
        return syms

    def uuid(self) -> bytes | None:
        """Return the 16-byte UUID of the image, if it has one."""
        return self._uuid

    def section(self, stash: Stash, name: str) -> bytes | None:
        """Return a DWARF section by ELF-style (``.x``) or Mach-O (``__x``) name."""
        if self._dwarf is None:
            return None
        wanted = name.encode("utf-8")
        for sect in self._dwarf:
            if sect.name == wanted or (
                sect.name.startswith(b"__") and wanted.startswith(b".") and sect.name[2:] == wanted[1:]
            ):
                if sect.flags & 0xFF in _ZEROFILL_TYPES:
                    return b""
                if sect.offset + sect.size > len(self.data):
                    return None
                return bytes(self.data[sect.offset : sect.offset + sect.size])
        return None

    def search_symtab(self, addr: int) -> bytes | None:
        """Return the name of the closest symbol at or before ``addr``."""
        i = bisect_right(self._addresses, addr) - 1
        if i < 0:
            return None
        return self.syms[i][0]


def _try_dsym_candidate(directory: Path, uuid: bytes) -> MachObject | None:
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        return None
    for entry in entries:
        mapped = map_file(entry)
        if mapped is None:
            return None
        thin = find_header(mapped)
        if thin is None:
            continue
        obj = MachObject.parse(thin)
        if obj is not None and obj.uuid() == uuid:
            return obj
    return None


def load_dsym(directory: str | os.PathLike[str], uuid: bytes) -> MachObject | None:
    """Find debug info matching ``uuid`` in ``*.dSYM`` bundles under ``directory``."""
    try:
        entries = sorted(Path(directory).iterdir())
    except OSError:
        return None
    for entry in entries:
        if not entry.name.endswith(".dSYM"):
            continue
        found = _try_dsym_candidate(entry / "Contents" / "Resources" / "DWARF", uuid)
        if found is not None:
            return found
    return None