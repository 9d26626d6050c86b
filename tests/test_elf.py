import struct
import zlib
from pathlib import Path

import pytest

from symresolve import elf
from symresolve.elf import (
    ElfObject,
    debug_path_exists,
    decompress_zlib,
    load_dwarf_package,
    locate_build_id,
    locate_debugaltlink,
    locate_debuglink,
)
from symresolve.stash import Stash

FUNC = (1 << 4) | 2
OBJECT = (1 << 4) | 1
NOTYPE = 1 << 4


def strtab(*names):
    table = b"\0"
    offsets = {}
    for name in names:
        offsets[name] = len(table)
        table += name + b"\0"
    return table, offsets


def symbol(name, info, shndx, value, size, *, is_64=True, little=True):
    e = "<" if little else ">"
    if is_64:
        return struct.pack(e + "IBBHQQ", name, info, 0, shndx, value, size)
    return struct.pack(e + "IIIBBH", name, value, size, info, 0, shndx)


def build_elf(sections, *, is_64=True, little=True):
    e = "<" if little else ">"
    names, name_offsets = strtab(*[s["name"] for s in sections], b".shstrtab")
    all_sections = list(sections) + [{"name": b".shstrtab", "type": 3, "data": names}]
    ehsize = 64 if is_64 else 52
    body = bytearray(ehsize)
    offsets = []
    for section in all_sections:
        offsets.append(len(body))
        body += section["data"]
    while len(body) % 8:
        body.append(0)
    shoff = len(body)
    shentsize = 64 if is_64 else 40
    hfmt = e + ("IIQQQQIIQQ" if is_64 else "IIIIIIIIII")
    body += bytes(shentsize)
    for section, off in zip(all_sections, offsets):
        body += struct.pack(
            hfmt,
            name_offsets[section["name"]],
            section["type"],
            section.get("flags", 0),
            0,
            off,
            section.get("size", len(section["data"])),
            section.get("link", 0),
            0,
            section.get("align", 1),
            section.get("entsize", 0),
        )
    ident = b"\x7fELF" + bytes([2 if is_64 else 1, 1 if little else 2, 1]) + bytes(9)
    efmt = e + ("HHIQQQIHHHHHH" if is_64 else "HHIIIIIHHHHHH")
    header = ident + struct.pack(
        efmt, 3, 0, 1, 0, 0, shoff, 0, ehsize, 0, 0, shentsize,
        len(all_sections) + 1, len(all_sections),
    )
    body[:ehsize] = header
    return bytes(body)


def symtab_elf(symbols, *, sym_type=2, is_64=True, little=True):
    names, offs = strtab(*[s[0] for s in symbols])
    entries = symbol(0, 0, 0, 0, 0, is_64=is_64, little=little) + b"".join(
        symbol(offs[n], info, shndx, value, size, is_64=is_64, little=little)
        for n, info, shndx, value, size in symbols
    )
    return build_elf(
        [
            {"name": b".text", "type": 1, "data": b"\x90" * 4},
            {"name": b".symtab", "type": sym_type, "data": entries, "link": 3},
            {"name": b".strtab", "type": 3, "data": names},
        ],
        is_64=is_64,
        little=little,
    )


SYMBOLS = [
    (b"foo", FUNC, 1, 0x1000, 0x10),
    (b"bar", OBJECT, 1, 0x2000, 8),
    (b"baz", FUNC, 0, 0x3000, 0x10),
    (b"untyped", NOTYPE, 1, 0x4000, 0x10),
]


def test_parse_rejects_non_elf():
    assert ElfObject.parse(b"not an elf") is None
    assert ElfObject.parse(b"\x7fELX" + bytes(60)) is None


def test_parse_rejects_truncated_file():
    data = symtab_elf(SYMBOLS)
    assert ElfObject.parse(data[:40]) is None


def test_search_symtab_finds_functions_and_objects():
    obj = ElfObject.parse(symtab_elf(SYMBOLS))
    assert obj.search_symtab(0x1000) == b"foo"
    assert obj.search_symtab(0x1008) == b"foo"
    assert obj.search_symtab(0x1010) == b"foo"
    assert obj.search_symtab(0x1011) is None
    assert obj.search_symtab(0x2004) == b"bar"
    assert obj.search_symtab(0x0FFF) is None


def test_search_symtab_skips_undefined_and_untyped():
    obj = ElfObject.parse(symtab_elf(SYMBOLS))
    assert obj.search_symtab(0x3000) is None
    assert obj.search_symtab(0x4008) is None


def test_dynsym_used_when_no_symtab():
    obj = ElfObject.parse(symtab_elf(SYMBOLS, sym_type=11))
    assert obj.search_symtab(0x1004) == b"foo"


@pytest.mark.parametrize("is_64, little", [(False, True), (False, False), (True, False)])
def test_other_classes_and_endianness(is_64, little):
    obj = ElfObject.parse(symtab_elf(SYMBOLS, is_64=is_64, little=little))
    assert obj.is_64 == is_64
    assert obj.little_endian == little
    assert obj.search_symtab(0x2000) == b"bar"


def test_plain_section_contents():
    data = build_elf([{"name": b".debug_info", "type": 1, "data": b"hello"}])
    obj = ElfObject.parse(data)
    assert obj.section(Stash(), ".debug_info") == b"hello"
    assert obj.section(Stash(), ".rodata") is None
    assert obj.section(Stash(), ".debug_line") is None


def test_nobits_section_is_empty():
    data = build_elf([{"name": b".bss", "type": 8, "data": b"", "size": 64}])
    obj = ElfObject.parse(data)
    assert obj.section(Stash(), ".bss") == b""


def test_gabi_compressed_section():
    payload = b"debug information " * 20
    header = struct.pack("<IIQQ", 1, 0, len(payload), 1)
    data = build_elf(
        [{"name": b".debug_info", "type": 1, "flags": 0x800, "data": header + zlib.compress(payload)}]
    )
    stash = Stash()
    assert ElfObject.parse(data).section(stash, ".debug_info") == payload


def test_unknown_compression_type():
    header = struct.pack("<IIQQ", 99, 0, 4, 1)
    data = build_elf(
        [{"name": b".debug_info", "type": 1, "flags": 0x800, "data": header + zlib.compress(b"abcd")}]
    )
    assert ElfObject.parse(data).section(Stash(), ".debug_info") is None


def test_gnu_zdebug_section():
    payload = b"line program " * 10
    blob = b"ZLIB\0\0\0\0" + struct.pack(">I", len(payload)) + zlib.compress(payload)
    data = build_elf([{"name": b".zdebug_line", "type": 1, "data": blob}])
    assert ElfObject.parse(data).section(Stash(), ".debug_line") == payload


def test_gnu_zdebug_wrong_magic():
    payload = b"xyz"
    blob = b"ZLIX\0\0\0\0" + struct.pack(">I", len(payload)) + zlib.compress(payload)
    data = build_elf([{"name": b".zdebug_line", "type": 1, "data": blob}])
    assert ElfObject.parse(data).section(Stash(), ".debug_line") is None


def test_decompress_zlib_round_trip_and_errors():
    payload = b"some bytes to squeeze" * 5
    packed = zlib.compress(payload)
    assert decompress_zlib(packed, len(payload)) == payload
    assert decompress_zlib(packed, len(payload) - 1) is None
    assert decompress_zlib(packed, len(payload) + 1) is None
    assert decompress_zlib(packed + b"junk", len(payload)) is None
    assert decompress_zlib(b"definitely not zlib", 4) is None


def note(name, note_type, desc):
    padded = name + b"\0" * (-len(name) % 4)
    return struct.pack("<III", len(name), len(desc), note_type) + padded + desc


def test_build_id_from_gnu_note():
    desc = bytes(range(20))
    data = build_elf(
        [{"name": b".note.gnu.build-id", "type": 7, "align": 4, "data": note(b"GNU\0", 3, desc)}]
    )
    assert ElfObject.parse(data).build_id() == desc


def test_build_id_skips_other_notes():
    desc = bytes(range(8))
    notes = note(b"Go\0\0", 3, b"\x01\x02\x03\x04") + note(b"GNU\0", 1, b"\x00" * 16) + note(b"GNU\0", 3, desc)
    data = build_elf([{"name": b".notes", "type": 7, "align": 4, "data": notes}])
    assert ElfObject.parse(data).build_id() == desc


def test_build_id_absent():
    data = build_elf([{"name": b".notes", "type": 7, "align": 4, "data": note(b"GNU\0", 1, b"\0" * 16)}])
    assert ElfObject.parse(data).build_id() is None


def test_gnu_debuglink_path(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "_debug_path_state", False)
    prog = tmp_path / "prog"
    prog.write_bytes(b"binary")
    (tmp_path / "prog.debug").write_bytes(b"debug")
    section = b"prog.debug\0\0" + struct.pack("<I", 0x1234ABCD)
    obj = ElfObject.parse(build_elf([{"name": b".gnu_debuglink", "type": 1, "data": section}]))
    assert obj.gnu_debuglink_path(prog) == (tmp_path.resolve() / "prog.debug", 0x1234ABCD)


def test_gnu_debuglink_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "_debug_path_state", False)
    prog = tmp_path / "prog"
    prog.write_bytes(b"binary")
    section = b"gone.debug\0\0" + struct.pack("<I", 7)
    obj = ElfObject.parse(build_elf([{"name": b".gnu_debuglink", "type": 1, "data": section}]))
    assert obj.gnu_debuglink_path(prog) is None


def test_locate_debuglink_search_order(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "_debug_path_state", False)
    prog = tmp_path / "prog"
    prog.write_bytes(b"binary")
    assert locate_debuglink(prog, b"prog") is None
    (tmp_path / ".debug").mkdir()
    (tmp_path / ".debug" / "prog").write_bytes(b"debug")
    assert locate_debuglink(prog, b"prog") == tmp_path.resolve() / ".debug" / "prog"
    assert locate_debuglink(tmp_path / "missing", b"prog") is None


def test_locate_debuglink_system_directory(tmp_path, monkeypatch):
    debug_root = tmp_path / "global"
    monkeypatch.setattr(elf, "DEBUG_PATH", str(debug_root))
    monkeypatch.setattr(elf, "_debug_path_state", True)
    bindir = tmp_path / "bin"
    bindir.mkdir()
    prog = bindir / "prog"
    prog.write_bytes(b"binary")
    parent = bindir.resolve()
    target = debug_root / parent.relative_to(parent.anchor) / "prog.debug"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"debug")
    assert locate_debuglink(prog, "prog.debug") == target


def test_locate_build_id(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "DEBUG_PATH", str(tmp_path))
    monkeypatch.setattr(elf, "_debug_path_state", True)
    assert locate_build_id(b"\xab") is None
    assert locate_build_id(b"\xab\xcd\xef") == tmp_path / ".build-id" / "ab" / "cdef.debug"
    monkeypatch.setattr(elf, "_debug_path_state", False)
    assert locate_build_id(b"\xab\xcd\xef") is None


def test_debug_path_exists_is_cached(tmp_path, monkeypatch):
    missing = tmp_path / "missing"
    monkeypatch.setattr(elf, "DEBUG_PATH", str(missing))
    monkeypatch.setattr(elf, "_debug_path_state", None)
    assert debug_path_exists() is False
    missing.mkdir()
    assert debug_path_exists() is False


def test_locate_debugaltlink(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "_debug_path_state", False)
    prog = tmp_path / "prog"
    prog.write_bytes(b"binary")
    alt = tmp_path / "alt.debug"
    alt.write_bytes(b"alt")
    assert locate_debugaltlink(prog, str(alt.resolve()).encode(), b"\x01\x02") == alt.resolve()
    assert locate_debugaltlink(prog, b"alt.debug", b"\x01\x02") == tmp_path.resolve() / "alt.debug"
    assert locate_debugaltlink(prog, b"nothing.debug", b"\x01\x02") is None


def test_locate_debugaltlink_falls_back_to_build_id(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "DEBUG_PATH", str(tmp_path))
    monkeypatch.setattr(elf, "_debug_path_state", True)
    prog = tmp_path / "prog"
    prog.write_bytes(b"binary")
    assert locate_debugaltlink(prog, b"nothing.debug", b"\x12\x34") == locate_build_id(b"\x12\x34")


def test_gnu_debugaltlink_path(tmp_path, monkeypatch):
    monkeypatch.setattr(elf, "_debug_path_state", False)
    prog = tmp_path / "prog"
    prog.write_bytes(b"binary")
    (tmp_path / "alt.debug").write_bytes(b"alt")
    build_id = b"\xde\xad\xbe\xef"
    section = b"alt.debug\0" + build_id
    obj = ElfObject.parse(build_elf([{"name": b".gnu_debugaltlink", "type": 1, "data": section}]))
    assert obj.gnu_debugaltlink_path(prog) == (tmp_path.resolve() / "alt.debug", build_id)


def test_load_dwarf_package(tmp_path):
    (tmp_path / "lib.so.dwp").write_bytes(symtab_elf(SYMBOLS))
    stash = Stash()
    package = load_dwarf_package(tmp_path / "lib.so", stash)
    assert package.search_symtab(0x1000) == b"foo"


def test_load_dwarf_package_without_extension(tmp_path):
    (tmp_path / "prog.dwp").write_bytes(
        build_elf([{"name": b".debug_info.dwo", "type": 1, "data": b"dwo"}])
    )
    package = load_dwarf_package(tmp_path / "prog", Stash())
    assert package.section(Stash(), ".debug_info.dwo") == b"dwo"
    assert load_dwarf_package(tmp_path / "other", Stash()) is None