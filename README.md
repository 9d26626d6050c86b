# symresolve

symresolve maps a raw code address to the name of the function that holds
it. It reads the symbol tables of object files in ELF, PE/COFF or Mach-O
format. For ELF files it follows separate debug files found by build ID or by
a `.gnu_debuglink` section. For Mach-O files it looks for a matching `.dSYM`
bundle next to the image.

The package uses only the standard library.

## Resolving an address

```python
from symresolve.symbolize import resolve, clear_symbol_cache

for symbol in resolve(0x55D4C0A01234):
    name = symbol.name()
    print(name if name is not None else "<unknown>")

clear_symbol_cache()  # drop the parsed files that are kept between calls
```

`resolve` returns a list of `Symbol` objects for the address. The list is
empty when nothing can be found. Before the lookup the address is moved back
by one with `adjust_ip`, because a return address points just past the call
instruction. Zero is left as it is.

The libraries to search come from `symresolve.libraries.native_libraries()`.
That function reads `/proc/self/maps`, so lookups in the running process work
only where that file exists. Elsewhere the list of libraries is empty.

A `Symbol` offers `name()`, `addr()`, `filename()`, `filename_raw()`,
`lineno()` and `colno()`. Each of them returns `None` when the value is not
known.

`SymbolName` holds the raw bytes of a name:

- `as_bytes()` returns the bytes.
- `as_str()` returns the text, or `None` when the bytes are not valid UTF-8.
- `str()` decodes the bytes and puts U+FFFD in place of each invalid sequence. `format_symbol_name` does the same for any byte string.

## Working with object files directly

```python
from pathlib import Path
from symresolve.elf import ElfObject
from symresolve.stash import Stash

data = Path("/usr/bin/true").read_bytes()
obj = ElfObject.parse(data)
if obj is not None:
    print(obj.build_id())
    print(obj.search_symtab(0x1000))
    debug_info = obj.section(Stash(), ".debug_info")
```

`ElfObject.section` decompresses sections in two forms:

- sections compressed with zlib in the standard ELF format;
- the older GNU `.zdebug_*` sections.

The decompressed buffer is kept in the given `Stash`.

`ElfObject` can also find separate debug files:

- `gnu_debuglink_path(path)` returns the debug file named by `.gnu_debuglink`, with its CRC.
- `gnu_debugaltlink_path(path)` returns the supplementary file named by `.gnu_debugaltlink`, with the build ID it must carry.

The module-level functions `locate_build_id`, `locate_debuglink`,
`locate_debugaltlink` and `load_dwarf_package` carry out the same search.

`symresolve.coff.CoffObject` and `symresolve.macho.MachObject` have the same
`parse`, `section` and `search_symtab` methods, for PE and Mach-O images.
`symresolve.coff.get_image_base` reads a PE image's preferred load address.

`symresolve.macho.find_header` picks the slice of a fat archive that matches a
CPU type. When no CPU type is given it uses the running machine's.
`symresolve.macho.load_dsym` searches `*.dSYM` bundles for an image with a
given UUID.

`symresolve.stash.map_file` maps a file read-only and returns `None` on
failure.

## Process memory maps

```python
from symresolve.maps import MapsEntry, parse_maps

entry = MapsEntry.parse(
    "08056000-08077000 rw-p 00000000 00:00 0          [heap]"
)
assert entry.ip_matches(0x08060000)

entries = parse_maps("/proc/self/maps")
```

`MapsEntry.parse` raises `MapsParseError` for a line it cannot read.
`parse_maps` raises the same error when the file cannot be opened or read.

`symresolve.libraries.libraries_from_maps` groups file-backed entries into
`Library` objects. Each `Library` has segments and a load bias.

`symresolve.cache.Cache` does the following:

- finds the library that holds an address (`avma_to_svma`);
- keeps up to four parsed mappings in a least-recently-used order (`mapping_for_lib`);
- looks names up in them (`resolve`).

`global_cache()` returns the cache that is shared by the whole process.

## What it does not do

- Only symbol tables are read. DWARF debug information is never interpreted, so `filename()`, `lineno()`, `colno()` and `addr()` of a resolved `Symbol` are always `None`.
- There is no demangling. Names come back as they are stored in the symbol table.
- Loaded libraries are discovered only through `/proc/self/maps`. There is no discovery of loaded modules on Windows or macOS.
- The CRC from `.gnu_debuglink` is returned but not checked.
- zstd-compressed sections are not supported.
- Mach-O images without a `.dSYM` bundle are not searched for debug data in their original object files.
- There is no command-line tool.