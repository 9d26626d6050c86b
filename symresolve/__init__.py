"""Resolve code addresses to symbol names from ELF, PE/COFF and Mach-O symbol tables."""

__version__ = "0.1.0"

__all__ = [
    "types",
    "lru",
    "stash",
    "maps",
    "elf",
    "coff",
    "macho",
    "libraries",
    "cache",
    "symbolize",
]