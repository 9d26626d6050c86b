"""Turning addresses into symbols: names, files and line numbers."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path

from symresolve.cache import ResolvedSymbol, global_cache
from symresolve.types import BytesOrWideString

_lock = threading.RLock()


def format_symbol_name(raw: bytes) -> str:
    """Decode ``raw`` as UTF-8, putting U+FFFD in place of each invalid sequence.

    A truncated sequence at the very end becomes a single U+FFFD.
    """
    return bytes(raw).decode("utf-8", errors="replace")


class SymbolName:
    """A symbol name with access to its raw bytes and its text."""

    def __init__(self, raw: bytes) -> None:
        self._bytes = bytes(raw)
        try:
            self._text: str | None = self._bytes.decode("utf-8")
        except UnicodeDecodeError:
            self._text = None

    def as_str(self) -> str | None:
        """Return the name as text, or ``None`` if it is not valid UTF-8."""
        return self._text

    def as_bytes(self) -> bytes:
        """Return the raw bytes of the name."""
        return self._bytes

    def __str__(self) -> str:
        return format_symbol_name(self._bytes)

    def __repr__(self) -> str:
        return repr(format_symbol_name(self._bytes))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SymbolName):
            return self._bytes == other._bytes
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._bytes)


@dataclass(frozen=True)
class Symbol:
    """Information found for one address; any part of it may be missing."""

    inner: ResolvedSymbol = field(default_factory=ResolvedSymbol)

    def name(self) -> SymbolName | None:
        """Return the function's name, if known."""
        if self.inner.name is None:
            return None
        return SymbolName(self.inner.name)

    def addr(self) -> int | None:
        """Return the starting address of the function, if known."""
        return self.inner.addr

    def filename_raw(self) -> BytesOrWideString | None:
        """Return the source file name as raw bytes, if known."""
        if self.inner.filename is None:
            return None
        return BytesOrWideString(os.fsencode(self.inner.filename))

    def filename(self) -> Path | None:
        """Return the source file where the function is defined, if known."""
        if self.inner.filename is None:
            return None
        return Path(self.inner.filename)

    def lineno(self) -> int | None:
        """Return the line number being executed, if known."""
        return self.inner.lineno

    def colno(self) -> int | None:
        """Return the column number being executed, if known."""
        return self.inner.colno

    def __repr__(self) -> str:
        parts = []
        name = self.name()
        if name is not None:
            parts.append(f"name={name!r}")
        addr = self.addr()
        if addr is not None:
            parts.append(f"addr={addr:#x}")
        filename = self.filename()
        if filename is not None:
            parts.append(f"filename={str(filename)!r}")
        lineno = self.lineno()
        if lineno is not None:
            parts.append(f"lineno={lineno}")
        return f"Symbol({', '.join(parts)})"


def adjust_ip(addr: int) -> int:
    """Step a return address back by one so it points into the call itself.

    Zero is left unchanged.
    """
    return addr if addr == 0 else addr - 1


def resolve(addr: int) -> list[Symbol]:
    """Return the symbols for the return address ``addr``.

    The list is empty when nothing could be found, and may hold several
    entries for inlined functions.
    """
    with _lock:
        return [Symbol(found) for found in global_cache().resolve(adjust_ip(addr))]


def clear_symbol_cache() -> None:
    """Release the parsed object files cached for symbol lookup."""
    with _lock:
        global_cache().clear()