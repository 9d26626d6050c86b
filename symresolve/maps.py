"""Parsing of ``/proc/self/maps`` style memory-map listings."""

from __future__ import annotations

import re
from dataclasses import dataclass

_HEX = re.compile(r"\+?[0-9A-Fa-f]+")
_USIZE_MAX = (1 << 64) - 1


class MapsParseError(ValueError):
    """Raised when a memory-map listing cannot be read or parsed."""


def _next_field(s: str) -> tuple[str, str]:
    head, sep, tail = s.lstrip().partition(" ")
    if not sep:
        return s, ""
    return head, tail


def _hex(text: str, limit: int = _USIZE_MAX) -> int:
    if not _HEX.fullmatch(text):
        raise MapsParseError("Couldn't parse hex number")
    value = int(text, 16)
    if value > limit:
        raise MapsParseError("Couldn't parse hex number")
    return value


@dataclass(frozen=True)
class MapsEntry:
    """One line of a memory-map listing.

    ``address`` is the (inclusive start, exclusive limit) range; ``perms``
    holds the four permission characters; ``pathname`` may be empty for
    anonymous mappings.
    """

    address: tuple[int, int]
    perms: tuple[str, str, str, str]
    offset: int
    dev: tuple[int, int]
    inode: int
    pathname: str = ""

    @classmethod
    def parse(cls, line: str) -> MapsEntry:
        """Parse ``address perms offset dev inode [pathname]``.

        The pathname may contain spaces and keeps trailing whitespace.
        """
        range_str, rest = _next_field(line)
        if not range_str:
            raise MapsParseError("Couldn't find address")
        perms_str, rest = _next_field(rest)
        if not perms_str:
            raise MapsParseError("Couldn't find permissions")
        offset_str, rest = _next_field(rest)
        if not offset_str:
            raise MapsParseError("Couldn't find offset")
        dev_str, rest = _next_field(rest)
        if not dev_str:
            raise MapsParseError("Couldn't find dev")
        inode_str, rest = _next_field(rest)
        if not inode_str:
            raise MapsParseError("Couldn't find inode")
        pathname = rest.lstrip()

        start, sep, limit = range_str.partition("-")
        if not sep:
            raise MapsParseError("Couldn't parse address range")
        address = (_hex(start), _hex(limit))

        if len(perms_str) < 4:
            raise MapsParseError("insufficient perms")
        if len(perms_str) > 4:
            raise MapsParseError("too many perms")
        perms = (perms_str[0], perms_str[1], perms_str[2], perms_str[3])

        offset = _hex(offset_str)

        major, sep, minor = dev_str.partition(":")
        if not sep:
            raise MapsParseError("Couldn't parse dev")
        dev = (_hex(major), _hex(minor))

        inode = _hex(inode_str)

        return cls(
            address=address,
            perms=perms,
            offset=offset,
            dev=dev,
            inode=inode,
            pathname=pathname,
        )

    def ip_matches(self, ip: int) -> bool:
        """Return whether ``ip`` lies inside this entry's address range."""
        start, limit = self.address
        return start <= ip < limit


def _lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_maps(path: str = "/proc/self/maps") -> list[MapsEntry]:
    """Read and parse every line of a memory-map listing."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as handle:
            try:
                text = handle.read()
            except (OSError, UnicodeDecodeError) as exc:
                raise MapsParseError(f"Couldn't read {path}") from exc
    except OSError as exc:
        raise MapsParseError(f"Couldn't open {path}") from exc
    return [MapsEntry.parse(line) for line in _lines(text)]