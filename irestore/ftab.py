"""Reading and writing of 'ftab' firmware containers."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Union

MAGIC = b"ftab"

# always_01, always_ff, six unused words, tag, magic, entry count, padding.
_HEADER = struct.Struct("<II24x4s4sII")
# tag (big endian, kept as bytes), offset, size, padding.
_ENTRY = struct.Struct("<4sIII")

TagLike = Union[bytes, str, int]


class FtabError(ValueError):
    """Raised when ftab data is malformed or an entry cannot be added."""


def _normalize_tag(tag: TagLike) -> bytes:
    if isinstance(tag, int):
        tag = tag.to_bytes(4, "big")
    elif isinstance(tag, str):
        tag = tag.encode("ascii")
    tag = bytes(tag)
    if len(tag) != 4:
        raise FtabError(f"tag must be four bytes: {tag!r}")
    if tag == b"\0\0\0\0":
        raise FtabError("tag must not be zero")
    return tag


@dataclass
class FtabEntry:
    """One tagged blob in an ftab container."""

    tag: bytes
    offset: int
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Ftab:
    """An ftab container: a tag and a list of tagged entries."""

    tag: bytes
    entries: list[FtabEntry] = field(default_factory=list)
    always_01: int = 1
    always_ff: int = 0xFFFFFFFF

    @classmethod
    def parse(cls, data: bytes) -> "Ftab":
        """Decode an ftab container from ``data``."""
        data = bytes(data)
        if not data:
            raise FtabError("no ftab data")
        if len(data) < _HEADER.size:
            raise FtabError("buffer too small for ftab data")
        always_01, always_ff, tag, magic, count, _ = _HEADER.unpack_from(data)
        if magic != MAGIC:
            raise FtabError(f"unexpected magic value {magic!r}")
        table_end = _HEADER.size + count * _ENTRY.size
        if table_end > len(data):
            raise FtabError("entry table exceeds the data")
        entries = []
        for entry_tag, offset, size, _ in _ENTRY.iter_unpack(data[_HEADER.size : table_end]):
            if offset + size > len(data):
                raise FtabError(f"entry {entry_tag!r} exceeds the data")
            entries.append(FtabEntry(entry_tag, offset, data[offset : offset + size]))
        return cls(tag, entries, always_01, always_ff)

    def get_entry(self, tag: TagLike) -> bytes:
        """Return the data of the last entry with ``tag``; KeyError if there is none."""
        wanted = _normalize_tag(tag)
        for entry in reversed(self.entries):
            if entry.tag == wanted:
                return entry.data
        raise KeyError(wanted)

    def add_entry(self, tag: TagLike, data: bytes) -> None:
        """Append an entry and lay all entries out one after another."""
        tag = _normalize_tag(tag)
        data = bytes(data)
        if not data:
            raise FtabError("entry data must not be empty")
        self.entries.append(FtabEntry(tag, 0, data))
        offset = _HEADER.size + _ENTRY.size * len(self.entries)
        for entry in self.entries:
            entry.offset = offset
            offset += entry.size

    def to_bytes(self) -> bytes:
        """Encode the container; entry data follows the table in entry order."""
        parts = [
            _HEADER.pack(
                self.always_01, self.always_ff, _normalize_tag(self.tag), MAGIC, len(self.entries), 0
            )
        ]
        parts.extend(_ENTRY.pack(e.tag, e.offset, e.size, 0) for e in self.entries)
        parts.extend(e.data for e in self.entries)
        return b"".join(parts)