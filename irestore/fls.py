"""Reading and patching of .fls baseband firmware images."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Optional

_UINT32_MASK = 0xFFFFFFFF
_BASE_HEADER_SIZE = 12
_MIN_ELEMENT_HEAD = 8

TYPE_SIGNED = 0x0C

# Number of 32-bit header words that follow type, size and empty.
_EXTRA_WORDS = {0x0C: 7, 0x10: 3, 0x14: 3}
# Index into the extra words of the "data size" and "offset" fields.
_DATA_SIZE_WORD = {0x0C: 4, 0x10: 0, 0x14: 0}
_OFFSET_WORD = {0x0C: 6, 0x10: 2, 0x14: 2}

# Positions inside the payload of the signed element.
_SIG_DATA_SIZE_POS = 0x10
_SIG_OFFSET_POS = 0x14
_SIG_HEADER_END = 0x18


class FlsError(ValueError):
    """Raised when fls data is malformed or cannot be modified."""


@dataclass
class FlsElement:
    """One element of an fls image: a typed header followed by a payload."""

    type: int
    size: int
    empty: int = 0
    words: list[int] = field(default_factory=list)
    payload: bytes = b""

    @property
    def header_size(self) -> int:
        return _BASE_HEADER_SIZE + 4 * len(self.words)

    def _index(self, table: dict[int, int], name: str) -> int:
        index = table.get(self.type)
        if index is None:
            raise AttributeError(f"element type {self.type:#x} has no {name} field")
        return index

    @property
    def data_size(self) -> int:
        """Payload size as recorded in the header."""
        return self.words[self._index(_DATA_SIZE_WORD, "data_size")]

    @data_size.setter
    def data_size(self, value: int) -> None:
        self.words[self._index(_DATA_SIZE_WORD, "data_size")] = value & _UINT32_MASK

    @property
    def offset(self) -> int:
        """Absolute position of the payload in the image, as recorded in the header."""
        return self.words[self._index(_OFFSET_WORD, "offset")]

    @offset.setter
    def offset(self, value: int) -> None:
        self.words[self._index(_OFFSET_WORD, "offset")] = value & _UINT32_MASK

    def to_bytes(self) -> bytes:
        header = struct.pack(
            f"<{3 + len(self.words)}I", self.type, self.size, self.empty, *self.words
        )
        return header + self.payload


@dataclass
class FlsFile:
    """An fls image as a sequence of elements."""

    elements: list[FlsElement] = field(default_factory=list)

    @classmethod
    def parse(cls, data: bytes) -> "FlsFile":
        """Split ``data`` into its elements."""
        data = bytes(data)
        total = len(data)
        if not total:
            raise FlsError("no fls data")
        elements = []
        offset = 0
        while offset < total:
            if total - offset < _MIN_ELEMENT_HEAD:
                raise FlsError(f"truncated element header at offset {offset:#x}")
            elem_type, size = struct.unpack_from("<II", data, offset)
            if offset + size > total:
                raise FlsError(f"element at offset {offset:#x} exceeds the data")
            extra = _EXTRA_WORDS.get(elem_type, 0)
            header_size = _BASE_HEADER_SIZE + 4 * extra
            if size < header_size:
                raise FlsError(f"element at offset {offset:#x} is shorter than its header")
            _, _, empty, *words = struct.unpack_from(f"<{3 + extra}I", data, offset)
            payload = data[offset + header_size : offset + size]
            elements.append(FlsElement(elem_type, size, empty, list(words), payload))
            offset += size
        return cls(elements)

    @property
    def data(self) -> bytes:
        """The serialised image."""
        return b"".join(element.to_bytes() for element in self.elements)

    @property
    def size(self) -> int:
        return sum(element.size for element in self.elements)

    @property
    def c_element(self) -> Optional[FlsElement]:
        """The signed (type 0x0c) element, the last one if there are several."""
        signed = [e for e in self.elements if e.type == TYPE_SIGNED]
        return signed[-1] if signed else None

    def _signed_elements(self) -> list[FlsElement]:
        if not self.elements:
            raise FlsError("no data")
        signed = [e for e in self.elements if e.type == TYPE_SIGNED]
        if not signed:
            raise FlsError("no 0x0c element in fls data")
        return signed

    def _relocate(self) -> None:
        position = 0
        for element in self.elements:
            if element.type in _OFFSET_WORD:
                element.offset = position + element.header_size
            position += element.size

    def update_sig_blob(self, sigdata: bytes) -> None:
        """Replace the signature at the end of the signed element with ``sigdata``."""
        targets = self._signed_elements()
        signed = targets[-1]
        if len(signed.payload) < _SIG_HEADER_END:
            raise FlsError("signed element payload too short")
        datasize, sigoffset = struct.unpack_from("<II", signed.payload, _SIG_DATA_SIZE_POS)
        if datasize != signed.data_size:
            raise FlsError(f"data size mismatch ({datasize:#x} != {signed.data_size:#x})")
        if sigoffset > datasize:
            raise FlsError(
                f"signature offset greater than data size ({sigoffset:#x} > {datasize:#x})"
            )
        old_len = datasize - sigoffset
        sigdata = bytes(sigdata)
        for element in targets:
            if len(element.payload) - old_len < _SIG_OFFSET_POS:
                raise FlsError("signed element payload too short for its signature")
        for element in targets:
            payload = bytearray(element.payload[: len(element.payload) - old_len] + sigdata)
            element.data_size = element.data_size - old_len + len(sigdata)
            struct.pack_into("<I", payload, _SIG_DATA_SIZE_POS, element.data_size)
            element.payload = bytes(payload)
            element.size = element.header_size + len(payload)
        self._relocate()

    def insert_ticket(self, ticket: bytes) -> None:
        """Put ``ticket``, padded with 0xFF to four bytes, before the signed payload."""
        targets = self._signed_elements()
        ticket = bytes(ticket)
        padded = ticket + b"\xff" * (-len(ticket) % 4)
        for element in targets:
            element.payload = padded + element.payload
            element.size = (element.size + len(padded)) & _UINT32_MASK
            element.data_size = element.data_size + len(padded)
        self._relocate()