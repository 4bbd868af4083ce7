"""Stock package types implementing the msgwire package contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Self


@dataclass(frozen=True, slots=True)
class BytesPackage:
    """Raw bytes, carried unchanged."""

    data: bytes = b""

    def to_bytes(self) -> bytes:
        return self.data

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        return cls(bytes(data))

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class TextPackage:
    """UTF-8 text.

    Decoding replaces invalid byte sequences instead of raising, so any
    payload a peer sends decodes to some string.
    """

    text: str = ""

    def to_bytes(self) -> bytes:
        return self.text.encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        return cls(bytes(data).decode("utf-8", errors="replace"))

    def __str__(self) -> str:
        return self.text
