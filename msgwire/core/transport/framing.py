"""
Length-prefixed message framing for stream transports.

Wire Protocol:
- Frame Format: [4-byte length][payload]
- Length Encoding: little-endian signed int32
- Zero length: a valid empty payload (also usable as an application keepalive)
- Negative length or length above the configured maximum: protocol violation

The framer does no I/O. The receive loop hands it whatever ``recv()``
returned, in any chunking, and it reports each completed payload once, in
order, never partially and never merged with its neighbour.
"""

from __future__ import annotations

import struct

from loguru import logger

from ...datastructures.type_aliases import ByteCount
from .defaults import (
    DEFAULT_MAX_PACKAGE_SIZE,
    HEADER_FORMAT,
    HEADER_SIZE,
    MAX_FRAME_LENGTH,
)
from .events import EventHandlers
from .interfaces import ProtocolViolationError, validate_max_package_size

HEADER_STRUCT = struct.Struct(HEADER_FORMAT)


class LengthPrefixFramer:
    """Incremental decoder turning byte chunks into whole payloads.

    The framer is always in exactly one of two states: accumulating the
    4-byte length prefix, or accumulating a payload of a known length. It
    switches only once the active target is full. After a protocol violation
    it latches into a failed state and refuses further input until ``reset``.

    Example:
        framer = LengthPrefixFramer(max_payload_size=1024)
        framer.data_received.subscribe(lambda _, payload: print(payload))
        framer.feed(b"\\x02\\x00")
        framer.feed(b"\\x00\\x00hi")  # prints b'hi'
    """

    def __init__(
        self, max_payload_size: ByteCount = DEFAULT_MAX_PACKAGE_SIZE
    ) -> None:
        self._max_payload_size = validate_max_package_size(max_payload_size)
        self._length_buffer = bytearray(HEADER_SIZE)
        self._payload_buffer: bytearray | None = None
        self._bytes_received = 0
        self._failed = False
        self.data_received: EventHandlers[LengthPrefixFramer, bytes] = EventHandlers(
            "data_received"
        )

    @property
    def max_payload_size(self) -> ByteCount:
        return self._max_payload_size

    @max_payload_size.setter
    def max_payload_size(self, value: ByteCount) -> None:
        self._max_payload_size = validate_max_package_size(value)

    @property
    def awaiting_payload(self) -> bool:
        """True while a payload of known length is being accumulated."""
        return self._payload_buffer is not None

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def pending_bytes(self) -> ByteCount:
        """Bytes accumulated toward the current target."""
        return self._bytes_received

    @staticmethod
    def wrap(data: bytes) -> bytes:
        """Return the wire frame for ``data``."""
        if len(data) > MAX_FRAME_LENGTH:
            raise ValueError(
                f"Payload of {len(data)} bytes does not fit an int32 length prefix"
            )
        return HEADER_STRUCT.pack(len(data)) + data

    @staticmethod
    def wrap_keep_alive() -> bytes:
        """Return an empty frame, usable as an application-level keepalive."""
        return HEADER_STRUCT.pack(0)

    def reset(self) -> None:
        """Drop any partial frame and clear the failed latch."""
        self._payload_buffer = None
        self._bytes_received = 0
        self._failed = False

    def feed(self, chunk: bytes | bytearray | memoryview) -> list[bytes]:
        """Consume ``chunk`` entirely.

        Every payload completed by this chunk is emitted through
        ``data_received`` before the call returns, and the same payloads are
        returned in order.

        Raises:
            ProtocolViolationError: If a length prefix is negative or above
                ``max_payload_size``, or if the framer already failed.
        """
        if self._failed:
            raise ProtocolViolationError(
                "Framer stopped after an earlier protocol violation"
            )

        completed: list[bytes] = []
        view = memoryview(chunk).cast("B")
        offset = 0

        while offset < len(view):
            target = (
                self._payload_buffer
                if self._payload_buffer is not None
                else self._length_buffer
            )
            count = min(len(target) - self._bytes_received, len(view) - offset)
            target[self._bytes_received : self._bytes_received + count] = view[
                offset : offset + count
            ]
            offset += count
            self._bytes_received += count

            if self._bytes_received == len(target):
                payload = self._target_completed()
                if payload is not None:
                    completed.append(payload)
                    self.data_received.emit(self, payload)

        return completed

    def _target_completed(self) -> bytes | None:
        self._bytes_received = 0

        if self._payload_buffer is not None:
            payload = bytes(self._payload_buffer)
            self._payload_buffer = None
            return payload

        (length,) = HEADER_STRUCT.unpack(self._length_buffer)

        if length < 0:
            self._failed = True
            raise ProtocolViolationError(f"Data length {length} is less than zero")

        if length > self._max_payload_size:
            self._failed = True
            raise ProtocolViolationError(
                f"Data length {length} is greater than the maximum data size "
                f"{self._max_payload_size}"
            )

        if length == 0:
            return b""

        logger.trace(f"Awaiting payload of {length} bytes")
        self._payload_buffer = bytearray(length)
        return None
