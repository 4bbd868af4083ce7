"""
Centralized transport configuration defaults for msgwire.

Every stream and datagram transport reads its defaults from here so that a
client and a server built from the same release always agree on framing
limits and buffer sizes.
"""

from __future__ import annotations

from dataclasses import dataclass

# Wire framing
HEADER_SIZE = 4  # int32 length prefix
HEADER_FORMAT = "<i"  # little-endian signed 32-bit
MAX_FRAME_LENGTH = 2**31 - 1  # largest value an int32 prefix can carry

# Per-connection limits
DEFAULT_BUFFER_SIZE = 1024  # bytes per recv() call
DEFAULT_MAX_PACKAGE_SIZE = 1024 * 1024  # 1MB

# Listener settings
DEFAULT_BACKLOG = 10

# TLS
DEFAULT_HANDSHAKE_TIMEOUT = 30.0  # seconds; None blocks until the peer answers

# Local binding
ANY_ADDRESS = ("0.0.0.0", 0)
ANY_ADDRESS_V6 = ("::", 0)


@dataclass(frozen=True, slots=True)
class TransportDefaults:
    """Bundle of defaults with presets for common deployment shapes."""

    buffer_size: int = DEFAULT_BUFFER_SIZE
    max_package_size: int = DEFAULT_MAX_PACKAGE_SIZE
    backlog: int = DEFAULT_BACKLOG

    @classmethod
    def for_bulk_transfer(cls) -> TransportDefaults:
        """Defaults for peers exchanging large packages.

        Larger reads cut the number of recv() calls per package and the
        package limit allows state snapshots of a few megabytes.
        """
        return cls(
            buffer_size=64 * 1024,
            max_package_size=16 * 1024 * 1024,
            backlog=DEFAULT_BACKLOG,
        )

    @classmethod
    def for_small_messages(cls) -> TransportDefaults:
        """Defaults for chatty peers sending many small packages."""
        return cls(
            buffer_size=DEFAULT_BUFFER_SIZE,
            max_package_size=64 * 1024,
            backlog=128,
        )


STANDARD_DEFAULTS = TransportDefaults()
BULK_DEFAULTS = TransportDefaults.for_bulk_transfer()
SMALL_MESSAGE_DEFAULTS = TransportDefaults.for_small_messages()
