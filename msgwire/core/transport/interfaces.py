"""
Core transport interfaces and types for msgwire.

This module defines the error hierarchy, the package contract every message
type implements, the configuration objects shared by all transports, and the
capability protocols (sending packages, accepting connections) that callers
can substitute with their own implementations.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from typing import Protocol, Self, runtime_checkable

from ...datastructures.type_aliases import BacklogSize, ByteCount
from .defaults import (
    DEFAULT_BACKLOG,
    DEFAULT_BUFFER_SIZE,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_MAX_PACKAGE_SIZE,
    TransportDefaults,
)


class TransportError(Exception):
    """Base exception for transport-related errors."""

    pass


class TransportConnectionError(TransportError):
    """Raised when connecting, accepting, handshaking or writing fails."""

    pass


class TransportClosedError(TransportError):
    """Raised when an operation is attempted on a disposed transport."""

    pass


class TransportStateError(TransportError):
    """Raised when an operation is not valid in the current lifecycle state."""

    pass


class ProtocolViolationError(TransportError):
    """Raised when a peer sends a frame that breaks the wire protocol."""

    pass


@runtime_checkable
class Package(Protocol):
    """Contract for application messages carried by msgwire.

    Implementations must be total: ``from_bytes`` is only ever handed payloads
    already bounded by the configured maximum package size and must not raise
    for any of them.
    """

    def to_bytes(self) -> bytes: ...

    @classmethod
    def from_bytes(cls, data: bytes) -> Self: ...


@runtime_checkable
class PackageSender[P: Package](Protocol):
    """Anything that can deliver whole packages to a connected peer."""

    def send(self, package: P) -> None: ...

    async def send_async(self, package: P) -> None: ...


@runtime_checkable
class ConnectionAcceptor[C](Protocol):
    """Anything that can hand out inbound connections one at a time."""

    def accept_one(self) -> C: ...

    async def accept_one_async(self) -> C: ...


def validate_buffer_size(value: ByteCount) -> ByteCount:
    if value <= 0:
        raise ValueError(f"buffer_size must be greater than zero, got {value}")
    return value


def validate_max_package_size(value: ByteCount) -> ByteCount:
    if value <= 0:
        raise ValueError(f"max_package_size must be greater than zero, got {value}")
    return value


def validate_backlog(value: BacklogSize) -> BacklogSize:
    if value < 0:
        raise ValueError(f"backlog must be greater than or equal to zero, got {value}")
    return value


@dataclass(frozen=True, slots=True)
class SecurityConfig:
    """TLS configuration for secure stream transports."""

    ssl_context: ssl.SSLContext | None = None
    verify_cert: bool = True
    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None
    server_hostname: str | None = None
    handshake_timeout: float | None = DEFAULT_HANDSHAKE_TIMEOUT

    @property
    def enabled(self) -> bool:
        return self.ssl_context is not None or self.cert_file is not None

    def create_client_context(self) -> ssl.SSLContext:
        """Create the context used by the initiating side of a handshake.

        With ``verify_cert`` left on, the peer chain and host name must both
        verify; any validation failure aborts the handshake.
        """
        if self.ssl_context:
            return self.ssl_context

        context = ssl.create_default_context(
            ssl.Purpose.SERVER_AUTH, cafile=self.ca_file
        )
        context.minimum_version = ssl.TLSVersion.TLSv1_2

        if not self.verify_cert:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if self.cert_file and self.key_file:
            context.load_cert_chain(self.cert_file, self.key_file)

        return context

    def create_server_context(self) -> ssl.SSLContext:
        """Create the context used by the accepting side of a handshake."""
        if self.ssl_context:
            return self.ssl_context

        if not self.cert_file:
            raise ValueError("TLS listeners require cert_file (and usually key_file)")

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(self.cert_file, self.key_file)
        return context


@dataclass(slots=True)
class TransportConfig:
    """Configuration shared by connections, listeners and datagram endpoints."""

    # Bytes requested per recv() call
    buffer_size: ByteCount = DEFAULT_BUFFER_SIZE

    # Largest payload a peer may announce in a length prefix
    max_package_size: ByteCount = DEFAULT_MAX_PACKAGE_SIZE

    # Pending-connection queue length for listeners
    backlog: BacklogSize = DEFAULT_BACKLOG

    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        validate_buffer_size(self.buffer_size)
        validate_max_package_size(self.max_package_size)
        validate_backlog(self.backlog)

    @classmethod
    def from_defaults(
        cls, defaults: TransportDefaults, security: SecurityConfig | None = None
    ) -> TransportConfig:
        """Build a config from one of the presets in ``defaults``."""
        return cls(
            buffer_size=defaults.buffer_size,
            max_package_size=defaults.max_package_size,
            backlog=defaults.backlog,
            security=security or SecurityConfig(),
        )
