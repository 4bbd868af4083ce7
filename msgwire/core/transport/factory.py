"""
Transport factory and protocol registry for msgwire.

Each transport module registers its classes and a ``ProtocolSpec`` here at
import time. The factory turns URLs such as ``tcp://host:port`` or
``tcps://host:port`` into connected connections, and protocol names into
listeners or datagram endpoints.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from loguru import logger

from ...datastructures.type_aliases import HostName, PortNumber, TransportURL
from .defaults import ANY_ADDRESS, ANY_ADDRESS_V6
from .interfaces import Package, TransportConfig, TransportError
from .stream import address_family


class TransportProtocol(Enum):
    """Supported transport protocols."""

    TCP = "tcp"
    TCP_SECURE = "tcps"
    UDP = "udp"


@dataclass(slots=True)
class ProtocolSpec:
    """Specification for a transport protocol.

    This describes the wire format and behaviour so that peers written
    outside this package can interoperate.
    """

    name: str
    version: str
    description: str

    # Protocol behavior specification
    message_framing: str  # e.g., "length-prefixed", "datagram"
    byte_order: str | None = None
    max_message_size: int | None = None
    connection_oriented: bool = True

    # Security specification
    security_schemes: list[str] = field(default_factory=list)  # e.g., ["TLS", "none"]

    # Protocol-specific metadata
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for external documentation."""
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "message_framing": self.message_framing,
            "byte_order": self.byte_order,
            "max_message_size": self.max_message_size,
            "connection_oriented": self.connection_oriented,
            "security_schemes": self.security_schemes,
            "metadata": self.metadata,
        }


class TransportRegistry:
    """Registry for transport implementations and their specifications."""

    def __init__(self) -> None:
        self._connections: dict[TransportProtocol, type] = {}
        self._listeners: dict[TransportProtocol, type | None] = {}
        self._specs: dict[TransportProtocol, ProtocolSpec] = {}

    def register_transport(
        self,
        protocol: TransportProtocol,
        connection_class: type,
        listener_class: type | None,
        spec: ProtocolSpec,
    ) -> None:
        """Register a transport implementation.

        Args:
            protocol: Transport protocol enum
            connection_class: Connection (or endpoint) implementation
            listener_class: Listener implementation, None if connectionless
            spec: Protocol specification for external peers
        """
        if protocol in self._connections:
            logger.debug(f"Replacing registered transport for {protocol.value}")
        self._connections[protocol] = connection_class
        self._listeners[protocol] = listener_class
        self._specs[protocol] = spec

    def get_connection_class(self, protocol: TransportProtocol) -> type:
        """Get connection class for protocol."""
        if protocol not in self._connections:
            raise TransportError(
                f"No transport registered for protocol: {protocol.value}"
            )
        return self._connections[protocol]

    def get_listener_class(self, protocol: TransportProtocol) -> type:
        """Get listener class for protocol."""
        listener_class = self._listeners.get(protocol)
        if listener_class is None:
            raise TransportError(
                f"No listener registered for protocol: {protocol.value}"
            )
        return listener_class

    def get_protocol_spec(self, protocol: TransportProtocol) -> ProtocolSpec:
        """Get protocol specification."""
        if protocol not in self._specs:
            raise TransportError(f"No specification for protocol: {protocol.value}")
        return self._specs[protocol]

    def list_protocols(self) -> list[TransportProtocol]:
        """List all registered protocols."""
        return list(self._connections.keys())

    def get_all_specs(self) -> dict[str, dict[str, Any]]:
        """Get all protocol specifications for documentation."""
        return {
            protocol.value: spec.to_dict() for protocol, spec in self._specs.items()
        }


# Global transport registry
_registry = TransportRegistry()


def _parse_protocol(protocol: str | TransportProtocol) -> TransportProtocol:
    if isinstance(protocol, TransportProtocol):
        return protocol
    try:
        return TransportProtocol(protocol.lower())
    except ValueError:
        raise TransportError(f"Unsupported transport protocol: {protocol}")


class TransportFactory:
    """Factory for creating connections, listeners and datagram endpoints."""

    @staticmethod
    def create_connection[P: Package](
        url: TransportURL,
        package_type: type[P],
        config: TransportConfig | None = None,
        *,
        connect: bool = True,
        local_address: tuple[str, int] | None = None,
    ) -> Any:
        """Create a stream connection for ``url`` and (by default) connect it.

        For ``tcps://`` URLs the URL host doubles as the TLS server name
        unless ``config.security.server_hostname`` says otherwise.
        Without ``local_address`` the socket binds the wildcard address of
        the URL host's family.

        Raises:
            TransportError: If the protocol is unsupported or connectionless,
                or the URL lacks a host or port
            TransportConnectionError: If connecting fails
        """
        if config is None:
            config = TransportConfig()

        parsed = urlparse(url)
        protocol = _parse_protocol(parsed.scheme)
        spec = _registry.get_protocol_spec(protocol)
        if not spec.connection_oriented:
            raise TransportError(
                f"{protocol.value} is connectionless; use create_endpoint instead"
            )

        host = parsed.hostname
        port = parsed.port
        if not host or not port:
            raise TransportError(f"Invalid {protocol.value} URL: {url}")

        if local_address is None:
            if address_family((host, port)) == socket.AF_INET6:
                local_address = ANY_ADDRESS_V6
            else:
                local_address = ANY_ADDRESS

        connection_class = _registry.get_connection_class(protocol)
        if getattr(connection_class, "is_secure", False):
            connection = connection_class(
                package_type,
                config,
                local_address,
                server_hostname=config.security.server_hostname or host,
            )
        else:
            connection = connection_class(package_type, config, local_address)

        if connect:
            connection.connect((host, port))
        return connection

    @staticmethod
    def create_listener[P: Package](
        protocol: str | TransportProtocol,
        host: HostName,
        port: PortNumber,
        package_type: type[P],
        config: TransportConfig | None = None,
    ) -> Any:
        """Create (but do not start) a listener bound to ``host:port``.

        Raises:
            TransportError: If the protocol is unsupported or connectionless
        """
        listener_class = _registry.get_listener_class(_parse_protocol(protocol))
        return listener_class((host, port), package_type, config)

    @staticmethod
    def create_endpoint[P: Package](
        host: HostName,
        port: PortNumber,
        package_type: type[P],
        config: TransportConfig | None = None,
    ) -> Any:
        """Create a datagram endpoint bound to ``host:port``."""
        endpoint_class = _registry.get_connection_class(TransportProtocol.UDP)
        return endpoint_class(package_type, config, (host, port))

    @staticmethod
    def get_protocol_spec(protocol: str | TransportProtocol) -> ProtocolSpec:
        """Get protocol specification for external peer development."""
        return _registry.get_protocol_spec(_parse_protocol(protocol))

    @staticmethod
    def list_supported_protocols() -> list[str]:
        """List all supported transport protocols."""
        return [protocol.value for protocol in _registry.list_protocols()]

    @staticmethod
    def get_all_protocol_specs() -> dict[str, dict[str, Any]]:
        """Get all protocol specifications for documentation generation."""
        return _registry.get_all_specs()


def register_transport(
    protocol: TransportProtocol,
    connection_class: type,
    listener_class: type | None,
    spec: ProtocolSpec,
) -> None:
    """Register a transport implementation in the global registry.

    Transport modules call this at import time.
    """
    _registry.register_transport(protocol, connection_class, listener_class, spec)
