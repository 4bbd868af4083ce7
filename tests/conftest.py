"""Pytest configuration and fixtures for msgwire testing.

Every transport created through ``transport_context`` is disposed and its
loop thread joined at teardown, so a failing test cannot leave a receive or
accept thread blocked on a socket.
"""

import sys
from collections.abc import Generator
from typing import Any

import pytest
from loguru import logger

from msgwire.core.packages import BytesPackage
from msgwire.core.transport import TCPConnection, TCPListener

from .test_helpers import LOCALHOST, TestCertificates, create_test_certificates


class TransportTestContext:
    """Tracks transports created by a test and disposes them afterwards."""

    def __init__(self) -> None:
        self.transports: list[Any] = []

    def track[T](self, transport: T) -> T:
        self.transports.append(transport)
        return transport

    def close(self) -> None:
        for transport in reversed(self.transports):
            try:
                transport.dispose()
            except Exception as e:
                logger.warning(f"Error disposing {transport!r}: {e}")
        for transport in self.transports:
            if not transport.join(timeout=5.0):
                logger.warning(f"{transport!r} loop did not stop")
        self.transports.clear()


@pytest.fixture
def transport_context() -> Generator[TransportTestContext, None, None]:
    """Provides a context that disposes every tracked transport."""
    context = TransportTestContext()
    try:
        yield context
    finally:
        context.close()


@pytest.fixture
def tcp_listener(
    transport_context: TransportTestContext,
) -> TCPListener[BytesPackage]:
    """A listening (not started) TCP listener on an ephemeral port."""
    listener = transport_context.track(TCPListener((LOCALHOST, 0), BytesPackage))
    listener.listen()
    return listener


@pytest.fixture
def tcp_pair(
    transport_context: TransportTestContext, tcp_listener: TCPListener[BytesPackage]
) -> tuple[TCPConnection[BytesPackage], TCPConnection[BytesPackage]]:
    """A connected ``(client, server)`` pair; neither receive loop is started."""
    client = transport_context.track(TCPConnection(BytesPackage))
    client.connect(tcp_listener.local_address)
    server = transport_context.track(tcp_listener.accept_one())
    return client, server


@pytest.fixture(scope="session")
def tls_certificates(tmp_path_factory: pytest.TempPathFactory) -> TestCertificates:
    """CA-signed server certificate for ``localhost`` and ``127.0.0.1``."""
    return create_test_certificates(tmp_path_factory.mktemp("certs"))


@pytest.fixture
def reset_logging() -> Generator[None, None, None]:
    """Restore loguru's default stderr sink after a test reconfigures it."""
    yield
    logger.remove()
    logger.add(sys.stderr)
