"""
Tests for the TLS-over-TCP transport.

Uses a throwaway CA and a server certificate for ``localhost`` and
``127.0.0.1`` generated with ``cryptography``.
"""

import socket
import ssl

import pytest

from msgwire.core.packages import TextPackage
from msgwire.core.transport import (
    SecurityConfig,
    TLSConnection,
    TLSListener,
    TransportConfig,
    TransportConnectionError,
    TransportFactory,
    TransportStateError,
)

from .test_helpers import LOCALHOST, EventRecorder


@pytest.fixture
def server_config(tls_certificates):
    return TransportConfig(
        security=SecurityConfig(
            cert_file=tls_certificates.cert_file,
            key_file=tls_certificates.key_file,
            handshake_timeout=2.0,
        )
    )


@pytest.fixture
def client_config(tls_certificates):
    return TransportConfig(
        security=SecurityConfig(ca_file=tls_certificates.ca_file, handshake_timeout=2.0)
    )


@pytest.fixture
def tls_listener(transport_context, server_config):
    """A started TLS listener whose accepted connections are recorded."""
    listener = transport_context.track(
        TLSListener((LOCALHOST, 0), TextPackage, server_config)
    )
    connected = EventRecorder()

    def on_client(listener, connection):
        transport_context.track(connection)
        connected(listener, connection)

    listener.client_connected.subscribe(on_client)
    listener.listen()
    listener.start(background=True)
    listener.connected = connected
    return listener


def _url(listener, host=LOCALHOST):
    return f"tcps://{host}:{listener.local_address[1]}"


class TestTLSHandshake:
    @pytest.mark.parametrize("host", [LOCALHOST, "localhost"])
    def test_secure_communication(
        self, transport_context, tls_listener, client_config, host
    ):
        client = transport_context.track(
            TransportFactory.create_connection(
                _url(tls_listener, host), TextPackage, client_config
            )
        )
        _, server = tls_listener.connected.next()

        assert isinstance(client, TLSConnection)
        assert client.is_secure
        assert client.tls_version in ("TLSv1.2", "TLSv1.3")
        assert server.tls_version == client.tls_version
        assert client.peer_certificate is not None

        at_server = EventRecorder()
        at_client = EventRecorder()
        server.package_received.subscribe(at_server)
        client.package_received.subscribe(at_client)
        server.start(background=True)
        client.start(background=True)

        client.send(TextPackage("Hello, secure world!"))
        assert at_server.next_argument() == TextPackage("Hello, secure world!")

        server.send(TextPackage("Hello, secure client!"))
        assert at_client.next_argument() == TextPackage("Hello, secure client!")

    def test_many_packages_over_tls(
        self, transport_context, tls_listener, client_config
    ):
        client = transport_context.track(
            TransportFactory.create_connection(
                _url(tls_listener), TextPackage, client_config
            )
        )
        _, server = tls_listener.connected.next()
        received = EventRecorder()
        server.package_received.subscribe(received)
        server.start(background=True)

        expected = [TextPackage(f"package {i} " + "y" * (i * 37)) for i in range(100)]
        for package in expected:
            client.send(package)

        assert received.arguments(len(expected)) == expected

    def test_untrusted_certificate_is_rejected(
        self, transport_context, tls_listener, tls_certificates, client_config
    ):
        untrusted = TransportConfig(
            security=SecurityConfig(
                ca_file=tls_certificates.untrusted_ca_file, handshake_timeout=2.0
            )
        )
        connection = transport_context.track(TLSConnection(TextPackage, untrusted))
        with pytest.raises(TransportConnectionError):
            connection.connect((LOCALHOST, tls_listener.local_address[1]))
        assert connection.is_disposed

        # The failed handshake is dropped; the accept loop keeps serving.
        client = transport_context.track(
            TransportFactory.create_connection(
                _url(tls_listener), TextPackage, client_config
            )
        )
        _, server = tls_listener.connected.next()
        assert server.is_connected
        assert client.is_connected
        assert tls_listener.is_running

    def test_hostname_mismatch_is_rejected(self, tls_listener, tls_certificates):
        config = TransportConfig(
            security=SecurityConfig(
                ca_file=tls_certificates.ca_file,
                server_hostname="wrong.example",
                handshake_timeout=2.0,
            )
        )
        with pytest.raises(TransportConnectionError):
            TransportFactory.create_connection(_url(tls_listener), TextPackage, config)

    def test_verification_can_be_disabled(self, transport_context, tls_listener):
        config = TransportConfig(
            security=SecurityConfig(verify_cert=False, handshake_timeout=2.0)
        )
        client = transport_context.track(
            TransportFactory.create_connection(_url(tls_listener), TextPackage, config)
        )
        assert client.is_connected
        _, server = tls_listener.connected.next()
        assert server.is_secure

    def test_explicit_ssl_context(
        self, transport_context, tls_listener, tls_certificates
    ):
        context = ssl.create_default_context(cafile=tls_certificates.ca_file)
        config = TransportConfig(security=SecurityConfig(ssl_context=context))
        client = transport_context.track(
            TransportFactory.create_connection(_url(tls_listener), TextPackage, config)
        )
        assert client.tls_version is not None

    def test_verification_requires_server_hostname(
        self, transport_context, client_config, tls_listener
    ):
        connection = transport_context.track(TLSConnection(TextPackage, client_config))
        with pytest.raises(ValueError):
            connection.connect((LOCALHOST, tls_listener.local_address[1]))

    def test_handshake_needs_prepared_context(self, transport_context, client_config):
        connection = transport_context.track(
            TLSConnection(TextPackage, client_config, server_hostname="localhost")
        )
        with socket.socket() as sock:
            with pytest.raises(TransportStateError):
                connection._establish(sock)


class TestTLSListener:
    def test_requires_certificate(self):
        with pytest.raises(ValueError):
            TLSListener((LOCALHOST, 0), TextPackage)

    def test_plain_client_times_out_handshake(
        self, transport_context, tls_certificates
    ):
        config = TransportConfig(
            security=SecurityConfig(
                cert_file=tls_certificates.cert_file,
                key_file=tls_certificates.key_file,
                handshake_timeout=0.3,
            )
        )
        listener = transport_context.track(
            TLSListener((LOCALHOST, 0), TextPackage, config)
        )
        listener.listen()

        with socket.create_connection(listener.local_address):
            with pytest.raises(TransportConnectionError):
                listener.accept_one()

    def test_ssl_context_is_built_eagerly(self, transport_context, server_config):
        listener = transport_context.track(
            TLSListener((LOCALHOST, 0), TextPackage, server_config)
        )
        assert isinstance(listener.ssl_context, ssl.SSLContext)
        assert listener.ssl_context.minimum_version >= ssl.TLSVersion.TLSv1_2
