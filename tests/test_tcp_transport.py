"""
Tests for the TCP transport implementation.

Covers package exchange, ordering, the connection and listener lifecycles,
protocol violations from raw peers and the suspending (async) variants.
"""

import socket
import struct
import threading

import pytest

from msgwire.core.packages import BytesPackage, TextPackage
from msgwire.core.transport import (
    CancellationToken,
    ConnectionAcceptor,
    LengthPrefixFramer,
    PackageSender,
    ProtocolViolationError,
    TCPConnection,
    TCPListener,
    TransportClosedError,
    TransportConfig,
    TransportConnectionError,
    TransportError,
    TransportFactory,
    TransportStateError,
)

from .test_helpers import LOCALHOST, EventRecorder, wait_until


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOCALHOST, 0))
        return sock.getsockname()[1]


class TestTCPConnection:
    """Test cases for a connected TCP pair."""

    def test_basic_communication(self, tcp_pair):
        """Packages flow in both directions."""
        client, server = tcp_pair
        at_server = EventRecorder()
        at_client = EventRecorder()
        server.package_received.subscribe(at_server)
        client.package_received.subscribe(at_client)
        server.start(background=True)
        client.start(background=True)

        client.send(BytesPackage(b"Hello, TCP World!"))
        assert at_server.next() == (server, BytesPackage(b"Hello, TCP World!"))

        server.send(BytesPackage(b"Hello, TCP Client!"))
        assert at_client.next() == (client, BytesPackage(b"Hello, TCP Client!"))

    def test_packages_arrive_in_order(self, tcp_pair):
        client, server = tcp_pair
        received = EventRecorder()
        server.package_received.subscribe(received)
        server.start(background=True)

        expected = [BytesPackage(f"message-{i}".encode()) for i in range(200)]
        for package in expected:
            client.send(package)

        assert received.arguments(len(expected)) == expected

    def test_empty_package(self, tcp_pair):
        client, server = tcp_pair
        received = EventRecorder()
        server.package_received.subscribe(received)
        server.start(background=True)

        client.send(BytesPackage(b""))
        client.send(BytesPackage(b"after"))

        assert received.arguments(2) == [BytesPackage(b""), BytesPackage(b"after")]

    def test_package_larger_than_buffer(self, tcp_pair):
        client, server = tcp_pair
        received = EventRecorder()
        server.package_received.subscribe(received)
        server.buffer_size = 512
        server.start(background=True)

        payload = bytes(range(256)) * 400
        client.send(BytesPackage(payload))

        assert received.next_argument() == BytesPackage(payload)

    def test_concurrent_sends_are_not_interleaved(self, tcp_pair):
        client, server = tcp_pair
        received = EventRecorder()
        server.package_received.subscribe(received)
        server.start(background=True)

        def sender(worker: int) -> None:
            for seq in range(50):
                client.send(BytesPackage(f"{worker}:{seq}:".encode() + b"x" * 700))

        threads = [threading.Thread(target=sender, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        packages = received.arguments(200)
        per_worker: dict[int, list[int]] = {}
        for package in packages:
            worker, seq, padding = package.data.split(b":")
            assert padding == b"x" * 700
            per_worker.setdefault(int(worker), []).append(int(seq))

        assert per_worker == {w: list(range(50)) for w in range(4)}

    def test_peer_close_stops_cleanly(self, tcp_pair):
        client, server = tcp_pair
        stopped = EventRecorder()
        server.stopped.subscribe(stopped)
        server.start(background=True)

        client.dispose()

        assert stopped.next() == (server, None)
        wait_until(lambda: not server.is_running)

    def test_dispose_while_receiving_reports_closed(self, tcp_pair):
        client, server = tcp_pair
        stopped = EventRecorder()
        client.stopped.subscribe(stopped)
        client.start(background=True)
        wait_until(lambda: client.is_running)

        client.dispose()

        _, error = stopped.next()
        assert isinstance(error, TransportClosedError)
        assert client.join(timeout=5.0)
        assert not client.is_running

    def test_stopped_fires_once(self, tcp_pair):
        client, server = tcp_pair
        stopped = EventRecorder()
        server.stopped.subscribe(stopped)
        server.start(background=True)

        client.dispose()
        stopped.next()
        server.dispose()
        stopped.assert_quiet()

    def test_cancellation_takes_effect_after_next_read(self, tcp_pair):
        client, server = tcp_pair
        received = EventRecorder()
        stopped = EventRecorder()
        server.package_received.subscribe(received)
        server.stopped.subscribe(stopped)
        token = CancellationToken()
        server.start(token, background=True)
        wait_until(lambda: server.is_running)

        token.cancel()
        client.send(BytesPackage(b"last"))

        assert received.next_argument() == BytesPackage(b"last")
        assert stopped.next_argument() is None
        assert not server.is_disposed

    def test_subscriber_exception_stops_loop(self, tcp_pair):
        client, server = tcp_pair
        stopped = EventRecorder()

        def failing(connection, package):
            raise RuntimeError("handler failed")

        server.package_received.subscribe(failing)
        server.stopped.subscribe(stopped)
        server.start(background=True)

        client.send(BytesPackage(b"boom"))

        error = stopped.next_argument()
        assert isinstance(error, RuntimeError)
        assert str(error) == "handler failed"

    def test_max_package_size_violation(self, transport_context, tcp_listener):
        tcp_listener.max_package_size = 8
        client = transport_context.track(TCPConnection(BytesPackage))
        client.connect(tcp_listener.local_address)
        server = transport_context.track(tcp_listener.accept_one())
        assert server.max_package_size == 8

        received = EventRecorder()
        stopped = EventRecorder()
        server.package_received.subscribe(received)
        server.stopped.subscribe(stopped)
        server.start(background=True)

        client.send(BytesPackage(b"12345678"))
        client.send(BytesPackage(b"123456789"))

        assert received.next_argument() == BytesPackage(b"12345678")
        assert isinstance(stopped.next_argument(), ProtocolViolationError)
        received.assert_quiet()


class TestTCPConnectionLifecycle:
    def test_double_dispose(self, tcp_pair):
        client, _ = tcp_pair
        client.dispose()
        client.dispose()
        assert client.is_disposed
        assert not client.is_connected

    def test_send_after_dispose(self, tcp_pair):
        client, _ = tcp_pair
        client.dispose()
        with pytest.raises(TransportClosedError):
            client.send(BytesPackage(b"late"))

    def test_start_after_dispose(self, tcp_pair):
        client, _ = tcp_pair
        client.dispose()
        with pytest.raises(TransportClosedError):
            client.start()

    def test_start_twice(self, tcp_pair):
        client, _ = tcp_pair
        client.start(background=True)
        with pytest.raises(TransportStateError):
            client.start(background=True)

    def test_send_requires_package(self, tcp_pair):
        client, _ = tcp_pair
        with pytest.raises(ValueError):
            client.send(None)

    def test_send_before_connect(self, transport_context):
        connection = transport_context.track(TCPConnection(BytesPackage))
        with pytest.raises(TransportStateError):
            connection.send(BytesPackage(b"early"))

    def test_start_before_connect(self, transport_context):
        connection = transport_context.track(TCPConnection(BytesPackage))
        with pytest.raises(TransportStateError):
            connection.start()
        assert not connection.is_running

    def test_connect_twice(self, tcp_pair, tcp_listener):
        client, _ = tcp_pair
        with pytest.raises(TransportStateError):
            client.connect(tcp_listener.local_address)

    def test_connect_requires_address(self, transport_context):
        connection = transport_context.track(TCPConnection(BytesPackage))
        with pytest.raises(ValueError):
            connection.connect(None)

    def test_connect_refused(self, transport_context):
        connection = transport_context.track(TCPConnection(BytesPackage))
        with pytest.raises(TransportConnectionError):
            connection.connect((LOCALHOST, _closed_port()))
        assert connection.is_disposed

    def test_connect_after_dispose(self, transport_context, tcp_listener):
        connection = transport_context.track(TCPConnection(BytesPackage))
        connection.dispose()
        with pytest.raises(TransportClosedError):
            connection.connect(tcp_listener.local_address)

    def test_addresses(self, tcp_pair):
        client, server = tcp_pair
        assert client.remote_address == server.local_address
        assert server.remote_address == client.local_address
        client.dispose()
        assert client.remote_address is None

    def test_buffer_size_validation(self, tcp_pair):
        client, _ = tcp_pair
        with pytest.raises(ValueError):
            client.buffer_size = 0
        client.max_package_size = 10
        assert client.max_package_size == 10
        with pytest.raises(ValueError):
            client.max_package_size = -1

    def test_context_manager_disposes(self, tcp_listener):
        with TCPConnection(BytesPackage) as connection:
            connection.connect(tcp_listener.local_address)
            assert connection.is_connected
        assert connection.is_disposed


class TestRawPeers:
    """A plain socket speaking the wire format must interoperate."""

    @pytest.fixture
    def raw_pair(self, transport_context, tcp_listener):
        raw = socket.create_connection(tcp_listener.local_address)
        server = transport_context.track(tcp_listener.accept_one())
        try:
            yield raw, server
        finally:
            raw.close()

    def test_raw_frames_are_decoded(self, raw_pair):
        raw, server = raw_pair
        received = EventRecorder()
        server.package_received.subscribe(received)
        server.start(background=True)

        raw.sendall(b"\x02\x00")
        raw.sendall(b"\x00\x00hi" + LengthPrefixFramer.wrap_keep_alive())

        assert received.arguments(2) == [BytesPackage(b"hi"), BytesPackage(b"")]

    def test_sent_package_matches_wire_format(self, raw_pair):
        raw, server = raw_pair
        server.send(BytesPackage(b"hi"))

        data = b""
        while len(data) < 6:
            data += raw.recv(6 - len(data))

        assert data == b"\x02\x00\x00\x00hi"

    def test_negative_length_is_protocol_violation(self, raw_pair):
        raw, server = raw_pair
        stopped = EventRecorder()
        server.stopped.subscribe(stopped)
        server.start(background=True)

        raw.sendall(struct.pack("<i", -1))

        error = stopped.next_argument()
        assert isinstance(error, ProtocolViolationError)
        assert "less than zero" in str(error)


class TestTCPListener:
    def test_accept_loop_reports_clients(self, transport_context, tcp_listener):
        connected = EventRecorder()
        tcp_listener.client_connected.subscribe(connected)
        tcp_listener.start(background=True)

        for _ in range(2):
            transport_context.track(TCPConnection(BytesPackage)).connect(
                tcp_listener.local_address
            )

        for _ in range(2):
            listener, connection = connected.next()
            transport_context.track(connection)
            assert listener is tcp_listener
            assert isinstance(connection, TCPConnection)
            assert connection.is_connected

    def test_echo_server(self, transport_context, tcp_listener):
        def on_client(listener, connection):
            transport_context.track(connection)
            connection.package_received.subscribe(lambda c, p: c.send(p))
            connection.start(background=True)

        tcp_listener.client_connected.subscribe(on_client)
        tcp_listener.start(background=True)

        client = transport_context.track(
            TransportFactory.create_connection(
                f"tcp://{LOCALHOST}:{tcp_listener.local_address[1]}", BytesPackage
            )
        )
        replies = EventRecorder()
        client.package_received.subscribe(replies)
        client.start(background=True)

        client.send(BytesPackage(b"ping"))
        assert replies.next_argument() == BytesPackage(b"ping")

    def test_dispose_stops_accept_loop_cleanly(self, tcp_listener):
        stopped = EventRecorder()
        tcp_listener.stopped.subscribe(stopped)
        tcp_listener.start(background=True)
        wait_until(lambda: tcp_listener.is_running)

        tcp_listener.dispose()

        assert stopped.next() == (tcp_listener, None)
        assert tcp_listener.join(timeout=5.0)
        assert not tcp_listener.listening

    def test_start_requires_listen(self, transport_context):
        listener = transport_context.track(TCPListener((LOCALHOST, 0), BytesPackage))
        with pytest.raises(TransportStateError):
            listener.start()

    def test_accept_after_dispose(self, tcp_listener):
        tcp_listener.dispose()
        with pytest.raises(TransportClosedError):
            tcp_listener.accept_one()

    def test_double_dispose(self, tcp_listener):
        tcp_listener.dispose()
        tcp_listener.dispose()
        assert tcp_listener.is_disposed

    def test_bind_conflict(self, tcp_listener):
        with pytest.raises(TransportError) as exc_info:
            TCPListener(tcp_listener.local_address, BytesPackage)
        assert "failed" in str(exc_info.value)

    def test_listener_copies_config(self, transport_context):
        config = TransportConfig(max_package_size=4096)
        listener = transport_context.track(
            TCPListener((LOCALHOST, 0), BytesPackage, config)
        )
        listener.max_package_size = 16
        listener.backlog = 0
        assert config.max_package_size == 4096
        assert config.backlog == 10

    @pytest.mark.parametrize(
        ("attribute", "value"),
        [("backlog", -1), ("buffer_size", 0), ("max_package_size", 0)],
    )
    def test_setters_validate(self, tcp_listener, attribute, value):
        with pytest.raises(ValueError):
            setattr(tcp_listener, attribute, value)

    def test_custom_connection_factory(self, transport_context):
        created = []

        def factory(sock, address, config):
            connection = TCPConnection(TextPackage, config, sock=sock)
            created.append((address, config))
            return connection

        listener = transport_context.track(
            TCPListener((LOCALHOST, 0), BytesPackage, connection_factory=factory)
        )
        listener.listen()
        client = transport_context.track(TCPConnection(BytesPackage))
        client.connect(listener.local_address)

        server = transport_context.track(listener.accept_one())

        assert server.package_type is TextPackage
        assert created[0][0] == client.local_address
        assert created[0][1] is not listener.config

    def test_failing_factory_closes_socket_and_keeps_accepting(
        self, transport_context
    ):
        calls = []

        def factory(sock, address, config):
            calls.append(address)
            if len(calls) == 1:
                raise ValueError("unusable connection")
            return TCPConnection(BytesPackage, config, sock=sock)

        listener = transport_context.track(
            TCPListener((LOCALHOST, 0), BytesPackage, connection_factory=factory)
        )
        listener.listen()
        connected = EventRecorder()
        stopped = EventRecorder()
        listener.client_connected.subscribe(connected)
        listener.stopped.subscribe(stopped)
        listener.start(background=True)

        with socket.create_connection(listener.local_address, timeout=5.0) as raw:
            assert raw.recv(16) == b""

        client = transport_context.track(TCPConnection(BytesPackage))
        client.connect(listener.local_address)

        _, connection = connected.next()
        transport_context.track(connection)
        assert connection.remote_address == client.local_address
        assert listener.is_running
        stopped.assert_quiet()

    def test_accept_one_reports_factory_failure(self, transport_context):
        def factory(sock, address, config):
            raise ValueError("unusable connection")

        listener = transport_context.track(
            TCPListener((LOCALHOST, 0), BytesPackage, connection_factory=factory)
        )
        listener.listen()

        with socket.create_connection(listener.local_address, timeout=5.0) as raw:
            with pytest.raises(TransportConnectionError, match="unusable"):
                listener.accept_one()
            assert raw.recv(16) == b""

    def test_accept_one_while_loop_runs(self, tcp_listener):
        tcp_listener.start(background=True)
        wait_until(lambda: tcp_listener.is_running)
        with pytest.raises(TransportStateError):
            tcp_listener.accept_one()


class TestTCPAsync:
    @pytest.mark.asyncio
    async def test_async_round_trip(self, transport_context, tcp_listener):
        client = transport_context.track(TCPConnection(TextPackage))
        await client.connect_async(tcp_listener.local_address)
        server = transport_context.track(await tcp_listener.accept_one_async())

        received = EventRecorder()
        server.package_received.subscribe(received)
        server.start(background=True)

        await client.send_async(TextPackage("async hello"))

        assert received.next_argument() == TextPackage("async hello")

    @pytest.mark.asyncio
    async def test_async_send_after_dispose(self, tcp_pair):
        client, _ = tcp_pair
        client.dispose()
        with pytest.raises(TransportClosedError):
            await client.send_async(BytesPackage(b"late"))

    @pytest.mark.asyncio
    async def test_async_connect_refused(self, transport_context):
        connection = transport_context.track(TCPConnection(BytesPackage))
        with pytest.raises(TransportConnectionError):
            await connection.connect_async((LOCALHOST, _closed_port()))


def test_capability_protocols(tcp_pair, tcp_listener):
    client, _ = tcp_pair
    assert isinstance(client, PackageSender)
    assert isinstance(tcp_listener, ConnectionAcceptor)
    assert not isinstance(tcp_listener, PackageSender)
