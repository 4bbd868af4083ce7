import pprint as pp
import queue
from dataclasses import dataclass

from jsonargparse import CLI
from loguru import logger

from msgwire.config import MsgwireSettings
from msgwire.core.logging import configure_logging
from msgwire.core.packages import TextPackage
from msgwire.core.transport import (
    CancellationToken,
    ReceivedDatagram,
    StreamConnection,
    StreamListener,
    TransportFactory,
    UDPEndpoint,
)


def _echo_client(
    listener: StreamListener, connection: StreamConnection[TextPackage]
) -> None:
    """Wire an accepted connection to echo every package back to its sender."""
    peer = connection.remote_address

    def on_package(conn: StreamConnection[TextPackage], package: TextPackage) -> None:
        logger.info("{} -> {!r}", peer, package.text)
        conn.send(package)

    def on_stopped(
        conn: StreamConnection[TextPackage], error: BaseException | None
    ) -> None:
        if error is not None:
            logger.warning("Connection from {} ended: {!r}", peer, error)
        else:
            logger.info("Connection from {} closed", peer)
        conn.dispose()

    connection.package_received.subscribe(on_package)
    connection.stopped.subscribe(on_stopped)
    connection.start(background=True)
    logger.info("Client connected from {}", peer)


def _echo_datagram(
    endpoint: UDPEndpoint[TextPackage], datagram: ReceivedDatagram[TextPackage]
) -> None:
    logger.info("{} -> {!r}", datagram.remote_address, datagram.package.text)
    endpoint.send(datagram.package, datagram.remote_address)


@dataclass(slots=True)
class MsgwireCLI:
    """msgwire command line: run an echo server or send text packages.

    Unset options fall back to ``MSGWIRE_*`` environment variables, then to
    the built-in defaults.
    """

    host: str | None = None
    port: int | None = None
    protocol: str | None = None
    log_level: str | None = None
    debug_scopes: list[str] | None = None

    def _settings(self) -> MsgwireSettings:
        overrides = {
            "host": self.host,
            "port": self.port,
            "protocol": self.protocol,
            "log_level": self.log_level,
            "debug_scopes": self.debug_scopes,
        }
        settings = MsgwireSettings(
            **{key: value for key, value in overrides.items() if value is not None}
        )
        configure_logging(settings.log_level, debug_scopes=settings.debug_scopes)
        return settings

    def serve(self, duration: float | None = None) -> None:
        """Runs an echo server that sends every received package back.

        Args:
            duration: Seconds to run before shutting down; runs until
                interrupted when omitted.
        """
        settings = self._settings()
        config = settings.to_transport_config()
        cancellation = CancellationToken()

        runner: UDPEndpoint | StreamListener
        if settings.protocol == "udp":
            endpoint = TransportFactory.create_endpoint(
                settings.host, settings.port, TextPackage, config
            )
            endpoint.package_received.subscribe(_echo_datagram)
            runner = endpoint
        else:
            listener = TransportFactory.create_listener(
                settings.protocol, settings.host, settings.port, TextPackage, config
            )
            listener.client_connected.subscribe(_echo_client)
            listener.listen()
            runner = listener

        runner.stopped.subscribe(
            lambda _, error: logger.info("Echo server stopped (error={!r})", error)
        )
        runner.start(cancellation, background=True)
        logger.info(
            "Echo server ({}) running on {}", settings.protocol, runner.local_address
        )

        try:
            cancellation.wait(duration)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            cancellation.cancel()
            runner.dispose()
            runner.join(timeout=5.0)

    def send(self, messages: list[str], timeout: float = 5.0) -> list[str]:
        """Sends text packages to a server and collects one reply per package.

        Args:
            messages: Texts to send, one package each.
            timeout: Seconds to wait for each reply.

        Returns:
            The replies received, in arrival order.
        """
        settings = self._settings()
        config = settings.to_transport_config()
        replies: queue.Queue[str] = queue.Queue()
        collected: list[str] = []
        remote = (settings.host, settings.port)

        if settings.protocol == "udp":
            with UDPEndpoint(TextPackage, config) as endpoint:
                endpoint.package_received.subscribe(
                    lambda _, datagram: replies.put(datagram.package.text)
                )
                endpoint.start(background=True)
                for message in messages:
                    endpoint.send(TextPackage(message), remote)
                    collected.extend(self._await_reply(replies, timeout))
            return collected

        url = f"{settings.protocol}://{settings.host}:{settings.port}"
        with TransportFactory.create_connection(url, TextPackage, config) as connection:
            connection.package_received.subscribe(
                lambda _, package: replies.put(package.text)
            )
            connection.start(background=True)
            for message in messages:
                connection.send(TextPackage(message))
                collected.extend(self._await_reply(replies, timeout))
        return collected

    @staticmethod
    def _await_reply(replies: queue.Queue[str], timeout: float) -> list[str]:
        try:
            reply = replies.get(timeout=timeout)
        except queue.Empty:
            logger.warning("No reply within {}s", timeout)
            return []
        logger.info("Reply: {!r}", reply)
        return [reply]

    def protocols(self) -> None:
        """Prints the wire-protocol specification of every registered transport."""
        self._settings()
        for name, spec in TransportFactory.get_all_protocol_specs().items():
            logger.info("{}: {}", name, pp.pformat(spec))


def main() -> None:
    CLI(MsgwireCLI, as_dict=False)  # type: ignore[no-untyped-call]


if __name__ == "__main__":
    main()
