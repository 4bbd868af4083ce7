from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from msgwire.core.transport.defaults import (
    DEFAULT_BACKLOG,
    DEFAULT_BUFFER_SIZE,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_MAX_PACKAGE_SIZE,
)
from msgwire.core.transport.factory import TransportProtocol
from msgwire.core.transport.interfaces import SecurityConfig, TransportConfig


class MsgwireSettings(BaseSettings):
    """msgwire command line configuration settings.

    Every field can be set through a ``MSGWIRE_``-prefixed environment
    variable or a ``.env`` file, e.g. ``MSGWIRE_PORT=7001``.
    """

    model_config = SettingsConfigDict(
        env_prefix="MSGWIRE_", env_file=".env", extra="ignore"
    )

    host: str = Field("127.0.0.1", description="Address to bind or connect to.")
    port: int = Field(7000, description="Port to bind or connect to.")
    protocol: str = Field("tcp", description="Transport protocol: tcp, tcps or udp.")

    buffer_size: int = Field(
        DEFAULT_BUFFER_SIZE, gt=0, description="Bytes requested per receive call."
    )
    max_package_size: int = Field(
        DEFAULT_MAX_PACKAGE_SIZE,
        gt=0,
        description="Largest payload a peer may announce in a frame header.",
    )
    backlog: int = Field(
        DEFAULT_BACKLOG, ge=0, description="Pending-connection queue for listeners."
    )

    cert_file: str | None = Field(
        None, description="PEM certificate chain presented by TLS listeners."
    )
    key_file: str | None = Field(None, description="PEM private key for cert_file.")
    ca_file: str | None = Field(
        None, description="CA bundle used by TLS clients to verify the server."
    )
    server_hostname: str | None = Field(
        None, description="Name the server certificate must match (defaults to host)."
    )
    verify_cert: bool = Field(
        True, description="Reject servers whose certificate does not verify."
    )
    handshake_timeout: float | None = Field(
        DEFAULT_HANDSHAKE_TIMEOUT, description="Seconds allowed for a TLS handshake."
    )

    log_level: str = Field("INFO", description="loguru level for stderr output.")
    debug_scopes: list[str] = Field(
        default_factory=list,
        description="Modules that log at DEBUG regardless of log_level, "
        "e.g. core.transport.stream.",
    )

    @field_validator("protocol")
    @classmethod
    def _known_protocol(cls, value: str) -> str:
        return TransportProtocol(value.lower()).value

    def to_transport_config(self) -> TransportConfig:
        """Build the transport configuration these settings describe."""
        return TransportConfig(
            buffer_size=self.buffer_size,
            max_package_size=self.max_package_size,
            backlog=self.backlog,
            security=SecurityConfig(
                verify_cert=self.verify_cert,
                cert_file=self.cert_file,
                key_file=self.key_file,
                ca_file=self.ca_file,
                server_hostname=self.server_hostname,
                handshake_timeout=self.handshake_timeout,
            ),
        )
