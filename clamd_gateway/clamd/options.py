"""Connection options of the clamd client.

"""
import ssl
import typing as t
from dataclasses import dataclass

from .chunks import DEFAULT_CHUNK_SIZE
from .types import InvalidArgumentError

NETWORKS = ("tcp", "tcp4", "tcp6", "unix")

DEFAULT_SOCKET_PATH = "/tmp/clamd.sock"
DEFAULT_TCP_PORT = 3310


@dataclass(frozen=True)
class ClamdOptions:
    """How to reach clamd and how long to wait for it.

    Timeouts and backoffs are in seconds.  A timeout of None blocks
    forever.  When ``tls_context`` is set the TCP stream is wrapped in
    TLS.

    ``max_retries`` bounds the number of attempts of a command, the
    first one included.
    """
    network: str = "unix"
    address: str = DEFAULT_SOCKET_PATH
    dial_timeout: float | None = 5.0
    read_timeout: float | None = 300.0
    write_timeout: float | None = 300.0
    max_retries: int = 3
    min_retry_backoff: float = 0.008
    max_retry_backoff: float = 0.512
    tls_context: ssl.SSLContext | None = None
    tls_server_hostname: str | None = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    recv_buffer_size: int = 4096
    cancel_check_interval: float = 0.05

    def __post_init__(self):
        if self.network not in NETWORKS:
            raise InvalidArgumentError(
                f"unsupported network {self.network!r}, "
                f"expected one of {', '.join(NETWORKS)}")
        if not self.address:
            raise InvalidArgumentError("address is required")
        if self.tls_context is not None and self.network == "unix":
            raise InvalidArgumentError("TLS is supported on TCP only")
        for name in ("dial_timeout", "read_timeout", "write_timeout"):
            timeout = getattr(self, name)
            if timeout is not None and timeout <= 0:
                raise InvalidArgumentError(
                    f"{name} must be positive or None, got {timeout!r}")
        if self.chunk_size <= 0:
            raise InvalidArgumentError("chunk_size must be positive")
        if self.recv_buffer_size <= 0:
            raise InvalidArgumentError("recv_buffer_size must be positive")
        if self.cancel_check_interval <= 0:
            raise InvalidArgumentError(
                "cancel_check_interval must be positive")
        if self.min_retry_backoff < 0 or \
                self.max_retry_backoff < self.min_retry_backoff:
            raise InvalidArgumentError(
                "retry backoffs must satisfy 0 <= min <= max")

    def host_port(self) -> tuple[str, int]:
        """Split a TCP address in host and port.

        Accepts "host:port", "[v6addr]:port" or a bare host, in which
        case the default clamd port is used.
        """
        address = self.address
        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            port = rest[1:] if rest.startswith(":") else ""
        elif address.count(":") == 1:
            host, _, port = address.partition(":")
        else:
            host, port = address, ""

        if not port:
            return host, DEFAULT_TCP_PORT
        try:
            return host, int(port)
        except ValueError:
            raise InvalidArgumentError(
                f"invalid port in address {address!r}") from None

    @classmethod
    def from_config(cls, config: t.Mapping[str, t.Any],
                    prefix: str = "CLAMD_") -> "ClamdOptions":
        """Build options from a configuration mapping.

        Keys are looked up with ``prefix``, e.g. CLAMD_HOST.  Values may
        be strings, as they come from environment variables.  A host and
        a port select TCP, otherwise the Unix socket path is used.
        """
        def get(key, default=None):
            value = config.get(prefix + key)
            return default if value is None or value == "" else value

        kwargs: dict[str, t.Any] = {}

        host = get("HOST")
        port = get("PORT")
        if host is not None and port is not None:
            kwargs["network"] = get("NETWORK", "tcp")
            kwargs["address"] = f"{host}:{port}"
        else:
            kwargs["network"] = "unix"
            kwargs["address"] = get("SOCKET_PATH", DEFAULT_SOCKET_PATH)

        for key, conv in (("DIAL_TIMEOUT", float),
                          ("READ_TIMEOUT", float),
                          ("WRITE_TIMEOUT", float),
                          ("MAX_RETRIES", int),
                          ("MIN_RETRY_BACKOFF", float),
                          ("MAX_RETRY_BACKOFF", float),
                          ("CHUNK_SIZE", int),
                          ("RECV_BUFFER_SIZE", int)):
            value = get(key)
            if value is None:
                continue
            try:
                kwargs[key.lower()] = conv(value)
            except (TypeError, ValueError):
                raise InvalidArgumentError(
                    f"invalid value for {prefix}{key}: {value!r}") from None

        if parse_bool(get("TLS", False)):
            context = ssl.create_default_context(cafile=get("TLS_CA_FILE"))
            kwargs["tls_context"] = context
            kwargs["tls_server_hostname"] = get("TLS_SERVER_HOSTNAME")

        return cls(**kwargs)


def parse_bool(value: t.Any) -> bool:
    """Parse a config value as boolean.
    """
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ["true", "1", "enable", "enabled"]
