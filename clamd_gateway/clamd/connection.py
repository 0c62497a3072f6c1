"""Transport to clamd.

A :class:`Connection` owns one socket for the lifetime of a single
exchange.  It comes from :func:`dial` over TCP, TLS on TCP or a UNIX
domain socket.

"""
import logging
import socket
import threading
import typing as t

from .options import ClamdOptions
from .types import TransportError


class Connection:
    """One stream connection to clamd.

    Closing is idempotent and safe from any thread: the socket is
    closed once, whoever calls :meth:`close` first.
    """
    def __init__(self, sock: socket.socket,
                 read_timeout: float | None = None,
                 write_timeout: float | None = None):
        self._sock = sock
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        """Write all data.

        :raise OSError: on failure, socket.timeout included
        """
        self._sock.settimeout(self.write_timeout)
        self._sock.sendall(data)

    def read(self, size: int) -> bytes:
        """Read at most size bytes, b'' when the peer closed.

        :raise OSError: on failure, socket.timeout included
        """
        self._sock.settimeout(self.read_timeout)
        return self._sock.recv(size)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            # wake up a thread blocked on recv() before releasing the fd
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # not connected anymore, nothing to wake up
            pass
        self._sock.close()


ConnectionFactory = t.Callable[[], Connection]


def dial(options: ClamdOptions) -> Connection:
    """Open a connection to clamd as described by options.

    :raise TransportError: if clamd cannot be reached
    """
    logging.debug("Dialing clamd on %s %s", options.network, options.address)
    try:
        if options.network == "unix":
            sock = _dial_unix(options)
        else:
            sock = _dial_tcp(options)
    except FileNotFoundError as e:
        raise TransportError("dial",
                             "clamd unix socket not found at " +
                             options.address +
                             ". Is the clamd daemon running?") from e
    except OSError as e:
        raise TransportError("dial", f"{options.address}: {e}") from e

    return Connection(sock,
                      read_timeout=options.read_timeout,
                      write_timeout=options.write_timeout)


def _dial_unix(options: ClamdOptions) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(options.dial_timeout)
    try:
        sock.connect(options.address)
    except BaseException:
        sock.close()
        raise
    return sock


def _dial_tcp(options: ClamdOptions) -> socket.socket:
    host, port = options.host_port()
    family = {
        "tcp4": socket.AF_INET,
        "tcp6": socket.AF_INET6,
    }.get(options.network, socket.AF_UNSPEC)

    # resolve ourselves to honour the address family of tcp4/tcp6
    infos = socket.getaddrinfo(host, port, family, socket.SOCK_STREAM)
    last_err: OSError | None = None
    for af, socktype, proto, _, sockaddr in infos:
        sock = socket.socket(af, socktype, proto)
        sock.settimeout(options.dial_timeout)
        try:
            sock.connect(sockaddr)
        except OSError as e:
            sock.close()
            last_err = e
            continue

        if options.tls_context is None:
            return sock
        try:
            return options.tls_context.wrap_socket(
                sock,
                server_hostname=options.tls_server_hostname or host)
        except BaseException:
            sock.close()
            raise

    raise last_err or OSError(f"no address found for {host}")
