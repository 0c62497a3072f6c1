"""Command/response exchange with clamd.

An exchange dials a fresh connection, writes a command, reads the
response until clamd closes the connection (or stays idle for longer
than the read timeout) and closes the connection.

Socket calls cannot be interrupted, so the exchange runs in a worker
thread while the caller waits for either the worker to finish or the
cancellation token to fire.  On cancellation the connection is closed
under the worker's feet, which unblocks it, and the caller gets
:class:`ExchangeCancelled` right away.

Bytes already written when cancellation happens are not retracted:
clamd has no abort message, so a cancelled command may have been
partially delivered and clamd may still be processing it.

"""
import enum
import logging
import threading
from concurrent.futures import Future, wait

from .cancel import CancelToken
from .command import Command
from .connection import Connection, ConnectionFactory
from .types import ExchangeCancelled, TransportError

DEFAULT_CHECK_INTERVAL = 0.05
DEFAULT_RECV_BUFFER_SIZE = 4096


class ExchangeState(enum.Enum):
    IDLE = "idle"
    DIALING = "dialing"
    WRITING = "writing"
    READING = "reading"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    ExchangeState.DONE,
    ExchangeState.FAILED,
    ExchangeState.CANCELLED,
})


class Exchange:
    """A single command/response exchange.

    Not reusable: :meth:`run` may be called once.
    """
    def __init__(self,
                 command: Command,
                 connection_factory: ConnectionFactory,
                 recv_buffer_size: int = DEFAULT_RECV_BUFFER_SIZE):
        self.command = command
        self.recv_buffer_size = recv_buffer_size
        self._connection_factory = connection_factory
        self._lock = threading.Lock()
        self._conn: Connection | None = None
        self._abandoned = False
        self.state = ExchangeState.IDLE

    def run(self,
            cancel: CancelToken | None = None,
            check_interval: float = DEFAULT_CHECK_INTERVAL) -> bytes:
        """Run the exchange and return the raw response.

        :param cancel: Token to abort the exchange with
        :param check_interval: How often the token is checked, seconds
        :raise TransportError: on dial, write or read failure
        :raise ExchangeCancelled: if the token fired first
        """
        if self.state is not ExchangeState.IDLE:
            raise RuntimeError("exchange already run")
        if cancel is not None:
            cancel.raise_if_cancelled()

        future: Future = Future()
        worker = threading.Thread(
            target=self._work,
            args=(future,),
            name=f"clamd-{self.command.name.value.lower()}",
            daemon=True,
        )
        worker.start()

        try:
            while True:
                done, _ = wait([future], timeout=None if cancel is None
                               else check_interval)
                if done:
                    break
                reason = cancel.reason
                if reason is not None:
                    self._release()
                    self._set_state(ExchangeState.CANCELLED)
                    raise ExchangeCancelled(reason)

            try:
                body = future.result()
            except Exception:
                self._set_state(ExchangeState.FAILED)
                raise
            self._set_state(ExchangeState.DONE)
            return body
        finally:
            self._release()

    def _work(self, future: Future) -> None:
        future.set_running_or_notify_cancel()
        try:
            future.set_result(self._communicate())
        except BaseException as e:
            future.set_exception(e)

    def _communicate(self) -> bytes:
        self._set_state(ExchangeState.DIALING)
        try:
            conn = self._connection_factory()
        except OSError as e:
            raise TransportError("dial", str(e) or repr(e)) from e
        with self._lock:
            abandoned = self._abandoned
            if not abandoned:
                self._conn = conn
        if abandoned:
            # the caller is gone, nobody else will close it
            conn.close()
            raise ExchangeCancelled()

        self._set_state(ExchangeState.WRITING)
        try:
            for frame in self.command.frames():
                conn.write(frame)
        except (BrokenPipeError, ConnectionResetError) as e:
            # clamd may reply and hang up before reading all we send,
            # e.g. "INSTREAM size limit exceeded"
            body = self._salvage_response(conn)
            if body:
                logging.debug("Write interrupted by clamd reply: %s", e)
                return body
            raise TransportError("write", str(e) or repr(e)) from e
        except OSError as e:
            raise TransportError("write", str(e) or repr(e)) from e

        self._set_state(ExchangeState.READING)
        return self._read_response(conn)

    def _read_response(self, conn: Connection) -> bytes:
        # block until we receive everything from daemon
        recd_data = bytearray()
        while True:
            try:
                recd_buf = conn.read(self.recv_buffer_size)
            except TimeoutError:
                # clamd stays silent e.g. after IDSESSION: what we
                # have so far is the whole response
                logging.debug("Read idle timeout after %d bytes",
                              len(recd_data))
                break
            except OSError as e:
                raise TransportError("read", str(e) or repr(e)) from e
            if not recd_buf:
                break
            recd_data.extend(recd_buf)

        return bytes(recd_data)

    def _salvage_response(self, conn: Connection) -> bytes:
        try:
            return self._read_response(conn)
        except TransportError:
            return b''

    def _release(self) -> None:
        """Close the connection, now or as soon as the worker gets one.

        Whatever the interleaving with the worker, the connection is
        closed exactly once.
        """
        with self._lock:
            self._abandoned = True
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    def _set_state(self, state: ExchangeState) -> None:
        # the worker may outlive a cancelled exchange
        with self._lock:
            if self.state in TERMINAL_STATES:
                return
            previous, self.state = self.state, state
        logging.debug("%s exchange: %s -> %s", self.command.name.value,
                      previous.value, state.value)


def exchange(command: Command,
             connection_factory: ConnectionFactory,
             cancel: CancelToken | None = None,
             check_interval: float = DEFAULT_CHECK_INTERVAL,
             recv_buffer_size: int = DEFAULT_RECV_BUFFER_SIZE) -> bytes:
    """Send a command to clamd over a fresh connection and read the
    response.

    :param command: Command to send
    :param connection_factory: Callable returning a new connection
    :param cancel: Token to abort the exchange with
    :param check_interval: How often the token is checked, seconds
    :param recv_buffer_size: Size of each read from the connection
    :return: Raw response, possibly empty
    """
    return Exchange(command, connection_factory,
                    recv_buffer_size=recv_buffer_size).run(
                        cancel=cancel, check_interval=check_interval)
