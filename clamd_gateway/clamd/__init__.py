"""Python bindings for clamd daemon on Unix or TCP socket.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    clamd = ClamdUnixSocket("/var/run/clamd.sock")
    scan = clamd.scan("/my/file.txt")

A connection is opened and closed each time you run a command, so the
same client can be kept for the whole process and shared by threads.
Transient connection failures are retried with exponential backoff.

A command can be cancelled from another thread, or given a deadline:
.. code-block:: python

    cancel = CancelToken.with_timeout(10)
    result = clamd.instream(open("/my/file.bin", "rb"), cancel=cancel)

Lower level, any command can be built and sent as is:
.. code-block:: python

    cmd = build_command("CONTSCAN", "/my/dir")
    raw = clamd.do(cmd)  # ExchangeResult(body=b"...", attempts=1)

NOTE: clamd sessions are yet not implemented, IDSESSION is only issued.

"""

from .types import ClamdScanStatus, ClamdScanResult, ClamdCmdResponse, \
    ClamdException, InvalidArgumentError, UnknownCommandError, \
    StreamReadError, TransportError, ExchangeCancelled, ProtocolError, \
    ExchangeResult  # noqa
from .chunks import encode_chunks, decode_chunks  # noqa
from .command import Command, CommandName, build_command  # noqa
from .cancel import CancelToken  # noqa
from .connection import Connection, dial  # noqa
from .exchange import exchange  # noqa
from .options import ClamdOptions  # noqa
from .retry import do_with_retry, is_retryable  # noqa
from .client import Clamd, ClamdUnixSocket, ClamdTCPSocket  # noqa
