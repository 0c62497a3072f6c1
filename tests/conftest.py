import socketserver
import struct
import threading
from dataclasses import dataclass, field

import pytest

from clamd_gateway import app
from clamd_gateway.clamd import Clamd, ClamdOptions

EICAR = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


@dataclass
class Received:
    """What the stub clamd got on one connection.
    """
    specifier: bytes
    command: str
    arg: str | None = None
    chunk_lengths: list[int] = field(default_factory=list)
    payload: bytes = b''


def _instream_reply(received):
    if EICAR in received.payload:
        return b"stream: Win.Test.EICAR_HDB-1 FOUND\x00"
    return b"stream: OK\x00"


DEFAULT_REPLIES = {
    "PING": b"PONG\n",
    "VERSION": b"ClamAV 1.4.2/27500/Mon Jan  6 09:00:00 2025\n",
    "VERSIONCOMMANDS": b"ClamAV 1.4.2/27500/Mon Jan  6 09:00:00 2025"
                       b"| COMMANDS: SCAN QUIT RELOAD PING CONTSCAN "
                       b"VERSIONCOMMANDS VERSION END SHUTDOWN MULTISCAN "
                       b"FILDES STATS IDSESSION INSTREAM ALLMATCHSCAN\n",
    "RELOAD": b"RELOADING\n",
    "STATS": b"POOLS: 1\n\nSTATE: VALID PRIMARY\nTHREADS: live 1  idle 0 "
             b"max 10 idle-timeout 30\nQUEUE: 0 items\n"
             b"MEMSTATS: heap N/A mmap N/A used N/A\nEND\n",
    "INSTREAM": _instream_reply,
}


class _StubHandler(socketserver.StreamRequestHandler):

    def handle(self):
        stub = self.server.stub

        specifier = self.rfile.read(1)
        terminator = b'\x00' if specifier == b'z' else b'\n'
        line = bytearray()
        byte = self.rfile.read(1)
        while byte and byte != terminator:
            line.extend(byte)
            byte = self.rfile.read(1)

        command, sep, arg = line.decode().partition(" ")
        received = Received(specifier=specifier,
                            command=command,
                            arg=arg if sep else None)

        if specifier == b'z':
            while True:
                (length,) = struct.unpack('!L', self.rfile.read(4))
                received.chunk_lengths.append(length)
                if length == 0:
                    break
                received.payload += self.rfile.read(length)

        stub.received.append(received)

        reply = stub.replies.get(command, b"UNKNOWN COMMAND\n")
        if callable(reply):
            reply = reply(received)
        self.wfile.write(reply)


class StubClamd:
    """clamd lookalike on a loopback TCP socket.

    Replies to each command according to ``replies``, then closes the
    connection as clamd does.
    """
    def __init__(self):
        self.replies = dict(DEFAULT_REPLIES)
        self.received: list[Received] = []
        self._server = socketserver.ThreadingTCPServer(("127.0.0.1", 0),
                                                       _StubHandler)
        self._server.daemon_threads = True
        self._server.stub = self
        self._thread = threading.Thread(target=self._server.serve_forever,
                                        daemon=True)

    @property
    def host(self):
        return self._server.server_address[0]

    @property
    def port(self):
        return self._server.server_address[1]

    def start(self):
        self._thread.start()

    def stop(self):
        self._server.shutdown()
        self._server.server_close()


@pytest.fixture()
def stub_clamd():
    stub = StubClamd()
    stub.start()

    yield stub

    stub.stop()


@pytest.fixture()
def stub_client(stub_clamd):
    options = ClamdOptions(network="tcp",
                           address=f"{stub_clamd.host}:{stub_clamd.port}",
                           dial_timeout=2,
                           read_timeout=2,
                           write_timeout=2,
                           max_retries=1)
    return Clamd(options)


@pytest.fixture()
def test_app(stub_clamd):
    app.config.update({
        "TESTING": True,
        "CLAMD_HOST": stub_clamd.host,
        "CLAMD_PORT": stub_clamd.port,
        "CLAMD_READ_TIMEOUT": 2,
        "CLAMD_MAX_RETRIES": 1,
        "REQUEST_TIMEOUT": 5,
    })
    app.extensions.pop("clamd", None)

    yield app

    # clean up / reset resources here
    app.extensions.pop("clamd", None)
    for key in ("CLAMD_HOST", "CLAMD_PORT", "CLAMD_READ_TIMEOUT",
                "CLAMD_MAX_RETRIES", "REQUEST_TIMEOUT"):
        app.config.pop(key, None)


@pytest.fixture()
def client(test_app):
    return test_app.test_client()
