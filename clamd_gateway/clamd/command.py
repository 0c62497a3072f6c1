"""Encoding of clamd commands.

Commands are prefixed by a command specifier: 'n' for newline
terminated commands and 'z' for null terminated commands.  Simple
commands are newline terminated, INSTREAM is null terminated and is
followed by its content as a chunk stream (see :mod:`.chunks`).

"""
import enum
import io
import logging
import typing as t
from dataclasses import dataclass

from .chunks import DEFAULT_CHUNK_SIZE, encode_chunks
from .types import InvalidArgumentError, StreamReadError, \
    UnknownCommandError


class CommandName(str, enum.Enum):
    """Commands supported by this client, see man clamd(8).
    """
    PING = "PING"
    VERSION = "VERSION"
    RELOAD = "RELOAD"
    SCAN = "SCAN"
    MULTISCAN = "MULTISCAN"
    CONTSCAN = "CONTSCAN"
    ALLMATCHSCAN = "ALLMATCHSCAN"
    INSTREAM = "INSTREAM"
    STATS = "STATS"
    VERSIONCOMMANDS = "VERSIONCOMMANDS"
    IDSESSION = "IDSESSION"
    END = "END"
    SHUTDOWN = "SHUTDOWN"


class Encoding(enum.Enum):
    """Wire form of a command.
    """
    SIMPLE = "simple"
    SIMPLE_WITH_ARG = "simple_with_arg"
    STREAMING = "streaming"


ENCODINGS: dict[CommandName, Encoding] = {
    CommandName.PING: Encoding.SIMPLE,
    CommandName.VERSION: Encoding.SIMPLE,
    CommandName.RELOAD: Encoding.SIMPLE,
    CommandName.STATS: Encoding.SIMPLE,
    CommandName.VERSIONCOMMANDS: Encoding.SIMPLE,
    CommandName.IDSESSION: Encoding.SIMPLE,
    CommandName.END: Encoding.SIMPLE,
    CommandName.SHUTDOWN: Encoding.SIMPLE,
    CommandName.SCAN: Encoding.SIMPLE_WITH_ARG,
    CommandName.CONTSCAN: Encoding.SIMPLE_WITH_ARG,
    CommandName.MULTISCAN: Encoding.SIMPLE_WITH_ARG,
    CommandName.ALLMATCHSCAN: Encoding.SIMPLE_WITH_ARG,
    CommandName.INSTREAM: Encoding.STREAMING,
}

Body = t.Union[bytes, bytearray, memoryview, t.IO[bytes]]


@dataclass(frozen=True)
class Command:
    """A command ready to be written on a connection.

    ``header`` is the command line, ``body`` the framed chunks that
    follow it (empty unless the command is streaming).
    """
    name: CommandName
    header: bytes
    body: tuple[bytes, ...] = ()

    def frames(self) -> t.Iterator[bytes]:
        """Iterate over everything to write, header first.
        """
        yield self.header
        yield from self.body


def resolve_name(name: t.Union[str, CommandName]) -> CommandName:
    """Map a command identifier to a supported command.

    :raise UnknownCommandError: if the command is not supported
    """
    if isinstance(name, CommandName):
        return name
    try:
        return CommandName(str(name).strip().upper())
    except ValueError:
        raise UnknownCommandError(name) from None


def build_command(name: t.Union[str, CommandName],
                  arg: str | None = None,
                  body: Body | None = None,
                  chunk_size: int = DEFAULT_CHUNK_SIZE) -> Command:
    """Build a clamd command.

    The argument is embedded verbatim: checking it (e.g. that a path is
    absolute) is up to the caller.  A streaming body is read entirely
    before returning.

    :param name: Command identifier, e.g. "PING" or CommandName.SCAN
    :param arg: Argument of the command, required by the scan commands
    :param body: Content for INSTREAM, bytes or a binary stream
    :param chunk_size: Size of the chunks the body is split into
    :return: Encoded command
    """
    command = resolve_name(name)
    encoding = ENCODINGS[command]

    if body is not None and encoding is not Encoding.STREAMING:
        raise InvalidArgumentError(f"{command.value} takes no body")

    match encoding:
        case Encoding.SIMPLE:
            if arg is not None:
                raise InvalidArgumentError(
                    f"{command.value} takes no argument")
            header = f"n{command.value}\n".encode()
            return Command(name=command, header=header)

        case Encoding.SIMPLE_WITH_ARG:
            if arg is None:
                raise InvalidArgumentError(
                    f"{command.value} requires an argument")
            header = f"n{command.value} {arg}\n".encode()
            return Command(name=command, header=header)

        case Encoding.STREAMING:
            if arg is not None:
                raise InvalidArgumentError(
                    f"{command.value} takes no argument")
            payload = _read_body(body)
            logging.debug("Framing %d bytes for %s in chunks of %s",
                          len(payload), command.value, chunk_size)
            chunks = encode_chunks(payload, chunk_size)
            header = f"z{command.value}\x00".encode()
            return Command(name=command, header=header, body=tuple(chunks))


def _read_body(body: Body | None) -> bytes:
    """Read the whole body of a streaming command.

    :raise StreamReadError: if the stream cannot be read
    """
    if body is None:
        return b''
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body)
    if not hasattr(body, "read"):
        raise InvalidArgumentError(
            f"body must be bytes or a binary stream, got {type(body)}")

    buf = bytearray()
    try:
        data = body.read(io.DEFAULT_BUFFER_SIZE)
        while data:
            buf.extend(data)
            data = body.read(io.DEFAULT_BUFFER_SIZE)
    except (OSError, ValueError) as e:
        # ValueError is what a closed file raises on read
        raise StreamReadError(f"unable to read stream: {e}") from e
    except TypeError as e:
        raise StreamReadError(f"stream must yield bytes: {e}") from e
    return bytes(buf)
