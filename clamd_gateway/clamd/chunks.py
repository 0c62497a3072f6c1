"""Chunk framing for clamd streaming commands.

INSTREAM content is sent as a sequence of chunks, each one prefixed by
its length as a 4-byte unsigned integer in network byte order.  A
zero-length chunk marks the end of the stream.  Read more in man
clamd(8).

"""
import struct

from .types import InvalidArgumentError, ProtocolError

DEFAULT_CHUNK_SIZE = 1 << 10

LENGTH_PREFIX = struct.Struct('!L')

TERMINATOR = LENGTH_PREFIX.pack(0)


def encode_chunks(payload: bytes, chunk_size: int) -> list[bytes]:
    """Split payload in length-prefixed chunks.

    The last data chunk may be shorter than ``chunk_size``.  The
    returned sequence always ends with the zero-length terminator, so
    an empty payload gives the terminator alone.

    :param payload: Data to frame
    :param chunk_size: Maximum size of the data of each chunk
    :return: Framed chunks, terminator included
    """
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) \
            or chunk_size <= 0:
        raise InvalidArgumentError(
            f"chunk size must be a positive integer, got {chunk_size!r}")

    view = memoryview(payload)
    chunks = []
    for offset in range(0, len(view), chunk_size):
        data = view[offset:offset + chunk_size]
        chunks.append(LENGTH_PREFIX.pack(len(data)) + data.tobytes())

    chunks.append(TERMINATOR)
    return chunks


def decode_chunks(data: bytes) -> list[bytes]:
    """Parse a framed chunk stream back to its data slices.

    Parsing stops at the terminator; anything after it is ignored.

    :param data: Framed stream as produced by :func:`encode_chunks`
    :return: Data of each non-terminal chunk, in order
    """
    slices = []
    offset = 0
    while offset + LENGTH_PREFIX.size <= len(data):
        (length,) = LENGTH_PREFIX.unpack_from(data, offset)
        offset += LENGTH_PREFIX.size
        if length == 0:
            return slices
        if offset + length > len(data):
            raise ProtocolError(
                f"truncated chunk: expected {length} bytes, "
                f"got {len(data) - offset}")
        slices.append(bytes(data[offset:offset + length]))
        offset += length

    raise ProtocolError("chunk stream is not terminated")
