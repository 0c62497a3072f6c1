"""Types for clamd communication.

"""
from dataclasses import dataclass, field
from enum import Enum


class ClamdException(Exception):
    """Raised when error occurred communicating with the clamd daemon.

    ``attempts`` is set by the retry controller to the number of
    exchange attempts made before the error was surfaced.
    """
    attempts: int | None = None


class InvalidArgumentError(ClamdException, ValueError):
    """Raised on a malformed call, e.g. a non-positive chunk size.
    """


class UnknownCommandError(ClamdException):
    """Raised when the command identifier is not supported.
    """
    def __init__(self, name):
        super().__init__(f"unknown clamd command: {name!r}")
        self.name = name


class StreamReadError(ClamdException):
    """Raised when the body of a streaming command cannot be read.
    """


class TransportError(ClamdException):
    """Raised on dial, write or read failure.

    :param stage: one of "dial", "write" or "read"
    """
    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage


class ExchangeCancelled(ClamdException):
    """Raised when the caller cancelled the exchange or its deadline
    expired.
    """
    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"exchange {reason}")
        self.reason = reason


class ProtocolError(ClamdException):
    """Raised when a clamd response does not have the expected shape.
    """


@dataclass(frozen=True)
class ExchangeResult:
    """Raw outcome of a successful command exchange.
    """
    body: bytes
    attempts: int


class ClamdScanStatus(Enum):
    """Status of clamd scanning.
    """
    OK = "OK"
    FOUND = "FOUND"
    ERROR = "ERROR"
    # this is not an error returned by clamd, but reflects our
    # inability to parse the clamd response correctly
    CLIENT_PARSE_ERROR = "CLIENT_PARSE_ERROR"


@dataclass
class ClamdCmdResponse():
    """Response of a clamd command.
    """
    raw_data: str
    message: str
    details: list[str]
    attempts: int = field(default=1, kw_only=True)

    def __str__(self):
        return self.raw_data


@dataclass
class ClamdScanResult(ClamdCmdResponse):
    """Result of a clamd scanning.
    """
    input_file: str | None
    status: ClamdScanStatus
    virus: str | None = None
    err_msg: str | None = None
