"""Client for clamd.

It comes in two shapes:
 - ClamdUnixSocket for clamav daemon running locally
 - ClamdTCPSocket for clamav daemon on the network

Both are a :class:`Clamd` configured with :class:`ClamdOptions`.  Each
command opens a fresh connection, so a single client can be shared by
threads.

"""
import functools
import logging
import re
import ssl
import typing as t

from .cancel import CancelToken
from .command import Body, Command, CommandName, build_command
from .connection import ConnectionFactory, dial
from .exchange import exchange
from .options import ClamdOptions
from .retry import do_with_retry
from .types import ClamdCmdResponse, \
    ClamdScanResult, \
    ClamdScanStatus, \
    ExchangeResult, \
    ProtocolError

scan_status_line_pattern = re.compile(r"^(.+?):\s+(.+)?\s?(OK|FOUND|ERROR)$")
# errors not tied to a file, e.g. "INSTREAM size limit exceeded. ERROR"
error_line_pattern = re.compile(r"^(.+?)\s+ERROR$")

# clamd terminates lines with the terminator of the command: '\n' for
# 'n' commands, '\0' for 'z' commands
line_separator_pattern = re.compile(r"[\n\x00]")


class Clamd:
    """Client for clamd daemon.

    :param options: How to reach clamd
    :param connection_factory: Opens connections to clamd, defaults to
                               dialing as described by options
    """
    def __init__(self,
                 options: ClamdOptions | None = None,
                 connection_factory: ConnectionFactory | None = None):
        self.options = options or ClamdOptions()
        self._connection_factory = connection_factory or \
            functools.partial(dial, self.options)

    def do(self,
           command: Command,
           cancel: CancelToken | None = None) -> ExchangeResult:
        """Send a command to clamd, retrying on transient failures.

        :param command: Command built with :func:`build_command`
        :param cancel: Token to abort the command with
        :return: Raw response and number of attempts
        """
        logging.debug("Sending command: %s", command.header)

        def exchange_fn(cmd: Command) -> bytes:
            return exchange(
                cmd,
                self._connection_factory,
                cancel=cancel,
                check_interval=self.options.cancel_check_interval,
                recv_buffer_size=self.options.recv_buffer_size,
            )

        return do_with_retry(
            command,
            exchange_fn,
            max_retries=self.options.max_retries,
            min_backoff=self.options.min_retry_backoff,
            max_backoff=self.options.max_retry_backoff,
            cancel=cancel,
        )

    def command(self,
                name: str | CommandName,
                arg: str | None = None,
                body: Body | None = None,
                cancel: CancelToken | None = None) -> ExchangeResult:
        """Build and send any supported command.
        """
        cmd = build_command(name, arg=arg, body=body,
                            chunk_size=self.options.chunk_size)
        return self.do(cmd, cancel=cancel)

    def ping(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd PING command.

        Check the server's state. It should reply with "PONG".

        :raise ProtocolError: if clamd does not reply with "PONG"
        """
        pong = self._simple_command(CommandName.PING, cancel=cancel)
        if not pong.message.startswith("PONG"):
            raise ProtocolError(f"unexpected reply to PING: {pong.raw_data!r}")
        return pong

    def version(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd VERSION command.

        Print program and database versions.
        """
        return self._simple_command(CommandName.VERSION, cancel=cancel)

    def reload(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd RELOAD command.

        Reload the virus databases.  clamd replies with "RELOADING".
        """
        return self._simple_command(CommandName.RELOAD, cancel=cancel)

    def stats(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd STATS command.

        Replies with statistics about the scan queue, contents of scan
        queue, and memory usage.
        """
        return self._simple_command(CommandName.STATS, cancel=cancel)

    def versioncommands(self,
                        cancel: CancelToken | None = None
                        ) -> ClamdCmdResponse:
        """Execute clamd VERSIONCOMMANDS command.

        Print program and database versions, followed by "| COMMANDS:"
        and the space-delimited list of supported commands.
        """
        return self._simple_command(CommandName.VERSIONCOMMANDS,
                                    cancel=cancel)

    def idsession(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd IDSESSION command.

        Only the command is issued: the connection is closed right after,
        which ends the session.  clamd does not reply to it, so the
        response is usually empty.
        """
        return self._simple_command(CommandName.IDSESSION, cancel=cancel)

    def end(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd END command.
        """
        return self._simple_command(CommandName.END, cancel=cancel)

    def shutdown(self, cancel: CancelToken | None = None) -> ClamdCmdResponse:
        """Execute clamd SHUTDOWN command.

        Perform a clean exit of clamd.
        """
        return self._simple_command(CommandName.SHUTDOWN, cancel=cancel)

    def scan(self,
             filepath: str,
             cancel: CancelToken | None = None) -> ClamdScanResult:
        """Execute clamd SCAN command.

        Scan a file or a directory (recursively) with archive support
        enabled (if not disabled in clamd.conf). A full path is
        required.

        :param filepath: Path of the file to scan
        :return: Result of the scanning as ClamdScanResult instance
        """
        result = self.command(CommandName.SCAN, arg=filepath, cancel=cancel)
        return self._parse_scan_result(result)

    def contscan(self,
                 filepath: str,
                 cancel: CancelToken | None = None) -> list[ClamdScanResult]:
        """Execute clamd CONTSCAN command.

        Scan file or directory (recursively) with archive support
        enabled and don't stop the scanning when a virus is found.

        :return: One result per line of the response
        """
        result = self.command(CommandName.CONTSCAN, arg=filepath,
                              cancel=cancel)
        return self._parse_scan_results(result)

    def multiscan(self,
                  filepath: str,
                  cancel: CancelToken | None = None) -> list[ClamdScanResult]:
        """Execute clamd MULTISCAN command.

        Scan file in a standard way or scan directory (recursively)
        using multiple threads.

        :return: One result per line of the response
        """
        result = self.command(CommandName.MULTISCAN, arg=filepath,
                              cancel=cancel)
        return self._parse_scan_results(result)

    def allmatchscan(self,
                     filepath: str,
                     cancel: CancelToken | None = None
                     ) -> list[ClamdScanResult]:
        """Execute clamd ALLMATCHSCAN command.

        Like SCAN, but continues scanning after finding a match and
        reports every match.

        :return: One result per line of the response
        """
        result = self.command(CommandName.ALLMATCHSCAN, arg=filepath,
                              cancel=cancel)
        return self._parse_scan_results(result)

    def instream(self,
                 input_stream: Body,
                 cancel: CancelToken | None = None) -> ClamdScanResult:
        """Execute clamd INSTREAM command.

        Scan a stream of data. The stream is read entirely, then sent
        to clamd in chunks after INSTREAM on the same socket on which
        the command was sent.

        :param input_stream: Input stream (or bytes) to analyze
        :return: Result of the scanning as ClamdScanResult instance
        """
        result = self.command(CommandName.INSTREAM, body=input_stream,
                              cancel=cancel)
        return self._parse_scan_result(result)

    def _simple_command(self,
                        command: CommandName,
                        cancel: CancelToken | None = None
                        ) -> ClamdCmdResponse:
        """Send simple command to clamd and wait for response.

        :param command: Command to execute, possible values in man clamd(8)
        :return: clamd command response
        """
        result = self.command(command, cancel=cancel)
        return self._parse_response(result)

    def _parse_response(self, result: ExchangeResult) -> ClamdCmdResponse:
        """Parse a generic clamd response to a command.

        :param result: Raw clamd response
        :return: Structured response object
        """
        raw_resp = result.body.decode(errors="replace")
        raw_resp_lines = line_separator_pattern.split(raw_resp)
        message = raw_resp_lines[0]
        additional_lines = raw_resp_lines[1:]

        # remove ''
        additional_lines = [al for al in additional_lines if al]

        return ClamdCmdResponse(
            raw_data=raw_resp,
            message=message,
            details=additional_lines,
            attempts=result.attempts,
        )

    def _parse_scan_result(self, result: ExchangeResult) -> ClamdScanResult:
        """Parse a scanning command response.

        :param result: Raw clamd response
        :return: Structured scan result
        """
        resp = self._parse_response(result)
        return self._parse_scan_line(resp.message, resp)

    def _parse_scan_results(self,
                            result: ExchangeResult) -> list[ClamdScanResult]:
        """Parse a response holding one scan status per line.
        """
        resp = self._parse_response(result)
        lines = [resp.message] + resp.details
        return [self._parse_scan_line(line, resp) for line in lines if line]

    @staticmethod
    def _parse_scan_line(line: str,
                         resp: ClamdCmdResponse) -> ClamdScanResult:
        m = scan_status_line_pattern.match(line)
        if not m and (e := error_line_pattern.match(line)):
            return ClamdScanResult(
                input_file=None,
                raw_data=resp.raw_data,
                message=line,
                status=ClamdScanStatus.ERROR,
                virus=None,
                err_msg=e.group(1),
                details=resp.details,
                attempts=resp.attempts,
            )
        if not m:
            # not able to parse correctly clamd response
            return ClamdScanResult(
                input_file=None,
                raw_data=resp.raw_data,
                message=line,
                status=ClamdScanStatus.CLIENT_PARSE_ERROR,
                virus=None,
                err_msg="Unable to parse clamd response",
                details=resp.details,
                attempts=resp.attempts,
            )

        input_file = m.group(1)
        msg = (m.group(2) or "").strip()
        status = ClamdScanStatus(m.group(3))

        match status:
            case ClamdScanStatus.OK:
                virus = None
                err_msg = None
            case ClamdScanStatus.FOUND:
                # msg contains virus
                virus = msg
                err_msg = None
            case ClamdScanStatus.ERROR:
                # msg contains error message
                virus = None
                err_msg = msg

        return ClamdScanResult(
            input_file=input_file,
            raw_data=resp.raw_data,
            message=line,
            status=status,
            virus=virus,
            err_msg=err_msg,
            details=resp.details,
            attempts=resp.attempts,
        )


class ClamdUnixSocket(Clamd):
    """Client for clamd daemon over UNIX domain socket.

    This is the recommended option when clamd is running on the same host.

    When using this option, clamd should be running with 'LocalSocket <path>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 socket_path: str,
                 timeout: float = 300,  # seconds
                 **kwargs: t.Any):
        """Create clamd client instance for UNIX domain socket.

        :param socket_path: Path of the clamd daemon socket
        :param timeout: Timeout of reads and writes on the socket
        :param kwargs: Any other ClamdOptions field
        """
        kwargs.setdefault("read_timeout", timeout)
        kwargs.setdefault("write_timeout", timeout)
        super().__init__(ClamdOptions(network="unix",
                                      address=socket_path,
                                      **kwargs))
        self.socket_path = socket_path


class ClamdTCPSocket(Clamd):
    """Client for clamd daemon over TCP socket.

    This is the recommended (only) option when clamd is running on
    other host in the network.

    When using this option, clamd should be running with 'TCPSocket <port>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 host: str,
                 port: int,
                 timeout: float = 300,  # seconds
                 tls_context: ssl.SSLContext | None = None,
                 **kwargs: t.Any):
        """Create clamd client instance for TCP socket.

        :param host: TCP host
        :param port: TCP port
        :param timeout: Timeout of reads and writes on the socket
        :param tls_context: Wrap the connection in TLS with this context
        :param kwargs: Any other ClamdOptions field
        """
        kwargs.setdefault("read_timeout", timeout)
        kwargs.setdefault("write_timeout", timeout)
        address = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
        super().__init__(ClamdOptions(network="tcp",
                                      address=address,
                                      tls_context=tls_context,
                                      **kwargs))
        self.host = host
        self.port = port

