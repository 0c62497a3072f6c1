"""Retry of clamd exchanges on transient transport errors.

Only transport failures that leave clamd untouched, or that are known
to be transient, are retried: failing to connect, timing out or being
reset while writing the command, being reset while reading.  A read
timeout is not retried since the command may be running on clamd.

"""
import logging
import time
import typing as t

from .cancel import CancelToken
from .command import Command
from .types import ClamdException, ExchangeCancelled, ExchangeResult, \
    TransportError

ExchangeFn = t.Callable[[Command], bytes]

RESET_ERRORS = (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)


def is_retryable(exc: BaseException) -> bool:
    """Tell whether a failed exchange is worth another attempt.
    """
    if not isinstance(exc, TransportError):
        return False

    cause = exc.__cause__
    match exc.stage:
        case "dial":
            return True
        case "write":
            return isinstance(cause, RESET_ERRORS + (TimeoutError,))
        case "read":
            return isinstance(cause, RESET_ERRORS)
    return False


def backoff_delay(retry: int, min_backoff: float, max_backoff: float) -> float:
    """Delay before the n-th retry (1-based).

    Starts at min_backoff and doubles each retry, capped at max_backoff.
    """
    if retry < 1:
        return 0.0
    return min(min_backoff * (2 ** (retry - 1)), max_backoff)


def do_with_retry(command: Command,
                  exchange_fn: ExchangeFn,
                  max_retries: int,
                  min_backoff: float,
                  max_backoff: float,
                  cancel: CancelToken | None = None,
                  sleep: t.Callable[[float], None] | None = None
                  ) -> ExchangeResult:
    """Run an exchange, retrying it on retryable errors.

    :param command: Command to send
    :param exchange_fn: Runs one exchange of the command
    :param max_retries: Maximum number of attempts, at least one is made
    :param min_backoff: Delay before the first retry, seconds
    :param max_backoff: Maximum delay between attempts, seconds
    :param cancel: Token interrupting the backoff waits
    :param sleep: Replacement for the backoff wait, mainly for tests
    :return: Response along with the attempts it took
    :raise ClamdException: the last error, with its ``attempts`` set
    """
    max_attempts = max(1, max_retries)
    attempt = 0
    while True:
        attempt += 1
        try:
            body = exchange_fn(command)
        except ClamdException as e:
            e.attempts = attempt
            if not is_retryable(e):
                logging.debug("%s attempt %d failed, not retrying: %s",
                              command.name.value, attempt, e)
                raise
            if attempt >= max_attempts:
                logging.warning("%s failed after %d attempts: %s",
                                command.name.value, attempt, e)
                raise

            delay = backoff_delay(attempt, min_backoff, max_backoff)
            logging.debug("%s attempt %d failed, retrying in %.3fs: %s",
                          command.name.value, attempt, delay, e)
            _wait(delay, cancel, sleep)
            if cancel is not None and cancel.cancelled:
                cancelled = ExchangeCancelled(cancel.reason)
                cancelled.attempts = attempt
                raise cancelled from e
            continue

        return ExchangeResult(body=body, attempts=attempt)


def _wait(delay: float,
          cancel: CancelToken | None,
          sleep: t.Callable[[float], None] | None) -> None:
    if sleep is not None:
        sleep(delay)
    elif cancel is not None:
        cancel.wait(delay)
    else:
        time.sleep(delay)
