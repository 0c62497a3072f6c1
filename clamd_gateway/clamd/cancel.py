"""Cancellation of in-flight clamd exchanges.

A :class:`CancelToken` is owned by the caller and handed to the
client.  It fires either when :meth:`CancelToken.cancel` is called,
possibly from another thread, or when its deadline expires.

"""
import threading
import time

from .types import ExchangeCancelled

CANCELLED = "cancelled"
DEADLINE_EXCEEDED = "deadline exceeded"


class CancelToken:
    """Cancellation signal with an optional deadline.

    :param timeout: Seconds from now after which the token expires,
                    None for no deadline
    """
    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = None if timeout is None \
            else time.monotonic() + timeout

    @classmethod
    def with_timeout(cls, timeout: float) -> "CancelToken":
        return cls(timeout=timeout)

    def cancel(self) -> None:
        """Request cancellation.
        """
        self._event.set()

    @property
    def deadline(self) -> float | None:
        """Deadline on the :func:`time.monotonic` clock.
        """
        return self._deadline

    def remaining(self) -> float | None:
        """Seconds until the deadline, None without deadline.
        """
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def reason(self) -> str | None:
        """Why the token fired, None if it did not.
        """
        if self._event.is_set():
            return CANCELLED
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DEADLINE_EXCEEDED
        return None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the token fires or ``timeout`` elapses.

        :return: True if the token fired
        """
        remaining = self.remaining()
        if remaining is not None and (timeout is None or remaining < timeout):
            timeout = remaining
        self._event.wait(timeout)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        reason = self.reason
        if reason is not None:
            raise ExchangeCancelled(reason)
