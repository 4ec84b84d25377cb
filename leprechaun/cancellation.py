"""Cooperative cancellation for the trading session.

Nothing is interrupted preemptively. Long running code polls the token at well
defined checkpoints (before and after every exchange call, between lifecycle
steps, at the top of each round) and unwinds with ``Cancelled``.
"""
import threading
from typing import Optional


class Cancelled(Exception):
    """The trading session has been cancelled."""


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()
        self._stopped = threading.Event()

    def cancel(self) -> None:
        """Request the session to stop at its next checkpoint."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise ``Cancelled`` if a stop was requested."""
        if self._event.is_set():
            raise Cancelled("the trading session has been cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` but wake up and raise as soon as a stop is requested."""
        if self._event.wait(timeout=max(0.0, seconds)):
            raise Cancelled("the trading session has been cancelled")

    def mark_stopped(self) -> None:
        """Signal any waiter that the session has fully stopped."""
        self._stopped.set()

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout=timeout)
