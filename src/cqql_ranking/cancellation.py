"""Cooperative cancellation for normalization and matrix construction."""

from __future__ import annotations

import threading
import time

from cqql_ranking.errors import Cancelled


class Deadline:
    """
    Externally supplied cancellation/deadline signal.

    Long-running steps call `check()` at every recursive step and for every
    document processed. A deadline may combine a wall-clock timeout with an
    event that another thread sets to cancel the search.

    Args:
        timeout: Seconds from construction until the deadline expires
            (None for no time limit).
        event: Optional event; once set, `check()` raises `Cancelled`.
    """

    def __init__(self, timeout: float | None = None, event: threading.Event | None = None):
        self.timeout = timeout
        self.event = event
        self._start = time.monotonic()

    @classmethod
    def never(cls) -> "Deadline":
        return cls()

    def elapsed(self) -> float:
        """Seconds since construction."""
        return time.monotonic() - self._start

    def is_expired(self) -> bool:
        if self.event is not None and self.event.is_set():
            return True
        return self.timeout is not None and self.elapsed() > self.timeout

    def check(self) -> None:
        """Raise `Cancelled` if the search was cancelled or timed out."""
        if self.event is not None and self.event.is_set():
            raise Cancelled("search was cancelled")
        if self.timeout is not None and self.elapsed() > self.timeout:
            raise Cancelled(f"search timed out after {self.timeout:g}s")


__all__ = ["Deadline"]
