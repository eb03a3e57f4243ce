"""Execution context carrying a deadline and a cancellation signal.

Every public operation takes a Context. Long loops call ``ctx.check()`` at
the top of each iteration and use ``ctx.sleep()`` instead of ``time.sleep``
so a cancel wakes them immediately.
"""

from __future__ import annotations

import threading
import time

from tftpi.exceptions import OperationCancelledError


class Context:
    """Cancellable execution context with an optional deadline."""

    def __init__(self, deadline: float | None = None, parent: Context | None = None):
        self._parent = parent
        self._lock = threading.Lock()
        self._err: OperationCancelledError | None = None
        self.done = threading.Event()
        if parent is not None and parent.deadline is not None:
            if deadline is None or parent.deadline < deadline:
                deadline = parent.deadline
        self.deadline = deadline

    @classmethod
    def background(cls) -> Context:
        """Root context: never cancelled, no deadline."""
        return cls()

    def with_timeout(self, seconds: float | None) -> Context:
        """Child context that expires after ``seconds`` (None keeps the parent's)."""
        if seconds is None:
            return Context(parent=self)
        return Context(deadline=time.monotonic() + seconds, parent=self)

    def child(self) -> Context:
        return Context(parent=self)

    def cancel(self, reason: str = "context cancelled") -> None:
        with self._lock:
            if self._err is None:
                self._err = OperationCancelledError(reason)
        self.done.set()

    @property
    def err(self) -> OperationCancelledError | None:
        if self._err is not None:
            return self._err
        if self._parent is not None:
            parent_err = self._parent.err
            if parent_err is not None:
                return parent_err
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel("context deadline exceeded")
            return self._err
        return None

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise OperationCancelledError if cancelled or past the deadline."""
        err = self.err
        if err is not None:
            raise err

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, raising as soon as the context ends."""
        end = time.monotonic() + max(0.0, seconds)
        while True:
            self.check()
            left = end - time.monotonic()
            if left <= 0:
                return
            remaining = self.remaining()
            if remaining is not None:
                left = min(left, remaining)
            # Poll in slices so a parent cancel is noticed promptly.
            self.done.wait(min(left, 0.25))
