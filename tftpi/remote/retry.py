"""Retry policy for transient remote IO.

Applied at the channel edge (dial, session open, SFTP transfer) so call
sites never loop on their own.
"""

from __future__ import annotations

import errno
import socket
from dataclasses import dataclass
from typing import Callable, TypeVar

import paramiko

from tftpi.context import Context
from tftpi.exceptions import BMCWedgedError, ConnectionFailedError
from tftpi.logging import get_logger

log = get_logger(source="retry", tags=["ssh", "retry"])

T = TypeVar("T")

_RETRIABLE_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
    errno.EPIPE,
}

_RETRIABLE_MESSAGES = (
    "connection reset",
    "connection refused",
    "no route to host",
    "i/o timeout",
    "broken pipe",
    "error reading ssh protocol banner",
    "unable to connect",
    "eof during negotiation",
    "session not active",
    "channel closed",
)


def is_retriable(exc: BaseException) -> bool:
    """True when ``exc`` is a connection-level failure worth another attempt."""
    if isinstance(exc, BMCWedgedError):
        return False
    if isinstance(exc, (paramiko.AuthenticationException, paramiko.BadHostKeyException)):
        return False
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        return True
    if isinstance(exc, (socket.timeout, TimeoutError, EOFError, ConnectionError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _RETRIABLE_ERRNOS:
        return True
    message = str(exc).lower()
    if isinstance(exc, (paramiko.SSHException, OSError)):
        return any(pattern in message for pattern in _RETRIABLE_MESSAGES)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff: delay, delay + increment, delay + 2*increment, ..."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    increment: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return self.initial_delay + self.increment * (attempt - 1)

    def call(
        self,
        ctx: Context,
        operation: str,
        host: str,
        func: Callable[[], T],
    ) -> T:
        """Run ``func``, retrying retriable failures.

        Non-retriable exceptions propagate unchanged. Once every attempt has
        failed a ConnectionFailedError chained to the last cause is raised.
        """
        attempts = max(1, self.max_attempts)
        last_exc: BaseException | None = None
        for attempt in range(1, attempts + 1):
            ctx.check()
            try:
                return func()
            except Exception as exc:
                if not is_retriable(exc):
                    raise
                last_exc = exc
                if attempt == attempts:
                    break
                delay = self.delay_for(attempt)
                log.debug(
                    f"{operation} on {host} failed (attempt {attempt}/{attempts}): "
                    f"{exc}; retrying in {delay:g}s"
                )
                ctx.sleep(delay)
        raise ConnectionFailedError(host, attempts, str(last_exc)) from last_exc
