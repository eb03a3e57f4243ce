"""Expect/send dialogs over an interactive SSH channel."""

from __future__ import annotations

import time
from dataclasses import dataclass

from tftpi.context import Context
from tftpi.exceptions import ExpectTimeoutError

READ_CHUNK = 4096
POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class InteractionStep:
    """Wait for ``expect`` to appear, then send ``send``."""

    expect: str
    send: str
    log_message: str = ""


class ExpectSession:
    """Byte-buffered reader/writer over a paramiko channel.

    The channel only needs ``recv_ready``, ``recv``, ``send``,
    ``exit_status_ready`` and ``closed``, so tests can drive it with a fake.
    """

    def __init__(self, channel, log=None):
        self.channel = channel
        self.log = log
        self._buffer = bytearray()
        self._search_from = 0

    @property
    def transcript(self) -> str:
        return self._buffer.decode("utf-8", errors="replace")

    def _pump(self) -> bool:
        """Move any pending channel bytes into the buffer."""
        received = False
        while self.channel.recv_ready():
            data = self.channel.recv(READ_CHUNK)
            if not data:
                break
            self._buffer.extend(data)
            received = True
        return received

    def _finished(self) -> bool:
        return bool(self.channel.closed) or self.channel.exit_status_ready()

    def read_until(self, ctx: Context, needle: str, deadline: float) -> str:
        """Block until ``needle`` shows up after the previous match.

        Raises:
            ExpectTimeoutError: If the deadline passes or the session ends first
        """
        target = needle.encode("utf-8")
        while True:
            ctx.check()
            self._pump()
            index = self._buffer.find(target, self._search_from)
            if index >= 0:
                self._search_from = index + len(target)
                return self.transcript
            if self._finished() and not self.channel.recv_ready():
                raise ExpectTimeoutError(needle, self.transcript)
            if time.monotonic() >= deadline:
                raise ExpectTimeoutError(needle, self.transcript)
            time.sleep(POLL_INTERVAL)

    def send_line(self, text: str) -> None:
        if not text.endswith("\n"):
            text += "\n"
        payload = text.encode("utf-8")
        while payload:
            sent = self.channel.send(payload)
            if sent <= 0:
                break
            payload = payload[sent:]

    def drain(self, ctx: Context, deadline: float) -> bool:
        """Read until the session ends; False if the deadline came first."""
        while True:
            ctx.check()
            self._pump()
            if self._finished() and not self.channel.recv_ready():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL)

    def run_steps(self, ctx: Context, steps: list[InteractionStep], deadline: float) -> str:
        for step in steps:
            self.read_until(ctx, step.expect, deadline)
            if self.log is not None:
                self.log.debug(step.log_message or f"Matched {step.expect!r}, sending response")
            self.send_line(step.send)
        return self.transcript
