"""Watch a node boot through the BMC's UART readout."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from tftpi.context import Context
from tftpi.exceptions import OperationCancelledError, TftpiError, UartMonitorError
from tftpi.logging import LoggerFactory, ThrottledLogger

POLL_INTERVAL = 5.0
BOOT_TIMEOUT = 180.0
MAX_CONSECUTIVE_FAILURES = 5

INIT_MARKERS = ("systemd[1]:",)
NETWORK_MARKERS = ("Reached target Network", "eth0: Link is Up")
LOGIN_MARKERS = ("login:",)
JOURNAL_CORRUPTION = "File corrupted or uncleanly shut down"


@dataclass
class BootProgress:
    init_started: bool = False
    network_up: bool = False
    login_prompt: bool = False
    reads: int = 0
    output: list[str] = field(default_factory=list)

    @property
    def transcript(self) -> str:
        return "".join(self.output)


class BootMonitor:
    """Polls ``tpi uart get`` until a login prompt appears or time runs out.

    Reaching the timeout without a login prompt is not an error: the node
    may boot with a quiet console. Only repeated read failures are fatal.
    """

    def __init__(
        self,
        bmc,
        node_id: int,
        *,
        poll_interval: float = POLL_INTERVAL,
        timeout: float = BOOT_TIMEOUT,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
    ):
        self.bmc = bmc
        self.node_id = node_id
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_failures = max_failures
        self.log = LoggerFactory.for_uart(node_id)
        self.throttled = ThrottledLogger(self.log, interval_seconds=30.0)

    def _scan(self, progress: BootProgress, chunk: str) -> None:
        if JOURNAL_CORRUPTION in chunk:
            self.log.warning(
                f"Node {self.node_id} reported a corrupted journal; it was not shut down cleanly"
            )
        if not progress.init_started and any(m in chunk for m in INIT_MARKERS):
            progress.init_started = True
            self.log.info(f"Node {self.node_id}: init started")
        if not progress.network_up and any(m in chunk for m in NETWORK_MARKERS):
            progress.network_up = True
            self.log.info(f"Node {self.node_id}: network is up")
        if not progress.login_prompt and any(m in chunk for m in LOGIN_MARKERS):
            progress.login_prompt = True
            self.log.info(f"Node {self.node_id}: login prompt reached")

    def wait_for_boot(self, ctx: Context) -> BootProgress:
        """Poll until login, timeout, or too many consecutive read failures.

        Raises:
            UartMonitorError: More than ``max_failures`` reads failed in a row
            OperationCancelledError: The context was cancelled
        """
        progress = BootProgress()
        failures = 0
        deadline = time.monotonic() + self.timeout
        self.log.info(f"Monitoring UART for node {self.node_id} (up to {self.timeout:.0f}s)")

        while True:
            ctx.check()
            try:
                chunk = self.bmc.uart_read(ctx, self.node_id)
            except OperationCancelledError:
                raise
            except TftpiError as exc:
                failures += 1
                self.log.debug(f"UART read failed ({failures}/{self.max_failures}): {exc}")
                if failures > self.max_failures:
                    raise UartMonitorError(self.node_id, failures, str(exc)) from exc
            else:
                failures = 0
                progress.reads += 1
                if chunk:
                    progress.output.append(chunk)
                    for line in chunk.splitlines():
                        self.log.trace(f"uart: {line}")
                    self._scan(progress, chunk)
                if progress.login_prompt:
                    return progress

            if time.monotonic() >= deadline:
                self.log.warning(
                    f"No login prompt from node {self.node_id} after {self.timeout:.0f}s, continuing"
                )
                return progress
            self.throttled.info("waiting", f"Waiting for node {self.node_id} to boot")
            ctx.sleep(self.poll_interval)
