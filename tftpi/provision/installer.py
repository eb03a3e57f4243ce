"""Flash a prepared image onto a node through the BMC and bring it online.

Flow for one node:
    1. Make sure the uncompressed image is on the BMC under /root/imgs/<node>/
    2. Flash it with the vendor tool
    3. Power cycle the node and switch it to normal boot
    4. Watch the UART until the login prompt
    5. Run the mandatory first-boot password change over SSH
"""

from __future__ import annotations

import posixpath
import shlex
import time
from dataclasses import dataclass

from tftpi.context import Context
from tftpi.domain.models import BoardType, ImageResult, parse_node_id
from tftpi.exceptions import (
    BMCWedgedError,
    ExpectTimeoutError,
    OperationCancelledError,
    PasswordChangeError,
    RemoteCommandError,
    TftpiError,
    UnsupportedBoardError,
    ValidationError,
)
from tftpi.logging import LoggerFactory, operation_context
from tftpi.provision.uart import BootMonitor
from tftpi.remote.expect import InteractionStep

REMOTE_IMAGE_ROOT = "/root/imgs"
PASSWORD_UPDATED = "passwd: password updated successfully"
XZ_SUFFIX = ".xz"
UNXZ_TIMEOUT = 1200.0

# Installation sub-steps recorded between the phase's Start and Complete labels.
STEP_IMAGE_UPLOAD = "ImageUpload"
STEP_FLASH = "Flash"
STEP_BOOT_MONITOR = "BootMonitor"
STEP_PASSWORD_CHANGE = "PasswordChange"
INSTALL_STEPS = (STEP_IMAGE_UPLOAD, STEP_FLASH, STEP_BOOT_MONITOR, STEP_PASSWORD_CHANGE)


@dataclass
class InstallConfig:
    """Credentials and timing for one installation."""

    new_password: str
    username: str = "ubuntu"
    initial_password: str = "ubuntu"
    power_cycle_pause: float = 2.0
    ssh_settle_delay: float = 10.0
    password_timeout: float = 30.0
    uart_poll_interval: float = 5.0
    uart_timeout: float = 180.0
    uart_max_failures: int = 5

    def validate(self) -> None:
        if not self.username:
            raise ValidationError("username", "required")
        if not self.new_password:
            raise ValidationError("new password", "required")
        if self.new_password == self.initial_password:
            raise ValidationError("new password", "must differ from the initial password")


def remote_image_paths(node_id: int, basename: str) -> tuple[str, str]:
    """(compressed, uncompressed) paths of an image on the BMC."""
    compressed = posixpath.join(REMOTE_IMAGE_ROOT, str(node_id), basename)
    if compressed.endswith(XZ_SUFFIX):
        return compressed, compressed[: -len(XZ_SUFFIX)]
    return compressed + XZ_SUFFIX, compressed


def password_change_steps(old_password: str, new_password: str) -> list[InteractionStep]:
    return [
        InteractionStep("Current password:", old_password, "Sending current password"),
        InteractionStep("New password:", new_password, "Sending new password"),
        InteractionStep("Retype new password:", new_password, "Confirming new password"),
    ]


class OSInstaller:
    """Installs a prepared image on one RK1 node.

    ``record`` is called with sub-step labels (``StartFlash``,
    ``CompleteFlash``, ``FailedFlash`` ...) so progress survives a crash.
    """

    def __init__(self, cluster, node_id: int, config: InstallConfig, record=None):
        self.cluster = cluster
        self.node_id = parse_node_id(node_id)
        self.config = config
        self._record = record
        self.log = LoggerFactory.for_installer(self.node_id)

    def _mark(self, label: str, error: BaseException | None = None) -> None:
        if self._record is not None:
            self._record(label, error)

    def _step(self, name: str, func, *args):
        self._mark(f"Start{name}")
        try:
            result = func(*args)
        except BaseException as exc:
            self._mark(f"Failed{name}", exc)
            raise
        self._mark(f"Complete{name}")
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def stage_image(self, ctx: Context, bmc, image: ImageResult) -> str:
        """Put the uncompressed image on the BMC; returns its path."""
        compressed, uncompressed = remote_image_paths(self.node_id, image.basename)
        if bmc.exists(ctx, uncompressed):
            self.log.info(f"Image already staged at {uncompressed}")
            return uncompressed

        bmc.run(ctx, f"mkdir -p {shlex.quote(posixpath.dirname(compressed))}")
        if image.is_remote_cache:
            source = str(self.cluster.remote_cache.content_path(image.cache_key))
            self.log.info(f"Copying cached image {image.cache_key} to {compressed}")
            bmc.run(
                ctx,
                f"cp {shlex.quote(source)} {shlex.quote(compressed)}",
                timeout=UNXZ_TIMEOUT,
            )
        else:
            bmc.upload(ctx, image.image_path, compressed)

        self.log.info(f"Decompressing {compressed} on the BMC")
        bmc.run(ctx, f"unxz -f {shlex.quote(compressed)}", timeout=UNXZ_TIMEOUT)
        return uncompressed

    def power_cycle(self, ctx: Context, bmc) -> None:
        try:
            bmc.power_off(ctx, self.node_id)
        except RemoteCommandError as exc:
            self.log.warning(f"Power off of node {self.node_id} failed, continuing: {exc}")
        ctx.sleep(self.config.power_cycle_pause)
        bmc.power_on(ctx, self.node_id)
        try:
            bmc.set_normal_mode(ctx, self.node_id)
        except RemoteCommandError as exc:
            self.log.warning(f"Could not set normal mode on node {self.node_id}: {exc}")

    def monitor_boot(self, ctx: Context, bmc) -> None:
        monitor = BootMonitor(
            bmc,
            self.node_id,
            poll_interval=self.config.uart_poll_interval,
            timeout=self.config.uart_timeout,
            max_failures=self.config.uart_max_failures,
        )
        monitor.wait_for_boot(ctx)

    def probe_connectivity(self, ctx: Context, bmc, host: str) -> bool:
        """Ask the BMC whether the node answers SSH at all."""
        target = shlex.quote(f"{self.config.username}@{host}")
        command = f"ssh -o ConnectTimeout=3 -o StrictHostKeyChecking=no {target} echo ALIVE"
        try:
            result = bmc.run(ctx, command, timeout=15)
        except OperationCancelledError:
            raise
        except TftpiError as exc:
            self.log.warning(f"Connectivity probe to {host} failed: {exc}")
            return False
        alive = "ALIVE" in result.stdout
        self.log.info(f"Connectivity probe to {host}: {'reachable' if alive else 'no answer'}")
        return alive

    def change_password(self, ctx: Context, bmc) -> str:
        """Answer the forced password change prompt; returns the transcript.

        Raises:
            PasswordChangeError: The dialog did not end with a successful update
        """
        ctx.sleep(self.config.ssh_settle_delay)
        host = self.cluster.node_config(self.node_id).ip_address
        steps = password_change_steps(self.config.initial_password, self.config.new_password)
        node = self.cluster.node(self.node_id, self.config.username, self.config.initial_password)
        try:
            transcript = node.expect(ctx, steps, timeout=self.config.password_timeout)
        except OperationCancelledError:
            raise
        except ExpectTimeoutError as exc:
            self.probe_connectivity(ctx, bmc, host)
            raise PasswordChangeError(host, str(exc), exc.transcript) from exc
        except TftpiError as exc:
            self.probe_connectivity(ctx, bmc, host)
            raise PasswordChangeError(host, str(exc)) from exc
        finally:
            node.close()

        if PASSWORD_UPDATED not in transcript:
            self.probe_connectivity(ctx, bmc, host)
            raise PasswordChangeError(host, "password update was not confirmed", transcript)
        self.log.info(f"Password changed for {self.config.username}@{host}")
        return transcript

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def install(self, ctx: Context, image: ImageResult) -> float:
        """Run every step; returns the installation duration in seconds.

        Raises:
            UnsupportedBoardError: The image targets a board without an install flow
            BMCWedgedError: The vendor API refused its connection; nothing was power cycled
        """
        self.config.validate()
        if image.board is not BoardType.RK1:
            raise UnsupportedBoardError(image.board.value)

        started = time.monotonic()
        with operation_context("install", node=self.node_id, image=image.basename) as log:
            bmc = self.cluster.bmc()
            try:
                remote_path = self._step(STEP_IMAGE_UPLOAD, self.stage_image, ctx, bmc, image)
                try:
                    self._step(STEP_FLASH, bmc.flash, ctx, self.node_id, remote_path)
                except BMCWedgedError:
                    log.error("BMC is wedged; skipping power cycle")
                    raise
                self.power_cycle(ctx, bmc)
                self._step(STEP_BOOT_MONITOR, self.monitor_boot, ctx, bmc)
                self._step(STEP_PASSWORD_CHANGE, self.change_password, ctx, bmc)
            finally:
                bmc.close()
        return time.monotonic() - started
