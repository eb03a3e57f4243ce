"""Image customization pipeline shared by every backend.

A backend only knows how to run a tool (``execute``) and where a host path
lives from the tool's point of view (``to_backend_path``). Everything else,
from decompression through recompression, is built on those two methods so
the native and container flavours behave identically.

Pipeline:
    decompress -> map_partitions -> mount -> apply network -> apply file
    operations -> unmount -> unmap_partitions -> recompress
"""

from __future__ import annotations

import posixpath
import shlex
import shutil
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from tftpi.context import Context
from tftpi.domain.models import (
    ChangeMode,
    CopyFile,
    FileOperation,
    MakeDirectory,
    NetworkConfig,
    WriteFile,
)
from tftpi.exceptions import (
    CommandError,
    ImageOpsError,
    MountError,
    PartitionMapError,
    ValidationError,
)
from tftpi.imageops.network import NETPLAN_DIR, network_file_operations
from tftpi.logging import LoggerFactory

DECOMPRESS_TIMEOUT = 1800.0
COMPRESS_TIMEOUT = 3600.0
MAPPER_WAIT_SECONDS = 5.0
MAPPER_POLL_INTERVAL = 0.25
CLEANUP_TIMEOUT = 120.0


def parse_kpartx_output(output: str) -> list[str]:
    """Mapper names from ``kpartx -av`` ("add map loop0p1 (253:0): ...")."""
    names = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "add" and parts[1] == "map":
            names.append(parts[2])
    return names


def image_relative(path: str) -> str:
    """Normalize an in-image path and reject anything escaping the root."""
    if not path or not path.strip():
        raise ValidationError("image path", "empty")
    normalized = posixpath.normpath("/" + path.strip().lstrip("/"))
    if normalized == "/":
        raise ValidationError("image path", f"{path!r} resolves to the image root")
    return normalized.lstrip("/")


@dataclass(frozen=True)
class PrepareOptions:
    """Inputs to ``prepare``."""

    source_path: Path
    ip_cidr: str
    hostname: str = ""
    gateway: str = ""
    dns_servers: tuple[str, ...] = ()
    node_id: int = 0
    output_dir: Path | None = None
    output_name: str | None = None
    file_operations: tuple[FileOperation, ...] = ()

    @property
    def network(self) -> NetworkConfig:
        return NetworkConfig(
            hostname=self.hostname or f"node{self.node_id}",
            ip_cidr=self.ip_cidr,
            gateway=self.gateway,
            dns_servers=tuple(self.dns_servers),
        )


class ImageOpsBackend(ABC):
    """Runs the image pipeline through one tool-execution strategy."""

    name = "base"

    def __init__(self, source_dir: Path, scratch_dir: Path, output_dir: Path):
        self.source_dir = Path(source_dir)
        self.scratch_dir = Path(scratch_dir)
        self.output_dir = Path(output_dir)
        self.log = LoggerFactory.for_imageops(f"{self.name}-{uuid.uuid4().hex[:8]}")

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------

    @abstractmethod
    def execute(self, ctx: Context, args: Sequence[str], timeout: float | None = None) -> str:
        """Run a tool and return stdout; raise CommandError on failure."""

    @abstractmethod
    def to_backend_path(self, path: Path) -> str:
        """Translate a host path into the path the tools see."""

    def close(self) -> None:
        """Release backend resources. Safe to call more than once."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def shell(self, ctx: Context, script: str, timeout: float | None = None) -> str:
        return self.execute(ctx, ["sh", "-c", script], timeout=timeout)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def decompress(self, ctx: Context, source_xz: Path, work_dir: Path) -> Path:
        """Decompress ``source_xz`` into ``work_dir``; returns the raw image path."""
        source_xz = Path(source_xz)
        name = source_xz.name[:-3] if source_xz.name.endswith(".xz") else source_xz.name + ".img"
        image = Path(work_dir) / name
        self.log.info(f"Decompressing {source_xz.name}")
        src = shlex.quote(self.to_backend_path(source_xz))
        dst = shlex.quote(self.to_backend_path(image))
        self.shell(ctx, f"xz -dc {src} > {dst}", timeout=DECOMPRESS_TIMEOUT)
        return image

    def map_partitions(self, ctx: Context, image: Path) -> str:
        """Create partition mappings and return the root partition device.

        The second ``add map`` line of ``kpartx -av`` is the root filesystem.
        Mappings are removed again if the root device never shows up.
        """
        image_arg = self.to_backend_path(Path(image))
        try:
            output = self.execute(ctx, ["kpartx", "-av", image_arg])
        except CommandError as exc:
            raise PartitionMapError(str(image), exc.message) from exc
        try:
            names = parse_kpartx_output(output)
            if len(names) < 2:
                raise PartitionMapError(
                    str(image), f"expected at least 2 partitions, kpartx reported {len(names)}"
                )
            device = f"/dev/mapper/{names[1]}"
            self._wait_for_device(ctx, device, str(image))
        except BaseException:
            self._best_effort(lambda c: self.unmap_partitions(c, image), "unmap partitions")
            raise
        self.log.debug(f"Root partition mapped at {device}")
        return device

    def _wait_for_device(self, ctx: Context, device: str, image: str) -> None:
        deadline = time.monotonic() + MAPPER_WAIT_SECONDS
        while True:
            ctx.check()
            try:
                self.execute(ctx, ["test", "-e", device])
                return
            except CommandError:
                pass
            if time.monotonic() >= deadline:
                raise PartitionMapError(image, f"{device} did not appear within {MAPPER_WAIT_SECONDS:g}s")
            ctx.sleep(MAPPER_POLL_INTERVAL)

    def mount(self, ctx: Context, device: str, mount_dir: Path) -> None:
        target = self.to_backend_path(Path(mount_dir))
        try:
            self.execute(ctx, ["mkdir", "-p", target])
            self.execute(ctx, ["mount", device, target])
        except CommandError as exc:
            raise MountError(device, target, exc.message) from exc

    def unmount(self, ctx: Context, mount_dir: Path) -> None:
        target = self.to_backend_path(Path(mount_dir))
        try:
            self.execute(ctx, ["sync"])
            self.execute(ctx, ["umount", target])
        except CommandError as exc:
            raise MountError("-", target, exc.message) from exc

    def unmap_partitions(self, ctx: Context, image: Path) -> None:
        image_arg = self.to_backend_path(Path(image))
        try:
            self.execute(ctx, ["kpartx", "-dv", image_arg])
        except CommandError as exc:
            raise PartitionMapError(str(image), f"unmap failed: {exc.message}") from exc

    def recompress(self, ctx: Context, image: Path, output: Path) -> Path:
        """Compress ``image`` to ``output``; a failed run leaves no output."""
        output = Path(output)
        partial = output.with_name(f".{output.name}.partial")
        src = shlex.quote(self.to_backend_path(Path(image)))
        tmp = shlex.quote(self.to_backend_path(partial))
        dst = shlex.quote(self.to_backend_path(output))
        self.log.info(f"Compressing image to {output.name}")
        try:
            self.shell(ctx, f"xz -T0 -6 -c {src} > {tmp} && mv -f {tmp} {dst}", timeout=COMPRESS_TIMEOUT)
        except BaseException:
            self._best_effort(lambda c: self.execute(c, ["rm", "-f", self.to_backend_path(partial)]), "remove partial output")
            raise
        return output

    # ------------------------------------------------------------------
    # In-image file access
    # ------------------------------------------------------------------

    def _image_path(self, mount_dir: Path, path: str) -> str:
        return posixpath.join(self.to_backend_path(Path(mount_dir)), image_relative(path))

    def file_exists(self, ctx: Context, mount_dir: Path, path: str) -> bool:
        try:
            self.execute(ctx, ["test", "-e", self._image_path(mount_dir, path)])
        except CommandError:
            return False
        return True

    def read_file(self, ctx: Context, mount_dir: Path, path: str) -> str:
        return self.execute(ctx, ["cat", self._image_path(mount_dir, path)])

    def list_dir(self, ctx: Context, mount_dir: Path, path: str) -> list[str]:
        output = self.execute(ctx, ["ls", "-1", self._image_path(mount_dir, path)])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _install_staged(self, ctx: Context, staged: Path, mount_dir: Path, path: str, mode: int) -> None:
        dest = self._image_path(mount_dir, path)
        tmp = f"{dest}.tftpi-tmp"
        script = (
            f"mkdir -p {shlex.quote(posixpath.dirname(dest))}"
            f" && cp {shlex.quote(self.to_backend_path(staged))} {shlex.quote(tmp)}"
            f" && chmod {mode:o} {shlex.quote(tmp)}"
            f" && mv -f {shlex.quote(tmp)} {shlex.quote(dest)}"
        )
        self.shell(ctx, script)

    def _stage(self, work_dir: Path, content: bytes | None = None, source: Path | None = None) -> Path:
        staging = Path(work_dir) / "staging"
        staging.mkdir(parents=True, exist_ok=True)
        staged = staging / uuid.uuid4().hex
        if source is not None:
            shutil.copyfile(source, staged)
        else:
            staged.write_bytes(content or b"")
        return staged

    def apply_file_operations(
        self,
        ctx: Context,
        work_dir: Path,
        mount_dir: Path,
        operations: Sequence[FileOperation],
    ) -> None:
        """Apply staged operations inside the mounted image, in order."""
        for op in operations:
            ctx.check()
            if isinstance(op, WriteFile):
                staged = self._stage(work_dir, content=op.content)
                self._install_staged(ctx, staged, mount_dir, op.path, op.mode)
            elif isinstance(op, CopyFile):
                source = Path(op.source)
                if not source.is_file():
                    raise ImageOpsError(f"Copy source not found: {source}")
                mode = op.mode if op.mode is not None else source.stat().st_mode & 0o7777
                staged = self._stage(work_dir, source=source)
                self._install_staged(ctx, staged, mount_dir, op.path, mode)
            elif isinstance(op, MakeDirectory):
                target = self._image_path(mount_dir, op.path)
                self.execute(ctx, ["mkdir", "-p", target])
                self.execute(ctx, ["chmod", f"{op.mode:o}", target])
            elif isinstance(op, ChangeMode):
                if not self.file_exists(ctx, mount_dir, op.path):
                    raise ImageOpsError(f"chmod target does not exist in image: {op.path}")
                self.execute(ctx, ["chmod", f"{op.mode:o}", self._image_path(mount_dir, op.path)])
            else:
                raise ImageOpsError(f"Unknown file operation: {op!r}")
            self.log.debug(f"Applied {op.kind} {op.path}")

    def apply_network(self, ctx: Context, work_dir: Path, mount_dir: Path, net: NetworkConfig) -> None:
        uses_netplan = self.file_exists(ctx, mount_dir, NETPLAN_DIR)
        existing: list[str] = []
        if uses_netplan:
            for name in self.list_dir(ctx, mount_dir, NETPLAN_DIR):
                if name.endswith((".yaml", ".yml")):
                    existing.append(self.read_file(ctx, mount_dir, f"{NETPLAN_DIR}/{name}"))
        style = "netplan" if uses_netplan else "interfaces"
        self.log.info(f"Configuring {net.hostname} at {net.normalized_cidr} ({style})")
        ops = network_file_operations(net, uses_netplan=uses_netplan, existing_netplan=existing)
        self.apply_file_operations(ctx, work_dir, mount_dir, ops)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def output_path(self, options: PrepareOptions) -> Path:
        output_dir = Path(options.output_dir or self.output_dir)
        name = options.output_name or f"{options.network.hostname}.img.xz"
        return output_dir / name

    def prepare(self, ctx: Context, options: PrepareOptions) -> Path:
        """Produce a customized, compressed image.

        Returns the existing output untouched when it is already present.
        On failure every mapping, mount and scratch file is removed and no
        output file exists.
        """
        output = self.output_path(options)
        if output.exists():
            self.log.info(f"Output image already exists, reusing {output}")
            return output

        source = Path(options.source_path)
        if not source.is_absolute():
            raise ValidationError("source image", f"path must be absolute: {source}")
        if not source.is_file():
            raise ValidationError("source image", f"not found: {source}")
        net = options.network
        net.validate()

        output.parent.mkdir(parents=True, exist_ok=True)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="tftpi-", dir=self.scratch_dir))
        mount_dir = work_dir / "mnt"
        cleanups: list[tuple[str, Callable[[Context], None]]] = []
        try:
            image = self.decompress(ctx, source, work_dir)
            device = self.map_partitions(ctx, image)
            cleanups.append(("unmap partitions", lambda c: self.unmap_partitions(c, image)))
            self.mount(ctx, device, mount_dir)
            cleanups.append(("unmount", lambda c: self.unmount(c, mount_dir)))

            self.apply_network(ctx, work_dir, mount_dir, net)
            self.apply_file_operations(ctx, work_dir, mount_dir, options.file_operations)

            while cleanups:
                _, release = cleanups.pop()
                release(ctx)
            self.recompress(ctx, image, output)
        except BaseException:
            for label, release in reversed(cleanups):
                self._best_effort(release, label)
            raise
        finally:
            self._remove_work_dir(work_dir)
        self.log.success(f"Prepared image {output}")
        return output

    def _best_effort(self, func: Callable[[Context], object], label: str) -> None:
        """Run a teardown step on a fresh context, logging failures."""
        cleanup_ctx = Context.background().with_timeout(CLEANUP_TIMEOUT)
        try:
            func(cleanup_ctx)
        except Exception as exc:
            self.log.error(f"Cleanup step '{label}' failed: {exc}")

    def _remove_work_dir(self, work_dir: Path) -> None:
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            # Files written by the tools may be owned by root.
            self.log.debug(f"rmtree of {work_dir} failed ({exc}), removing via backend")
            self._best_effort(
                lambda c: self.execute(c, ["rm", "-rf", self.to_backend_path(work_dir)]),
                "remove scratch directory",
            )
