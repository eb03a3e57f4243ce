"""Image operations inside a privileged Linux container.

Used on hosts without kpartx and Linux mounts (macOS, Windows). The
container belongs to one backend instance: it is started lazily on the
first command and force-removed by ``close()``.

Bind mounts:
    source directory  -> /source  (read-only)
    scratch directory -> /scratch
    output directory  -> /output
"""

from __future__ import annotations

import secrets
import threading
import time
from pathlib import Path, PurePosixPath
from typing import Sequence

from tftpi.context import Context
from tftpi.exceptions import CommandError, ImageOpsError
from tftpi.imageops.base import ImageOpsBackend
from tftpi.imageops.commands import run_checked_command

IMAGE_NAME = "tftpi-imageops:latest"
CONTAINER_PREFIX = "tftpi-imageops"
MAX_NAME_ATTEMPTS = 3

DOCKERFILE = """\
FROM ubuntu:22.04

RUN apt-get update && apt-get install -y --no-install-recommends \\
    kpartx \\
    xz-utils \\
    sudo \\
    parted \\
    e2fsprogs \\
    dosfstools \\
    mount \\
    mawk \\
    coreutils \\
    util-linux \\
    && rm -rf /var/lib/apt/lists/*

WORKDIR /workspace

CMD ["sleep", "infinity"]
"""

SOURCE_MOUNT = "/source"
SCRATCH_MOUNT = "/scratch"
OUTPUT_MOUNT = "/output"


def unique_container_name(prefix: str = CONTAINER_PREFIX) -> str:
    """Container name with a time and random suffix."""
    return f"{prefix}-{time.time_ns()}-{secrets.token_hex(3)}"


class ContainerBackend(ImageOpsBackend):
    name = "container"

    def __init__(
        self,
        source_dir: Path,
        scratch_dir: Path,
        output_dir: Path,
        *,
        docker: str = "docker",
        image: str = IMAGE_NAME,
    ):
        super().__init__(source_dir, scratch_dir, output_dir)
        self.docker = docker
        self.image = image
        self.container_name: str | None = None
        self._lock = threading.Lock()
        self._closed = False
        self._binds = [
            (self.source_dir.absolute(), SOURCE_MOUNT, "ro"),
            (self.scratch_dir.absolute(), SCRATCH_MOUNT, "rw"),
            (self.output_dir.absolute(), OUTPUT_MOUNT, "rw"),
        ]

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    def ensure_image(self, ctx: Context) -> None:
        """Build the utility image unless it already exists locally."""
        try:
            run_checked_command([self.docker, "image", "inspect", self.image], ctx=ctx)
            return
        except CommandError:
            self.log.info(f"Building container image {self.image}")
        run_checked_command(
            [self.docker, "build", "-t", self.image, "-"],
            input_text=DOCKERFILE,
            ctx=ctx,
            timeout=1800,
        )

    def _run_args(self, name: str) -> list[str]:
        args = [self.docker, "run", "-d", "--privileged", "--name", name, "-v", "/dev:/dev"]
        for host_dir, target, mode in self._binds:
            host_dir.mkdir(parents=True, exist_ok=True)
            args += ["-v", f"{host_dir}:{target}:{mode}"]
        args += [self.image, "sleep", "infinity"]
        return args

    def start(self, ctx: Context) -> str:
        """Start the long-lived container if it is not running yet."""
        with self._lock:
            if self._closed:
                raise ImageOpsError("Container backend is closed")
            if self.container_name is not None:
                return self.container_name
            self.ensure_image(ctx)
            name = unique_container_name()
            for attempt in range(1, MAX_NAME_ATTEMPTS + 1):
                try:
                    run_checked_command(self._run_args(name), ctx=ctx, timeout=120)
                    break
                except CommandError as exc:
                    if "already in use" not in exc.message or attempt == MAX_NAME_ATTEMPTS:
                        raise
                    name = f"{name}-retry-{secrets.token_hex(3)}"
                    self.log.debug(f"Container name collision, retrying as {name}")
            self.container_name = name
            self.log.info(f"Started container {name}")
            return name

    def close(self) -> None:
        with self._lock:
            self._closed = True
            name, self.container_name = self.container_name, None
        if name is None:
            return
        for command in ([self.docker, "stop", "-t", "2", name], [self.docker, "rm", "-f", name]):
            try:
                run_checked_command(command, timeout=60)
            except CommandError as exc:
                self.log.warning(f"Container cleanup '{' '.join(command[1:])}' failed: {exc.message}")
        self.log.debug(f"Removed container {name}")

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------

    def execute(self, ctx: Context, args: Sequence[str], timeout: float | None = None) -> str:
        name = self.start(ctx)
        return run_checked_command([self.docker, "exec", name, *args], ctx=ctx, timeout=timeout)

    def to_backend_path(self, path: Path) -> str:
        path = Path(path).absolute()
        # Most specific bind first, binds may nest.
        for host_dir, target, _ in sorted(self._binds, key=lambda b: len(b[0].parts), reverse=True):
            try:
                relative = path.relative_to(host_dir)
            except ValueError:
                continue
            return str(PurePosixPath(target, *relative.parts))
        raise ImageOpsError(f"Path {path} is not inside any container bind mount")
