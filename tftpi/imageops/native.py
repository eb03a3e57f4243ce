"""Image operations using the host's own tools (Linux only)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

from tftpi.context import Context
from tftpi.imageops.base import ImageOpsBackend
from tftpi.imageops.commands import run_checked_command


class NativeBackend(ImageOpsBackend):
    """Runs xz, kpartx and mount directly on the host.

    kpartx and mount need root; when the process is not root every command
    is prefixed with non-interactive sudo.
    """

    name = "native"

    def __init__(self, source_dir: Path, scratch_dir: Path, output_dir: Path, *, use_sudo: bool | None = None):
        super().__init__(source_dir, scratch_dir, output_dir)
        if use_sudo is None:
            use_sudo = os.geteuid() != 0
        self.use_sudo = use_sudo

    def execute(self, ctx: Context, args: Sequence[str], timeout: float | None = None) -> str:
        command = list(args)
        if self.use_sudo:
            command = ["sudo", "-n", *command]
        return run_checked_command(command, ctx=ctx, timeout=timeout)

    def to_backend_path(self, path: Path) -> str:
        return str(Path(path).absolute())
