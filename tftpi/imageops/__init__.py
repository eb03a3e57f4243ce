"""Disk image customization backends."""

from __future__ import annotations

import platform
from pathlib import Path

from .base import ImageOpsBackend, PrepareOptions
from .container import ContainerBackend
from .native import NativeBackend


def create_backend(
    source_dir: Path,
    scratch_dir: Path,
    output_dir: Path,
    *,
    system: str | None = None,
) -> ImageOpsBackend:
    """Native backend on Linux hosts, container backend everywhere else."""
    system = system or platform.system()
    if system == "Linux":
        return NativeBackend(source_dir, scratch_dir, output_dir)
    return ContainerBackend(source_dir, scratch_dir, output_dir)


__all__ = [
    "ContainerBackend",
    "ImageOpsBackend",
    "NativeBackend",
    "PrepareOptions",
    "create_backend",
]
