"""Cache stored in a host directory."""

from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO

from tftpi.cache.base import Cache
from tftpi.cache.models import DATA_SUFFIX, storage_name
from tftpi.context import Context

LOCK_FILENAME = ".tftpi-cache.lock"


class LocalCache(Cache):
    location = "local"

    def __init__(self, directory: Path, refresh_interval: float | None = None):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        super().__init__(self.directory / LOCK_FILENAME, refresh_interval)

    def __repr__(self) -> str:
        return f"LocalCache({self.directory})"

    def content_path(self, key: str) -> Path:
        """Host path of the content file for ``key`` (may not exist)."""
        return self.directory / (storage_name(key) + DATA_SUFFIX)

    def _open_read(self, ctx: Context, name: str) -> BinaryIO:
        return open(self.directory / name, "rb")

    def _open_write(self, ctx: Context, name: str) -> BinaryIO:
        return open(self.directory / name, "wb")

    def _rename(self, ctx: Context, src: str, dst: str) -> None:
        os.replace(self.directory / src, self.directory / dst)

    def _remove(self, ctx: Context, name: str) -> None:
        (self.directory / name).unlink(missing_ok=True)

    def _list_names(self, ctx: Context) -> list[str]:
        return sorted(p.name for p in self.directory.iterdir() if p.is_file())
