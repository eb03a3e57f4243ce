"""Cache stored in a directory on the BMC, reached over SFTP."""

from __future__ import annotations

import posixpath
import threading
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO

from tftpi.cache.base import Cache
from tftpi.cache.models import DATA_SUFFIX, storage_name
from tftpi.context import Context
from tftpi.remote.bmc import BMCEndpoint
from tftpi.remote.ssh import sftp_makedirs


class RemoteCache(Cache):
    """Cache on the BMC.

    Writes from this host are serialized by a lock file under
    ``lock_dir``; one SFTP session is opened lazily and kept until close.
    """

    location = "remote"

    def __init__(
        self,
        endpoint: BMCEndpoint,
        remote_dir: str,
        lock_dir: Path,
        refresh_interval: float | None = None,
    ):
        self.endpoint = endpoint
        self.remote_dir = remote_dir.rstrip("/") or "/"
        lock_dir = Path(lock_dir)
        lock_dir.mkdir(parents=True, exist_ok=True)
        self._stack = ExitStack()
        self._sftp = None
        self._sftp_lock = threading.Lock()
        super().__init__(lock_dir / f"{endpoint.host}.lock", refresh_interval)

    def __repr__(self) -> str:
        return f"RemoteCache({self.endpoint.host}:{self.remote_dir})"

    def content_path(self, key: str) -> str:
        """Path of the content file on the BMC."""
        return posixpath.join(self.remote_dir, storage_name(key) + DATA_SUFFIX)

    def _client(self, ctx: Context):
        with self._sftp_lock:
            if self._sftp is None:
                sftp = self._stack.enter_context(self.endpoint.sftp(ctx))
                sftp_makedirs(sftp, self.remote_dir)
                self._sftp = sftp
            return self._sftp

    def _path(self, name: str) -> str:
        return posixpath.join(self.remote_dir, name)

    def _open_read(self, ctx: Context, name: str) -> BinaryIO:
        fh = self._client(ctx).open(self._path(name), "rb")
        fh.prefetch()
        return fh

    def _open_write(self, ctx: Context, name: str) -> BinaryIO:
        fh = self._client(ctx).open(self._path(name), "wb")
        fh.set_pipelined(True)
        return fh

    def _rename(self, ctx: Context, src: str, dst: str) -> None:
        self._client(ctx).posix_rename(self._path(src), self._path(dst))

    def _remove(self, ctx: Context, name: str) -> None:
        try:
            self._client(ctx).remove(self._path(name))
        except FileNotFoundError:
            pass

    def _list_names(self, ctx: Context) -> list[str]:
        return sorted(self._client(ctx).listdir(self.remote_dir))

    def _close_storage(self) -> None:
        with self._sftp_lock:
            self._sftp = None
            self._stack.close()
