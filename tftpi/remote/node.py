"""SSH endpoint on an installed compute module."""

from __future__ import annotations

from pathlib import Path

from tftpi.context import Context
from tftpi.logging import LoggerFactory
from tftpi.remote.ssh import SSHEndpoint, copy_stream


class NodeEndpoint(SSHEndpoint):
    source = "node"

    def __init__(self, host: str, username: str, password: str, *, node_id: int | None = None, **kwargs):
        super().__init__(host, username, password, **kwargs)
        self.node_id = node_id
        self.log = LoggerFactory.for_node(node_id, host)

    def download(self, ctx: Context, remote_path: str, local_path: Path | str) -> None:
        """Copy a remote file to ``local_path``, creating local parents.

        A partially written local file is removed before the error propagates.
        """
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        self.log.info(f"Downloading {self.host}:{remote_path} to {local_path}")

        def transfer():
            with self.sftp(ctx) as sftp:
                try:
                    with sftp.open(remote_path, "rb") as src, open(local_path, "wb") as dst:
                        src.prefetch()
                        copy_stream(ctx, src, dst)
                except BaseException:
                    local_path.unlink(missing_ok=True)
                    raise

        self.retry.call(ctx, "download", self.host, transfer)
