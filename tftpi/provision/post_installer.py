"""Run a user-supplied configuration action against an installed node."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Callable

from tftpi.context import Context
from tftpi.domain.models import Phase, parse_node_id
from tftpi.exceptions import PostInstallError, TftpiError
from tftpi.imageops.commands import run_checked_command
from tftpi.logging import LoggerFactory, operation_context


class LocalRuntime:
    """Host-side handle given to post-install actions.

    Relative paths resolve against ``base_dir``.
    """

    def __init__(self, ctx: Context, base_dir: Path | str | None = None):
        self.ctx = ctx
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    def path(self, path: Path | str) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.base_dir / path

    def read_file(self, path: Path | str) -> bytes:
        return self.path(path).read_bytes()

    def write_file(self, path: Path | str, data: bytes | str) -> Path:
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            target.write_text(data, encoding="utf-8")
        else:
            target.write_bytes(data)
        return target

    def copy_file(self, source: Path | str, dest: Path | str) -> Path:
        return self.write_file(dest, self.read_file(source))

    def run_command(self, command: str, timeout: float | None = None) -> str:
        """Run a shell command on the host; returns stdout."""
        return run_checked_command(["sh", "-c", command], ctx=self.ctx, timeout=timeout)


class RemoteRuntime:
    """Node-side handle given to post-install actions."""

    def __init__(self, ctx: Context, endpoint, local: LocalRuntime):
        self.ctx = ctx
        self.endpoint = endpoint
        self.local = local

    @property
    def host(self) -> str:
        return self.endpoint.host

    def run_command(self, command: str, timeout: float | None = None) -> tuple[str, str]:
        """Run a command on the node; returns (stdout, stderr).

        Raises:
            RemoteCommandError: The command exited non-zero
        """
        result = self.endpoint.run(self.ctx, command, timeout=timeout)
        return result.stdout, result.stderr

    def copy_file(self, local_path: Path | str, remote_path: str, to_remote: bool = True) -> None:
        """Upload ``local_path`` to the node, or download when ``to_remote`` is False."""
        if to_remote:
            self.endpoint.upload(self.ctx, self.local.path(local_path), remote_path)
        else:
            self.endpoint.download(self.ctx, remote_path, self.local.path(local_path))

    def write_file(self, remote_path: str, data: bytes | str, mode: int = 0o644) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        with self.endpoint.sftp(self.ctx) as sftp:
            with sftp.open(remote_path, "wb") as fh:
                fh.write(payload)
            sftp.chmod(remote_path, mode)

    def sudo(self, command: str, password: str, timeout: float | None = None) -> tuple[str, str]:
        """Run ``command`` with sudo, feeding ``password`` on stdin."""
        wrapped = f"echo {shlex.quote(password)} | sudo -S -p '' sh -c {shlex.quote(command)}"
        return self.run_command(wrapped, timeout=timeout)


PostInstallAction = Callable[[Context, LocalRuntime, RemoteRuntime], None]


def action_name(action: Callable) -> str:
    module = getattr(action, "__module__", None) or "-"
    name = getattr(action, "__qualname__", None) or type(action).__qualname__
    return f"{module}.{name}"


class PostInstaller:
    """Hands an action local and remote runtimes for one node.

    When ``record_result`` is set the outcome is stored as
    ``CompletePostInstallation`` or ``FailedPostInstallation``.
    """

    def __init__(
        self,
        cluster,
        node_id: int,
        action: PostInstallAction,
        username: str = "ubuntu",
        password: str = "",
        *,
        base_dir: Path | str | None = None,
        record_result: bool = True,
    ):
        self.cluster = cluster
        self.node_id = parse_node_id(node_id)
        self.action = action
        self.username = username
        self.password = password
        self.base_dir = base_dir
        self.record_result = record_result
        self.log = LoggerFactory.for_node(self.node_id)

    def run(self, ctx: Context) -> None:
        """Run the action.

        Raises:
            PostInstallError: The action raised something outside the tftpi hierarchy
            TftpiError: Remote or local failures raised by the action propagate unchanged
        """
        phase = Phase.POST_INSTALLATION
        local = LocalRuntime(ctx, self.base_dir)
        endpoint = self.cluster.node(self.node_id, self.username, self.password)
        try:
            with operation_context("configure", node=self.node_id, action=action_name(self.action)):
                remote = RemoteRuntime(ctx, endpoint, local)
                try:
                    self.action(ctx, local, remote)
                except TftpiError:
                    raise
                except Exception as exc:
                    raise PostInstallError(f"Post-install action failed: {exc}") from exc
        except BaseException as exc:
            if self.record_result:
                self.cluster.state.record_operation(self.node_id, phase.failed_label, exc)
            raise
        finally:
            endpoint.close()
        if self.record_result:
            self.cluster.state.record_operation(self.node_id, phase.complete_label)
