"""Password-authenticated SSH endpoint shared by the BMC and node flavours.

An endpoint owns every paramiko client, channel and SFTP client it opens,
so ``close()`` can tear all of them down even while another thread is in
the middle of a command.
"""

from __future__ import annotations

import posixpath
import shlex
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import paramiko

from tftpi.context import Context
from tftpi.exceptions import (
    EndpointClosedError,
    RemoteCommandError,
    RemoteTimeoutError,
)
from tftpi.logging import get_logger
from tftpi.remote.expect import ExpectSession, InteractionStep
from tftpi.remote.retry import RetryPolicy

TRANSFER_CHUNK = 1024 * 1024
POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_status: int = 0


def sftp_makedirs(sftp, remote_dir: str) -> None:
    """``mkdir -p`` over SFTP."""
    if not remote_dir or remote_dir in ("/", "."):
        return
    current = "/" if remote_dir.startswith("/") else ""
    for part in [p for p in remote_dir.split("/") if p]:
        current = posixpath.join(current, part) if current else part
        try:
            sftp.stat(current)
        except OSError:
            try:
                sftp.mkdir(current)
            except OSError:
                # Another writer may have created it in between.
                sftp.stat(current)


class SSHEndpoint:
    """Remote shell endpoint reached over SSH with a username and password."""

    source = "ssh"

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        *,
        port: int = 22,
        connect_timeout: float = 30.0,
        command_timeout: float = 300.0,
        retry: RetryPolicy | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.retry = retry or RetryPolicy()
        self._client_factory = client_factory
        self._lock = threading.Lock()
        self._closed = False
        self._clients: set = set()
        self._channels: set = set()
        self._sftp_clients: set = set()
        self.log = get_logger(source=self.source, tags=[self.source, "ssh"])

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.username}@{self.host}:{self.port})"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Resource tracking
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise EndpointClosedError(self.host)

    def _track(self, bucket: set, resource) -> None:
        with self._lock:
            if self._closed:
                resource.close()
                raise EndpointClosedError(self.host)
            bucket.add(resource)

    def _release(self, bucket: set, resource) -> None:
        with self._lock:
            bucket.discard(resource)
        try:
            resource.close()
        except (OSError, EOFError, paramiko.SSHException) as exc:
            self.log.debug(f"Ignoring error while closing {type(resource).__name__}: {exc}")

    def close(self) -> None:
        """Close every client, channel and SFTP client this endpoint opened."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            resources = [*self._sftp_clients, *self._channels, *self._clients]
            self._sftp_clients.clear()
            self._channels.clear()
            self._clients.clear()
        for resource in resources:
            try:
                resource.close()
            except (OSError, EOFError, paramiko.SSHException) as exc:
                self.log.debug(f"Error closing {type(resource).__name__}: {exc}")
        self.log.debug(f"Closed endpoint {self!r} ({len(resources)} resources)")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _dial(self, ctx: Context) -> paramiko.SSHClient:
        self._ensure_open()
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        timeout = self.connect_timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = max(0.1, min(timeout, remaining))
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        self._track(self._clients, client)
        return client

    @contextmanager
    def _client(self, ctx: Context) -> Iterator[paramiko.SSHClient]:
        ctx.check()
        self._ensure_open()
        client = self.retry.call(ctx, "connect", self.host, lambda: self._dial(ctx))
        try:
            yield client
        finally:
            self._release(self._clients, client)

    def _open_channel(self, ctx: Context, client: paramiko.SSHClient):
        def open_session():
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException("session not active")
            return transport.open_session(timeout=self.connect_timeout)

        channel = self.retry.call(ctx, "open session", self.host, open_session)
        self._track(self._channels, channel)
        return channel

    @contextmanager
    def sftp(self, ctx: Context) -> Iterator[paramiko.SFTPClient]:
        """SFTP client valid for the duration of the block."""
        with self._client(ctx) as client:
            sftp = self.retry.call(ctx, "open sftp", self.host, client.open_sftp)
            self._track(self._sftp_clients, sftp)
            try:
                yield sftp
            finally:
                self._release(self._sftp_clients, sftp)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def run(self, ctx: Context, command: str, timeout: float | None = None) -> CommandResult:
        """Run a non-interactive command and capture its output.

        Raises:
            RemoteCommandError: Non-zero exit; stdout and stderr are attached
            RemoteTimeoutError: The command outlived ``timeout``
            ConnectionFailedError: The endpoint could not be reached
        """
        timeout = timeout if timeout is not None else self.command_timeout
        deadline = time.monotonic() + timeout
        remaining = ctx.remaining()
        if remaining is not None:
            deadline = min(deadline, time.monotonic() + remaining)
        self.log.debug(f"[{self.host}] $ {command}")

        with self._client(ctx) as client:
            channel = self._open_channel(ctx, client)
            try:
                channel.exec_command(command)
                stdout, stderr, status = self._collect(ctx, channel, command, deadline, timeout)
            finally:
                self._release(self._channels, channel)

        if status != 0:
            raise RemoteCommandError(command, status, stdout, stderr)
        return CommandResult(stdout=stdout, stderr=stderr, exit_status=status)

    def _collect(self, ctx, channel, command, deadline, timeout) -> tuple[str, str, int]:
        out = bytearray()
        err = bytearray()
        while True:
            ctx.check()
            busy = False
            if channel.recv_ready():
                out.extend(channel.recv(TRANSFER_CHUNK))
                busy = True
            if channel.recv_stderr_ready():
                err.extend(channel.recv_stderr(TRANSFER_CHUNK))
                busy = True
            if (
                channel.exit_status_ready()
                and not channel.recv_ready()
                and not channel.recv_stderr_ready()
            ):
                break
            if time.monotonic() >= deadline:
                raise RemoteTimeoutError(command, timeout)
            if not busy:
                time.sleep(POLL_INTERVAL)
        status = channel.recv_exit_status()
        return (
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
            status,
        )

    def exists(self, ctx: Context, remote_path: str) -> bool:
        """Check a remote path with ``ls``; exit 1 or 2 means absent."""
        try:
            self.run(ctx, f"ls {shlex.quote(remote_path)}")
        except RemoteCommandError as exc:
            if exc.exit_status in (1, 2):
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------

    def upload(self, ctx: Context, local_path: Path | str, remote_path: str) -> None:
        """Stream a local file to ``remote_path``, creating parent directories.

        A partially written remote file is removed before the error propagates.
        """
        local_path = Path(local_path)
        if not local_path.is_file():
            raise FileNotFoundError(f"Local file not found: {local_path}")
        size = local_path.stat().st_size
        self.log.info(f"Uploading {local_path} to {self.host}:{remote_path} ({size} bytes)")

        def transfer():
            with self.sftp(ctx) as sftp:
                sftp_makedirs(sftp, posixpath.dirname(remote_path))
                try:
                    with open(local_path, "rb") as src, sftp.open(remote_path, "wb") as dst:
                        dst.set_pipelined(True)
                        copy_stream(ctx, src, dst)
                except Exception:
                    _remove_quietly(sftp, remote_path, self.log)
                    raise

        self.retry.call(ctx, "upload", self.host, transfer)

    def expect(
        self,
        ctx: Context,
        steps: list[InteractionStep],
        timeout: float,
    ) -> str:
        """Drive an interactive PTY shell through ``steps``.

        Returns the full transcript. ``timeout`` bounds the whole dialog;
        the final session exit status is logged, never raised.

        Raises:
            ExpectTimeoutError: An expected string did not appear in time
        """
        deadline = time.monotonic() + timeout
        with self._client(ctx) as client:
            channel = self.retry.call(
                ctx,
                "open shell",
                self.host,
                lambda: client.invoke_shell(term="xterm", width=80, height=40),
            )
            self._track(self._channels, channel)
            try:
                session = ExpectSession(channel, log=self.log)
                session.run_steps(ctx, steps, deadline)
                try:
                    channel.shutdown_write()
                except (OSError, EOFError, paramiko.SSHException) as exc:
                    self.log.debug(f"Could not half-close shell on {self.host}: {exc}")
                if not session.drain(ctx, deadline):
                    self.log.debug(f"Interactive session on {self.host} still open at deadline")
                elif channel.exit_status_ready():
                    status = channel.recv_exit_status()
                    if status != 0:
                        self.log.debug(f"Interactive session exited with status {status}")
                return session.transcript
            finally:
                self._release(self._channels, channel)


def copy_stream(ctx: Context, src, dst, chunk_size: int = TRANSFER_CHUNK) -> int:
    """Copy file objects chunk by chunk, checking for cancellation."""
    total = 0
    while True:
        ctx.check()
        chunk = src.read(chunk_size)
        if not chunk:
            return total
        dst.write(chunk)
        total += len(chunk)


def _remove_quietly(sftp, remote_path: str, log) -> None:
    try:
        sftp.remove(remote_path)
    except OSError as exc:
        log.debug(f"Could not remove partial file {remote_path}: {exc}")

