"""
Pytest configuration and shared fixtures for tftpi tests.

The fakes below stand in for paramiko objects so SSH, SFTP and interactive
shell code paths run without a network.
"""

import os
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from unittest.mock import Mock

import pytest

from tftpi.cache.local import LocalCache
from tftpi.cluster import Cluster
from tftpi.config.settings import DEFAULT_SETTINGS, Settings
from tftpi.context import Context
from tftpi.remote.retry import RetryPolicy
from tftpi.state.store import StateStore

# ==============================================================================
# Fake paramiko objects
# ==============================================================================


class FakeChannel:
    """Exec channel returning canned output and exit status."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", status: int = 0):
        self._stdout = bytearray(stdout)
        self._stderr = bytearray(stderr)
        self.status = status
        self.command: Optional[str] = None
        self.closed = False

    def exec_command(self, command: str) -> None:
        self.command = command

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, size: int) -> bytes:
        data = bytes(self._stdout[:size])
        del self._stdout[:size]
        return data

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        data = bytes(self._stderr[:size])
        del self._stderr[:size]
        return data

    def exit_status_ready(self) -> bool:
        return True

    def recv_exit_status(self) -> int:
        return self.status

    def close(self) -> None:
        self.closed = True


class FakeShell:
    """Interactive shell channel driven by (trigger, response, exits) rules.

    When a sent line contains ``trigger``, ``response`` is appended to the
    output; ``exits`` ends the session.
    """

    def __init__(self, banner: bytes = b"", rules: Optional[List[Tuple[str, bytes, bool]]] = None):
        self._output = bytearray(banner)
        self.rules = rules or []
        self.sent: List[str] = []
        self.exited = False
        self.closed = False

    def recv_ready(self) -> bool:
        return bool(self._output)

    def recv(self, size: int) -> bytes:
        data = bytes(self._output[:size])
        del self._output[:size]
        return data

    def send(self, data: bytes) -> int:
        line = data.decode("utf-8")
        self.sent.append(line)
        for trigger, response, exits in self.rules:
            if trigger in line:
                self._output.extend(response)
                if exits:
                    self.exited = True
                break
        return len(data)

    def shutdown_write(self) -> None:
        pass

    def exit_status_ready(self) -> bool:
        return self.exited

    def recv_exit_status(self) -> int:
        return 0

    def close(self) -> None:
        self.closed = True


class FakeSFTPFile:
    def __init__(self, fh, fail_on_write: Optional[Exception] = None):
        self._fh = fh
        self._fail_on_write = fail_on_write

    def set_pipelined(self, pipelined: bool = True) -> None:
        pass

    def prefetch(self) -> None:
        pass

    def read(self, size: int = -1) -> bytes:
        return self._fh.read(size)

    def write(self, data: bytes) -> int:
        if self._fail_on_write is not None:
            self._fh.write(data[: len(data) // 2])
            raise self._fail_on_write
        return self._fh.write(data)

    def close(self) -> None:
        self._fh.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class FakeSFTP:
    """SFTP client backed by a local directory standing in for ``/``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.fail_on_write: Optional[Exception] = None
        self.closed = False

    def _path(self, remote: str) -> Path:
        return self.root / remote.lstrip("/")

    def stat(self, remote: str):
        return self._path(remote).stat()

    def mkdir(self, remote: str, mode: int = 0o777) -> None:
        self._path(remote).mkdir()

    def open(self, remote: str, mode: str = "r"):
        if "b" not in mode:
            mode += "b"
        fail = self.fail_on_write if "w" in mode else None
        return FakeSFTPFile(open(self._path(remote), mode), fail)

    def remove(self, remote: str) -> None:
        self._path(remote).unlink()

    def posix_rename(self, src: str, dst: str) -> None:
        os.replace(self._path(src), self._path(dst))

    def listdir(self, remote: str) -> List[str]:
        return os.listdir(self._path(remote))

    def chmod(self, remote: str, mode: int) -> None:
        os.chmod(self._path(remote), mode)

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, client: "FakeSSHClient"):
        self.client = client

    def is_active(self) -> bool:
        return True

    def open_session(self, timeout: Optional[float] = None):
        channel = self.client.channels.pop(0) if self.client.channels else FakeChannel()
        self.client.opened.append(channel)
        return channel


class FakeSSHClient:
    """Stand-in for paramiko.SSHClient.

    ``channels`` are handed out by successive exec sessions; ``shell`` is
    returned by ``invoke_shell``; ``connect_errors`` are raised by the first
    connect attempts.
    """

    def __init__(self, sftp_root: Optional[Path] = None):
        self.channels: List[FakeChannel] = []
        self.opened: List[FakeChannel] = []
        self.shell: Optional[FakeShell] = None
        self.sftp = FakeSFTP(sftp_root) if sftp_root is not None else None
        self.connect_errors: List[Exception] = []
        self.connect_calls: List[dict] = []
        self.close_count = 0

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_calls.append(kwargs)
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    def get_transport(self) -> FakeTransport:
        return FakeTransport(self)

    def invoke_shell(self, **kwargs) -> FakeShell:
        if self.shell is None:
            raise AssertionError("no fake shell configured")
        return self.shell

    def open_sftp(self) -> FakeSFTP:
        if self.sftp is None:
            raise AssertionError("no fake sftp configured")
        return self.sftp

    def close(self) -> None:
        self.close_count += 1

    @property
    def commands(self) -> List[str]:
        return [c.command for c in self.opened if c.command is not None]


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def ctx() -> Context:
    """Background context with no deadline."""
    return Context.background()


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def no_retry() -> RetryPolicy:
    """Retry policy without delays."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0, increment=0.0)


@pytest.fixture
def fake_client(tmp_path) -> FakeSSHClient:
    """Fake SSH client whose SFTP root is a temporary directory."""
    root = tmp_path / "remote-root"
    root.mkdir()
    return FakeSSHClient(sftp_root=root)


@pytest.fixture
def channel_factory() -> Callable[..., FakeChannel]:
    """Builds exec channels with canned output."""
    return FakeChannel


@pytest.fixture
def shell_factory() -> Callable[..., FakeShell]:
    """Builds scripted interactive shells."""
    return FakeShell


@pytest.fixture
def client_factory(fake_client) -> Callable[[], FakeSSHClient]:
    return lambda: fake_client


@pytest.fixture
def state_store(tmp_path) -> StateStore:
    """State store writing to a temporary state file."""
    return StateStore(tmp_path / "tftpi_state.json")


@pytest.fixture
def local_cache(tmp_path):
    """Local cache in a temporary directory, closed after the test."""
    cache = LocalCache(tmp_path / "cache")
    yield cache
    cache.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    values = dict(DEFAULT_SETTINGS)
    values["nodes"] = {"1": {"ip": "192.168.1.101/24", "gateway": "192.168.1.1"}}
    return Settings(cache_dir=tmp_path / "tftpi", values=values)


@pytest.fixture
def bmc_cache(tmp_path):
    """Cache standing in for the one on the BMC."""
    cache = LocalCache(tmp_path / "bmc-cache")
    yield cache
    cache.close()


@pytest.fixture
def cluster(settings, bmc_cache):
    """Cluster with a fake BMC and a host directory as the BMC cache."""
    bmc = Mock(name="bmc")
    with Cluster(settings, bmc_factory=lambda: bmc, remote_cache=bmc_cache) as c:
        c.fake_bmc = bmc
        yield c
