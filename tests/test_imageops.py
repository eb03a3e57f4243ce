"""Tests for image customization backends."""

import shlex
import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest

from tftpi.domain.models import ChangeMode, MakeDirectory, WriteFile
from tftpi.exceptions import (
    CommandError,
    ImageOpsError,
    MountError,
    OperationCancelledError,
    PartitionMapError,
    ValidationError,
)
from tftpi.imageops import ContainerBackend, NativeBackend, PrepareOptions, create_backend
from tftpi.imageops.base import ImageOpsBackend, image_relative, parse_kpartx_output
from tftpi.imageops.commands import run_checked_command
from tftpi.imageops.container import unique_container_name

KPARTX_OUTPUT = (
    "add map loop0p1 (253:0): 0 1048576 linear 7:0 2048\n"
    "add map loop0p2 (253:1): 0 6291456 linear 7:0 1050624\n"
)


class RecordingBackend(ImageOpsBackend):
    """Backend that simulates the image tools on the host filesystem."""

    name = "recording"

    def __init__(self, *args, netplan: str | None = None, fail_on: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.commands: list[list[str]] = []
        self.netplan = netplan
        self.fail_on = fail_on
        self.installed: dict[str, tuple[bytes, str]] = {}
        self.mount_dir: str | None = None

    def to_backend_path(self, path: Path) -> str:
        return str(Path(path).absolute())

    def execute(self, ctx, args, timeout=None):
        args = list(args)
        self.commands.append(args)
        if self.fail_on and args[0] == self.fail_on:
            raise CommandError(args, 32, f"{self.fail_on} failed")
        if args[:2] == ["sh", "-c"]:
            return self._script(args[2])
        if args[:2] == ["kpartx", "-av"]:
            return KPARTX_OUTPUT
        if args[0] == "mount":
            self.mount_dir = args[2]
            return ""
        if args[:2] == ["test", "-e"]:
            if args[2].startswith("/dev/mapper/"):
                return ""
            if self.netplan is not None and args[2].endswith("etc/netplan"):
                return ""
            raise CommandError(args, 1, "")
        if args[:2] == ["ls", "-1"]:
            return "50-cloud-init.yaml\n"
        if args[0] == "cat":
            return self.netplan or ""
        return ""

    def _script(self, script: str) -> str:
        tokens = shlex.split(script)
        if tokens[:2] == ["xz", "-dc"]:
            Path(tokens[-1]).write_bytes(b"raw image")
        elif tokens[:2] == ["xz", "-T0"]:
            Path(tokens[-1]).write_bytes(b"compressed image")
        elif tokens[:2] == ["mkdir", "-p"] and "cp" in tokens:
            source, mode, dest = tokens[5], tokens[9], tokens[15]
            relative = dest[len(self.mount_dir) + 1 :]
            self.installed[relative] = (Path(source).read_bytes(), mode)
        return ""


@pytest.fixture
def source_image(tmp_path):
    source = tmp_path / "images" / "ubuntu-22.04-rk1.img.xz"
    source.parent.mkdir()
    source.write_bytes(b"xz data")
    return source


def make_backend(tmp_path, source_image, **kwargs):
    return RecordingBackend(source_image.parent, tmp_path / "scratch", tmp_path / "out", **kwargs)


def options_for(source_image, **kwargs):
    values = dict(
        source_path=source_image,
        ip_cidr="192.168.1.101/24",
        hostname="rk1-node1",
        gateway="192.168.1.1",
        node_id=1,
    )
    values.update(kwargs)
    return PrepareOptions(**values)


class TestRunCheckedCommand:
    """Tests for run_checked_command()."""

    def test_returns_stdout(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="ok\n", stderr="")

        assert run_checked_command(["echo", "ok"]) == "ok\n"
        mock_subprocess_run.assert_called_once_with(
            ["echo", "ok"], input=None, text=True, capture_output=True, timeout=None
        )

    def test_failure_raises_with_stderr(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="", stderr="mount: bad fs\n")

        with pytest.raises(CommandError) as exc_info:
            run_checked_command(["mount", "/dev/x", "/mnt"])

        assert exc_info.value.returncode == 1
        assert exc_info.value.message == "mount: bad fs"

    def test_missing_executable(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = FileNotFoundError()
        with pytest.raises(CommandError) as exc_info:
            run_checked_command(["kpartx", "-av", "x"])
        assert exc_info.value.returncode == 127

    def test_timeout(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = subprocess.TimeoutExpired(["xz"], 5)
        with pytest.raises(CommandError, match="timed out"):
            run_checked_command(["xz"], timeout=5)

    def test_cancelled_context_never_runs(self, mock_subprocess_run, ctx):
        ctx.cancel("stop")
        with pytest.raises(OperationCancelledError):
            run_checked_command(["true"], ctx=ctx)
        mock_subprocess_run.assert_not_called()


class TestHelpers:
    def test_parse_kpartx_output(self):
        assert parse_kpartx_output(KPARTX_OUTPUT) == ["loop0p1", "loop0p2"]

    def test_parse_kpartx_ignores_noise(self):
        assert parse_kpartx_output("device-mapper: reload ioctl failed\n") == []

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("etc/hostname", "etc/hostname"),
            ("/etc/hostname", "etc/hostname"),
            ("../../etc/passwd", "etc/passwd"),
            ("etc/./netplan/", "etc/netplan"),
        ],
    )
    def test_image_relative(self, path, expected):
        assert image_relative(path) == expected

    @pytest.mark.parametrize("path", ["", "  ", "/", "etc/.."])
    def test_image_relative_rejects_root(self, path):
        with pytest.raises(ValidationError):
            image_relative(path)


class TestPrepare:
    """Tests for the prepare pipeline."""

    def test_netplan_image(self, ctx, tmp_path, source_image):
        """Test a netplan image gets hostname, hosts and a routes-style netplan."""
        backend = make_backend(
            tmp_path, source_image, netplan="network:\n  ethernets:\n    eth0:\n      routes: []\n"
        )

        output = backend.prepare(ctx, options_for(source_image))

        assert output == tmp_path / "out" / "rk1-node1.img.xz"
        assert output.read_bytes() == b"compressed image"
        assert backend.installed["etc/hostname"][0] == b"rk1-node1\n"
        netplan, mode = backend.installed["etc/netplan/01-netcfg.yaml"]
        assert mode == "600"
        assert b"via: 192.168.1.1" in netplan
        assert b"gateway4" not in netplan

    def test_pipeline_order(self, ctx, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image)
        backend.prepare(ctx, options_for(source_image))

        tools = [c[0] if c[0] != "sh" else shlex.split(c[2])[0] for c in backend.commands]
        assert tools[0] == "xz"
        assert tools.index("kpartx") < tools.index("mount") < tools.index("umount")
        assert tools[-1] == "xz"
        assert ["kpartx", "-dv"] == backend.commands[-2][:2]

    def test_interfaces_image(self, ctx, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image)
        backend.prepare(ctx, options_for(source_image))
        assert "etc/network/interfaces" in backend.installed
        assert "etc/resolv.conf" in backend.installed

    def test_file_operations_applied_after_network(self, ctx, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image)
        ops = (
            MakeDirectory("home/ubuntu/.ssh", 0o700),
            WriteFile("home/ubuntu/.ssh/authorized_keys", b"ssh-ed25519 AAAA", 0o600),
        )

        backend.prepare(ctx, options_for(source_image, file_operations=ops))

        mount_dir = backend.mount_dir
        assert ["mkdir", "-p", f"{mount_dir}/home/ubuntu/.ssh"] in backend.commands
        assert ["chmod", "700", f"{mount_dir}/home/ubuntu/.ssh"] in backend.commands
        assert backend.installed["home/ubuntu/.ssh/authorized_keys"] == (b"ssh-ed25519 AAAA", "600")

    def test_chmod_of_missing_path_fails(self, ctx, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image)
        with pytest.raises(ImageOpsError, match="does not exist"):
            backend.prepare(ctx, options_for(source_image, file_operations=(ChangeMode("etc/absent", 0o600),)))
        assert not (tmp_path / "out" / "rk1-node1.img.xz").exists()

    def test_existing_output_is_reused(self, ctx, tmp_path, source_image):
        """Test a second prepare with the same output does nothing."""
        output = tmp_path / "out" / "rk1-node1.img.xz"
        output.parent.mkdir()
        output.write_bytes(b"already built")
        mtime = output.stat().st_mtime_ns
        backend = make_backend(tmp_path, source_image)

        assert backend.prepare(ctx, options_for(source_image)) == output
        assert backend.commands == []
        assert output.stat().st_mtime_ns == mtime

    def test_mount_failure_cleans_up(self, ctx, tmp_path, source_image):
        """Test mappings are removed and scratch is empty after a failed mount."""
        backend = make_backend(tmp_path, source_image, fail_on="mount")

        with pytest.raises(MountError):
            backend.prepare(ctx, options_for(source_image))

        assert any(c[:2] == ["kpartx", "-dv"] for c in backend.commands)
        assert list((tmp_path / "scratch").iterdir()) == []
        assert not (tmp_path / "out" / "rk1-node1.img.xz").exists()

    def test_kpartx_failure(self, ctx, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image, fail_on="kpartx")
        with pytest.raises(PartitionMapError):
            backend.prepare(ctx, options_for(source_image))

    def test_relative_source_rejected(self, ctx, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image)
        with pytest.raises(ValidationError, match="absolute"):
            backend.prepare(ctx, options_for(source_image, source_path=Path("images/x.img.xz")))

    def test_output_name_override(self, tmp_path, source_image):
        backend = make_backend(tmp_path, source_image)
        options = options_for(source_image, output_name="custom.img.xz", output_dir=tmp_path / "elsewhere")
        assert backend.output_path(options) == tmp_path / "elsewhere" / "custom.img.xz"


class TestNativeBackend:
    def test_sudo_prefix(self, ctx, tmp_path, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="", stderr="")
        backend = NativeBackend(tmp_path, tmp_path / "scratch", tmp_path / "out", use_sudo=True)

        backend.execute(ctx, ["kpartx", "-av", "/tmp/x.img"])

        assert mock_subprocess_run.call_args[0][0] == ["sudo", "-n", "kpartx", "-av", "/tmp/x.img"]

    def test_no_sudo(self, ctx, tmp_path, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="", stderr="")
        backend = NativeBackend(tmp_path, tmp_path / "scratch", tmp_path / "out", use_sudo=False)
        backend.execute(ctx, ["sync"])
        assert mock_subprocess_run.call_args[0][0] == ["sync"]


class TestContainerBackend:
    """Tests for the docker-based backend."""

    @pytest.fixture
    def backend(self, tmp_path):
        return ContainerBackend(tmp_path / "src", tmp_path / "scratch", tmp_path / "out")

    def test_unique_names(self):
        first, second = unique_container_name(), unique_container_name()
        assert first.startswith("tftpi-imageops-")
        assert first != second

    def test_path_translation(self, backend, tmp_path):
        assert backend.to_backend_path(tmp_path / "src" / "base.img.xz") == "/source/base.img.xz"
        assert backend.to_backend_path(tmp_path / "scratch" / "w" / "mnt") == "/scratch/w/mnt"

    def test_path_outside_binds(self, backend):
        with pytest.raises(ImageOpsError, match="bind mount"):
            backend.to_backend_path(Path("/etc/passwd"))

    def test_lifecycle(self, ctx, backend, mock_subprocess_run):
        """Test the container starts once, runs commands and is removed."""
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="", stderr="")

        backend.execute(ctx, ["kpartx", "-av", "/scratch/x.img"])
        backend.execute(ctx, ["sync"])
        name = backend.container_name
        backend.close()

        commands = [c[0][0] for c in mock_subprocess_run.call_args_list]
        assert commands[0][:3] == ["docker", "image", "inspect"]
        assert commands[1][:5] == ["docker", "run", "-d", "--privileged", "--name"]
        assert commands[2] == ["docker", "exec", name, "kpartx", "-av", "/scratch/x.img"]
        assert commands[3] == ["docker", "exec", name, "sync"]
        assert commands[4] == ["docker", "stop", "-t", "2", name]
        assert commands[5] == ["docker", "rm", "-f", name]

    def test_builds_missing_image(self, ctx, backend, mock_subprocess_run):
        mock_subprocess_run.side_effect = [
            Mock(returncode=1, stdout="", stderr="No such image"),
            Mock(returncode=0, stdout="", stderr=""),
        ]
        backend.ensure_image(ctx)
        build = mock_subprocess_run.call_args_list[1]
        assert build[0][0] == ["docker", "build", "-t", "tftpi-imageops:latest", "-"]
        assert "kpartx" in build[1]["input"]

    def test_closed_backend_refuses_commands(self, ctx, backend):
        backend.close()
        with pytest.raises(ImageOpsError):
            backend.execute(ctx, ["true"])


class TestCreateBackend:
    def test_linux_is_native(self, tmp_path):
        assert isinstance(create_backend(tmp_path, tmp_path, tmp_path, system="Linux"), NativeBackend)

    def test_other_hosts_use_container(self, tmp_path):
        assert isinstance(create_backend(tmp_path, tmp_path, tmp_path, system="Darwin"), ContainerBackend)
