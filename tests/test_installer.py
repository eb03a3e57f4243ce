"""Tests for OS installation and UART boot monitoring."""

from unittest.mock import Mock

import pytest

from tftpi.domain.models import BoardType, ImageResult
from tftpi.exceptions import (
    BMCWedgedError,
    ExpectTimeoutError,
    PasswordChangeError,
    RemoteCommandError,
    UartMonitorError,
    UnsupportedBoardError,
    ValidationError,
)
from tftpi.provision.installer import (
    PASSWORD_UPDATED,
    InstallConfig,
    OSInstaller,
    password_change_steps,
    remote_image_paths,
)
from tftpi.provision.uart import BootMonitor

PASSWORD_TRANSCRIPT = (
    "You are required to change your password immediately (administrator enforced)\r\n"
    "Current password: \r\nNew password: \r\nRetype new password: \r\n"
    f"{PASSWORD_UPDATED}\r\nConnection to 192.168.1.101 closed.\r\n"
)


@pytest.fixture
def config():
    return InstallConfig(
        new_password="n3w-secret",
        power_cycle_pause=0,
        ssh_settle_delay=0,
        uart_poll_interval=0,
        uart_timeout=5,
    )


@pytest.fixture
def bmc(cluster):
    bmc = cluster.fake_bmc
    bmc.exists.return_value = False
    bmc.run.return_value = Mock(stdout="", stderr="", exit_status=0)
    bmc.uart_read.return_value = "rk1-node1 login: "
    return bmc


@pytest.fixture
def node(cluster, mocker):
    node = Mock(name="node")
    node.expect.return_value = PASSWORD_TRANSCRIPT
    mocker.patch.object(cluster, "node", return_value=node)
    return node


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "rk1-node1-0123456789ab.img.xz"
    path.write_bytes(b"image")
    return ImageResult(str(path), "hash", BoardType.RK1)


def run_commands(bmc):
    return [c.args[1] for c in bmc.run.call_args_list]


class TestHelpers:
    def test_remote_image_paths(self):
        assert remote_image_paths(2, "node2.img.xz") == ("/root/imgs/2/node2.img.xz", "/root/imgs/2/node2.img")
        assert remote_image_paths(2, "node2.img") == ("/root/imgs/2/node2.img.xz", "/root/imgs/2/node2.img")

    def test_password_steps(self):
        steps = password_change_steps("ubuntu", "new")
        assert [s.expect for s in steps] == ["Current password:", "New password:", "Retype new password:"]
        assert [s.send for s in steps] == ["ubuntu", "new", "new"]

    def test_config_requires_a_different_password(self):
        with pytest.raises(ValidationError):
            InstallConfig(new_password="ubuntu").validate()
        with pytest.raises(ValidationError):
            InstallConfig(new_password="").validate()


class TestBootMonitor:
    """Tests for BootMonitor.wait_for_boot()."""

    def test_detects_login(self, ctx):
        bmc = Mock()
        bmc.uart_read.side_effect = [
            "",
            "[  OK  ] systemd[1]: Started Journal Service.\n",
            "eth0: Link is Up - 1Gbps/Full\nUbuntu 22.04 LTS rk1-node1 ttyS0\n\nrk1-node1 login: ",
        ]

        progress = BootMonitor(bmc, 1, poll_interval=0, timeout=5).wait_for_boot(ctx)

        assert progress.login_prompt is True
        assert progress.init_started is True
        assert progress.network_up is True
        assert progress.reads == 3
        assert bmc.uart_read.call_args.args[1] == 1

    def test_fails_after_too_many_read_errors(self, ctx):
        """Test six consecutive failures exceed the limit of five."""
        bmc = Mock()
        bmc.uart_read.side_effect = RemoteCommandError("tpi uart --node 1 get", 1)

        with pytest.raises(UartMonitorError) as exc_info:
            BootMonitor(bmc, 1, poll_interval=0, timeout=5, max_failures=5).wait_for_boot(ctx)

        assert bmc.uart_read.call_count == 6
        assert exc_info.value.failures == 6

    def test_success_resets_failure_count(self, ctx):
        bmc = Mock()
        failure = RemoteCommandError("tpi uart", 1)
        bmc.uart_read.side_effect = [failure] * 5 + ["booting\n"] + [failure] * 5 + ["login: "]

        progress = BootMonitor(bmc, 1, poll_interval=0, timeout=5, max_failures=5).wait_for_boot(ctx)

        assert progress.login_prompt is True

    def test_timeout_without_login_is_not_an_error(self, ctx):
        bmc = Mock()
        bmc.uart_read.return_value = ""
        progress = BootMonitor(bmc, 1, poll_interval=0.01, timeout=0.05).wait_for_boot(ctx)
        assert progress.login_prompt is False


class TestStageImage:
    def test_uploads_and_decompresses(self, ctx, cluster, bmc, config, image):
        installer = OSInstaller(cluster, 1, config)

        path = installer.stage_image(ctx, bmc, image)

        assert path == "/root/imgs/1/rk1-node1-0123456789ab.img"
        bmc.upload.assert_called_once_with(ctx, image.image_path, "/root/imgs/1/rk1-node1-0123456789ab.img.xz")
        assert run_commands(bmc) == [
            "mkdir -p /root/imgs/1",
            "unxz -f /root/imgs/1/rk1-node1-0123456789ab.img.xz",
        ]

    def test_already_staged(self, ctx, cluster, bmc, config, image):
        bmc.exists.return_value = True
        OSInstaller(cluster, 1, config).stage_image(ctx, bmc, image)
        bmc.upload.assert_not_called()
        bmc.run.assert_not_called()

    def test_copies_from_bmc_cache(self, ctx, cluster, bmc, config):
        cached = ImageResult("rk1-node1-abc.img.xz", "hash", BoardType.RK1, cache_key="node1", is_remote_cache=True)

        OSInstaller(cluster, 1, config).stage_image(ctx, bmc, cached)

        bmc.upload.assert_not_called()
        source = str(cluster.remote_cache.content_path("node1"))
        assert f"cp {source} /root/imgs/1/rk1-node1-abc.img.xz" in run_commands(bmc)


class TestPasswordChange:
    """Tests for the first-boot password dialog."""

    def test_success(self, ctx, cluster, bmc, node, config):
        transcript = OSInstaller(cluster, 1, config).change_password(ctx, bmc)

        assert PASSWORD_UPDATED in transcript
        cluster.node.assert_called_once_with(1, "ubuntu", "ubuntu")
        steps = node.expect.call_args.args[1]
        assert steps[0].send == "ubuntu"
        assert steps[1].send == "n3w-secret"
        node.close.assert_called_once()

    def test_unconfirmed_update_probes_and_fails(self, ctx, cluster, bmc, node, config):
        node.expect.return_value = "New password: \r\npasswd: Authentication token manipulation error\r\n"
        bmc.run.return_value = Mock(stdout="ALIVE\n")

        with pytest.raises(PasswordChangeError) as exc_info:
            OSInstaller(cluster, 1, config).change_password(ctx, bmc)

        assert "manipulation error" in exc_info.value.transcript
        probe = run_commands(bmc)[0]
        assert "ubuntu@192.168.1.101" in probe
        assert probe.endswith("echo ALIVE")

    def test_dialog_timeout(self, ctx, cluster, bmc, node, config):
        node.expect.side_effect = ExpectTimeoutError("New password:", "Current password: ")

        with pytest.raises(PasswordChangeError) as exc_info:
            OSInstaller(cluster, 1, config).change_password(ctx, bmc)

        assert exc_info.value.transcript == "Current password: "
        assert exc_info.value.host == "192.168.1.101"
        node.close.assert_called_once()

    def test_probe_failure_is_not_fatal(self, ctx, cluster, bmc, node, config):
        node.expect.side_effect = ExpectTimeoutError("Current password:", "")
        bmc.run.side_effect = RemoteCommandError("ssh", 255)
        with pytest.raises(PasswordChangeError):
            OSInstaller(cluster, 1, config).change_password(ctx, bmc)


class TestInstall:
    """Tests for the full install flow."""

    def test_full_install(self, ctx, cluster, bmc, node, config, image):
        labels = []
        installer = OSInstaller(cluster, 1, config, record=lambda label, error: labels.append(label))

        duration = installer.install(ctx, image)

        assert duration >= 0
        assert labels == [
            "StartImageUpload",
            "CompleteImageUpload",
            "StartFlash",
            "CompleteFlash",
            "StartBootMonitor",
            "CompleteBootMonitor",
            "StartPasswordChange",
            "CompletePasswordChange",
        ]
        bmc.flash.assert_called_once_with(ctx, 1, "/root/imgs/1/rk1-node1-0123456789ab.img")
        bmc.power_off.assert_called_once_with(ctx, 1)
        bmc.power_on.assert_called_once_with(ctx, 1)
        bmc.set_normal_mode.assert_called_once_with(ctx, 1)
        bmc.close.assert_called_once()

    def test_wedged_bmc_skips_power_cycle(self, ctx, cluster, bmc, node, config, image):
        """Test a wedged BMC stops the install before any power change."""
        bmc.flash.side_effect = BMCWedgedError("connect error 127.0.0.1")
        recorded = []
        installer = OSInstaller(cluster, 1, config, record=lambda label, error: recorded.append((label, error)))

        with pytest.raises(BMCWedgedError):
            installer.install(ctx, image)

        bmc.power_off.assert_not_called()
        bmc.power_on.assert_not_called()
        node.expect.assert_not_called()
        bmc.close.assert_called_once()
        label, error = recorded[-1]
        assert label == "FailedFlash"
        assert isinstance(error, BMCWedgedError)

    def test_power_off_failure_continues(self, ctx, cluster, bmc, node, config, image):
        bmc.power_off.side_effect = RemoteCommandError("tpi power off --node 1", 1)
        OSInstaller(cluster, 1, config).install(ctx, image)
        bmc.power_on.assert_called_once()

    def test_cm4_unsupported(self, ctx, cluster, bmc, config, tmp_path):
        image = ImageResult(str(tmp_path / "cm4.img.xz"), "h", BoardType.CM4)
        with pytest.raises(UnsupportedBoardError):
            OSInstaller(cluster, 1, config).install(ctx, image)
        bmc.flash.assert_not_called()
