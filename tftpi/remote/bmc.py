"""BMC endpoint and parsers for the vendor ``tpi`` tool output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from tftpi.context import Context
from tftpi.domain.models import parse_node_id
from tftpi.exceptions import BMCWedgedError, RemoteCommandError
from tftpi.logging import LoggerFactory
from tftpi.remote.ssh import CommandResult, SSHEndpoint

FLASH_TIMEOUT = 1800.0

_POWER_LINE = re.compile(r"^\s*node\s*(\d+)\s*:\s*(\S+)", re.IGNORECASE)


class PowerState(Enum):
    ON = "On"
    OFF = "Off"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str) -> PowerState:
        normalized = value.strip().strip("'\"").lower()
        if normalized in ("on", "1", "true"):
            return cls.ON
        if normalized in ("off", "0", "false"):
            return cls.OFF
        return cls.UNKNOWN


@dataclass(frozen=True)
class BMCInfo:
    """Fields reported by ``tpi info``."""

    api: str = ""
    build_version: str = ""
    buildroot: str = ""
    buildtime: str = ""
    ip: str = ""
    mac: str = ""
    version: str = ""
    extra: dict[str, str] = field(default_factory=dict)


_INFO_FIELDS = {
    "api": "api",
    "build_version": "build_version",
    "buildroot": "buildroot",
    "buildtime": "buildtime",
    "ip": "ip",
    "mac": "mac",
    "version": "version",
}


def parse_power_status(output: str) -> dict[int, PowerState]:
    """Parse ``node1: On`` style lines into a slot -> state map."""
    states: dict[int, PowerState] = {}
    for line in output.splitlines():
        match = _POWER_LINE.match(line)
        if match:
            states[int(match.group(1))] = PowerState.parse(match.group(2))
    return states


def parse_info(output: str) -> BMCInfo:
    """Parse the key/value table printed by ``tpi info``.

    Table borders (lines starting with ``|``) are skipped and values are
    unquoted. Unrecognised keys end up in ``extra``.
    """
    known: dict[str, str] = {}
    extra: dict[str, str] = {}
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("|") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().strip("|").strip().lower().replace(" ", "_")
        value = value.strip().strip("|").strip().strip("'\"")
        if key in _INFO_FIELDS:
            known[_INFO_FIELDS[key]] = value
        elif key:
            extra[key] = value
    return BMCInfo(extra=extra, **known)


def is_wedged_output(text: str) -> bool:
    """Vendor API refused a local connection during a flash."""
    return "127.0.0.1" in text and (
        "Connection refused" in text or "connect error" in text
    )


class BMCEndpoint(SSHEndpoint):
    """SSH endpoint on the board management controller."""

    source = "bmc"

    def __init__(self, host: str, username: str = "root", password: str = "turing", **kwargs):
        super().__init__(host, username, password, **kwargs)
        self.log = LoggerFactory.for_bmc(host)

    def vendor(self, ctx: Context, *args: str, timeout: float | None = None) -> CommandResult:
        """Run ``tpi <args>`` on the BMC."""
        return self.run(ctx, " ".join(["tpi", *args]), timeout=timeout)

    # Power ------------------------------------------------------------

    def power_on(self, ctx: Context, node_id: int) -> None:
        node_id = parse_node_id(node_id)
        self.log.info(f"Powering on node {node_id}")
        self.vendor(ctx, "power", "on", "--node", str(node_id))

    def power_off(self, ctx: Context, node_id: int) -> None:
        node_id = parse_node_id(node_id)
        self.log.info(f"Powering off node {node_id}")
        self.vendor(ctx, "power", "off", "--node", str(node_id))

    def power_reset(self, ctx: Context, node_id: int) -> None:
        node_id = parse_node_id(node_id)
        self.log.info(f"Resetting node {node_id}")
        self.vendor(ctx, "power", "reset", "--node", str(node_id))

    def power_status(self, ctx: Context) -> dict[int, PowerState]:
        result = self.vendor(ctx, "power", "status")
        return parse_power_status(result.stdout)

    # Board ------------------------------------------------------------

    def info(self, ctx: Context) -> BMCInfo:
        return parse_info(self.vendor(ctx, "info").stdout)

    def reboot(self, ctx: Context) -> None:
        self.log.warning(f"Rebooting BMC {self.host}")
        self.vendor(ctx, "reboot")

    def uart_read(self, ctx: Context, node_id: int) -> str:
        return self.vendor(ctx, "uart", "--node", str(node_id), "get", timeout=30).stdout

    def set_normal_mode(self, ctx: Context, node_id: int) -> None:
        self.vendor(ctx, "advanced", "--node", str(node_id), "normal")

    def flash(self, ctx: Context, node_id: int, image_path: str) -> CommandResult:
        """Flash ``image_path`` (already on the BMC) onto a node.

        Raises:
            BMCWedgedError: The vendor API refused its local connection
            RemoteCommandError: Any other flash failure
        """
        node_id = parse_node_id(node_id)
        try:
            result = self.vendor(
                ctx, "flash", "--node", str(node_id), "-i", image_path, timeout=FLASH_TIMEOUT
            )
        except RemoteCommandError as exc:
            if is_wedged_output(exc.stdout + exc.stderr):
                self.log.error("BMC API refused connection during flash")
                raise BMCWedgedError(exc.stdout) from exc
            raise
        if is_wedged_output(result.stdout + result.stderr):
            self.log.error("BMC API refused connection during flash")
            raise BMCWedgedError(result.stdout)
        return result
