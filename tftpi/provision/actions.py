"""Ready-made post-install actions used by the command line."""

from __future__ import annotations

import hashlib
import posixpath
import shlex
from datetime import datetime, timezone
from pathlib import Path

from tftpi.context import Context
from tftpi.provision.post_installer import LocalRuntime, RemoteRuntime

REPORT_COMMANDS = (
    ("kernel", "uname -a"),
    ("hostname", "hostname"),
    ("uptime", "uptime"),
    ("addresses", "ip -brief address"),
)
REMOTE_SCRIPT_DIR = "/tmp/tftpi"


def node_report(ctx: Context, local: LocalRuntime, remote: RemoteRuntime) -> None:
    """Collect basic facts from the node into ``reports/<host>.txt`` on the host."""
    lines = [f"# {remote.host} {datetime.now(timezone.utc).isoformat()}"]
    for label, command in REPORT_COMMANDS:
        stdout, _ = remote.run_command(command)
        lines.append(f"[{label}]")
        lines.append(stdout.rstrip())
    local.write_file(Path("reports") / f"{remote.host}.txt", "\n".join(lines) + "\n")


class ScriptAction:
    """Upload a local shell script to the node and run it there."""

    def __init__(self, script: Path | str, sudo_password: str | None = None):
        self.script = Path(script)
        self.sudo_password = sudo_password
        digest = hashlib.sha256(self.script.read_bytes()).hexdigest()[:12]
        # Part of the post-install input hash: an edited script runs again.
        self.__qualname__ = f"ScriptAction[{self.script.name}:{digest}]"

    def __call__(self, ctx: Context, local: LocalRuntime, remote: RemoteRuntime) -> None:
        remote_path = posixpath.join(REMOTE_SCRIPT_DIR, self.script.name)
        remote.copy_file(self.script, remote_path)
        command = f"sh {shlex.quote(remote_path)}"
        if self.sudo_password:
            remote.sudo(command, self.sudo_password)
        else:
            remote.run_command(command)
