"""Settings storage for cluster configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tftpi.domain.models import BoardType, NodeConfig, clean_dns_servers, parse_node_id
from tftpi.exceptions import ValidationError
from tftpi.logging import LoggerFactory

log = LoggerFactory.for_cli()

DEFAULT_CACHE_DIR = Path(os.environ.get("TFTPI_CACHE_DIR", Path.home() / ".tftpi"))

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BMC_HOST = "turingpi.local"
DEFAULT_BMC_USER = "root"
DEFAULT_BMC_PASSWORD = "turing"
DEFAULT_SSH_TIMEOUT = 30.0
DEFAULT_COMMAND_TIMEOUT = 300.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_RETRY_INCREMENT = 2.0
DEFAULT_REMOTE_CACHE_DIR = "/root/.tftpi/cache"
DEFAULT_INDEX_REFRESH_SECONDS = 300.0

STATE_FILENAME = "tftpi_state.json"

DEFAULT_SETTINGS: dict[str, Any] = {
    "bmc_host": DEFAULT_BMC_HOST,
    "bmc_user": DEFAULT_BMC_USER,
    "bmc_password": DEFAULT_BMC_PASSWORD,
    "ssh_timeout": DEFAULT_SSH_TIMEOUT,
    "command_timeout": DEFAULT_COMMAND_TIMEOUT,
    "retry_attempts": DEFAULT_RETRY_ATTEMPTS,
    "retry_delay": DEFAULT_RETRY_DELAY,
    "retry_increment": DEFAULT_RETRY_INCREMENT,
    "remote_cache_dir": DEFAULT_REMOTE_CACHE_DIR,
    "index_refresh_seconds": DEFAULT_INDEX_REFRESH_SECONDS,
    "nodes": {},
}

_ENV_OVERRIDES = {
    "TFTPI_BMC_HOST": "bmc_host",
    "TFTPI_BMC_USER": "bmc_user",
    "TFTPI_BMC_PASSWORD": "bmc_password",
}


@dataclass
class Settings:
    cache_dir: Path = DEFAULT_CACHE_DIR
    values: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    @property
    def state_file(self) -> Path:
        return self.cache_dir / STATE_FILENAME

    @property
    def local_cache_dir(self) -> Path:
        return self.cache_dir / "local"

    @property
    def remote_state_dir(self) -> Path:
        return self.cache_dir / "remote"

    @property
    def prep_dir(self) -> Path:
        return self.cache_dir / "prep"

    @property
    def log_dir(self) -> Path:
        return self.cache_dir / "logs"

    def node(self, node_id: int) -> NodeConfig:
        """Static configuration for a slot.

        Reads the ``nodes`` table (keyed by slot number). Missing fields fall
        back to an RK1 board named ``node<id>``.

        Raises:
            ValidationError: If the slot has no IP address configured
        """
        node_id = parse_node_id(node_id)
        nodes = self.values.get("nodes") or {}
        entry = nodes.get(str(node_id)) or nodes.get(node_id) or {}
        ip = entry.get("ip", "")
        if not ip:
            raise ValidationError("node IP", f"no IP address configured for node {node_id}")
        return NodeConfig(
            node_id=node_id,
            ip_cidr=ip,
            board=BoardType.parse(entry.get("board", BoardType.RK1.value)),
            hostname=entry.get("hostname", ""),
            gateway=entry.get("gateway", ""),
            dns_servers=tuple(clean_dns_servers(entry.get("dns"))),
            mac_address=entry.get("mac"),
        )


def load_settings(path: Path | None = None, cache_dir: Path | None = None) -> Settings:
    """Build settings from defaults, an optional JSON file and TFTPI_* variables."""
    settings = Settings(cache_dir=Path(cache_dir) if cache_dir else DEFAULT_CACHE_DIR)
    if path is not None:
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning(f"Ignoring unreadable config file {path}: {exc}")
            data = None
        if isinstance(data, dict):
            settings.values.update(data)
        elif data is not None:
            log.warning(f"Ignoring config file {path}: top level is not an object")
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            settings.values[key] = value
    return settings
