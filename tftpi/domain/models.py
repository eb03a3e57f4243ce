"""Domain model for node provisioning.

Type-safe records shared by the builder, installer and engine. Anything
that crosses a component boundary is one of these instead of a raw dict.
"""

from __future__ import annotations

import hashlib
import ipaddress
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

from tftpi.exceptions import InvalidNodeIDError, ValidationError

# ==============================================================================
# Node Identity
# ==============================================================================

MIN_NODE_ID = 1
MAX_NODE_ID = 4
PREPARE_ONLY_NODE = 0  # Image preparation without a target slot


def parse_node_id(value: object, *, allow_prepare_only: bool = False) -> int:
    """Parse a node slot number.

    Args:
        value: Integer or string such as "2"
        allow_prepare_only: Accept the 0 sentinel used for image-only builds

    Returns:
        The node ID as an int

    Raises:
        InvalidNodeIDError: If the value is not an integer in range
    """
    if isinstance(value, bool):
        raise InvalidNodeIDError(value)
    try:
        node_id = int(str(value).strip())
    except ValueError as exc:
        raise InvalidNodeIDError(value) from exc
    if node_id == PREPARE_ONLY_NODE and allow_prepare_only:
        return node_id
    if node_id < MIN_NODE_ID or node_id > MAX_NODE_ID:
        raise InvalidNodeIDError(value)
    return node_id


class BoardType(Enum):
    """Compute module family; selects the flashing strategy."""

    RK1 = "rk1"
    CM4 = "cm4"

    @classmethod
    def parse(cls, value: str | BoardType) -> BoardType:
        if isinstance(value, BoardType):
            return value
        normalized = str(value).strip().lower()
        for board in cls:
            if board.value == normalized:
                return board
        raise ValidationError("board", f"unknown board type {value!r}")


# ==============================================================================
# Network Domain
# ==============================================================================

DEFAULT_CIDR_SUFFIX = "/24"
SUPPORTED_PREFIXES = {8: "255.0.0.0", 16: "255.255.0.0", 24: "255.255.255.0"}


def netmask_for_prefix(prefix: int) -> str:
    """Dotted netmask for a supported prefix length.

    Raises:
        ValidationError: For any prefix other than /8, /16 or /24
    """
    try:
        return SUPPORTED_PREFIXES[prefix]
    except KeyError:
        raise ValidationError(
            "prefix length", f"/{prefix} (supported: /8, /16, /24)"
        ) from None


def split_ip_cidr(ip_cidr: str) -> tuple[str, int]:
    """Split "192.168.1.101/24" into ("192.168.1.101", 24).

    A bare address gets the default /24.
    """
    text = ip_cidr.strip()
    if not text:
        raise ValidationError("IP address", "empty")
    if "/" not in text:
        text += DEFAULT_CIDR_SUFFIX
    try:
        iface = ipaddress.IPv4Interface(text)
    except ValueError as exc:
        raise ValidationError("IP address", f"{ip_cidr!r}: {exc}") from exc
    return str(iface.ip), iface.network.prefixlen


def clean_dns_servers(servers: list[str] | str | None) -> list[str]:
    """Normalize DNS entries that may arrive as "[1.1.1.1,8.8.8.8]" strings."""
    if servers is None:
        return []
    if isinstance(servers, str):
        servers = [servers]
    cleaned: list[str] = []
    for entry in servers:
        entry = entry.strip().strip("[]").replace('"', "").replace("'", "")
        for part in entry.split(","):
            part = part.strip().strip("[]").strip()
            if part:
                cleaned.append(part)
    return cleaned


@dataclass(frozen=True)
class NetworkConfig:
    """Network identity written into a customized image."""

    hostname: str
    ip_cidr: str  # e.g., "192.168.1.101/24"
    gateway: str = ""
    dns_servers: tuple[str, ...] = ()

    @property
    def ip_address(self) -> str:
        return split_ip_cidr(self.ip_cidr)[0]

    @property
    def prefix_length(self) -> int:
        return split_ip_cidr(self.ip_cidr)[1]

    @property
    def normalized_cidr(self) -> str:
        ip, prefix = split_ip_cidr(self.ip_cidr)
        return f"{ip}/{prefix}"

    def validate(self) -> None:
        if not self.hostname.strip():
            raise ValidationError("hostname", "empty")
        split_ip_cidr(self.ip_cidr)
        if self.gateway:
            try:
                ipaddress.IPv4Address(self.gateway)
            except ValueError as exc:
                raise ValidationError("gateway", f"{self.gateway!r}") from exc

    def fingerprint(self) -> str:
        """Stable text form used in input hashes."""
        return "|".join(
            [
                self.hostname,
                self.normalized_cidr,
                self.gateway,
                ",".join(self.dns_servers),
            ]
        )


@dataclass(frozen=True)
class NodeConfig:
    """Static per-slot configuration."""

    node_id: int
    ip_cidr: str
    board: BoardType = BoardType.RK1
    hostname: str = ""
    gateway: str = ""
    dns_servers: tuple[str, ...] = ()
    mac_address: str | None = None

    @property
    def ip_address(self) -> str:
        return split_ip_cidr(self.ip_cidr)[0]

    @property
    def effective_hostname(self) -> str:
        return self.hostname or f"node{self.node_id}"

    def network(self) -> NetworkConfig:
        return NetworkConfig(
            hostname=self.effective_hostname,
            ip_cidr=self.ip_cidr,
            gateway=self.gateway,
            dns_servers=tuple(self.dns_servers),
        )


# ==============================================================================
# Staged File Operations
# ==============================================================================


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class WriteFile:
    """Write bytes to an image path, creating parents; atomic overwrite."""

    path: str
    content: bytes
    mode: int = 0o644

    kind = "write"

    def fingerprint(self) -> str:
        return f"write|{self.path}|{self.mode:o}|{_digest(self.content)}"


@dataclass(frozen=True)
class CopyFile:
    """Copy a host file into the image, creating parents."""

    source: Path
    path: str
    mode: int | None = None

    kind = "copy"

    def fingerprint(self) -> str:
        source = Path(self.source)
        content_digest = _digest(source.read_bytes()) if source.is_file() else "missing"
        mode = f"{self.mode:o}" if self.mode is not None else "-"
        return f"copy|{source}|{self.path}|{mode}|{content_digest}"


@dataclass(frozen=True)
class MakeDirectory:
    """Recursive, idempotent mkdir inside the image."""

    path: str
    mode: int = 0o755

    kind = "mkdir"

    def fingerprint(self) -> str:
        return f"mkdir|{self.path}|{self.mode:o}"


@dataclass(frozen=True)
class ChangeMode:
    """chmod an existing image path; missing target is an error."""

    path: str
    mode: int

    kind = "chmod"

    def fingerprint(self) -> str:
        return f"chmod|{self.path}|{self.mode:o}"


FileOperation = Union[WriteFile, CopyFile, MakeDirectory, ChangeMode]


# ==============================================================================
# Build Results & Phases
# ==============================================================================


@dataclass(frozen=True)
class ImageResult:
    """Output of an image build, or a synthesized cache hit."""

    image_path: str  # host path, or cached filename when is_remote_cache
    input_hash: str
    board: BoardType
    cache_key: str = ""
    is_remote_cache: bool = False

    @property
    def basename(self) -> str:
        return Path(self.image_path).name


class Phase(Enum):
    """Top-level provisioning stages, in execution order."""

    IMAGE_CUSTOMIZATION = "ImageCustomization"
    OS_INSTALLATION = "OSInstallation"
    POST_INSTALLATION = "PostInstallation"

    @property
    def start_label(self) -> str:
        return f"Start{self.value}"

    @property
    def complete_label(self) -> str:
        return f"Complete{self.value}"

    @property
    def failed_label(self) -> str:
        return f"Failed{self.value}"


class PhaseStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

