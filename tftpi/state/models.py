"""Per-node state records persisted in the state file."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable

# ==============================================================================
# Scalar coercion
# ==============================================================================

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


class CoercionError(ValueError):
    """Value cannot be converted to the field's kind."""


def to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, datetime):
        return format_time(value) or ""
    raise CoercionError(f"cannot convert {type(value).__name__} to string")


def to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        try:
            return int(value)
        except (ValueError, OverflowError) as exc:
            raise CoercionError(f"not an integer: {value!r}") from exc
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            try:
                return int(float(value.strip()))
            except (ValueError, OverflowError) as exc:
                raise CoercionError(f"not an integer: {value!r}") from exc
    raise CoercionError(f"cannot convert {type(value).__name__} to int")


def to_float(value: Any) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise CoercionError(f"not a number: {value!r}") from exc
    raise CoercionError(f"cannot convert {type(value).__name__} to float")


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
        raise CoercionError(f"not a boolean: {value!r}")
    raise CoercionError(f"cannot convert {type(value).__name__} to bool")


def to_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as exc:
            raise CoercionError(f"timestamp out of range: {value!r}") from exc
    if isinstance(value, str):
        return parse_time(value)
    raise CoercionError(f"cannot convert {type(value).__name__} to time")


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise CoercionError(f"not an RFC3339 time: {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ==============================================================================
# Node State
# ==============================================================================


@dataclass
class NodeState:
    node_id: int
    board_type: str = ""
    os_type: str = ""
    os_version: str = ""
    last_image_path: str = ""
    last_image_hash: str = ""
    last_image_time: datetime | None = None
    last_install_hash: str = ""
    last_install_time: datetime | None = None
    last_config_hash: str = ""
    last_config_time: datetime | None = None
    ip_address: str = ""
    prefix_length: int = 0
    gateway: str = ""
    hostname: str = ""
    password_changed: bool = False
    last_install_duration: float = 0.0
    last_operation: str = ""
    last_operation_time: datetime | None = None
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if FIELD_KINDS.get(f.name) is to_time:
                value = format_time(value)
            data[JSON_NAMES[f.name]] = value
        if not self.last_error:
            data.pop("lastError")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeState:
        """Build from the on-disk JSON form.

        Raises:
            ValueError: If the record is not an object or has no valid node ID
        """
        if not isinstance(data, dict):
            raise ValueError("node state is not an object")
        state = cls(node_id=to_int(data.get("nodeID", 0)))
        apply_properties(state, data)
        return state


# Field name (snake_case) -> converter. Node ID is identity, never patched.
FIELD_KINDS: dict[str, Callable[[Any], Any]] = {
    "board_type": to_str,
    "os_type": to_str,
    "os_version": to_str,
    "last_image_path": to_str,
    "last_image_hash": to_str,
    "last_image_time": to_time,
    "last_install_hash": to_str,
    "last_install_time": to_time,
    "last_config_hash": to_str,
    "last_config_time": to_time,
    "ip_address": to_str,
    "prefix_length": to_int,
    "gateway": to_str,
    "hostname": to_str,
    "password_changed": to_bool,
    "last_install_duration": to_float,
    "last_operation": to_str,
    "last_operation_time": to_time,
    "last_error": to_str,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


JSON_NAMES: dict[str, str] = {f.name: _camel(f.name) for f in fields(NodeState)}
JSON_NAMES["node_id"] = "nodeID"

# Every accepted spelling of a patchable field: snake_case, camelCase, PascalCase.
_ALIASES: dict[str, str] = {}
for _name in FIELD_KINDS:
    _json = JSON_NAMES[_name]
    for _alias in (_name, _json, _json[0].upper() + _json[1:]):
        _ALIASES[_alias] = _name
_ALIASES["LastImageHash"] = "last_image_hash"
_ALIASES["InputHash"] = "last_image_hash"


def resolve_field(name: str) -> str | None:
    return _ALIASES.get(name)


def apply_properties(state: NodeState, properties: dict[str, Any]) -> list[str]:
    """Apply known fields with coercion; returns the keys that were skipped."""
    skipped = []
    for key, value in properties.items():
        name = resolve_field(key)
        if name is None:
            skipped.append(key)
            continue
        try:
            setattr(state, name, FIELD_KINDS[name](value))
        except CoercionError:
            skipped.append(key)
    return skipped


@dataclass
class SystemState:
    nodes: dict[int, NodeState] = field(default_factory=dict)
    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": {str(k): v.to_dict() for k, v in sorted(self.nodes.items())},
            "lastUpdated": format_time(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemState:
        if not isinstance(data, dict):
            raise ValueError("state is not an object")
        raw_nodes = data.get("nodes") or {}
        if not isinstance(raw_nodes, dict):
            raise ValueError("nodes is not an object")
        nodes = {}
        for key, raw in raw_nodes.items():
            node = NodeState.from_dict(raw)
            node.node_id = to_int(key)
            nodes[node.node_id] = node
        return cls(nodes=nodes, last_updated=to_time(data.get("lastUpdated")))
