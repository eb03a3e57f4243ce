"""Cache metadata records and key helpers."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

META_SUFFIX = ".meta"
DATA_SUFFIX = ".data"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def storage_name(key: str) -> str:
    """Filesystem-safe stem for a cache key.

    Keys made only of safe characters are used verbatim; anything else is
    sanitized and suffixed with a short digest so distinct keys never share
    a file.
    """
    if key and not _UNSAFE.search(key) and not key.startswith("."):
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    sanitized = _UNSAFE.sub("_", key).lstrip(".")[:80]
    return f"{sanitized}-{digest}"


def key_from_tags(tags: dict[str, str]) -> str:
    """Deterministic key from a tag map (first 32 hex chars of SHA-256)."""
    h = hashlib.sha256()
    for name in sorted(tags):
        h.update(name.encode("utf-8"))
        h.update(str(tags[name]).encode("utf-8"))
    return h.hexdigest()[:32]


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass(frozen=True)
class CacheMetadata:
    key: str
    filename: str = ""
    content_type: str = "application/octet-stream"
    size: int = 0
    mod_time: datetime | None = None
    hash: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    os_type: str = ""
    os_version: str = ""

    def with_updates(self, **changes: Any) -> CacheMetadata:
        return replace(self, **changes)

    def matches(self, filter_tags: dict[str, str]) -> bool:
        return all(self.tags.get(name) == value for name, value in filter_tags.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "filename": self.filename,
            "contentType": self.content_type,
            "size": self.size,
            "modTime": _format_time(self.mod_time),
            "hash": self.hash,
            "tags": dict(self.tags),
            "osType": self.os_type,
            "osVersion": self.os_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheMetadata:
        """Build from the on-disk JSON form.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError("metadata is not an object")
        key = data.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError("metadata has no key")
        tags = data.get("tags") or {}
        if not isinstance(tags, dict):
            raise ValueError("metadata tags are not an object")
        return cls(
            key=key,
            filename=str(data.get("filename") or ""),
            content_type=str(data.get("contentType") or "application/octet-stream"),
            size=int(data.get("size") or 0),
            mod_time=_parse_time(data.get("modTime")),
            hash=str(data.get("hash") or ""),
            tags={str(k): str(v) for k, v in tags.items()},
            os_type=str(data.get("osType") or ""),
            os_version=str(data.get("osVersion") or ""),
        )


class IssueKind(Enum):
    ORPHANED_METADATA = "orphaned_metadata"
    ORPHANED_DATA = "orphaned_data"
    INVALID_METADATA = "invalid_metadata"
    HASH_MISMATCH = "hash_mismatch"


@dataclass(frozen=True)
class IntegrityIssue:
    kind: IssueKind
    name: str  # storage file stem
    key: str = ""
    detail: str = ""

    def __str__(self) -> str:
        label = self.key or self.name
        return f"{self.kind.value}: {label}" + (f" ({self.detail})" if self.detail else "")
