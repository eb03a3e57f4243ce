"""Artifact caches: a host directory and a directory on the BMC."""

from .base import Cache
from .local import LocalCache
from .models import CacheMetadata, IntegrityIssue, IssueKind, key_from_tags
from .remote import RemoteCache

__all__ = [
    "Cache",
    "CacheMetadata",
    "IntegrityIssue",
    "IssueKind",
    "LocalCache",
    "RemoteCache",
    "key_from_tags",
]
