"""In-memory tag and OS indexes over cache metadata."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable

from tftpi.cache.models import CacheMetadata


class CacheIndex:
    """Items plus two derived indexes: tag -> value -> keys, os -> version -> keys.

    Not thread-safe on its own; the owning cache holds its lock around every
    call.
    """

    def __init__(self):
        self.items: dict[str, CacheMetadata] = {}
        self.tag_index: dict[str, dict[str, set[str]]] = {}
        self.os_index: dict[str, dict[str, set[str]]] = {}
        self.updated_at: datetime | None = None

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, key: str) -> bool:
        return key in self.items

    def get(self, key: str) -> CacheMetadata | None:
        return self.items.get(key)

    def add(self, meta: CacheMetadata) -> None:
        self.remove(meta.key)
        self.items[meta.key] = meta
        for name, value in meta.tags.items():
            self.tag_index.setdefault(name, {}).setdefault(value, set()).add(meta.key)
        if meta.os_type:
            self.os_index.setdefault(meta.os_type, {}).setdefault(meta.os_version, set()).add(meta.key)
        self.updated_at = datetime.now(timezone.utc)

    def remove(self, key: str) -> None:
        meta = self.items.pop(key, None)
        if meta is None:
            return
        for name, value in meta.tags.items():
            _discard(self.tag_index, name, value, key)
        if meta.os_type:
            _discard(self.os_index, meta.os_type, meta.os_version, key)
        self.updated_at = datetime.now(timezone.utc)

    def replace_all(self, entries: list[CacheMetadata]) -> None:
        self.items.clear()
        self.tag_index.clear()
        self.os_index.clear()
        for meta in entries:
            self.add(meta)
        self.updated_at = datetime.now(timezone.utc)

    def keys_for_tags(self, filter_tags: dict[str, str]) -> set[str]:
        """Keys whose tags contain every pair in ``filter_tags``."""
        if not filter_tags:
            return set(self.items)
        result: set[str] | None = None
        for name, value in filter_tags.items():
            keys = self.tag_index.get(name, {}).get(value, set())
            result = set(keys) if result is None else result & keys
            if not result:
                return set()
        return result or set()

    def keys_for_os(self, os_type: str, os_version: str | None = None) -> set[str]:
        versions = self.os_index.get(os_type, {})
        if os_version is not None:
            return set(versions.get(os_version, set()))
        keys: set[str] = set()
        for version_keys in versions.values():
            keys |= version_keys
        return keys


def _discard(index: dict[str, dict[str, set[str]]], outer: str, inner: str, key: str) -> None:
    bucket = index.get(outer, {}).get(inner)
    if bucket is None:
        return
    bucket.discard(key)
    if not bucket:
        del index[outer][inner]
        if not index[outer]:
            del index[outer]


class IndexRefresher:
    """Daemon thread calling ``refresh`` every ``interval`` seconds until stopped."""

    def __init__(self, refresh: Callable[[], object], interval: float, log=None):
        self._refresh = refresh
        self.interval = interval
        self.log = log
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="tftpi-cache-index", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._refresh()
            except Exception as exc:
                # Keep the timer alive; the next tick retries.
                if self.log is not None:
                    self.log.warning(f"Periodic cache index rebuild failed: {exc}")
