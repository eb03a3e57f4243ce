"""Keyed blob cache with metadata, tag indexes and integrity checks.

Every entry is two sibling files: ``<name>.data`` holding the content and
``<name>.meta`` holding a JSON CacheMetadata record. Content and metadata
are written to temporary names first and renamed into place under the
locks, so readers only ever see complete entries.

Subclasses supply the storage primitives (open, rename, remove, list) for
a location: a host directory or a directory on the BMC over SFTP.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Generator

import filelock

from tftpi.cache.index import CacheIndex, IndexRefresher
from tftpi.cache.models import (
    DATA_SUFFIX,
    META_SUFFIX,
    CacheMetadata,
    IntegrityIssue,
    IssueKind,
    storage_name,
)
from tftpi.context import Context
from tftpi.exceptions import CacheError, CacheIntegrityError, CacheKeyNotFoundError
from tftpi.locks import ReadWriteLock
from tftpi.logging import LoggerFactory

CHUNK_SIZE = 1024 * 1024
LOCK_TIMEOUT = 120.0


class Cache(ABC):
    location = "cache"

    def __init__(self, lock_path: Path, refresh_interval: float | None = None):
        self._rw = ReadWriteLock()
        self._file_lock = filelock.FileLock(str(lock_path), timeout=LOCK_TIMEOUT)
        self._index = CacheIndex()
        self._index_loaded = False
        self.log = LoggerFactory.for_cache(self.location)
        self._refresher: IndexRefresher | None = None
        if refresh_interval:
            self._refresher = IndexRefresher(
                lambda: self.rebuild_index(Context.background()), refresh_interval, self.log
            )
            self._refresher.start()

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _open_read(self, ctx: Context, name: str) -> BinaryIO:
        """Open a stored file for reading; FileNotFoundError if absent."""

    @abstractmethod
    def _open_write(self, ctx: Context, name: str) -> BinaryIO:
        """Create or truncate a stored file for writing."""

    @abstractmethod
    def _rename(self, ctx: Context, src: str, dst: str) -> None:
        """Atomically replace ``dst`` with ``src``."""

    @abstractmethod
    def _remove(self, ctx: Context, name: str) -> None:
        """Remove a stored file; missing files are ignored."""

    @abstractmethod
    def _list_names(self, ctx: Context) -> list[str]:
        """File names in the cache directory."""

    def _close_storage(self) -> None:
        """Release location-specific resources."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _write_locked(self) -> Generator[None, None, None]:
        with self._rw.write():
            try:
                with self._file_lock:
                    yield
            except filelock.Timeout as exc:
                raise CacheError(f"Timed out waiting for cache lock {exc.lock_file}") from exc

    def _read_meta(self, ctx: Context, name: str) -> CacheMetadata:
        with self._open_read(ctx, name + META_SUFFIX) as fh:
            raw = fh.read()
        return CacheMetadata.from_dict(json.loads(raw.decode("utf-8")))

    def _write_file(self, ctx: Context, name: str, data: bytes) -> None:
        with self._open_write(ctx, name) as out:
            out.write(data)

    def _hash_content(self, ctx: Context, name: str) -> str:
        h = hashlib.sha256()
        with self._open_read(ctx, name + DATA_SUFFIX) as fh:
            while True:
                ctx.check()
                chunk = fh.read(CHUNK_SIZE)
                if not chunk:
                    break
                h.update(chunk)
        return h.hexdigest()

    def _ensure_index(self, ctx: Context) -> None:
        if not self._index_loaded:
            self.rebuild_index(ctx)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def put(
        self,
        ctx: Context,
        key: str,
        metadata: CacheMetadata,
        stream: BinaryIO,
        *,
        compute_hash: bool = True,
    ) -> CacheMetadata:
        """Store ``stream`` under ``key``; returns the stored metadata.

        Size and modification time are filled in. With ``compute_hash`` the
        SHA-256 of the content is recorded, and a caller-supplied hash that
        disagrees aborts the write.
        """
        name = storage_name(key)
        token = secrets.token_hex(4)
        tmp_data = f".{name}{DATA_SUFFIX}.{token}.tmp"
        tmp_meta = f".{name}{META_SUFFIX}.{token}.tmp"
        hasher = hashlib.sha256() if compute_hash else None
        size = 0
        try:
            with self._open_write(ctx, tmp_data) as out:
                while True:
                    ctx.check()
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    if hasher is not None:
                        hasher.update(chunk)
                    out.write(chunk)
                    size += len(chunk)

            content_hash = metadata.hash
            if hasher is not None:
                digest = hasher.hexdigest()
                if metadata.hash and metadata.hash != digest:
                    raise CacheIntegrityError(key, metadata.hash, digest)
                content_hash = digest

            stored = metadata.with_updates(
                key=key,
                filename=metadata.filename or key,
                size=size,
                hash=content_hash,
                mod_time=datetime.now(timezone.utc),
                tags=dict(metadata.tags),
            )
            payload = json.dumps(stored.to_dict(), indent=2).encode("utf-8")
            self._write_file(ctx, tmp_meta, payload)

            with self._write_locked():
                self._rename(ctx, tmp_data, name + DATA_SUFFIX)
                self._rename(ctx, tmp_meta, name + META_SUFFIX)
                self._index.add(stored)
        except BaseException:
            for tmp in (tmp_data, tmp_meta):
                try:
                    self._remove(Context.background(), tmp)
                except OSError as exc:
                    self.log.debug(f"Could not remove temporary file {tmp}: {exc}")
            raise
        self.log.info(f"Cached {key} ({size} bytes)")
        return stored

    def get(
        self, ctx: Context, key: str, want_content: bool = True
    ) -> tuple[CacheMetadata, BinaryIO | None]:
        """Metadata and, when ``want_content``, an open content stream.

        The caller owns the stream and must close it.

        Raises:
            CacheKeyNotFoundError: If the key has no entry
        """
        ctx.check()
        name = storage_name(key)
        with self._rw.read():
            try:
                meta = self._read_meta(ctx, name)
                stream = self._open_read(ctx, name + DATA_SUFFIX) if want_content else None
            except FileNotFoundError:
                raise CacheKeyNotFoundError(key) from None
            except ValueError as exc:
                raise CacheError(f"Corrupted metadata for {key}: {exc}") from exc
        self.log.debug(f"Cache hit for {key}")
        return meta, stream

    def stat(self, ctx: Context, key: str) -> CacheMetadata:
        meta, _ = self.get(ctx, key, want_content=False)
        return meta

    def exists(self, ctx: Context, key: str) -> bool:
        try:
            self.stat(ctx, key)
        except CacheKeyNotFoundError:
            return False
        return True

    def list(self, ctx: Context, filter_tags: dict[str, str] | None = None) -> list[CacheMetadata]:
        """Entries whose tags include every ``filter_tags`` pair, sorted by key."""
        self._ensure_index(ctx)
        with self._rw.read():
            keys = self._index.keys_for_tags(filter_tags or {})
            return [self._index.items[k] for k in sorted(keys)]

    def list_os(self, ctx: Context, os_type: str, os_version: str | None = None) -> list[CacheMetadata]:
        self._ensure_index(ctx)
        with self._rw.read():
            keys = self._index.keys_for_os(os_type, os_version)
            return [self._index.items[k] for k in sorted(keys)]

    def delete(self, ctx: Context, key: str) -> None:
        ctx.check()
        name = storage_name(key)
        with self._write_locked():
            self._remove(ctx, name + META_SUFFIX)
            self._remove(ctx, name + DATA_SUFFIX)
            self._index.remove(key)
        self.log.info(f"Deleted cache entry {key}")

    def verify_integrity(self, ctx: Context) -> list[IntegrityIssue]:
        """Report orphaned files, unreadable metadata and hash mismatches."""
        with self._rw.read():
            names = [n for n in self._list_names(ctx) if not n.startswith(".")]
            meta_stems = {n[: -len(META_SUFFIX)] for n in names if n.endswith(META_SUFFIX)}
            data_stems = {n[: -len(DATA_SUFFIX)] for n in names if n.endswith(DATA_SUFFIX)}
            issues: list[IntegrityIssue] = []
            for stem in sorted(meta_stems):
                ctx.check()
                try:
                    meta = self._read_meta(ctx, stem)
                except (ValueError, UnicodeDecodeError) as exc:
                    issues.append(IntegrityIssue(IssueKind.INVALID_METADATA, stem, detail=str(exc)))
                    continue
                if stem not in data_stems:
                    issues.append(IntegrityIssue(IssueKind.ORPHANED_METADATA, stem, key=meta.key))
                    continue
                if meta.hash:
                    actual = self._hash_content(ctx, stem)
                    if actual != meta.hash:
                        issues.append(
                            IntegrityIssue(
                                IssueKind.HASH_MISMATCH,
                                stem,
                                key=meta.key,
                                detail=f"expected {meta.hash}, got {actual}",
                            )
                        )
            for stem in sorted(data_stems - meta_stems):
                issues.append(IntegrityIssue(IssueKind.ORPHANED_DATA, stem))
        for issue in issues:
            self.log.warning(f"Cache integrity issue: {issue}")
        return issues

    def cleanup(self, ctx: Context) -> list[IntegrityIssue]:
        """Remove orphaned and unreadable files; returns what was removed.

        Hash mismatches are reported by verify_integrity but left alone.
        """
        removable = [
            issue
            for issue in self.verify_integrity(ctx)
            if issue.kind is not IssueKind.HASH_MISMATCH
        ]
        with self._write_locked():
            for issue in removable:
                suffix = DATA_SUFFIX if issue.kind is IssueKind.ORPHANED_DATA else META_SUFFIX
                self._remove(ctx, issue.name + suffix)
        if removable:
            self.log.info(f"Removed {len(removable)} orphaned cache file(s)")
        self.rebuild_index(ctx)
        return removable

    def rebuild_index(self, ctx: Context) -> None:
        """Reload the tag and OS indexes from the stored metadata files."""
        entries: list[CacheMetadata] = []
        with self._rw.read():
            for name in self._list_names(ctx):
                if name.startswith(".") or not name.endswith(META_SUFFIX):
                    continue
                ctx.check()
                try:
                    entries.append(self._read_meta(ctx, name[: -len(META_SUFFIX)]))
                except FileNotFoundError:
                    continue
                except (ValueError, UnicodeDecodeError) as exc:
                    self.log.warning(f"Skipping unreadable metadata {name}: {exc}")
        with self._rw.write():
            self._index.replace_all(entries)
            self._index_loaded = True
        self.log.debug(f"Rebuilt cache index ({len(entries)} entries)")

    def close(self) -> None:
        if self._refresher is not None:
            self._refresher.stop()
            self._refresher = None
        self._close_storage()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
