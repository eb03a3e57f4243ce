"""Durable per-node state shared by every tftpi process.

The whole SystemState lives in one JSON file. Mutations take the in-process
write lock and then ``<state_file>.lock`` via filelock, reload the file if
another process changed it, apply the change, and replace the file
atomically. A file that cannot be parsed is treated as empty and is
overwritten by the next write.

Usage:
    store = StateStore(cache_dir / "tftpi_state.json")
    store.record_operation(1, "StartOSInstallation")
    store.update_node_properties(1, {"ipAddress": "192.168.1.101"})
"""

from __future__ import annotations

import copy
import json
import os
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import filelock

from tftpi.domain.models import parse_node_id
from tftpi.exceptions import StateError
from tftpi.locks import ReadWriteLock
from tftpi.logging import LoggerFactory
from tftpi.state.models import NodeState, SystemState, apply_properties

LOCK_TIMEOUT = 60.0

log = LoggerFactory.for_state()


class StateStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._rw = ReadWriteLock()
        self._file_lock = filelock.FileLock(f"{self.path}.lock", timeout=LOCK_TIMEOUT)
        self._state = SystemState()
        self._disk_stamp: tuple[int, int] | None = None
        with self._rw.write():
            self._load()

    def __repr__(self) -> str:
        return f"StateStore({self.path})"

    # ------------------------------------------------------------------
    # Disk IO
    # ------------------------------------------------------------------

    def _stamp(self) -> tuple[int, int] | None:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _load(self) -> None:
        """Replace the in-memory state with the file's contents (or empty)."""
        self._disk_stamp = self._stamp()
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._state = SystemState()
            return
        except OSError as exc:
            raise StateError(f"Cannot read state file {self.path}: {exc}") from exc
        if not text.strip():
            self._state = SystemState()
            return
        try:
            self._state = SystemState.from_dict(json.loads(text))
        except (ValueError, TypeError, OverflowError) as exc:
            log.warning(f"State file {self.path} is unreadable, starting empty: {exc}")
            self._state = SystemState()

    def _save(self) -> None:
        self._state.last_updated = datetime.now(timezone.utc)
        # Serialize fully before touching the disk.
        payload = json.dumps(self._state.to_dict(), indent=2) + "\n"
        tmp = self.path.with_name(f".{self.path.name}.{secrets.token_hex(4)}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StateError(f"Cannot write state file {self.path}: {exc}") from exc
        self._disk_stamp = self._stamp()

    def _sync_from_disk(self) -> None:
        if self._stamp() == self._disk_stamp:
            return
        with self._rw.write():
            if self._stamp() != self._disk_stamp:
                log.debug("State file changed on disk, reloading")
                self._load()

    @contextmanager
    def _mutation(self) -> Generator[SystemState, None, None]:
        with self._rw.write():
            try:
                with self._file_lock:
                    if self._stamp() != self._disk_stamp:
                        self._load()
                    yield self._state
                    self._save()
            except filelock.Timeout as exc:
                raise StateError(f"Timed out waiting for state lock {exc.lock_file}") from exc

    def _node(self, state: SystemState, node_id: int) -> NodeState:
        node = state.nodes.get(node_id)
        if node is None:
            node = NodeState(node_id=node_id)
            state.nodes[node_id] = node
        return node

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_node_state(self, node_id: int) -> NodeState | None:
        """Deep copy of the node's state, or None if it has never been recorded."""
        node_id = parse_node_id(node_id, allow_prepare_only=True)
        self._sync_from_disk()
        with self._rw.read():
            node = self._state.nodes.get(node_id)
            return copy.deepcopy(node) if node is not None else None

    def list_node_states(self) -> list[NodeState]:
        self._sync_from_disk()
        with self._rw.read():
            return [copy.deepcopy(n) for _, n in sorted(self._state.nodes.items())]

    @property
    def last_updated(self) -> datetime | None:
        self._sync_from_disk()
        with self._rw.read():
            return self._state.last_updated

    def update_node_state(self, node_state: NodeState) -> None:
        """Replace the whole record for ``node_state.node_id``."""
        node_id = parse_node_id(node_state.node_id, allow_prepare_only=True)
        with self._mutation() as state:
            state.nodes[node_id] = copy.deepcopy(node_state)

    def update_node_properties(self, node_id: int, properties: dict[str, Any]) -> NodeState:
        """Patch only the given fields, creating the node record if needed.

        Keys may use snake_case or the camelCase JSON names. Unknown keys and
        values that cannot be coerced to the field's kind are ignored.
        """
        node_id = parse_node_id(node_id, allow_prepare_only=True)
        with self._mutation() as state:
            node = self._node(state, node_id)
            skipped = apply_properties(node, properties)
            result = copy.deepcopy(node)
        if skipped:
            log.debug(f"Ignored properties for node {node_id}: {', '.join(map(str, skipped))}")
        return result

    def record_operation(self, node_id: int, operation: str, error: BaseException | str | None = None) -> None:
        """Set the last operation label and time; ``error`` fills last_error."""
        node_id = parse_node_id(node_id, allow_prepare_only=True)
        with self._mutation() as state:
            node = self._node(state, node_id)
            node.last_operation = operation
            node.last_operation_time = datetime.now(timezone.utc)
            node.last_error = str(error) if error else ""
        if error:
            log.debug(f"Node {node_id}: {operation} ({error})")
        else:
            log.debug(f"Node {node_id}: {operation}")

    def save(self) -> None:
        """Flush the current in-memory state to disk."""
        with self._mutation():
            pass
