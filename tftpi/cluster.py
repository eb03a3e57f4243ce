"""Shared handles for one Turing Pi board.

A Cluster owns the state store and the two caches. Endpoints are never
shared: ``bmc()`` and ``node()`` build a fresh endpoint per call so parallel
node workflows each hold their own SSH sessions.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import BinaryIO, Callable

from tftpi.cache.base import Cache
from tftpi.cache.local import LocalCache
from tftpi.cache.remote import RemoteCache
from tftpi.config.settings import Settings
from tftpi.domain.models import BoardType, NodeConfig
from tftpi.exceptions import ValidationError
from tftpi.remote.bmc import BMCEndpoint
from tftpi.remote.node import NodeEndpoint
from tftpi.remote.retry import RetryPolicy
from tftpi.state.store import StateStore

# (os_type, version, board) -> stream of the compressed base image
BaseImageSource = Callable[[str, str, BoardType], BinaryIO]


class Cluster:
    def __init__(
        self,
        settings: Settings,
        base_image_source: BaseImageSource | None = None,
        *,
        bmc_factory: Callable[[], BMCEndpoint] | None = None,
        remote_cache: Cache | None = None,
    ):
        self.settings = settings
        self.base_image_source = base_image_source
        self.cache_dir = Path(settings.cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.state = StateStore(settings.state_file)
        self._lock = threading.Lock()
        self._local_cache: LocalCache | None = None
        self._remote_cache: Cache | None = remote_cache
        self._bmc_factory = bmc_factory
        self._remote_endpoint: BMCEndpoint | None = None

    @property
    def prep_dir(self) -> Path:
        return self.settings.prep_dir

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=int(self.settings.get("retry_attempts")),
            initial_delay=float(self.settings.get("retry_delay")),
            increment=float(self.settings.get("retry_increment")),
        )

    def node_config(self, node_id: int) -> NodeConfig:
        """Configured slot, falling back to the network recorded by a prepared image."""
        try:
            return self.settings.node(node_id)
        except ValidationError:
            recorded = self.state.get_node_state(node_id)
            if recorded is None or not recorded.ip_address:
                raise
        return NodeConfig(
            node_id=node_id,
            ip_cidr=f"{recorded.ip_address}/{recorded.prefix_length or 24}",
            board=BoardType.parse(recorded.board_type or BoardType.RK1.value),
            hostname=recorded.hostname,
            gateway=recorded.gateway,
        )

    def bmc(self) -> BMCEndpoint:
        """New BMC endpoint; the caller closes it."""
        if self._bmc_factory is not None:
            return self._bmc_factory()
        return BMCEndpoint(
            self.settings.get("bmc_host"),
            self.settings.get("bmc_user"),
            self.settings.get("bmc_password"),
            connect_timeout=float(self.settings.get("ssh_timeout")),
            command_timeout=float(self.settings.get("command_timeout")),
            retry=self.retry_policy,
        )

    def node(self, node_id: int, username: str, password: str) -> NodeEndpoint:
        """New endpoint on an installed node; the caller closes it."""
        config = self.node_config(node_id)
        return NodeEndpoint(
            config.ip_address,
            username,
            password,
            node_id=node_id,
            connect_timeout=float(self.settings.get("ssh_timeout")),
            command_timeout=float(self.settings.get("command_timeout")),
            retry=self.retry_policy,
        )

    @property
    def local_cache(self) -> LocalCache:
        with self._lock:
            if self._local_cache is None:
                self._local_cache = LocalCache(
                    self.settings.local_cache_dir,
                    refresh_interval=self.settings.get("index_refresh_seconds"),
                )
            return self._local_cache

    @property
    def remote_cache(self) -> Cache:
        with self._lock:
            if self._remote_cache is None:
                self._remote_endpoint = self.bmc()
                self._remote_cache = RemoteCache(
                    self._remote_endpoint,
                    self.settings.get("remote_cache_dir"),
                    self.settings.remote_state_dir,
                    refresh_interval=self.settings.get("index_refresh_seconds"),
                )
            return self._remote_cache

    def close(self) -> None:
        with self._lock:
            caches = [c for c in (self._local_cache, self._remote_cache) if c is not None]
            endpoint = self._remote_endpoint
            self._local_cache = self._remote_cache = self._remote_endpoint = None
        for cache in caches:
            cache.close()
        if endpoint is not None:
            endpoint.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
