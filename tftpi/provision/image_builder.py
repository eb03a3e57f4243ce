"""Build a customized node image, reusing cached results when possible."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from tftpi.cache.models import CacheMetadata
from tftpi.context import Context
from tftpi.domain.models import (
    BoardType,
    ChangeMode,
    CopyFile,
    FileOperation,
    ImageResult,
    MakeDirectory,
    NetworkConfig,
    WriteFile,
    clean_dns_servers,
    split_ip_cidr,
)
from tftpi.exceptions import CacheKeyNotFoundError, ValidationError
from tftpi.imageops import ImageOpsBackend, PrepareOptions, create_backend
from tftpi.logging import LoggerFactory

XZ_CONTENT_TYPE = "application/x-xz"
INPUT_HASH_TAG = "inputHash"

BackendFactory = Callable[[Path, Path, Path], ImageOpsBackend]


def base_image_key(os_type: str, version: str, board: BoardType) -> str:
    return f"baseimg:{os_type}:{version}:{board.value}"


@dataclass
class ImageBuildConfig:
    """What to build; ``cache_key``, ``version``, ``board`` and ``static_ip`` are required."""

    cache_key: str
    version: str
    board: BoardType | str
    static_ip: str
    hostname: str = ""
    gateway: str = ""
    dns_servers: tuple[str, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)
    os_type: str = "ubuntu"
    base_image_path: Path | None = None
    output_dir: Path | None = None
    force_rebuild: bool = False
    augment_cache_key: bool = False


class ImageBuilder:
    """Stages file operations and turns a base image into a node image.

    Example:
        builder = ImageBuilder(node_id=1).configure(config)
        builder.write_file("etc/motd", "provisioned by tftpi\\n")
        result = builder.run(ctx, cluster)
    """

    def __init__(self, node_id: int, backend_factory: BackendFactory = create_backend):
        self.node_id = node_id
        self.config: ImageBuildConfig | None = None
        self._operations: list[FileOperation] = []
        self._backend_factory = backend_factory
        self.log = LoggerFactory.for_builder(node_id)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, config: ImageBuildConfig) -> ImageBuilder:
        """Validate and store the build configuration.

        Raises:
            ValidationError: If a required field is missing or malformed
        """
        for name in ("cache_key", "version", "static_ip"):
            if not str(getattr(config, name) or "").strip():
                raise ValidationError(name, "required")
        if not config.board:
            raise ValidationError("board", "required")
        config.board = BoardType.parse(config.board)
        split_ip_cidr(config.static_ip)
        config.dns_servers = tuple(clean_dns_servers(list(config.dns_servers)))
        if config.base_image_path is not None:
            config.base_image_path = Path(config.base_image_path).absolute()
        self.config = config
        return self

    def _require_config(self) -> ImageBuildConfig:
        if self.config is None:
            raise ValidationError("image build", "configure() has not been called")
        return self.config

    # Staging ----------------------------------------------------------

    def write_file(self, path: str, content: bytes | str, mode: int = 0o644) -> ImageBuilder:
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        self._operations.append(WriteFile(path, data, mode))
        return self

    def copy_file(self, source: Path | str, dest: str, mode: int | None = None) -> ImageBuilder:
        self._operations.append(CopyFile(Path(source).absolute(), dest, mode))
        return self

    def mkdir(self, path: str, mode: int = 0o755) -> ImageBuilder:
        self._operations.append(MakeDirectory(path, mode))
        return self

    def chmod(self, path: str, mode: int) -> ImageBuilder:
        self._operations.append(ChangeMode(path, mode))
        return self

    @property
    def operations(self) -> tuple[FileOperation, ...]:
        return tuple(self._operations)

    # Derived values ---------------------------------------------------

    def network(self) -> NetworkConfig:
        config = self._require_config()
        return NetworkConfig(
            hostname=config.hostname or f"node{self.node_id}",
            ip_cidr=config.static_ip,
            gateway=config.gateway,
            dns_servers=tuple(config.dns_servers),
        )

    def cache_key(self) -> str:
        config = self._require_config()
        key = config.cache_key
        if config.augment_cache_key:
            key += f"+net:{self.network().normalized_cidr}"
            if config.base_image_path is not None:
                key += f"+base:{Path(config.base_image_path).name}"
        return key

    def source_identity(self) -> str:
        config = self._require_config()
        if config.base_image_path is not None:
            return str(config.base_image_path)
        return base_image_key(config.os_type, config.version, config.board)

    def input_hash(self) -> str:
        """SHA-256 over the source, the network identity and the staged operations in order."""
        h = hashlib.sha256()
        h.update(f"source:{self.source_identity()}\n".encode("utf-8"))
        h.update(f"network:{self.network().fingerprint()}\n".encode("utf-8"))
        for op in self._operations:
            h.update(f"op:{op.fingerprint()}\n".encode("utf-8"))
        return h.hexdigest()

    def output_name(self, input_hash: str) -> str:
        return f"{self.network().hostname}-{input_hash[:12]}.img.xz"

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def check_cache(self, ctx: Context, cluster) -> tuple[bool, ImageResult | None]:
        """Look the build up in the BMC cache without building anything."""
        config = self._require_config()
        key = self.cache_key()
        try:
            meta = cluster.remote_cache.stat(ctx, key)
        except CacheKeyNotFoundError:
            self.log.debug(f"No cached image for {key}")
            return False, None
        self.log.info(f"Found cached image for {key}: {meta.filename}")
        return True, ImageResult(
            image_path=meta.filename,
            input_hash=meta.tags.get(INPUT_HASH_TAG, ""),
            board=config.board,
            cache_key=key,
            is_remote_cache=True,
        )

    def resolve_base_image(self, ctx: Context, cluster) -> Path:
        """Host path of the compressed base image.

        Uses the configured path, else the local cache entry
        ``baseimg:<os>:<version>:<board>``, downloading it on a miss.
        """
        config = self._require_config()
        if config.base_image_path is not None:
            path = Path(config.base_image_path)
            if not path.is_file():
                raise ValidationError("base image", f"not found: {path}")
            return path

        key = base_image_key(config.os_type, config.version, config.board)
        local = cluster.local_cache
        if local.exists(ctx, key):
            self.log.debug(f"Using cached base image {key}")
            return local.content_path(key)
        if cluster.base_image_source is None:
            raise ValidationError(
                "base image", f"no path given and {key} is not cached locally"
            )
        self.log.info(f"Downloading base image {key}")
        stream = cluster.base_image_source(config.os_type, config.version, config.board)
        try:
            local.put(
                ctx,
                key,
                CacheMetadata(
                    key=key,
                    filename=f"{config.os_type}-{config.version}-{config.board.value}.img.xz",
                    content_type=XZ_CONTENT_TYPE,
                    tags={"kind": "base-image", "board": config.board.value},
                    os_type=config.os_type,
                    os_version=config.version,
                ),
                stream,
            )
        finally:
            stream.close()
        return local.content_path(key)

    def run(self, ctx: Context, cluster, *, publish: bool = True) -> ImageResult:
        """Return a cached build, or build the image and publish it to the BMC cache.

        ``publish=False`` keeps the build local: the BMC cache is neither
        consulted nor written.
        """
        config = self._require_config()
        input_hash = self.input_hash()
        key = self.cache_key()

        if publish and not config.force_rebuild:
            hit, cached = self.check_cache(ctx, cluster)
            if hit and cached is not None:
                return cached

        source = self.resolve_base_image(ctx, cluster)
        output_dir = Path(config.output_dir or cluster.cache_dir / "images")
        net = self.network()
        options = PrepareOptions(
            source_path=source,
            ip_cidr=net.ip_cidr,
            hostname=net.hostname,
            gateway=net.gateway,
            dns_servers=net.dns_servers,
            node_id=self.node_id,
            output_dir=output_dir,
            output_name=self.output_name(input_hash),
            file_operations=self.operations,
        )
        backend = self._backend_factory(source.parent, cluster.prep_dir, output_dir)
        try:
            output = backend.prepare(ctx, options)
        finally:
            backend.close()

        if publish:
            tags = {
                **config.tags,
                "board": config.board.value,
                "hostname": net.hostname,
                INPUT_HASH_TAG: input_hash,
            }
            with open(output, "rb") as stream:
                cluster.remote_cache.put(
                    ctx,
                    key,
                    CacheMetadata(
                        key=key,
                        filename=output.name,
                        content_type=XZ_CONTENT_TYPE,
                        tags=tags,
                        os_type=config.os_type,
                        os_version=config.version,
                    ),
                    stream,
                )
        return ImageResult(
            image_path=str(output),
            input_hash=input_hash,
            board=config.board,
            cache_key=key,
            is_remote_cache=False,
        )
