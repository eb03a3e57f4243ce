"""Tests for the image builder."""

import io
from pathlib import Path

import pytest

from tftpi.domain.models import BoardType
from tftpi.exceptions import ValidationError
from tftpi.provision.image_builder import (
    INPUT_HASH_TAG,
    ImageBuildConfig,
    ImageBuilder,
    base_image_key,
)


class FakeBackend:
    """Backend that writes a placeholder output and records calls."""

    def __init__(self):
        self.prepared = []
        self.dirs = None
        self.closed = 0

    def factory(self, source_dir, scratch_dir, output_dir):
        self.dirs = (Path(source_dir), Path(scratch_dir), Path(output_dir))
        return self

    def prepare(self, ctx, options):
        self.prepared.append(options)
        output = Path(options.output_dir) / options.output_name
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"customized image for " + options.hostname.encode())
        return output

    def close(self):
        self.closed += 1


@pytest.fixture
def base_image(tmp_path):
    path = tmp_path / "images" / "ubuntu-22.04-preinstalled-server-arm64-turing-rk1.img.xz"
    path.parent.mkdir()
    path.write_bytes(b"base image")
    return path


@pytest.fixture
def backend():
    return FakeBackend()


def make_config(base_image, **kwargs):
    values = dict(
        cache_key="ubuntu-2204-rk1-base-net",
        version="22.04",
        board="rk1",
        static_ip="192.168.1.101/24",
        hostname="rk1-node1",
        gateway="192.168.1.1",
        dns_servers=("1.1.1.1", "8.8.8.8"),
        base_image_path=base_image,
    )
    values.update(kwargs)
    return ImageBuildConfig(**values)


def make_builder(backend, base_image, **kwargs):
    return ImageBuilder(1, backend_factory=backend.factory).configure(make_config(base_image, **kwargs))


class TestConfigure:
    """Tests for ImageBuilder.configure()."""

    @pytest.mark.parametrize("field", ["cache_key", "version", "static_ip"])
    def test_required_fields(self, base_image, field):
        with pytest.raises(ValidationError, match=field):
            ImageBuilder(1).configure(make_config(base_image, **{field: ""}))

    def test_board_is_parsed(self, base_image):
        builder = ImageBuilder(1).configure(make_config(base_image, board="CM4"))
        assert builder.config.board is BoardType.CM4

    def test_bad_ip(self, base_image):
        with pytest.raises(ValidationError):
            ImageBuilder(1).configure(make_config(base_image, static_ip="192.168.1.300/24"))

    def test_unconfigured_builder(self):
        with pytest.raises(ValidationError, match="configure"):
            ImageBuilder(1).input_hash()

    def test_hostname_defaults_to_node_id(self, base_image):
        builder = ImageBuilder(3).configure(make_config(base_image, hostname=""))
        assert builder.network().hostname == "node3"

    def test_dns_entries_cleaned(self, base_image):
        builder = ImageBuilder(1).configure(make_config(base_image, dns_servers=("[1.1.1.1", "8.8.8.8]")))
        assert builder.config.dns_servers == ("1.1.1.1", "8.8.8.8")


class TestInputHash:
    """Tests for the build input hash."""

    def test_deterministic(self, backend, base_image):
        first = make_builder(backend, base_image).write_file("etc/motd", "hi\n")
        second = make_builder(backend, base_image).write_file("etc/motd", "hi\n")
        assert first.input_hash() == second.input_hash()

    def test_changes_with_operations(self, backend, base_image):
        plain = make_builder(backend, base_image)
        staged = make_builder(backend, base_image).mkdir("opt/tftpi")
        assert plain.input_hash() != staged.input_hash()

    def test_operation_order_matters(self, backend, base_image):
        a = make_builder(backend, base_image).mkdir("a").mkdir("b")
        b = make_builder(backend, base_image).mkdir("b").mkdir("a")
        assert a.input_hash() != b.input_hash()

    def test_changes_with_network(self, backend, base_image):
        a = make_builder(backend, base_image)
        b = make_builder(backend, base_image, static_ip="192.168.1.102/24")
        assert a.input_hash() != b.input_hash()

    def test_changes_with_source(self, backend, base_image, tmp_path):
        other = tmp_path / "images" / "other.img.xz"
        other.write_bytes(b"x")
        a = make_builder(backend, base_image)
        b = make_builder(backend, base_image, base_image_path=other)
        assert a.input_hash() != b.input_hash()

    def test_output_name(self, backend, base_image):
        builder = make_builder(backend, base_image)
        assert builder.output_name("abcdef0123456789") == "rk1-node1-abcdef012345.img.xz"


class TestCacheKey:
    def test_plain_key(self, backend, base_image):
        assert make_builder(backend, base_image).cache_key() == "ubuntu-2204-rk1-base-net"

    def test_augmented_key(self, backend, base_image):
        key = make_builder(backend, base_image, augment_cache_key=True).cache_key()
        assert key == (
            "ubuntu-2204-rk1-base-net+net:192.168.1.101/24"
            f"+base:{base_image.name}"
        )

    def test_base_image_key(self):
        assert base_image_key("ubuntu", "22.04", BoardType.RK1) == "baseimg:ubuntu:22.04:rk1"


class TestRun:
    """Tests for building and reusing images."""

    def test_fresh_build(self, ctx, cluster, backend, base_image):
        """Test a cache miss builds the image and publishes it."""
        builder = make_builder(backend, base_image)

        hit, cached = builder.check_cache(ctx, cluster)
        assert (hit, cached) == (False, None)

        result = builder.run(ctx, cluster)

        options = backend.prepared[0]
        assert options.hostname == "rk1-node1"
        assert options.ip_cidr == "192.168.1.101/24"
        assert options.gateway == "192.168.1.1"
        assert options.dns_servers == ("1.1.1.1", "8.8.8.8")
        assert backend.closed == 1
        assert backend.dirs == (base_image.parent, cluster.prep_dir, cluster.cache_dir / "images")
        assert Path(result.image_path).name == builder.output_name(result.input_hash)
        assert result.is_remote_cache is False
        assert result.input_hash == builder.input_hash()

        meta = cluster.remote_cache.stat(ctx, "ubuntu-2204-rk1-base-net")
        assert meta.filename == Path(result.image_path).name
        assert meta.tags[INPUT_HASH_TAG] == result.input_hash
        assert meta.tags["board"] == "rk1"
        assert meta.tags["hostname"] == "rk1-node1"

    def test_cache_reuse(self, ctx, cluster, backend, base_image):
        """Test a second run returns the cached image without building."""
        first = make_builder(backend, base_image).run(ctx, cluster)

        builder = make_builder(backend, base_image)
        hit, cached = builder.check_cache(ctx, cluster)
        assert hit is True
        assert cached.cache_key == "ubuntu-2204-rk1-base-net"
        assert cached.is_remote_cache is True
        assert cached.input_hash == first.input_hash

        assert builder.run(ctx, cluster) == cached
        assert len(backend.prepared) == 1

    def test_force_rebuild(self, ctx, cluster, backend, base_image, tmp_path):
        make_builder(backend, base_image).run(ctx, cluster)
        make_builder(backend, base_image, force_rebuild=True, output_dir=tmp_path / "fresh").run(ctx, cluster)
        assert len(backend.prepared) == 2

    def test_unpublished_build_skips_bmc_cache(self, ctx, cluster, backend, base_image):
        make_builder(backend, base_image).run(ctx, cluster, publish=False)
        assert cluster.remote_cache.exists(ctx, "ubuntu-2204-rk1-base-net") is False

    def test_staged_operations_passed_to_backend(self, ctx, cluster, backend, base_image):
        builder = make_builder(backend, base_image).mkdir("opt/tftpi").write_file("opt/tftpi/id", "1")
        builder.run(ctx, cluster, publish=False)
        assert [op.kind for op in backend.prepared[0].file_operations] == ["mkdir", "write"]

    def test_backend_closed_on_failure(self, ctx, cluster, backend, base_image, mocker):
        mocker.patch.object(backend, "prepare", side_effect=RuntimeError("kpartx failed"))
        with pytest.raises(RuntimeError):
            make_builder(backend, base_image).run(ctx, cluster)
        assert backend.closed == 1


class TestBaseImage:
    """Tests for resolving the base image."""

    def test_missing_path(self, ctx, cluster, backend, tmp_path):
        builder = make_builder(backend, tmp_path / "absent.img.xz")
        with pytest.raises(ValidationError, match="not found"):
            builder.resolve_base_image(ctx, cluster)

    def test_download_into_local_cache(self, ctx, cluster, backend):
        """Test a missing base image is fetched once and cached."""
        calls = []

        def source(os_type, version, board):
            calls.append((os_type, version, board))
            return io.BytesIO(b"downloaded base")

        cluster.base_image_source = source
        builder = make_builder(backend, None)

        first = builder.resolve_base_image(ctx, cluster)
        second = builder.resolve_base_image(ctx, cluster)

        assert first == second
        assert first.read_bytes() == b"downloaded base"
        assert calls == [("ubuntu", "22.04", BoardType.RK1)]
        meta = cluster.local_cache.stat(ctx, "baseimg:ubuntu:22.04:rk1")
        assert meta.os_version == "22.04"

    def test_no_source_configured(self, ctx, cluster, backend):
        builder = make_builder(backend, None)
        with pytest.raises(ValidationError, match="not cached"):
            builder.resolve_base_image(ctx, cluster)
