"""Per-node provisioning state machine.

Phases run in order: ImageCustomization, OSInstallation, PostInstallation.
Each phase is keyed by an input hash recorded in the node's state. A phase
whose hash is unchanged and which completed last time is skipped; a phase
whose Start label was never followed by Complete or Failed is refused until
an operator clears it.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from tftpi.context import Context
from tftpi.domain.models import BoardType, ImageResult, Phase, PhaseStatus, parse_node_id
from tftpi.exceptions import PhaseAlreadyRunningError, PhaseError
from tftpi.logging import LoggerFactory
from tftpi.provision.image_builder import ImageBuilder
from tftpi.provision.installer import INSTALL_STEPS, InstallConfig, OSInstaller
from tftpi.provision.post_installer import PostInstallAction, PostInstaller, action_name
from tftpi.state.models import NodeState

CLEARED_REASON = "cleared by operator"

_HASH_FIELDS = {
    Phase.IMAGE_CUSTOMIZATION: "last_image_hash",
    Phase.OS_INSTALLATION: "last_install_hash",
    Phase.POST_INSTALLATION: "last_config_hash",
}


def _sha256(*parts: str) -> str:
    h = hashlib.sha256()
    for part in parts:
        h.update(part.encode("utf-8"))
        h.update(b"\n")
    return h.hexdigest()


def install_hash(image_hash: str, board: BoardType, username: str) -> str:
    return _sha256(image_hash, board.value, username)


def config_hash(install_input_hash: str, username: str, action: Callable) -> str:
    return _sha256(install_input_hash, username, action_name(action))


def running_labels(phase: Phase) -> set[str]:
    """Last-operation labels that mean ``phase`` has not finished."""
    labels = {phase.start_label}
    # The installer records its own sub-steps, so a crash mid-install can
    # leave StartFlash or CompleteBootMonitor rather than StartOSInstallation.
    if phase is Phase.OS_INSTALLATION:
        for step in INSTALL_STEPS:
            labels.update({f"Start{step}", f"Complete{step}", f"Failed{step}"})
    return labels


def image_result_for_path(path: Path | str, board: BoardType, recorded: NodeState | None = None) -> ImageResult:
    """ImageResult for an already prepared image file.

    Reuses the recorded input hash when the path is the node's last built
    image; otherwise the hash covers the path, size and modification time.
    """
    path = Path(path).absolute()
    if recorded is not None and recorded.last_image_hash and recorded.last_image_path == str(path):
        input_hash = recorded.last_image_hash
    else:
        st = path.stat()
        input_hash = _sha256(f"file:{path}", str(st.st_size), str(st.st_mtime_ns))
    return ImageResult(image_path=str(path), input_hash=input_hash, board=board)


class ProvisioningEngine:
    def __init__(self, cluster, node_id: int):
        self.cluster = cluster
        self.node_id = parse_node_id(node_id)
        self.log = LoggerFactory.for_engine(self.node_id)

    @property
    def state(self):
        return self.cluster.state

    def node_state(self) -> NodeState:
        return self.state.get_node_state(self.node_id) or NodeState(node_id=self.node_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def phase_status(self, phase: Phase, node: NodeState | None = None) -> PhaseStatus:
        node = node or self.node_state()
        if node.last_operation in running_labels(phase):
            return PhaseStatus.RUNNING
        if node.last_operation == phase.failed_label:
            return PhaseStatus.FAILED
        if getattr(node, _HASH_FIELDS[phase]):
            return PhaseStatus.COMPLETED
        return PhaseStatus.PENDING

    def running_phase(self) -> Phase | None:
        node = self.node_state()
        for phase in Phase:
            if self.phase_status(phase, node) is PhaseStatus.RUNNING:
                return phase
        return None

    def clear_running(self) -> Phase | None:
        """Mark an interrupted phase as failed so it can be run again."""
        phase = self.running_phase()
        if phase is None:
            return None
        self.log.warning(f"Clearing interrupted {phase.value} on node {self.node_id}")
        self.state.record_operation(self.node_id, phase.failed_label, CLEARED_REASON)
        return phase

    # ------------------------------------------------------------------
    # Phase runner
    # ------------------------------------------------------------------

    def should_skip(self, phase: Phase, input_hash: str) -> bool:
        node = self.node_state()
        status = self.phase_status(phase, node)
        if status is PhaseStatus.RUNNING:
            raise PhaseAlreadyRunningError(phase.value, self.node_id)
        return (
            status is PhaseStatus.COMPLETED
            and bool(input_hash)
            and getattr(node, _HASH_FIELDS[phase]) == input_hash
        )

    def run_phase(
        self,
        ctx: Context,
        phase: Phase,
        input_hash: str,
        func: Callable[[], Any],
        completed: Callable[[Any], dict[str, Any]] | None = None,
    ) -> tuple[bool, Any]:
        """Run ``func`` as ``phase`` unless its inputs already completed.

        Returns ``(ran, result)``. ``completed`` maps the result to extra
        state properties written with the phase's input hash.

        Raises:
            PhaseAlreadyRunningError: The phase has an unfinished Start record
            PhaseError: ``func`` failed; the cause is chained
        """
        if self.should_skip(phase, input_hash):
            self.log.info(f"{phase.value} inputs unchanged for node {self.node_id}, skipping")
            return False, None

        ctx.check()
        self.state.record_operation(self.node_id, phase.start_label)
        try:
            result = func()
            properties = dict(completed(result)) if completed is not None else {}
            if input_hash:
                properties[_HASH_FIELDS[phase]] = input_hash
            if properties:
                self.state.update_node_properties(self.node_id, properties)
        except Exception as exc:
            self.state.record_operation(self.node_id, phase.failed_label, exc)
            raise PhaseError(phase.value, self.node_id, str(exc)) from exc
        except BaseException as exc:
            self.state.record_operation(self.node_id, phase.failed_label, repr(exc))
            raise
        self.state.record_operation(self.node_id, phase.complete_label)
        return True, result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def build_image(self, ctx: Context, builder: ImageBuilder, *, publish: bool = True) -> ImageResult:
        input_hash = builder.input_hash()
        config = builder.config
        node = self.node_state()
        if (
            self.should_skip(Phase.IMAGE_CUSTOMIZATION, input_hash)
            and node.last_image_path
            and Path(node.last_image_path).is_file()
        ):
            self.log.info(f"Reusing image {node.last_image_path} for node {self.node_id}")
            return ImageResult(
                image_path=node.last_image_path,
                input_hash=input_hash,
                board=config.board,
                cache_key=builder.cache_key(),
            )

        def completed(result: ImageResult) -> dict[str, Any]:
            net = builder.network()
            return {
                "last_image_path": result.image_path,
                "last_image_time": datetime.now(timezone.utc),
                "board_type": config.board.value,
                "os_type": config.os_type,
                "os_version": config.version,
                "hostname": net.hostname,
                "ip_address": net.ip_address,
                "prefix_length": net.prefix_length,
                "gateway": net.gateway,
            }

        # Forget the old hash so a missing image file is never treated as done.
        self.state.update_node_properties(self.node_id, {"last_image_hash": ""})
        _, result = self.run_phase(
            ctx,
            Phase.IMAGE_CUSTOMIZATION,
            input_hash,
            lambda: builder.run(ctx, self.cluster, publish=publish),
            completed,
        )
        return result

    def install_os(self, ctx: Context, image: ImageResult, config: InstallConfig) -> bool:
        """Install ``image``; False when the same image was already installed."""
        input_hash = install_hash(image.input_hash, image.board, config.username)
        installer = OSInstaller(
            self.cluster,
            self.node_id,
            config,
            record=lambda label, error: self.state.record_operation(self.node_id, label, error),
        )

        def completed(duration: float) -> dict[str, Any]:
            return {
                "last_install_time": datetime.now(timezone.utc),
                "last_install_duration": round(duration, 1),
                "password_changed": True,
                "board_type": image.board.value,
            }

        ran, _ = self.run_phase(
            ctx,
            Phase.OS_INSTALLATION,
            input_hash,
            lambda: installer.install(ctx, image),
            completed,
        )
        return ran

    def configure(
        self,
        ctx: Context,
        action: PostInstallAction,
        username: str,
        password: str,
        *,
        base_dir: Path | str | None = None,
    ) -> bool:
        """Run a post-install action; False when it already ran for this install."""
        node = self.node_state()
        input_hash = config_hash(node.last_install_hash, username, action)
        post = PostInstaller(
            self.cluster,
            self.node_id,
            action,
            username,
            password,
            base_dir=base_dir,
            record_result=False,
        )

        def completed(_result) -> dict[str, Any]:
            return {"last_config_time": datetime.now(timezone.utc)}

        ran, _ = self.run_phase(
            ctx, Phase.POST_INSTALLATION, input_hash, lambda: post.run(ctx), completed
        )
        return ran

    def provision(
        self,
        ctx: Context,
        builder: ImageBuilder,
        install: InstallConfig,
        action: PostInstallAction | None = None,
    ) -> ImageResult:
        """Run every phase in order for this node."""
        image = self.build_image(ctx, builder)
        self.install_os(ctx, image, install)
        if action is not None:
            self.configure(ctx, action, install.username, install.new_password)
        return image
