"""Command line entry point."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from tftpi.cluster import Cluster
from tftpi.config.settings import DEFAULT_CACHE_DIR, load_settings
from tftpi.context import Context
from tftpi.domain.models import (
    MAX_NODE_ID,
    MIN_NODE_ID,
    PREPARE_ONLY_NODE,
    BoardType,
    Phase,
    clean_dns_servers,
    parse_node_id,
)
from tftpi.exceptions import TftpiError, ValidationError
from tftpi.logging import LoggerFactory, setup_logging
from tftpi.provision.actions import ScriptAction, node_report
from tftpi.provision.engine import ProvisioningEngine, image_result_for_path
from tftpi.provision.image_builder import ImageBuildConfig, ImageBuilder
from tftpi.provision.installer import InstallConfig
from tftpi.remote.bmc import PowerState
from tftpi.state.models import NodeState

log = LoggerFactory.for_cli()

STATUS_COLUMNS = ("NODE", "BOARD", "OS", "LAST OPERATION", "RESULT", "LAST TIME", "IP ADDRESS")
DEFAULT_OS_VERSION = "22.04"


def _node_arg(value: str) -> int:
    try:
        return parse_node_id(value)
    except TftpiError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _prepare_node_arg(value: str) -> int:
    try:
        return parse_node_id(value, allow_prepare_only=True)
    except TftpiError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tftpi", description="Turing Pi node provisioning")
    parser.add_argument("-c", "--config", type=Path, help="Path to a JSON settings file")
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=DEFAULT_CACHE_DIR,
        help=f"State and cache directory (default: {DEFAULT_CACHE_DIR})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw UART output (very verbose)")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show recorded node state")
    status.add_argument("node", nargs="?", type=_node_arg)
    status.add_argument(
        "--clear", action="store_true", help="Mark an interrupted phase as failed"
    )
    status.set_defaults(func=cmd_status)

    prepare = sub.add_parser("prepare-image", help="Customize an image for a node")
    prepare.add_argument("node", type=_prepare_node_arg)
    prepare.add_argument("-i", "--image", type=Path, required=True, help="Base image (.img.xz)")
    prepare.add_argument("--ip", required=True, help="Static address with CIDR, e.g. 192.168.1.101/24")
    prepare.add_argument("--hostname", default="", help="Hostname (default: node<N>)")
    prepare.add_argument("--gateway", default="", help="Default gateway")
    prepare.add_argument("--dns", default="", help="Comma separated DNS servers")
    prepare.add_argument("--board", default=BoardType.RK1.value, choices=[b.value for b in BoardType])
    prepare.add_argument("--os-version", default=DEFAULT_OS_VERSION)
    prepare.add_argument("--output-dir", type=Path, help="Where to write the prepared image")
    prepare.add_argument("--cache-key", help="Also publish the image to the BMC cache under this key")
    prepare.set_defaults(func=cmd_prepare_image)

    install = sub.add_parser("install-os", help="Flash a prepared image onto a node")
    install.add_argument("node", type=_node_arg)
    install.add_argument("-i", "--image", type=Path, required=True, help="Prepared image (.img.xz)")
    install.add_argument("-u", "--user", default="ubuntu", help="Login created by the image")
    install.add_argument(
        "--password", default="ubuntu", help="Initial password for the first-boot change"
    )
    install.add_argument("--new-password", required=True, help="Password to set on first boot")
    install.add_argument("--board", default=BoardType.RK1.value, choices=[b.value for b in BoardType])
    install.set_defaults(func=cmd_install_os)

    configure = sub.add_parser("configure", help="Run post-install configuration on a node")
    configure.add_argument("node", type=_node_arg)
    configure.add_argument("-u", "--user", default="ubuntu", help="Username for SSH connection")
    configure.add_argument("-p", "--password", required=True, help="Password for SSH connection")
    configure.add_argument("--script", type=Path, help="Shell script to upload and run")
    configure.add_argument("--sudo", action="store_true", help="Run the script with sudo")
    configure.set_defaults(func=cmd_configure)

    power = sub.add_parser("power", help="Control node power through the BMC")
    power.add_argument("action", choices=["on", "off", "reset", "status"])
    power.add_argument("node", nargs="?", type=_node_arg)
    power.set_defaults(func=cmd_power)

    return parser


# ==============================================================================
# Status
# ==============================================================================


def operation_result(node: NodeState) -> str:
    label = node.last_operation
    if not label:
        return "-"
    if label.startswith("Failed"):
        return f"failed: {node.last_error}" if node.last_error else "failed"
    if label.startswith("Start"):
        return "running"
    return "ok"


def status_row(node_id: int, node: NodeState | None) -> tuple[str, ...]:
    if node is None:
        return (str(node_id), "-", "-", "-", "-", "-", "-")
    os_name = " ".join(part for part in (node.os_type, node.os_version) if part) or "-"
    when = node.last_operation_time.strftime("%Y-%m-%d %H:%M:%S") if node.last_operation_time else "-"
    return (
        str(node_id),
        node.board_type or "-",
        os_name,
        node.last_operation or "-",
        operation_result(node),
        when,
        node.ip_address or "-",
    )


def format_table(rows: list[tuple[str, ...]]) -> str:
    widths = [len(c) for c in STATUS_COLUMNS]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]
    lines = []
    for row in [STATUS_COLUMNS, *rows]:
        lines.append("  ".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def cmd_status(args, cluster: Cluster, ctx: Context) -> int:
    node_ids = [args.node] if args.node else list(range(MIN_NODE_ID, MAX_NODE_ID + 1))
    if args.clear:
        for node_id in node_ids:
            phase = ProvisioningEngine(cluster, node_id).clear_running()
            if phase is not None:
                print(f"Node {node_id}: cleared interrupted {phase.value}")
    rows = [status_row(n, cluster.state.get_node_state(n)) for n in node_ids]
    print(format_table(rows))
    return 0


# ==============================================================================
# Provisioning
# ==============================================================================


def cmd_prepare_image(args, cluster: Cluster, ctx: Context) -> int:
    hostname = args.hostname or (f"node{args.node}" if args.node else "tftpi")
    config = ImageBuildConfig(
        cache_key=args.cache_key or f"prepare-{hostname}",
        version=args.os_version,
        board=args.board,
        static_ip=args.ip,
        hostname=hostname,
        gateway=args.gateway,
        dns_servers=tuple(clean_dns_servers(args.dns)),
        base_image_path=args.image,
        output_dir=args.output_dir,
    )
    builder = ImageBuilder(args.node).configure(config)
    publish = bool(args.cache_key)
    if args.node == PREPARE_ONLY_NODE:
        result = builder.run(ctx, cluster, publish=publish)
    else:
        result = ProvisioningEngine(cluster, args.node).build_image(ctx, builder, publish=publish)
    print(result.image_path)
    return 0


def cmd_install_os(args, cluster: Cluster, ctx: Context) -> int:
    board = BoardType.parse(args.board)
    image = image_result_for_path(args.image, board, cluster.state.get_node_state(args.node))
    config = InstallConfig(
        new_password=args.new_password,
        username=args.user,
        initial_password=args.password,
    )
    engine = ProvisioningEngine(cluster, args.node)
    if engine.install_os(ctx, image, config):
        print(f"Node {args.node}: {Phase.OS_INSTALLATION.complete_label}")
    else:
        print(f"Node {args.node}: image already installed, nothing to do")
    return 0


def cmd_configure(args, cluster: Cluster, ctx: Context) -> int:
    if args.script is not None:
        action = ScriptAction(args.script, sudo_password=args.password if args.sudo else None)
    else:
        action = node_report
    engine = ProvisioningEngine(cluster, args.node)
    ran = engine.configure(ctx, action, args.user, args.password, base_dir=cluster.cache_dir)
    if ran:
        print(f"Node {args.node}: {Phase.POST_INSTALLATION.complete_label}")
    else:
        print(f"Node {args.node}: already configured, nothing to do")
    return 0


def cmd_power(args, cluster: Cluster, ctx: Context) -> int:
    if args.action != "status" and args.node is None:
        raise ValidationError("node", f"required for power {args.action}")
    with cluster.bmc() as bmc:
        if args.action == "status":
            states = bmc.power_status(ctx)
            for node_id in range(MIN_NODE_ID, MAX_NODE_ID + 1):
                print(f"node{node_id}: {states.get(node_id, PowerState.UNKNOWN).value}")
        elif args.action == "on":
            bmc.power_on(ctx, args.node)
        elif args.action == "off":
            bmc.power_off(ctx, args.node)
        else:
            bmc.power_reset(ctx, args.node)
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.config, args.cache_dir)
    setup_logging(verbose=args.verbose, trace=args.trace, log_dir=settings.log_dir)
    ctx = Context.background()
    try:
        with Cluster(settings) as cluster:
            return args.func(args, cluster, ctx)
    except (TftpiError, OSError) as exc:
        log.debug(f"{args.command} failed: {exc!r}")
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        ctx.cancel("interrupted")
        print("Error: interrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
