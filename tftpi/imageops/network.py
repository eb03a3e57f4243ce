"""Render static network configuration files for a prepared image.

The renderers are pure; the backend decides which files the image needs
(netplan on Ubuntu, ``/etc/network/interfaces`` otherwise) and writes the
returned operations like any other staged file operation.
"""

from __future__ import annotations

from tftpi.domain.models import NetworkConfig, WriteFile, clean_dns_servers, netmask_for_prefix

FALLBACK_DNS = ("8.8.8.8", "8.8.4.4")
GENERATED_HEADER = "# Generated by tftpi\n"

NETPLAN_DIR = "etc/netplan"
NETPLAN_FILE = "etc/netplan/01-netcfg.yaml"
INTERFACES_FILE = "etc/network/interfaces"


def dns_servers_for(net: NetworkConfig) -> list[str]:
    servers = clean_dns_servers(list(net.dns_servers))
    return servers or list(FALLBACK_DNS)


def render_hostname(net: NetworkConfig) -> str:
    return f"{net.hostname}\n"


def render_hosts(net: NetworkConfig) -> str:
    return (
        "127.0.0.1\tlocalhost\n"
        f"127.0.1.1\t{net.hostname}\n"
        "\n"
        "# The following lines are desirable for IPv6 capable hosts\n"
        "::1\tlocalhost ip6-localhost ip6-loopback\n"
        "ff02::1\tip6-allnodes\n"
        "ff02::2\tip6-allrouters\n"
    )


def render_netplan(net: NetworkConfig, use_routes: bool = False) -> str:
    """Netplan v2 document for eth0 with a static address.

    ``use_routes`` emits a default route block instead of the older
    ``gateway4`` key.
    """
    dns = ", ".join(dns_servers_for(net))
    lines = [
        GENERATED_HEADER.rstrip("\n"),
        "network:",
        "  version: 2",
        "  ethernets:",
        "    eth0:",
        "      dhcp4: no",
        f"      addresses: [{net.normalized_cidr}]",
    ]
    if net.gateway:
        if use_routes:
            lines += [
                "      routes:",
                "        - to: default",
                f"          via: {net.gateway}",
            ]
        else:
            lines.append(f"      gateway4: {net.gateway}")
    lines += [
        "      nameservers:",
        f"        addresses: [{dns}]",
    ]
    return "\n".join(lines) + "\n"


def render_interfaces(net: NetworkConfig) -> str:
    """Debian ``interfaces(5)`` stanza for eth0.

    Raises:
        ValidationError: When the prefix is not /8, /16 or /24
    """
    netmask = netmask_for_prefix(net.prefix_length)
    body = [
        GENERATED_HEADER.rstrip("\n"),
        "# The loopback network interface",
        "auto lo",
        "iface lo inet loopback",
        "",
        "# The primary network interface",
        "auto eth0",
        "iface eth0 inet static",
        f"    address {net.ip_address}",
        f"    netmask {netmask}",
    ]
    if net.gateway:
        body.append(f"    gateway {net.gateway}")
    body.append(f"    dns-nameservers {' '.join(dns_servers_for(net))}")
    return "\n".join(body) + "\n"


def render_resolv_conf(net: NetworkConfig) -> str:
    return GENERATED_HEADER + "".join(f"nameserver {s}\n" for s in dns_servers_for(net))


def prefers_routes(existing_netplan: list[str]) -> bool:
    """True when any existing netplan file uses ``routes:`` without ``gateway4:``."""
    return any("routes:" in text and "gateway4:" not in text for text in existing_netplan)


def network_file_operations(
    net: NetworkConfig,
    *,
    uses_netplan: bool,
    existing_netplan: list[str] | None = None,
) -> list[WriteFile]:
    """Every file write needed to give the image its network identity."""
    net.validate()
    # Both styles share the same supported prefix set.
    netmask_for_prefix(net.prefix_length)
    ops = [
        WriteFile("etc/hostname", render_hostname(net).encode(), 0o644),
        WriteFile("etc/hosts", render_hosts(net).encode(), 0o644),
    ]
    if uses_netplan:
        use_routes = prefers_routes(existing_netplan or [])
        ops.append(WriteFile(NETPLAN_FILE, render_netplan(net, use_routes).encode(), 0o600))
    else:
        ops.append(WriteFile(INTERFACES_FILE, render_interfaces(net).encode(), 0o644))
        ops.append(WriteFile("etc/resolv.conf", render_resolv_conf(net).encode(), 0o644))
    return ops
