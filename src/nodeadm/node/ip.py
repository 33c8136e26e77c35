"""Node IP resolution and remote node network membership.

The node IP is resolved the way kubelet picks it:

1. an explicit ``--node-ip`` kubelet flag holding a specified IPv4 address;
2. a DNS lookup of the node name, keeping the first IPv4 address that is
   usable and present on a local interface;
3. the source address of the default IPv4 route.
"""
from __future__ import annotations

import ipaddress
import socket
from collections.abc import Callable, Sequence

from ..system.network import Network, NetworkError

NODE_IP_FLAG = "--node-ip="


class NodeIPError(RuntimeError):
    """Raised when the node IP cannot be determined or is not allowed."""


def extract_node_ip_flag(flags: Sequence[str]) -> ipaddress.IPv4Address | None:
    """Return the ``--node-ip`` value from kubelet *flags*, if present."""
    joined = " ".join(flags)
    if joined.count(NODE_IP_FLAG) > 1:
        raise NodeIPError(f"multiple {NODE_IP_FLAG} flags found in kubelet args")
    value = ""
    for item in joined.split():
        if item.startswith(NODE_IP_FLAG):
            value = item[len(NODE_IP_FLAG) :]
            break
    if not value:
        return None
    try:
        parsed = ipaddress.ip_address(value)
    except ValueError as exc:
        raise NodeIPError(
            f"invalid ip {value} in --node-ip flag. only 1 IPv4 address is allowed"
        ) from exc
    if not isinstance(parsed, ipaddress.IPv4Address):
        raise NodeIPError(f"invalid IPv6 address {value} in --node-ip flag. only IPv4 is supported")
    return parsed


def validate_node_ip(ip: str, network: Network) -> None:
    """Check that *ip* is a usable unicast address assigned to this host."""
    addr = ipaddress.ip_address(ip)
    if addr.is_loopback:
        raise NodeIPError("nodeIP can't be loopback address")
    if addr.is_multicast:
        raise NodeIPError("nodeIP can't be a multicast address")
    if addr.is_link_local:
        raise NodeIPError("nodeIP can't be a link-local unicast address")
    if addr.is_unspecified:
        raise NodeIPError("nodeIP can't be an all zeros address")
    for item in network.interfaces():
        if item.has_address(ip):
            return
    raise NodeIPError(f'node IP: "{ip}" not found in the host\'s network interfaces')


def _hostname() -> str:
    return socket.gethostname().strip().lower()


def get_node_ip(
    flags: Sequence[str],
    iam_node_name: str,
    network: Network,
    *,
    hostname: Callable[[], str] = _hostname,
) -> str:
    """Resolve the IPv4 address kubelet will register for this node."""
    flag_ip = extract_node_ip_flag(flags)
    if flag_ip is not None and not flag_ip.is_unspecified:
        return str(flag_ip)

    node_name = iam_node_name or hostname()
    try:
        literal = ipaddress.ip_address(node_name)
    except ValueError:
        literal = None
    if literal is not None:
        if not isinstance(literal, ipaddress.IPv4Address):
            raise NodeIPError(f"hostname address {literal} is not IPv4")
        return str(literal)

    for candidate in network.lookup_ip(node_name):
        try:
            if ipaddress.ip_address(candidate).version != 4:
                continue
            validate_node_ip(candidate, network)
        except (NodeIPError, NetworkError, ValueError):
            continue
        return candidate

    try:
        return network.default_route_ipv4()
    except NetworkError as exc:
        raise NodeIPError(f"can't get ip address of node {node_name}. error: {exc}") from exc


def validate_ip_in_remote_networks(ip: str, networks: Sequence[Sequence[str]]) -> None:
    """Require *ip* to fall inside one of the remote node network CIDRs.

    Networks and their CIDRs are checked in order; the first match wins.
    """
    addr = ipaddress.ip_address(ip)
    cidrs: list[str] = []
    for network in networks:
        for cidr in network:
            if not cidr:
                continue
            cidrs.append(cidr)
            try:
                block = ipaddress.ip_network(cidr, strict=False)
            except ValueError as exc:
                raise NodeIPError(f"invalid remote node network CIDR {cidr}: {exc}") from exc
            if addr in block:
                return
    raise NodeIPError(
        f"node IP {ip} is not in any of the remote network CIDR blocks: [{' '.join(cidrs)}]; "
        "use .spec.kubelet.flags field in config-source yaml to set node-ip to an IP within one of "
        "these CIDR blocks(e.g. --node-ip=10.0.0.1) or use --skip node-ip-validation"
    )


__all__ = [
    "NODE_IP_FLAG",
    "NodeIPError",
    "extract_node_ip_flag",
    "get_node_ip",
    "validate_ip_in_remote_networks",
    "validate_node_ip",
]
