"""Host network inspection through ``ip -j`` (iproute2 JSON output)."""
from __future__ import annotations

import ipaddress
import json
import logging
import socket
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

LOGGER = logging.getLogger(__name__)

STANDARD_MTU = 1500
JUMBO_MTU_MIN = 8000
JUMBO_MTU_MAX = 9001


class NetworkError(RuntimeError):
    """Raised when host network information cannot be read."""


@dataclass(frozen=True)
class Interface:
    """One network interface and its configured addresses."""

    name: str
    mtu: int
    addresses: tuple[str, ...] = ()

    def has_address(self, ip: str) -> bool:
        target = ipaddress.ip_address(ip)
        return any(ipaddress.ip_address(addr) == target for addr in self.addresses)


class Network(Protocol):
    """Queries the node IP resolution and MTU checks need from the host."""

    def interfaces(self) -> list[Interface]: ...

    def default_route_ipv4(self) -> str: ...

    def lookup_ip(self, name: str) -> list[str]: ...


def mtu_acceptable(mtu: int) -> bool:
    """Return ``True`` for standard (<=1500) or jumbo (8000-9001) MTUs."""
    return mtu <= STANDARD_MTU or JUMBO_MTU_MIN <= mtu <= JUMBO_MTU_MAX


def interface_for_ip(interfaces: Sequence[Interface], ip: str) -> Interface | None:
    """Return the interface that carries *ip*."""
    for item in interfaces:
        if item.has_address(ip):
            return item
    return None


def validate_interface_mtu(interfaces: Sequence[Interface], ip: str) -> None:
    """Raise :class:`NetworkError` when *ip*'s interface has an unsupported MTU."""
    item = interface_for_ip(interfaces, ip)
    if item is None:
        raise NetworkError(f"no network interface found with IP {ip}")
    if not mtu_acceptable(item.mtu):
        raise NetworkError(
            f"network interface {item.name} with IP {ip} has MTU {item.mtu}; "
            f"MTU must be <= {STANDARD_MTU} or between {JUMBO_MTU_MIN} and {JUMBO_MTU_MAX}"
        )


def parse_ip_addr(output: str) -> list[Interface]:
    """Parse ``ip -j addr`` output."""
    try:
        data = json.loads(output or "[]")
    except json.JSONDecodeError as exc:
        raise NetworkError(f"invalid ip addr output: {exc}") from exc
    interfaces: list[Interface] = []
    for entry in data:
        addresses = tuple(
            str(info["local"]) for info in entry.get("addr_info", []) if info.get("local")
        )
        interfaces.append(
            Interface(name=str(entry.get("ifname", "")), mtu=int(entry.get("mtu", 0)), addresses=addresses)
        )
    return interfaces


def parse_default_route(output: str, interfaces: Sequence[Interface]) -> str:
    """Return the IPv4 source address of the default route."""
    try:
        routes = json.loads(output or "[]")
    except json.JSONDecodeError as exc:
        raise NetworkError(f"invalid ip route output: {exc}") from exc
    for route in routes:
        if route.get("prefsrc"):
            return str(route["prefsrc"])
        device = route.get("dev")
        for item in interfaces:
            if item.name != device:
                continue
            for addr in item.addresses:
                if ipaddress.ip_address(addr).version == 4:
                    return addr
    raise NetworkError("no default IPv4 route found")


@dataclass
class HostNetwork:
    """Default :class:`Network` implementation backed by iproute2 and DNS."""

    ip_bin: str = "ip"
    resolver: Callable[..., list] = field(default=socket.getaddrinfo)

    def interfaces(self) -> list[Interface]:
        return parse_ip_addr(self._ip("-j", "addr"))

    def default_route_ipv4(self) -> str:
        return parse_default_route(self._ip("-j", "-4", "route", "show", "default"), self.interfaces())

    def lookup_ip(self, name: str) -> list[str]:
        """Resolve *name*; resolution errors yield an empty list."""
        try:
            results = self.resolver(name, None)
        except (OSError, UnicodeError) as exc:
            LOGGER.debug("Resolving %s failed: %s", name, exc)
            return []
        addresses: list[str] = []
        for entry in results:
            addr = str(entry[4][0])
            if addr not in addresses:
                addresses.append(addr)
        return addresses

    def _ip(self, *args: str) -> str:
        argv = [self.ip_bin, *args]
        try:
            result = subprocess.run(argv, capture_output=True, text=True, check=False)  # noqa: S603
        except FileNotFoundError as exc:
            raise NetworkError(f"{self.ip_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise NetworkError(f"{' '.join(argv)} failed (exit {result.returncode}): {message}")
        return result.stdout or ""


__all__ = [
    "HostNetwork",
    "Interface",
    "Network",
    "NetworkError",
    "interface_for_ip",
    "mtu_acceptable",
    "parse_default_route",
    "parse_ip_addr",
    "validate_interface_mtu",
]
