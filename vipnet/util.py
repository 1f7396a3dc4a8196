"""Address helpers, default-route discovery and MAC generation."""

from __future__ import annotations

import ipaddress
import logging
import secrets
import socket
import threading
from typing import Optional, Union

from vipnet import netlink

log = logging.getLogger(__name__)

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _parse_ip(address: str) -> Optional[_IPAddress]:
    if not isinstance(address, str) or "%" in address:
        return None
    try:
        return ipaddress.ip_address(address)
    except ValueError:
        return None


def lookup_host(dns_name: str) -> str:
    """Resolve ``dns_name`` and return its first address."""
    infos = socket.getaddrinfo(dns_name, None, type=socket.SOCK_STREAM)
    addresses = [info[4][0] for info in infos]
    if not addresses:
        raise LookupError(f"empty address for {dns_name}")
    return addresses[0]


def is_ip(address: str) -> bool:
    """True if ``address`` is an IPv4 or IPv6 literal."""
    return _parse_ip(address) is not None


def get_host_name(dns_name: str) -> str:
    """Return the first label of a fully qualified name."""
    if not dns_name:
        return ""
    return dns_name.split(".")[0]


def is_ipv4(address: str) -> bool:
    """True only for an IPv4 address, including IPv4-mapped IPv6 forms."""
    ip = _parse_ip(address)
    if ip is None:
        return False
    return ip.version == 4 or ip.ipv4_mapped is not None


def is_ipv6(address: str) -> bool:
    """True only for an IPv6 address that does not map an IPv4 one."""
    ip = _parse_ip(address)
    if ip is None:
        return False
    return ip.version == 6 and ip.ipv4_mapped is None


def get_full_mask(address: str) -> str:
    """Return ``/32`` for IPv4 and ``/128`` for IPv6."""
    if is_ipv4(address):
        return "/32"
    if is_ipv6(address):
        return "/128"
    raise ValueError(f"failed to parse {address} as either IPv4 or IPv6")


def _is_default(route: netlink.Route) -> bool:
    return route.dst is None or str(route.dst) == "0.0.0.0/0"


def get_default_gateway_interface() -> tuple[int, str]:
    """Return ``(index, name)`` of the link holding the IPv4 default route."""
    for route in netlink.route_list(netlink.FAMILY_V4):
        if _is_default(route):
            if route.link_index <= 0:
                raise LookupError("Found default route but could not determine interface")
            return route.link_index, netlink.link_name(route.link_index)
    raise LookupError("Unable to find default route")


def monitor_default_interface(stop_event: threading.Event, default_index: int) -> None:
    """Watch routes until stopped; raise if the default route on ``default_index`` goes."""
    for update in netlink.route_updates(stop_event):
        route = update.route
        log.debug("type: %d, route: %s", update.type, route)
        if (
            update.type == netlink.RTM_DELROUTE
            and _is_default(route)
            and route.link_index == default_index
        ):
            raise RuntimeError("default route deleted and the default interface may be invalid")


def generate_mac() -> str:
    """Return a random MAC address under a fixed manufacturer prefix."""
    tail = secrets.token_bytes(3)
    mac = "00:00:6C:" + ":".join(f"{byte:02x}" for byte in tail)
    log.info("Generated mac: %s", mac)
    return mac