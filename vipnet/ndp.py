"""Unsolicited IPv6 neighbour advertisements for a VIP."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from typing import Union

log = logging.getLogger(__name__)

ICMPV6_NEIGHBOR_ADVERTISEMENT = 136
FLAG_ROUTER = 0x80
FLAG_SOLICITED = 0x40
FLAG_OVERRIDE = 0x20
OPTION_TARGET_LINK_LAYER_ADDRESS = 2
ALL_NODES = "ff02::1"

_HOP_LIMIT = 255
_HEADER = struct.Struct(">BBHB3x")
_OPTION = struct.Struct(">BB")


def _mac_bytes(mac: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(mac, (bytes, bytearray)):
        raw = bytes(mac)
    else:
        try:
            raw = bytes(int(part, 16) for part in mac.replace("-", ":").split(":"))
        except ValueError as exc:
            raise ValueError(f"{mac!r} is not an Ethernet MAC address") from exc
    if len(raw) != 6:
        raise ValueError(f"{mac!r} is not an Ethernet MAC address")
    return raw


def build_neighbor_advertisement(target, hardware_addr, gratuitous: bool = True) -> bytes:
    """Return an ICMPv6 neighbour advertisement for ``target`` (checksum left to the kernel)."""
    address = ipaddress.ip_address(target)
    if address.version != 6:
        raise ValueError(f"{target} is not an IPv6 address")
    mac = _mac_bytes(hardware_addr)
    flags = FLAG_OVERRIDE if gratuitous else FLAG_SOLICITED
    header = _HEADER.pack(ICMPV6_NEIGHBOR_ADVERTISEMENT, 0, 0, flags)
    option = _OPTION.pack(OPTION_TARGET_LINK_LAYER_ADDRESS, 1) + mac
    return header + address.packed + option


def _hardware_address(iface_name: str) -> str:
    with open(f"/sys/class/net/{iface_name}/address", encoding="ascii") as handle:
        return handle.read().strip()


class NdpResponder:
    """Sends neighbour advertisements on one interface."""

    def __init__(self, iface_name: str) -> None:
        try:
            self._index = socket.if_nametoindex(iface_name)
            self._hardware_addr = _hardware_address(iface_name)
        except OSError as exc:
            raise OSError(f"failed to get interface {iface_name!r}: {exc}") from exc
        self._intf = iface_name
        try:
            sock = socket.socket(socket.AF_INET6, socket.SOCK_RAW, socket.IPPROTO_ICMPV6)
        except OSError as exc:
            raise OSError(f"creating NDP responder for {iface_name!r}: {exc}") from exc
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, _HOP_LIMIT)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, _HOP_LIMIT)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_IF, self._index)
        except OSError as exc:
            sock.close()
            raise OSError(f"creating NDP responder for {iface_name!r}: {exc}") from exc
        self._sock = sock

    def __enter__(self) -> "NdpResponder":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the responder's socket."""
        self._sock.close()

    def send_gratuitous(self, address: str) -> None:
        """Advertise ``address`` to all nodes on the link."""
        try:
            ip = ipaddress.ip_address(address)
        except ValueError as exc:
            raise ValueError(f"failed to parse address {address}") from exc
        log.info(
            "Broadcasting NDP update for %s (%s) via %s", address, self._hardware_addr, self._intf
        )
        message = build_neighbor_advertisement(ip, self._hardware_addr, True)
        self._sock.sendto(message, (ALL_NODES, 0, 0, self._index))