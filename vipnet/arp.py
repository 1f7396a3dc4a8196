"""Gratuitous ARP construction and sending."""

from __future__ import annotations

import ipaddress
import itertools
import socket
import struct
import sys
import threading
from dataclasses import dataclass
from typing import Union

OP_ARP_REQUEST = 1
OP_ARP_REPLY = 2
HW_LEN = 6
IPV4_LEN = 4

ETHERNET_BROADCAST = b"\xff" * HW_LEN

_ETH_P_ARP = 0x0806
_HEADER = struct.Struct(">HHBBH")

# Alternate between reply and request: different devices honour different ones.
_opcodes = itertools.cycle((OP_ARP_REPLY, OP_ARP_REQUEST))
_opcode_lock = threading.Lock()


@dataclass(frozen=True)
class ArpMessage:
    """An ARP message for Ethernet and IPv4."""

    opcode: int
    sender_hardware_address: bytes
    sender_protocol_address: bytes
    target_hardware_address: bytes
    target_protocol_address: bytes
    hardware_type: int = 1
    protocol_type: int = 0x0800
    hardware_address_length: int = HW_LEN
    protocol_address_length: int = IPV4_LEN

    def to_bytes(self) -> bytes:
        """Return the wire representation of the message."""
        header = _HEADER.pack(
            self.hardware_type,
            self.protocol_type,
            self.hardware_address_length,
            self.protocol_address_length,
            self.opcode,
        )
        return (
            header
            + self.sender_hardware_address
            + self.sender_protocol_address
            + self.target_hardware_address
            + self.target_protocol_address
        )


def _ipv4_bytes(ip: Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]) -> bytes:
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError as exc:
        raise ValueError(f"{str(ip)!r} is not an IPv4 address") from exc
    if parsed.version == 6:
        if parsed.ipv4_mapped is None:
            raise ValueError(f"{str(ip)!r} is not an IPv4 address")
        parsed = parsed.ipv4_mapped
    return parsed.packed


def _mac_bytes(mac: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(mac, (bytes, bytearray)):
        return bytes(mac)
    try:
        return bytes(int(part, 16) for part in mac.replace("-", ":").split(":") if part)
    except ValueError as exc:
        raise ValueError(f"{mac!r} is not an Ethernet MAC address") from exc


def gratuitous_arp(ip, mac) -> ArpMessage:
    """Build a gratuitous ARP, alternating reply and request on each call."""
    protocol_address = _ipv4_bytes(ip)
    hardware_address = _mac_bytes(mac)
    if len(hardware_address) != HW_LEN:
        raise ValueError(f"{mac!r} is not an Ethernet MAC address")

    with _opcode_lock:
        opcode = next(_opcodes)

    target_hardware = ETHERNET_BROADCAST if opcode == OP_ARP_REQUEST else hardware_address
    return ArpMessage(
        opcode=opcode,
        sender_hardware_address=hardware_address,
        sender_protocol_address=protocol_address,
        target_hardware_address=target_hardware,
        target_protocol_address=protocol_address,
    )


def send_arp(iface_name: str, message: ArpMessage) -> None:
    """Broadcast ``message`` on the interface ``iface_name``."""
    if not hasattr(socket, "AF_PACKET"):
        raise OSError("Unsupported on this OS")
    try:
        sock = socket.socket(socket.AF_PACKET, socket.SOCK_DGRAM, socket.htons(_ETH_P_ARP))
    except OSError as exc:
        raise OSError(f"failed to get raw socket: {exc}") from exc
    with sock:
        try:
            sock.bind((iface_name, _ETH_P_ARP))
        except OSError as exc:
            raise OSError(f"failed to bind: {exc}") from exc
        destination = (iface_name, _ETH_P_ARP, 0, message.hardware_type, ETHERNET_BROADCAST)
        try:
            sock.sendto(message.to_bytes(), destination)
        except OSError as exc:
            raise OSError(f"failed to send: {exc}") from exc


def _hardware_address(iface_name: str) -> str:
    with open(f"/sys/class/net/{iface_name}/address", encoding="ascii") as handle:
        return handle.read().strip()


def arp_send_gratuitous(address: str, iface_name: str) -> None:
    """Send a gratuitous ARP for ``address`` via ``iface_name``."""
    if not sys.platform.startswith("linux"):
        raise OSError("Unsupported on this OS")
    try:
        socket.if_nametoindex(iface_name)
        mac = _hardware_address(iface_name)
    except OSError as exc:
        raise OSError(f"failed to get interface {iface_name!r}: {exc}") from exc
    try:
        ipaddress.ip_address(address)
    except ValueError as exc:
        raise ValueError(f"failed to parse address {address}") from exc
    send_arp(iface_name, gratuitous_arp(address, mac))