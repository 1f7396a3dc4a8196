"""Minimal rtnetlink client for addresses and routes on Linux."""

from __future__ import annotations

import ipaddress
import itertools
import os
import socket
import struct
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

FAMILY_ALL = socket.AF_UNSPEC
FAMILY_V4 = socket.AF_INET
FAMILY_V6 = socket.AF_INET6

SCOPE_UNIVERSE = 0
SCOPE_LINK = 253
SCOPE_HOST = 254
SCOPE_NOWHERE = 255

RTN_UNICAST = 1
RTN_LOCAL = 2

RTM_NEWROUTE = 24
RTM_DELROUTE = 25

IFA_F_DADFAILED = 0x08

RT_TABLE_UNSPEC = 0
RT_TABLE_MAIN = 254

_NETLINK_ROUTE = 0

_NLMSG_ERROR = 2
_NLMSG_DONE = 3

_RTM_NEWADDR = 20
_RTM_DELADDR = 21
_RTM_GETADDR = 22
_RTM_GETROUTE = 26

_NLM_F_REQUEST = 0x1
_NLM_F_ACK = 0x4
_NLM_F_DUMP = 0x300
_NLM_F_REPLACE = 0x100
_NLM_F_EXCL = 0x200
_NLM_F_CREATE = 0x400

_IFA_ADDRESS = 1
_IFA_LOCAL = 2
_IFA_LABEL = 3
_IFA_BROADCAST = 4
_IFA_CACHEINFO = 6
_IFA_FLAGS = 8

_RTA_DST = 1
_RTA_OIF = 4
_RTA_TABLE = 15

_RTPROT_BOOT = 3
_RTM_F_CLONED = 0x200

_RTMGRP_IPV4_ROUTE = 0x40
_RTMGRP_IPV6_ROUTE = 0x400

_NLMSG_HDR = struct.Struct("=IHHII")
_IFADDRMSG = struct.Struct("=BBBBI")
_RTMSG = struct.Struct("=BBBBBBBBI")
_RTATTR = struct.Struct("=HH")
_CACHEINFO = struct.Struct("=IIII")
_U32 = struct.Struct("=I")
_I32 = struct.Struct("=i")

_RECV_SIZE = 65536
_POLL_SECONDS = 0.5

_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


class NetlinkError(OSError):
    """Raised when the kernel rejects a request or netlink is unavailable."""


@dataclass
class Addr:
    """An address assigned to a link, with its prefix length."""

    ip: IPAddress
    prefixlen: int
    label: str = ""
    flags: int = 0
    scope: int = SCOPE_UNIVERSE
    valid_lft: int = 0
    preferred_lft: int = 0

    @property
    def family(self) -> int:
        return FAMILY_V4 if self.ip.version == 4 else FAMILY_V6

    @property
    def network(self) -> IPNetwork:
        return ipaddress.ip_interface(f"{self.ip}/{self.prefixlen}").network

    def same_address(self, other: "Addr") -> bool:
        """True when both hold the same IP and prefix length."""
        return self.ip == other.ip and self.prefixlen == other.prefixlen

    def __str__(self) -> str:
        text = f"{self.ip}/{self.prefixlen}"
        return f"{text} {self.label}" if self.label else text


@dataclass
class Route:
    """A route entry; ``dst`` of None is the default route."""

    dst: Optional[IPNetwork] = None
    link_index: int = 0
    table: int = 0
    type: int = 0
    scope: int = SCOPE_UNIVERSE
    protocol: int = 0
    family: int = FAMILY_V4


@dataclass
class RouteUpdate:
    """A route change reported by the kernel."""

    type: int
    route: Route


def parse_addr(text: str) -> Addr:
    """Parse ``"ip/prefix [label]"`` into an :class:`Addr`."""
    parts = text.split()
    if not parts or "/" not in parts[0] or "%" in parts[0]:
        raise ValueError(f"invalid CIDR address: {text!r}")
    try:
        interface = ipaddress.ip_interface(parts[0])
    except ValueError as exc:
        raise ValueError(f"invalid CIDR address: {text!r}") from exc
    label = parts[1] if len(parts) > 1 else ""
    return Addr(ip=interface.ip, prefixlen=interface.network.prefixlen, label=label)


def link_index(name: str) -> int:
    """Return the index of the link called ``name``."""
    try:
        return socket.if_nametoindex(name)
    except OSError as exc:
        raise NetlinkError(f"link {name!r} not found") from exc


def link_name(index: int) -> str:
    """Return the name of the link with ``index``."""
    try:
        return socket.if_indextoname(index)
    except OSError as exc:
        raise NetlinkError(f"link with index {index} not found") from exc


def _align(length: int) -> int:
    return (length + 3) & ~3


def _rtattr(kind: int, data: bytes) -> bytes:
    length = _RTATTR.size + len(data)
    return _RTATTR.pack(length, kind) + data + b"\0" * (_align(length) - length)


def _parse_attrs(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    while offset + _RTATTR.size <= len(data):
        length, kind = _RTATTR.unpack_from(data, offset)
        if length < _RTATTR.size:
            break
        yield kind, data[offset + _RTATTR.size : offset + length]
        offset += _align(length)


def _messages(data: bytes) -> Iterator[tuple[int, int, int, bytes]]:
    offset = 0
    while offset + _NLMSG_HDR.size <= len(data):
        length, kind, flags, seq, _pid = _NLMSG_HDR.unpack_from(data, offset)
        if length < _NLMSG_HDR.size:
            break
        yield kind, flags, seq, data[offset + _NLMSG_HDR.size : offset + length]
        offset += _align(length)


def _open(groups: int = 0) -> socket.socket:
    if not hasattr(socket, "AF_NETLINK"):
        raise NetlinkError("netlink is only available on Linux")
    sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, _NETLINK_ROUTE)
    try:
        sock.bind((0, groups))
    except OSError:
        sock.close()
        raise
    return sock


def _next_sequence() -> int:
    with _sequence_lock:
        return next(_sequence)


def _request(msg_type: int, flags: int, body: bytes) -> list[tuple[int, bytes]]:
    seq = _next_sequence()
    header = _NLMSG_HDR.pack(
        _NLMSG_HDR.size + len(body), msg_type, flags | _NLM_F_REQUEST, seq, 0
    )
    with _open() as sock:
        sock.sendto(header + body, (0, 0))
        return list(_collect(sock, seq))


def _collect(sock: socket.socket, seq: int) -> Iterator[tuple[int, bytes]]:
    while True:
        data = sock.recv(_RECV_SIZE)
        for kind, _flags, msg_seq, payload in _messages(data):
            if msg_seq != seq:
                continue
            if kind == _NLMSG_DONE:
                return
            if kind == _NLMSG_ERROR:
                (code,) = _I32.unpack_from(payload)
                if code == 0:
                    return
                raise NetlinkError(-code, os.strerror(-code))
            yield kind, payload


def _addr_body(index: int, addr: Addr) -> bytes:
    header = _IFADDRMSG.pack(
        addr.family, addr.prefixlen, addr.flags & 0xFF, addr.scope, index
    )
    packed = addr.ip.packed
    attrs = _rtattr(_IFA_LOCAL, packed) + _rtattr(_IFA_ADDRESS, packed)
    if addr.family == FAMILY_V4 and addr.prefixlen < 31:
        attrs += _rtattr(_IFA_BROADCAST, addr.network.broadcast_address.packed)
    if addr.label:
        attrs += _rtattr(_IFA_LABEL, addr.label.encode() + b"\0")
    if addr.flags > 0xFF:
        attrs += _rtattr(_IFA_FLAGS, _U32.pack(addr.flags))
    if addr.valid_lft > 0 or addr.preferred_lft > 0:
        attrs += _rtattr(
            _IFA_CACHEINFO, _CACHEINFO.pack(addr.preferred_lft, addr.valid_lft, 0, 0)
        )
    return header + attrs


def _parse_addr_message(payload: bytes) -> Optional[tuple[int, Addr]]:
    _family, prefixlen, flags, scope, index = _IFADDRMSG.unpack_from(payload)
    local = address = None
    label = ""
    valid = preferred = 0
    for kind, data in _parse_attrs(payload[_IFADDRMSG.size :]):
        if kind == _IFA_LOCAL:
            local = data
        elif kind == _IFA_ADDRESS:
            address = data
        elif kind == _IFA_LABEL:
            label = data.rstrip(b"\0").decode(errors="replace")
        elif kind == _IFA_FLAGS:
            (flags,) = _U32.unpack_from(data)
        elif kind == _IFA_CACHEINFO:
            preferred, valid, _cstamp, _tstamp = _CACHEINFO.unpack_from(data)
    raw = local if local is not None else address
    if raw is None:
        return None
    addr = Addr(
        ip=ipaddress.ip_address(raw),
        prefixlen=prefixlen,
        label=label,
        flags=flags,
        scope=scope,
        valid_lft=valid,
        preferred_lft=preferred,
    )
    return index, addr


def addr_list(index: Optional[int], family: int = FAMILY_ALL) -> list[Addr]:
    """List addresses of ``family`` on link ``index`` (all links when None)."""
    body = _IFADDRMSG.pack(family, 0, 0, 0, 0)
    result = []
    for kind, payload in _request(_RTM_GETADDR, _NLM_F_DUMP, body):
        if kind != _RTM_NEWADDR:
            continue
        parsed = _parse_addr_message(payload)
        if parsed is None:
            continue
        addr_index, addr = parsed
        if index is None or addr_index == index:
            result.append(addr)
    return result


def addr_replace(index: int, addr: Addr) -> None:
    """Add ``addr`` to link ``index``, replacing an existing entry."""
    flags = _NLM_F_CREATE | _NLM_F_REPLACE | _NLM_F_ACK
    _request(_RTM_NEWADDR, flags, _addr_body(index, addr))


def addr_del(index: int, addr: Addr) -> None:
    """Remove ``addr`` from link ``index``."""
    _request(_RTM_DELADDR, _NLM_F_ACK, _addr_body(index, addr))


def _route_body(route: Route, delete: bool) -> bytes:
    if route.dst is not None:
        family = FAMILY_V4 if route.dst.version == 4 else FAMILY_V6
    else:
        family = route.family
    table = RT_TABLE_MAIN
    attrs = b""
    if route.table > 0:
        if route.table >= 256:
            table = RT_TABLE_UNSPEC
            attrs += _rtattr(_RTA_TABLE, _U32.pack(route.table))
        else:
            table = route.table
    route_type = route.type if route.type > 0 else (0 if delete else RTN_UNICAST)
    protocol = route.protocol if route.protocol > 0 else (0 if delete else _RTPROT_BOOT)
    dst_len = 0
    if route.dst is not None:
        dst_len = route.dst.prefixlen
        attrs += _rtattr(_RTA_DST, route.dst.network_address.packed)
    if route.link_index:
        attrs += _rtattr(_RTA_OIF, _I32.pack(route.link_index))
    header = _RTMSG.pack(
        family, dst_len, 0, 0, table, protocol, route.scope, route_type, 0
    )
    return header + attrs


def _parse_route_message(payload: bytes) -> tuple[Route, int]:
    (family, dst_len, _src_len, _tos, table, protocol, scope, route_type, flags) = (
        _RTMSG.unpack_from(payload)
    )
    route = Route(
        table=table, type=route_type, scope=scope, protocol=protocol, family=family
    )
    for kind, data in _parse_attrs(payload[_RTMSG.size :]):
        if kind == _RTA_DST:
            ip = ipaddress.ip_address(data)
            route.dst = ipaddress.ip_network(f"{ip}/{dst_len}", strict=False)
        elif kind == _RTA_OIF:
            (route.link_index,) = _I32.unpack_from(data)
        elif kind == _RTA_TABLE:
            (route.table,) = _U32.unpack_from(data)
    return route, flags


def route_add(route: Route) -> None:
    """Add ``route`` to the kernel routing tables."""
    flags = _NLM_F_CREATE | _NLM_F_EXCL | _NLM_F_ACK
    _request(RTM_NEWROUTE, flags, _route_body(route, delete=False))


def route_del(route: Route) -> None:
    """Delete ``route`` from the kernel routing tables."""
    _request(RTM_DELROUTE, _NLM_F_ACK, _route_body(route, delete=True))


def route_list(family: int = FAMILY_V4) -> list[Route]:
    """List routes of ``family`` in the main table."""
    body = _RTMSG.pack(family, 0, 0, 0, 0, 0, 0, 0, 0)
    result = []
    for kind, payload in _request(_RTM_GETROUTE, _NLM_F_DUMP, body):
        if kind != RTM_NEWROUTE:
            continue
        route, flags = _parse_route_message(payload)
        if flags & _RTM_F_CLONED or route.table != RT_TABLE_MAIN:
            continue
        result.append(route)
    return result


def route_updates(stop_event: threading.Event) -> Iterator[RouteUpdate]:
    """Yield route changes until ``stop_event`` is set."""
    if stop_event.is_set():
        return
    try:
        sock = _open(_RTMGRP_IPV4_ROUTE | _RTMGRP_IPV6_ROUTE)
    except OSError as exc:
        raise NetlinkError(f"subscribe route failed, error: {exc}") from exc
    with sock:
        sock.settimeout(_POLL_SECONDS)
        while not stop_event.is_set():
            try:
                data = sock.recv(_RECV_SIZE)
            except TimeoutError:
                continue
            for kind, _flags, _seq, payload in _messages(data):
                if kind in (RTM_NEWROUTE, RTM_DELROUTE):
                    route, _route_flags = _parse_route_message(payload)
                    yield RouteUpdate(type=kind, route=route)