"""Virtual IP management on a network link, with optional port filtering."""

from __future__ import annotations

import logging
import os
import shlex
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Optional, Protocol

from vipnet import netlink
from vipnet.util import get_full_mask, get_host_name, is_ip, is_ipv6, lookup_host

log = logging.getLogger(__name__)

DEFAULT_VALID_LFT = 60
IPTABLES_COMMENT = "{} kube-vip load balancer IP"
IGNORE_SERVICE_SECURITY_ANNOTATION = "kube-vip.io/ignore-service-security"
DHCP_CLIENT_PORT = "68"
PROTOCOL_UDP = "UDP"

_TABLE_FILTER = "filter"
_CHAIN_INPUT = "INPUT"
_SECURITY_ENV = "enable_service_security"


class _IPTables(Protocol):
    def list(self, table: str, chain: str) -> list[str]: ...

    def delete(self, table: str, chain: str, *rulespec: str) -> None: ...

    def delete_if_exists(self, table: str, chain: str, *rulespec: str) -> None: ...

    def insert_unique(self, table: str, chain: str, position: int, *rulespec: str) -> None: ...


@dataclass(frozen=True)
class ServicePort:
    """A port exposed by a service."""

    port: int
    protocol: str = "TCP"


@dataclass
class Service:
    """The parts of a load-balancer service that shape its VIP rules."""

    name: str
    namespace: str = ""
    ports: list[ServicePort] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


def _netlink_parse(address: str) -> netlink.Addr:
    return netlink.parse_addr(address + get_full_mask(address))


def _tokens(rule: str) -> list[str]:
    try:
        return shlex.split(rule)
    except ValueError:
        return rule.split()


def _rule_value(rule: str, flag: str) -> str:
    """Return the value following ``flag`` in a listed iptables rule."""
    tokens = _tokens(rule)
    for name, value in zip(tokens, tokens[1:]):
        if name == flag:
            return value
    return ""


def _rule_destination(rule: str) -> str:
    value = _rule_value(rule, "-d")
    host, _, prefix = value.partition("/")
    return host if prefix in ("32", "128") else value


def _rule_spec(rule: str) -> list[str]:
    tokens = _tokens(rule)
    if len(tokens) >= 2 and tokens[0] in ("-A", "-I"):
        return tokens[2:]
    return tokens


def _port_rule(vip: str, port: ServicePort, comment: str) -> list[str]:
    return [
        "-d", vip, "-p", port.protocol, "--dport", str(port.port),
        "-m", "comment", "--comment", comment, "-j", "ACCEPT",
    ]


def _dhcp_rule(vip: str, comment: str) -> list[str]:
    return [
        "-d", vip, "-p", PROTOCOL_UDP, "--dport", DHCP_CLIENT_PORT,
        "-m", "comment", "--comment", comment, "-j", "ACCEPT",
    ]


def _drop_rule(vip: str, comment: str) -> list[str]:
    return ["-d", vip, "-m", "comment", "--comment", comment, "-j", "DROP"]


def _add_common_rules(ipt: _IPTables, vip: str, comment: str) -> None:
    try:
        ipt.insert_unique(_TABLE_FILTER, _CHAIN_INPUT, 1, *_dhcp_rule(vip, comment))
    except Exception as exc:
        raise RuntimeError(
            f"could not add iptables rule to accept the traffic to VIP {vip} "
            f"for DHCP client port: {exc}"
        ) from exc
    try:
        ipt.insert_unique(_TABLE_FILTER, _CHAIN_INPUT, 2, *_drop_rule(vip, comment))
    except Exception as exc:
        raise RuntimeError(
            f"could not add iptables rule to drop the traffic to VIP {vip}: {exc}"
        ) from exc


def _delete_common_rules(ipt: _IPTables, vip: str, comment: str) -> None:
    try:
        ipt.delete_if_exists(_TABLE_FILTER, _CHAIN_INPUT, *_dhcp_rule(vip, comment))
    except Exception as exc:
        raise RuntimeError(
            f"could not delete iptables rule to accept the traffic to VIP {vip} "
            f"for DHCP client port: {exc}"
        ) from exc
    try:
        ipt.delete_if_exists(_TABLE_FILTER, _CHAIN_INPUT, *_drop_rule(vip, comment))
    except Exception as exc:
        raise RuntimeError(
            f"could not delete iptables rule to drop the traffic to VIP {vip}: {exc}"
        ) from exc


def _port_key(protocol: str, port: str) -> tuple[str, str]:
    return protocol.upper(), port


def _sync_port_rules(
    ipt: _IPTables, vip: str, comment: str, ports: Sequence[ServicePort]
) -> None:
    """Drop stale port rules carrying ``comment`` and add the missing ones."""
    wanted = {_port_key(p.protocol, str(p.port)) for p in ports}
    present: set[tuple[str, str]] = set()
    try:
        rules = ipt.list(_TABLE_FILTER, _CHAIN_INPUT)
    except Exception as exc:
        raise RuntimeError(f"could not list iptables rules: {exc}") from exc

    for rule in rules:
        if _rule_value(rule, "--comment") != comment:
            continue
        protocol = _rule_value(rule, "-p")
        port = _rule_value(rule, "--dport")
        stale_vip = _rule_destination(rule) != vip
        if not stale_vip:
            if not protocol:
                continue
            if protocol.upper() == PROTOCOL_UDP and port == DHCP_CLIENT_PORT:
                continue
            key = _port_key(protocol, port)
            if key in wanted:
                present.add(key)
                continue
        try:
            ipt.delete(_TABLE_FILTER, _CHAIN_INPUT, *_rule_spec(rule))
        except Exception as exc:
            raise RuntimeError(f"could not delete iptables rule: {exc}") from exc

    for port in ports:
        if _port_key(port.protocol, str(port.port)) in present:
            continue
        try:
            ipt.insert_unique(_TABLE_FILTER, _CHAIN_INPUT, 1, *_port_rule(vip, port, comment))
        except Exception as exc:
            raise RuntimeError(
                f"could not add iptables rule to accept the traffic to VIP {vip} "
                f"for allowed port {port.port}: {exc}"
            ) from exc


class Network:
    """Manages one virtual IP on a link: addresses, routes and port filtering."""

    def __init__(
        self,
        link_index: int,
        link_name: str,
        table_id: int = 0,
        table_type: int = 0,
        iptables_factory: Optional[Callable[[], _IPTables]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._link_index = link_index
        self._link_name = link_name
        self._address: Optional[netlink.Addr] = None
        self._ports: list[ServicePort] = []
        self._service_name = ""
        self._ignore_security = False
        self._dns_name = ""
        self._ddns = False
        self._route_table = table_id
        self._routing_table_type = table_type
        self._iptables_factory = iptables_factory

    def _require_address(self) -> netlink.Addr:
        if self._address is None:
            raise ValueError("no address is configured")
        return self._address

    def _route(self) -> netlink.Route:
        scope = (
            netlink.SCOPE_LINK
            if self._routing_table_type == netlink.RTN_LOCAL
            else netlink.SCOPE_UNIVERSE
        )
        return netlink.Route(
            dst=self._require_address().network,
            link_index=self._link_index,
            table=self._route_table,
            type=self._routing_table_type,
            scope=scope,
        )

    def add_route(self) -> None:
        """Add the VIP to the configured routing table."""
        netlink.route_add(self._route())

    def delete_route(self) -> None:
        """Remove the VIP from the configured routing table."""
        netlink.route_del(self._route())

    def _security_enabled(self) -> bool:
        return os.environ.get(_SECURITY_ENV) == "true" and not self._ignore_security

    def _comment(self) -> str:
        return IPTABLES_COMMENT.format(self._service_name)

    def _iptables(self) -> _IPTables:
        if self._iptables_factory is None:
            raise RuntimeError("could not create iptables client: no factory configured")
        try:
            return self._iptables_factory()
        except Exception as exc:
            raise RuntimeError(f"could not create iptables client: {exc}") from exc

    def _add_service_security(self) -> None:
        ipt = self._iptables()
        vip = str(self._require_address().ip)
        comment = self._comment()
        _add_common_rules(ipt, vip, comment)
        log.debug("add iptables rules, vip: %s, ports: %s", vip, self._ports)
        _sync_port_rules(ipt, vip, comment, self._ports)

    def _remove_service_security(self) -> None:
        ipt = self._iptables()
        vip = str(self._require_address().ip)
        comment = self._comment()
        _delete_common_rules(ipt, vip, comment)
        log.debug("remove iptables rules, vip: %s, ports: %s", vip, self._ports)
        for port in self._ports:
            try:
                ipt.delete_if_exists(_TABLE_FILTER, _CHAIN_INPUT, *_port_rule(vip, port, comment))
            except Exception as exc:
                raise RuntimeError(
                    f"could not delete iptables rule to accept the traffic to VIP {vip} "
                    f"for allowed port {port.port}: {exc}"
                ) from exc

    def add_ip(self) -> None:
        """Add the VIP to the link, replacing an existing entry."""
        try:
            netlink.addr_replace(self._link_index, self._require_address())
        except OSError as exc:
            raise netlink.NetlinkError(f"could not add ip: {exc}") from exc
        if self._security_enabled():
            try:
                self._add_service_security()
            except RuntimeError as exc:
                raise RuntimeError(
                    f"could not add iptables rules to limit traffic ports: {exc}"
                ) from exc

    def delete_ip(self) -> None:
        """Remove the VIP from the link if it is present."""
        try:
            present = self.is_set()
        except OSError as exc:
            raise netlink.NetlinkError(f"ip check in DeleteIP failed: {exc}") from exc
        if not present:
            return
        try:
            netlink.addr_del(self._link_index, self._require_address())
        except OSError as exc:
            raise netlink.NetlinkError(f"could not delete ip: {exc}") from exc
        if self._security_enabled():
            try:
                self._remove_service_security()
            except RuntimeError as exc:
                raise RuntimeError(
                    f"could not remove iptables rules to limit traffic ports: {exc}"
                ) from exc

    def is_dadfail(self) -> bool:
        """True if the VIP is IPv6 and duplicate address detection failed."""
        address = self._address
        if address is None or not is_ipv6(str(address.ip)):
            return False
        try:
            addresses = netlink.addr_list(self._link_index, netlink.FAMILY_V6)
        except OSError:
            return False
        return any(
            existing.ip == address.ip and existing.flags & netlink.IFA_F_DADFAILED
            for existing in addresses
        )

    def is_set(self) -> bool:
        """True if the VIP is currently assigned to the link."""
        address = self._address
        if address is None:
            return False
        try:
            addresses = netlink.addr_list(self._link_index, netlink.FAMILY_ALL)
        except OSError as exc:
            raise netlink.NetlinkError(f"could not list addresses: {exc}") from exc
        return any(existing.same_address(address) for existing in addresses)

    def set_ip(self, ip: str) -> None:
        """Replace the VIP with ``ip``."""
        with self._lock:
            addr = _netlink_parse(ip)
            if self._address is not None and self.is_dns():
                addr.valid_lft = DEFAULT_VALID_LFT
            self._address = addr

    def set_service_ports(self, service: Service) -> None:
        """Take the ports, name and security annotation from ``service``."""
        with self._lock:
            self._ports = list(service.ports)
            self._service_name = f"{service.namespace}/{service.name}"
            self._ignore_security = (
                service.annotations.get(IGNORE_SERVICE_SECURITY_ANNOTATION) == "true"
            )

    def ip(self) -> str:
        """Return the VIP as text."""
        with self._lock:
            return str(self._require_address().ip)

    def dns_name(self) -> str:
        """Return the configured DNS name, empty when an IP was given."""
        return self._dns_name

    def is_dns(self) -> bool:
        """True when the VIP comes from a DNS name."""
        return self._dns_name != ""

    def is_ddns(self) -> bool:
        """True when dynamic DNS is used."""
        return self._ddns

    def ddns_hostname(self) -> str:
        """Return the host part of the DNS name, for DHCP."""
        return get_host_name(self._dns_name)

    def interface(self) -> str:
        """Return the link name."""
        return self._link_name


def new_config(
    address: str,
    iface: str,
    subnet: str = "",
    is_ddns: bool = False,
    table_id: int = 0,
    table_type: int = 0,
    iptables_factory: Optional[Callable[[], _IPTables]] = None,
) -> Network:
    """Build a :class:`Network` for ``address`` (an IP or a DNS name) on ``iface``."""
    try:
        index = netlink.link_index(iface)
    except OSError as exc:
        raise netlink.NetlinkError(
            f"could not get link for interface '{iface}': {exc}"
        ) from exc

    network = Network(index, iface, table_id, table_type, iptables_factory)

    if is_ip(address):
        try:
            if subnet:
                network._address = netlink.parse_addr(address + subnet)
            else:
                network._address = _netlink_parse(address)
        except ValueError as exc:
            raise ValueError(f"could not parse address '{address}': {exc}") from exc
        if iface == "lo":
            network._address.scope = netlink.SCOPE_HOST
        return network

    network._ddns = is_ddns
    network._dns_name = address
    try:
        ip = lookup_host(address)
    except (OSError, LookupError):
        if is_ddns:
            return network
        raise

    network._address = _netlink_parse(ip)
    network._address.valid_lft = DEFAULT_VALID_LFT
    return network


def garbage_collect(adapter: str, address: str) -> bool:
    """Remove ``address`` from ``adapter``; return whether it was found."""
    try:
        index = netlink.link_index(adapter)
    except OSError as exc:
        raise netlink.NetlinkError(
            f"could not get link for interface '{adapter}': {exc}"
        ) from exc

    found = False
    for existing in netlink.addr_list(index, netlink.FAMILY_ALL):
        if str(existing.ip) == address:
            found = True
            try:
                netlink.addr_del(index, existing)
            except OSError as exc:
                raise netlink.NetlinkError(f"could not delete ip: {exc}") from exc
    return found