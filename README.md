# vipnet

Manage virtual IP addresses on a Linux host.

`vipnet` places a virtual IP (VIP) on a network interface, can put it into a
routing table, tells neighbours about it with gratuitous ARP (IPv4) or
unsolicited neighbour advertisements (IPv6), follows a DNS name whose address
may change, and manages the iptables rules that make pod traffic leave through
a VIP. It has no third-party dependencies: addresses and routes are handled
over rtnetlink, announcements over raw sockets. Most operations need
`CAP_NET_ADMIN` and `CAP_NET_RAW`, or root, and only work on Linux.

## Modules

| Module | What it gives you |
| --- | --- |
| `vipnet.netlink` | Low-level rtnetlink access: `Addr`, `Route`, `RouteUpdate`, `parse_addr`, `link_index`, `link_name`, `addr_list`, `addr_replace`, `addr_del`, `route_add`, `route_del`, `route_list`, `route_updates`. Kernel refusals are raised as `NetlinkError` (a subclass of `OSError`). |
| `vipnet.util` | `is_ip`, `is_ipv4`, `is_ipv6`, `get_full_mask`, `get_host_name`, `lookup_host`, `generate_mac`, `get_default_gateway_interface`, `monitor_default_interface`. |
| `vipnet.arp` | Gratuitous ARP: `ArpMessage`, `gratuitous_arp`, `send_arp`, `arp_send_gratuitous`. |
| `vipnet.address` | The `Network` VIP object built by `new_config`, the `Service` and `ServicePort` descriptions used to limit traffic to a VIP, and `garbage_collect`. |
| `vipnet.ndp` | IPv6 neighbour advertisements: `NdpResponder` and `build_neighbor_advertisement`. |
| `vipnet.dns` | `IPUpdater`, which keeps a DNS-named VIP pointing at the current address. |
| `vipnet.egress` | `Egress`, which manages the mangle chain and SNAT rules that send pod traffic out through a VIP. |

## Address helpers

```python
from vipnet.util import is_ipv4, is_ipv6, get_full_mask, get_host_name

is_ipv4("192.168.0.10")             # True
is_ipv6("fd00::10")                 # True
is_ipv6("::ffff:192.168.0.10")      # False: IPv4-mapped counts as IPv4
get_full_mask("192.168.0.10")       # "/32"
get_full_mask("fd00::10")           # "/128"
get_host_name("api.cluster.local")  # "api"
```

`get_full_mask` raises `ValueError` for anything that is neither an IPv4 nor
an IPv6 address. `lookup_host(name)` returns the first address the resolver
gives and raises `OSError` or `LookupError` when there is none.
`generate_mac()` returns a random address under the fixed prefix `00:00:6C`.

`get_default_gateway_interface()` returns `(index, name)` of the link that
holds the IPv4 default route and raises `LookupError` if there is none.
`monitor_default_interface(stop_event, index)` watches route changes until the
`threading.Event` is set, and raises `RuntimeError` if the default route on
that link is deleted.

`netlink.parse_addr("10.0.0.1/24")` gives an `Addr`; two addresses compare
with `Addr.same_address` on IP and prefix length.

## Putting a VIP on an interface

```python
from vipnet.address import new_config

vip = new_config("192.168.0.100", "eth0")

if not vip.is_set():
    vip.add_ip()

print(vip.ip(), "on", vip.interface())

vip.delete_ip()
```

`new_config(address, iface, subnet="", is_ddns=False, table_id=0,
table_type=0, iptables_factory=None)`:

- `address` may be an IP or a host name. A host name is resolved once and
  remembered (`vip.is_dns()`, `vip.dns_name()`); the resulting address gets a
  valid lifetime of 60 seconds so that it lapses unless refreshed. With
  `is_ddns=True` the name does not have to resolve yet, and
  `vip.ddns_hostname()` gives its first label.
- `subnet`, such as `"/24"`, overrides the default full-length mask.
- On `lo` the address is given host scope.
- `table_id` and `table_type` are used by `add_route` and `delete_route`; a
  `table_type` of `netlink.RTN_LOCAL` makes the route link-scoped.

`vip.set_ip(ip)` replaces the address, and `delete_ip` does nothing if the
address is not present. `vip.is_dadfail()` tells whether an IPv6 VIP failed
duplicate address detection.

### Limiting traffic to service ports

When the environment variable `enable_service_security` is `"true"`,
`add_ip` also installs filter rules on the `INPUT` chain that accept traffic
to the VIP only on the service's ports (and on the DHCP client port, UDP 68)
and drop the rest; `delete_ip` removes them again. Stale port rules carrying
the same comment are deleted on each `add_ip`.

```python
from vipnet.address import Service, ServicePort

vip.set_service_ports(
    Service(name="web", namespace="default",
            ports=[ServicePort(80, "TCP"), ServicePort(443, "TCP")])
)
```

The iptables client comes from `iptables_factory`, a callable returning an
object with `list(table, chain)`, `delete(table, chain, *rule)`,
`delete_if_exists(table, chain, *rule)` and
`insert_unique(table, chain, position, *rule)`. Without a factory, enabling
the rules raises `RuntimeError`. A service annotated with
`kube-vip.io/ignore-service-security: "true"` is left unfiltered.

`garbage_collect(adapter, address)` removes every copy of `address` from the
adapter and returns whether one was found.

## Announcing a VIP

```python
from vipnet.arp import arp_send_gratuitous
from vipnet.ndp import NdpResponder

arp_send_gratuitous("192.168.0.100", "eth0")

with NdpResponder("eth0") as responder:
    responder.send_gratuitous("fd00::100")
```

Successive `gratuitous_arp` messages alternate between a reply and a request,
since some devices honour only one of the two; a request carries the broadcast
address as its target hardware address. `ArpMessage.to_bytes()` and
`build_neighbor_advertisement(target, hardware_addr, gratuitous)` give the
wire form without sending anything. On systems other than Linux,
`arp_send_gratuitous` raises `OSError("Unsupported on this OS")`.

## Following a DNS name

```python
import threading

from vipnet.address import new_config
from vipnet.dns import IPUpdater

vip = new_config("api.cluster.local", "eth0")
stop = threading.Event()
thread = IPUpdater(vip, 3.0).run(stop)
# ... later
stop.set()
thread.join()
```

Each round looks the name up again, falls back to the current address if the
lookup fails, and re-applies the VIP so that its lifetime is refreshed. Errors
are logged, not raised.

## Egress through a VIP

```python
from vipnet.egress import Egress, MANGLE_CHAIN_NAME

egress = Egress(client, "default")
egress.create_mangle_chain(MANGLE_CHAIN_NAME)
egress.append_return_rules_for_destination_subnet(MANGLE_CHAIN_NAME, "10.96.0.0/12")
egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.244.0.0/16")
egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
egress.insert_source_nat("192.168.0.100", "10.244.1.5")
```

`client` is an iptables client with `chain_exists`, `clear_and_delete_chain`,
`new_chain`, `exists`, `append`, `insert`, `delete` and `list`. Every rule
carries the comment `egress.comment`, tagged with the namespace, so
`egress.clean_iptables()` can find and remove the rules left behind, and
`egress.find_rules(rules)` picks them out of a rule listing as token lists.
The `delete_*` methods raise `LookupError` when the rule is not there.
`dump_chain(name)` logs and returns a mangle chain's rules.

## What this package does not do

- It has no command-line program and no daemon; it is a library to call.
- It ships no iptables client: port filtering and egress rules need one to be
  passed in.
- It does not obtain addresses over DHCP. With `is_ddns=True` an unresolved
  name is accepted, but getting an address for it is left to the caller.
- It does no leader election and has no Kubernetes integration; `Service`
  only carries the fields that shape the filter rules.