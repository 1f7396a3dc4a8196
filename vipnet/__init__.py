"""Virtual IP management on Linux: addresses, routes, ARP/NDP announcements, DNS-backed VIPs and egress rules."""

__version__ = "0.7.0"

__all__ = ["address", "arp", "dns", "egress", "ndp", "netlink", "util"]