"""Egress source-NAT rules so that pod traffic leaves from a VIP."""

from __future__ import annotations

import logging
from typing import Protocol

log = logging.getLogger(__name__)

MANGLE_CHAIN_NAME = "KUBE-VIP-EGRESS"
COMMENT = "a3ViZS12aXAK=kube-vip"

_MARK = "64/64"


class _IPTables(Protocol):
    def chain_exists(self, table: str, chain: str) -> bool: ...

    def clear_and_delete_chain(self, table: str, chain: str) -> None: ...

    def new_chain(self, table: str, chain: str) -> None: ...

    def exists(self, table: str, chain: str, *rulespec: str) -> bool: ...

    def append(self, table: str, chain: str, *rulespec: str) -> None: ...

    def insert(self, table: str, chain: str, position: int, *rulespec: str) -> None: ...

    def delete(self, table: str, chain: str, *rulespec: str) -> None: ...

    def list(self, table: str, chain: str) -> list[str]: ...


class Egress:
    """Manages mangle marking and SNAT rules tagged with a namespace comment."""

    def __init__(self, client: _IPTables, namespace: str) -> None:
        self._client = client
        self.comment = f"{COMMENT}-{namespace}"

    def _comment_spec(self) -> list[str]:
        return ["-m", "comment", "--comment", self.comment]

    def _marking_spec(self, source: str) -> list[str]:
        return ["-s", source, "-j", "MARK", "--set-mark", _MARK, *self._comment_spec()]

    def _snat_spec(self, pod_ip: str, vip: str) -> list[str]:
        return [
            "-s", f"{pod_ip}/32", "-m", "mark", "--mark", _MARK,
            "-j", "SNAT", "--to-source", vip, *self._comment_spec(),
        ]

    def _snat_port_spec(self, pod_ip: str, vip: str, port: str, proto: str) -> list[str]:
        return [
            "-s", f"{pod_ip}/32", "-m", "mark", "--mark", _MARK,
            "-j", "SNAT", "--to-source", vip, "-p", proto, "--dport", port,
            *self._comment_spec(),
        ]

    def _exists_quietly(self, table: str, chain: str, spec: list[str]) -> bool:
        try:
            return bool(self._client.exists(table, chain, *spec))
        except Exception as exc:
            log.debug("[egress] rule check in %s/%s failed: %s", table, chain, exc)
            return False

    def _replace_at_top(self, table: str, chain: str, spec: list[str]) -> None:
        if self._client.exists(table, chain, *spec):
            self._client.delete(table, chain, *spec)
        self._client.insert(table, chain, 1, *spec)

    def check_mangle_chain(self, name: str) -> bool:
        """True if the chain ``name`` exists in the mangle table."""
        log.info("[egress] Checking for Chain [%s]", name)
        return self._client.chain_exists("mangle", name)

    def delete_mangle_chain(self, name: str) -> None:
        """Flush and delete the mangle chain ``name``."""
        self._client.clear_and_delete_chain("mangle", name)

    def delete_mangle_prerouting(self, name: str) -> None:
        """Remove the jump from mangle PREROUTING to ``name``."""
        self._client.delete("mangle", "PREROUTING", "-j", name)

    def delete_mangle_marking(self, pod_ip: str, name: str) -> None:
        """Stop marking packets from ``pod_ip`` in chain ``name``."""
        log.info("[egress] Stopping marking packets on network [%s]", pod_ip)
        spec = self._marking_spec(pod_ip)
        if not self._exists_quietly("mangle", name, spec):
            raise LookupError(f"unable to find source Mangle rule for [{pod_ip}]")
        self._client.delete("mangle", name, *spec)

    def delete_source_nat(self, pod_ip: str, vip: str) -> None:
        """Remove the SNAT rule from ``pod_ip`` to ``vip``."""
        log.info("[egress] Removing source nat from [%s] => [%s]", pod_ip, vip)
        spec = self._snat_spec(pod_ip, vip)
        if not self._exists_quietly("nat", "POSTROUTING", spec):
            raise LookupError(f"unable to find source Nat rule for [{pod_ip}]")
        self._client.delete("nat", "POSTROUTING", *spec)

    def delete_source_nat_for_destination_port(
        self, pod_ip: str, vip: str, port: str, proto: str
    ) -> None:
        """Remove the port-specific SNAT rule from ``pod_ip`` to ``vip``."""
        log.info("[egress] Removing source nat from [%s] => [%s]", pod_ip, vip)
        spec = self._snat_port_spec(pod_ip, vip, port, proto)
        if not self._exists_quietly("nat", "POSTROUTING", spec):
            raise LookupError(
                f"unable to find source Nat rule for [{pod_ip}], "
                f"with destination port [{port}]"
            )
        self._client.delete("nat", "POSTROUTING", *spec)

    def create_mangle_chain(self, name: str) -> None:
        """Create the chain ``name`` in the mangle table."""
        log.info("[egress] Creating Chain [%s]", name)
        self._client.new_chain("mangle", name)

    def append_return_rules_for_destination_subnet(self, name: str, subnet: str) -> None:
        """Return early from ``name`` for traffic going to ``subnet``."""
        log.info("[egress] Adding jump for subnet [%s] to RETURN to previous chain/rules", subnet)
        spec = ["-d", subnet, "-j", "RETURN", *self._comment_spec()]
        if not self._exists_quietly("mangle", name, spec):
            self._client.append("mangle", name, *spec)

    def append_return_rules_for_marking(self, name: str, subnet: str) -> None:
        """Mark packets coming from ``subnet`` in chain ``name``."""
        log.info("[egress] Marking packets on network [%s]", subnet)
        spec = self._marking_spec(subnet)
        if not self._exists_quietly("mangle", name, spec):
            self._client.append("mangle", name, *spec)

    def insert_mangle_table_into_prerouting(self, name: str) -> None:
        """Put a jump to ``name`` at the top of mangle PREROUTING."""
        log.info("[egress] Adding jump from mangle prerouting to [%s]", name)
        self._replace_at_top("mangle", "PREROUTING", ["-j", name, *self._comment_spec()])

    def insert_source_nat(self, vip: str, pod_ip: str) -> None:
        """Put an SNAT rule from ``pod_ip`` to ``vip`` at the top of POSTROUTING."""
        log.info("[egress] Adding source nat from [%s] => [%s]", pod_ip, vip)
        self._replace_at_top("nat", "POSTROUTING", self._snat_spec(pod_ip, vip))

    def insert_source_nat_for_destination_port(
        self, vip: str, pod_ip: str, port: str, proto: str
    ) -> None:
        """Put a port-specific SNAT rule at the top of POSTROUTING."""
        log.info(
            "[egress] Adding source nat from [%s] => [%s], with destination port [%s]",
            pod_ip, vip, port,
        )
        self._replace_at_top(
            "nat", "POSTROUTING", self._snat_port_spec(pod_ip, vip, port, proto)
        )

    def dump_chain(self, name: str) -> list[str]:
        """Log and return the rules of mangle chain ``name``."""
        log.info("Dumping chain [%s]", name)
        rules = self._client.list("mangle", name)
        for rule in rules:
            log.info("Rule -> %s", rule)
        return rules

    def clean_iptables(self) -> None:
        """Remove leftover rules carrying this instance's comment."""
        found = self.find_rules(self._client.list("nat", "POSTROUTING"))
        log.warning("[egress] Cleaning [%d] dangling postrouting nat rules", len(found))
        for rule in found:
            try:
                self._client.delete("nat", "POSTROUTING", *rule[2:])
            except Exception as exc:
                log.error("[egress] Error removing rule [%s]", exc)

        try:
            exists = self.check_mangle_chain(MANGLE_CHAIN_NAME)
        except Exception as exc:
            log.debug("[egress] No Mangle chain exists [%s]", exc)
            exists = False
        if not exists:
            log.warning("No existing mangle chain [%s] exists", MANGLE_CHAIN_NAME)
            return

        found = self.find_rules(self._client.list("mangle", MANGLE_CHAIN_NAME))
        log.warning("[egress] Cleaning [%d] dangling prerouting mangle rules", len(found))
        for rule in found:
            try:
                self._client.delete("mangle", MANGLE_CHAIN_NAME, *rule[2:])
            except Exception as exc:
                log.error("[egress] Error removing rule [%s]", exc)

    def find_rules(self, rules: list[str]) -> list[list[str]]:
        """Split listed rules carrying this comment into tokens, unquoting the comment."""
        quoted = f'"{self.comment}"'
        found: list[list[str]] = []
        for rule in rules:
            tokens = rule.split(" ")
            for position, token in enumerate(tokens):
                if token == quoted:
                    tokens[position] = token.strip('"')
                    found.append(tokens)
        return found