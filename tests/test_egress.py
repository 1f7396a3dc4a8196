from collections import defaultdict

import pytest

from vipnet.egress import COMMENT, MANGLE_CHAIN_NAME, Egress


class FakeIPTables:
    def __init__(self):
        self.rules = defaultdict(list)
        self.chains = set()
        self.fail_exists = False

    def chain_exists(self, table, chain):
        return (table, chain) in self.chains

    def new_chain(self, table, chain):
        self.chains.add((table, chain))

    def clear_and_delete_chain(self, table, chain):
        self.chains.discard((table, chain))
        self.rules.pop((table, chain), None)

    def exists(self, table, chain, *spec):
        if self.fail_exists:
            raise OSError("iptables unavailable")
        return list(spec) in self.rules[(table, chain)]

    def append(self, table, chain, *spec):
        self.rules[(table, chain)].append(list(spec))

    def insert(self, table, chain, position, *spec):
        self.rules[(table, chain)].insert(position - 1, list(spec))

    def delete(self, table, chain, *spec):
        self.rules[(table, chain)].remove(list(spec))

    def list(self, table, chain):
        result = []
        for spec in self.rules[(table, chain)]:
            tokens = []
            for previous, token in zip([""] + spec, spec):
                tokens.append(f'"{token}"' if previous == "--comment" else token)
            result.append(" ".join(["-A", chain, *tokens]))
        return result


@pytest.fixture
def ipt():
    return FakeIPTables()


@pytest.fixture
def egress(ipt):
    return Egress(ipt, "default")


def test_comment_includes_namespace(egress):
    assert egress.comment == COMMENT + "-default"


def test_find_rules():
    e = Egress(FakeIPTables(), "default")
    rules = [
        '-A PREROUTING -m comment --comment "cali:6gwbT8clXdHdC1b1" -j cali-PREROUTING',
        f'-A KUBE-VIP-EGRESS -s 172.17.88.190/32 -m comment --comment "{e.comment}" '
        "-j MARK --set-xmark 0x40/0x40",
        f'-A POSTROUTING -m comment --comment "{e.comment}" -j RETURN',
    ]
    want = [
        ["-A", "KUBE-VIP-EGRESS", "-s", "172.17.88.190/32", "-m", "comment",
         "--comment", e.comment, "-j", "MARK", "--set-xmark", "0x40/0x40"],
        ["-A", "POSTROUTING", "-m", "comment", "--comment", e.comment, "-j", "RETURN"],
    ]
    assert e.find_rules(rules) == want


def test_find_rules_ignores_other_namespace(egress):
    rules = [f'-A POSTROUTING -m comment --comment "{COMMENT}-other" -j RETURN']
    assert egress.find_rules(rules) == []


def test_mangle_chain_lifecycle(egress, ipt):
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is False
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is True
    egress.delete_mangle_chain(MANGLE_CHAIN_NAME)
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is False


def test_append_marking_is_idempotent(egress, ipt):
    egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.0.0.5")
    egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.0.0.5")
    assert ipt.rules[("mangle", MANGLE_CHAIN_NAME)] == [
        ["-s", "10.0.0.5", "-j", "MARK", "--set-mark", "64/64",
         "-m", "comment", "--comment", egress.comment]
    ]


def test_append_return_for_subnet_is_idempotent(egress, ipt):
    egress.append_return_rules_for_destination_subnet(MANGLE_CHAIN_NAME, "10.96.0.0/12")
    egress.append_return_rules_for_destination_subnet(MANGLE_CHAIN_NAME, "10.96.0.0/12")
    assert ipt.rules[("mangle", MANGLE_CHAIN_NAME)] == [
        ["-d", "10.96.0.0/12", "-j", "RETURN", "-m", "comment", "--comment", egress.comment]
    ]


def test_delete_marking_removes_rule(egress, ipt):
    egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.0.0.5")
    assert len(egress.dump_chain(MANGLE_CHAIN_NAME)) == 1
    egress.delete_mangle_marking("10.0.0.5", MANGLE_CHAIN_NAME)
    assert egress.dump_chain(MANGLE_CHAIN_NAME) == []


def test_delete_marking_missing_raises(egress):
    with pytest.raises(LookupError):
        egress.delete_mangle_marking("10.0.0.5", MANGLE_CHAIN_NAME)


def test_delete_marking_exists_error_treated_as_missing(egress, ipt):
    ipt.fail_exists = True
    with pytest.raises(LookupError):
        egress.delete_mangle_marking("10.0.0.5", MANGLE_CHAIN_NAME)


def test_insert_source_nat_goes_first_without_duplicates(egress, ipt):
    ipt.append("nat", "POSTROUTING", "-j", "MASQUERADE")
    egress.insert_source_nat("192.168.0.10", "10.0.0.5")
    egress.insert_source_nat("192.168.0.10", "10.0.0.5")
    listed = ipt.list("nat", "POSTROUTING")
    assert len(listed) == 2
    assert listed[1] == "-A POSTROUTING -j MASQUERADE"
    found = egress.find_rules(listed)
    assert len(found) == 1
    rule = found[0]
    assert rule[:4] == ["-A", "POSTROUTING", "-s", "10.0.0.5/32"]
    assert rule[rule.index("--to-source") + 1] == "192.168.0.10"
    assert rule[-1] == egress.comment


def test_delete_source_nat(egress, ipt):
    egress.insert_source_nat("192.168.0.10", "10.0.0.5")
    egress.delete_source_nat("10.0.0.5", "192.168.0.10")
    assert ipt.rules[("nat", "POSTROUTING")] == []
    with pytest.raises(LookupError):
        egress.delete_source_nat("10.0.0.5", "192.168.0.10")


def test_source_nat_for_destination_port(egress, ipt):
    egress.insert_source_nat_for_destination_port("192.168.0.10", "10.0.0.5", "443", "tcp")
    found = egress.find_rules(ipt.list("nat", "POSTROUTING"))
    assert len(found) == 1
    rule = found[0]
    assert rule[rule.index("--dport") + 1] == "443"
    assert rule[rule.index("-p") + 1] == "tcp"
    egress.delete_source_nat_for_destination_port("10.0.0.5", "192.168.0.10", "443", "tcp")
    assert egress.find_rules(ipt.list("nat", "POSTROUTING")) == []


def test_delete_source_nat_for_port_missing_raises(egress):
    with pytest.raises(LookupError, match="destination port"):
        egress.delete_source_nat_for_destination_port("10.0.0.5", "192.168.0.10", "80", "tcp")


def test_insert_prerouting_jump_is_unique(egress, ipt):
    egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
    egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
    assert ipt.rules[("mangle", "PREROUTING")] == [
        ["-j", MANGLE_CHAIN_NAME, "-m", "comment", "--comment", egress.comment]
    ]


def test_insert_prerouting_propagates_exists_error(egress, ipt):
    ipt.fail_exists = True
    with pytest.raises(OSError):
        egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)


def test_delete_mangle_prerouting(egress, ipt):
    ipt.append("mangle", "PREROUTING", "-j", MANGLE_CHAIN_NAME)
    egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
    assert len(ipt.list("mangle", "PREROUTING")) == 2
    egress.delete_mangle_prerouting(MANGLE_CHAIN_NAME)
    listed = ipt.list("mangle", "PREROUTING")
    assert len(listed) == 1
    assert egress.find_rules(listed) == [
        ["-A", "PREROUTING", "-j", MANGLE_CHAIN_NAME, "-m", "comment",
         "--comment", egress.comment]
    ]


def test_dump_chain_returns_rules(egress, ipt):
    egress.append_return_rules_for_destination_subnet(MANGLE_CHAIN_NAME, "10.96.0.0/12")
    assert egress.dump_chain(MANGLE_CHAIN_NAME) == [
        f'-A {MANGLE_CHAIN_NAME} -d 10.96.0.0/12 -j RETURN -m comment '
        f'--comment "{egress.comment}"'
    ]


def test_clean_iptables_removes_only_own_rules(egress, ipt):
    ipt.append("nat", "POSTROUTING", "-j", "MASQUERADE", "-m", "comment", "--comment", "other")
    egress.insert_source_nat("192.168.0.10", "10.0.0.5")
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.0.0.5")
    other = Egress(ipt, "other-ns")
    other.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.0.0.6")

    egress.clean_iptables()

    assert ipt.rules[("nat", "POSTROUTING")] == [
        ["-j", "MASQUERADE", "-m", "comment", "--comment", "other"]
    ]
    remaining = ipt.rules[("mangle", MANGLE_CHAIN_NAME)]
    assert len(remaining) == 1
    assert remaining[0][-1] == other.comment


def test_clean_iptables_without_mangle_chain(egress, ipt):
    egress.insert_source_nat("192.168.0.10", "10.0.0.5")
    assert len(egress.find_rules(ipt.list("nat", "POSTROUTING"))) == 1
    egress.clean_iptables()
    assert egress.find_rules(ipt.list("nat", "POSTROUTING")) == []
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is False