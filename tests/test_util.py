import threading

import pytest

from vipnet.util import (
    generate_mac,
    get_full_mask,
    get_host_name,
    is_ip,
    is_ipv4,
    is_ipv6,
    lookup_host,
    monitor_default_interface,
)


@pytest.mark.parametrize(
    "address,expected",
    [
        ("192.0.2.1", True),
        ("2001:db8::1", True),
        ("::ffff:192.0.2.1", True),
        ("host.example.com", False),
        ("", False),
        ("192.0.2", False),
        ("fe80::1%eth0", False),
    ],
)
def test_is_ip(address, expected):
    assert is_ip(address) is expected


@pytest.mark.parametrize(
    "address,v4,v6",
    [
        ("192.0.2.1", True, False),
        ("2001:db8::1", False, True),
        ("::ffff:192.0.2.1", True, False),
        ("not-an-ip", False, False),
    ],
)
def test_ip_family_checks(address, v4, v6):
    assert is_ipv4(address) is v4
    assert is_ipv6(address) is v6


def test_full_mask():
    assert get_full_mask("192.0.2.1") == "/32"
    assert get_full_mask("2001:db8::1") == "/128"


def test_full_mask_rejects_name():
    with pytest.raises(ValueError):
        get_full_mask("host.example.com")


def test_get_host_name():
    assert get_host_name("apiserver.example.com") == "apiserver"
    assert get_host_name("single") == "single"
    assert get_host_name("") == ""


def test_lookup_host_literal_round_trip():
    assert lookup_host("192.0.2.7") == "192.0.2.7"


def test_generate_mac_format_and_prefix():
    mac = generate_mac()
    assert len(mac) == 17
    parts = mac.split(":")
    assert parts[:3] == ["00", "00", "6C"]
    assert len(parts) == 6
    for part in parts[3:]:
        assert len(part) == 2
        assert part == part.lower()
        assert 0 <= int(part, 16) <= 255


def test_generate_mac_varies():
    macs = {generate_mac() for _ in range(20)}
    assert len(macs) > 1


def test_monitor_default_interface_stopped():
    stop = threading.Event()
    stop.set()
    assert monitor_default_interface(stop, 1) is None