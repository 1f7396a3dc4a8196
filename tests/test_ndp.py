import ipaddress

import pytest

from vipnet.ndp import (
    FLAG_OVERRIDE,
    FLAG_SOLICITED,
    ICMPV6_NEIGHBOR_ADVERTISEMENT,
    OPTION_TARGET_LINK_LAYER_ADDRESS,
    NdpResponder,
    build_neighbor_advertisement,
)

MAC = "02:00:00:00:00:01"
TARGET = "fd00::10"


def test_gratuitous_advertisement_layout():
    message = build_neighbor_advertisement(TARGET, MAC, True)
    assert message[0] == ICMPV6_NEIGHBOR_ADVERTISEMENT
    assert message[0] == 136
    assert message[1] == 0
    assert message[4] == FLAG_OVERRIDE
    assert message[8:24] == ipaddress.ip_address(TARGET).packed
    assert message[24] == OPTION_TARGET_LINK_LAYER_ADDRESS
    assert message[25] == 1
    assert message[26:] == bytes.fromhex("020000000001")


def test_solicited_advertisement_sets_solicited_flag():
    message = build_neighbor_advertisement(TARGET, MAC, False)
    assert message[4] == FLAG_SOLICITED
    assert message[4] & FLAG_OVERRIDE == 0


def test_mac_as_bytes_matches_text():
    assert build_neighbor_advertisement(TARGET, bytes.fromhex("020000000001")) == (
        build_neighbor_advertisement(TARGET, MAC)
    )


def test_length_is_multiple_of_eight():
    assert len(build_neighbor_advertisement(TARGET, MAC)) % 8 == 0


def test_ipv4_target_rejected():
    with pytest.raises(ValueError):
        build_neighbor_advertisement("192.0.2.1", MAC)


def test_bad_mac_rejected():
    with pytest.raises(ValueError):
        build_neighbor_advertisement(TARGET, "02:00:00")


def test_unknown_interface_rejected():
    with pytest.raises(OSError, match="failed to get interface"):
        NdpResponder("nosuchif0")