"""Tests for overlay_node.network.address."""

from __future__ import annotations

import pytest

from overlay_node.network.address import (
    host_of,
    is_circuit,
    is_direct,
    is_local,
    is_webrtc,
    parse_components,
    peer_id_of,
    relay_hop_address,
)

PUBLIC = "/ip4/198.51.100.7/tcp/6006/p2p/peerA"
RELAY = "/ip4/203.0.113.5/tcp/6006/ws/p2p/relayId"
CIRCUIT = f"{RELAY}/p2p-circuit/webrtc/p2p/peerA"


class TestParse:
    def test_components(self):
        assert parse_components(PUBLIC) == [
            ("ip4", "198.51.100.7"),
            ("tcp", "6006"),
            ("p2p", "peerA"),
        ]

    def test_flags_have_no_value(self):
        assert ("ws", None) in parse_components(RELAY)

    def test_truncated_valued_component(self):
        assert parse_components("/ip4/1.2.3.4/tcp") == [("ip4", "1.2.3.4"), ("tcp", None)]

    def test_host_and_peer_id(self):
        assert host_of(PUBLIC) == "198.51.100.7"
        assert peer_id_of(PUBLIC) == "peerA"

    def test_peer_id_of_circuit_is_target(self):
        assert peer_id_of(CIRCUIT) == "peerA"

    def test_peer_id_missing(self):
        assert peer_id_of("/ip4/1.2.3.4/tcp/1") is None


class TestClassification:
    @pytest.mark.parametrize("address", [
        "/ip4/127.0.0.1/tcp/6006",
        "/ip4/10.1.2.3/tcp/6006",
        "/ip4/172.20.0.1/tcp/6006",
        "/ip4/192.168.1.10/tcp/6006",
        "/ip6/::1/tcp/6006",
        "/ip6/fe80::1/tcp/6006",
    ])
    def test_local(self, address):
        assert is_local(address)
        assert not is_direct(address)

    def test_documentation_ranges_are_not_local(self):
        assert not is_local("/ip4/203.0.113.5/tcp/6006")
        assert not is_local(PUBLIC)

    def test_circuit(self):
        assert is_circuit(CIRCUIT)
        assert not is_direct(CIRCUIT)

    def test_webrtc(self):
        assert is_webrtc("/ip4/198.51.100.7/udp/9090/webrtc-direct/p2p/peerA")
        assert not is_direct("/ip4/198.51.100.7/udp/9090/webrtc-direct/p2p/peerA")

    def test_public_tcp_is_direct(self):
        assert is_direct(PUBLIC)
        assert is_direct("/dns4/node.example.org/tcp/443/wss/p2p/peerA")

    def test_empty_is_not_direct(self):
        assert not is_direct("")


def test_relay_hop_address():
    assert relay_hop_address(RELAY, "peerA") == CIRCUIT
    assert relay_hop_address(RELAY + "/", "peerA") == CIRCUIT
