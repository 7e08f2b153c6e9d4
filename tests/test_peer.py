"""Tests for overlay_node.network.peer.PeerRecord."""

from __future__ import annotations

from conftest import FakeConnection

from overlay_node.network.peer import AddressState, PeerRecord

DIRECT = "/ip4/198.51.100.7/tcp/6006/p2p/peerA"
LOCAL = "/ip4/192.168.1.7/tcp/6006/p2p/peerA"
CIRCUIT = "/ip4/203.0.113.5/tcp/6006/p2p/relayId/p2p-circuit/webrtc/p2p/peerA"


# ── Connections ──────────────────────────────────────────────────

class TestConnections:
    def test_no_connections_is_disconnected(self):
        assert not PeerRecord("peerA").is_connected()

    def test_connected_iff_some_connection_open(self):
        record = PeerRecord("peerA")
        closed = FakeConnection("peerA", CIRCUIT, status="closed")
        record.add_connection(closed)
        assert not record.is_connected()

        opened = FakeConnection("peerA", DIRECT)
        record.add_connection(opened)
        assert record.is_connected()

        opened.status = "closing"
        assert not record.is_connected()

    def test_open_connection_prefers_direct(self):
        record = PeerRecord("peerA")
        relayed = FakeConnection("peerA", CIRCUIT)
        direct = FakeConnection("peerA", DIRECT)
        record.add_connection(relayed)
        record.add_connection(direct)
        assert record.open_connection() is direct

    def test_open_connection_none(self):
        record = PeerRecord("peerA")
        record.add_connection(FakeConnection("peerA", DIRECT, status="closed"))
        assert record.open_connection() is None

    def test_remove_connection(self):
        record = PeerRecord("peerA")
        conn = FakeConnection("peerA", DIRECT)
        record.add_connection(conn)
        record.remove_connection(conn)
        record.remove_connection(conn)  # no error
        assert record.connections == set()

    def test_has_direct_connection_to(self):
        record = PeerRecord("peerA")
        record.add_connection(FakeConnection("peerA", DIRECT))
        assert record.has_direct_connection_to(DIRECT)
        assert not record.has_direct_connection_to(LOCAL)


# ── Roles and protocols ─────────────────────────────────────────

class TestRoles:
    def test_add_roles_returns_new_only(self):
        record = PeerRecord("peerA")
        assert record.add_roles(["node"]) == {"node"}
        assert record.add_roles(["node", "relay", ""]) == {"relay"}
        assert record.roles == {"node", "relay"}

    def test_supports(self):
        record = PeerRecord("peerA")
        record.add_protocols({"/overlay/role/1.0.0", ""})
        assert record.supports("/overlay/role/1.0.0")
        assert not record.supports("")


# ── Addresses ────────────────────────────────────────────────────

class TestAddresses:
    def test_learn_classifies(self):
        record = PeerRecord("peerA")
        learned = record.learn_addresses([DIRECT, LOCAL, CIRCUIT, ""])
        assert learned == [DIRECT, LOCAL, CIRCUIT]
        assert record.addresses[DIRECT] is AddressState.UNKNOWN
        assert record.addresses[LOCAL] is AddressState.UNPROBEABLE
        assert record.addresses[CIRCUIT] is AddressState.UNPROBEABLE

    def test_learn_never_overwrites(self):
        record = PeerRecord("peerA")
        record.learn_addresses([DIRECT])
        record.mark_verified(DIRECT)
        assert record.learn_addresses([DIRECT]) == []
        assert record.addresses[DIRECT] is AddressState.VERIFIED_DIRECT

    def test_mark_verified_only_once(self):
        record = PeerRecord("peerA")
        record.learn_addresses([DIRECT])
        assert record.mark_verified(DIRECT) is True
        assert record.mark_verified(DIRECT) is False
        assert record.verified_direct_addresses() == [DIRECT]
        assert record.unprobed_addresses() == []

    def test_unprobeable_never_verified(self):
        record = PeerRecord("peerA")
        record.learn_addresses([LOCAL])
        assert record.mark_verified(LOCAL) is False
        assert record.mark_verified("/ip4/198.51.100.99/tcp/1") is False
        assert record.verified_direct_addresses() == []
