"""Tests for overlay_node.config and the CLI config loader."""

from __future__ import annotations

import json

import pytest

from overlay_node.cli import load_config, parse_args, parse_relay
from overlay_node.config import BootstrapRelay, NodeConfig, ProtocolIds, TopologyConfig


class TestBootstrapRelay:
    def test_multiaddr(self):
        relay = BootstrapRelay(address="203.0.113.5", port=6006, peer_id="relayId")
        assert relay.multiaddr == "/ip4/203.0.113.5/tcp/6006/p2p/relayId"

    def test_websocket_multiaddr(self):
        relay = BootstrapRelay(address="203.0.113.5", port=443, peer_id="r", websocket=True)
        assert relay.multiaddr == "/ip4/203.0.113.5/tcp/443/ws/p2p/r"

    def test_from_dict_accepts_upper_case_keys(self):
        relay = BootstrapRelay.from_dict({"ADDRESS": "203.0.113.5", "PORT": "6006", "PEER": "r"})
        assert (relay.address, relay.port, relay.peer_id) == ("203.0.113.5", 6006, "r")


class TestTopologyConfig:
    def test_defaults(self):
        config = TopologyConfig()
        assert config.bootstrap is None
        assert config.reachability_threshold_ms == 10_000
        assert config.max_node_connections == 20
        assert config.eviction_threshold == 10
        assert config.reconcile_interval == 10
        assert config.local_roles == ["node"]

    def test_from_dict(self):
        config = TopologyConfig.from_dict({
            "relay": [{"address": "203.0.113.5", "port": 6006, "peerId": "relayId"}],
            "protocols": {"ROLE": "/custom/role/2.0.0", "peer_list": "/custom/peers/1.0.0"},
            "roles": {"RELAY": "hub"},
            "local_roles": ["node", "relay"],
            "reconcile_interval": 2,
            "max_node_connections": "5",
        })
        assert config.bootstrap.peer_id == "relayId"
        assert config.protocols.role == "/custom/role/2.0.0"
        assert config.protocols.peer_list == "/custom/peers/1.0.0"
        assert config.protocols.ping == ProtocolIds.ping
        assert config.roles.relay == "hub"
        assert config.roles.node == "node"
        assert config.local_roles == ["node", "relay"]
        assert config.reconcile_interval == 2.0
        assert config.max_node_connections == 5

    def test_empty_relay_list(self):
        assert TopologyConfig.from_dict({"relay": []}).bootstrap is None


class TestNodeConfig:
    def test_nested_topology(self):
        config = NodeConfig.from_dict({"port": 7001, "topology": {"eviction_threshold": 3}})
        assert config.port == 7001
        assert config.host == "0.0.0.0"
        assert config.topology.eviction_threshold == 3

    def test_flat_layout(self):
        config = NodeConfig.from_dict({"eviction_threshold": 4})
        assert config.topology.eviction_threshold == 4


# ── CLI ──────────────────────────────────────────────────────────

class TestCli:
    def test_parse_relay(self):
        relay = parse_relay("203.0.113.5:6006:relayId")
        assert relay.multiaddr == "/ip4/203.0.113.5/tcp/6006/p2p/relayId"

    @pytest.mark.parametrize("spec", ["203.0.113.5:6006", "203.0.113.5:x:r", ":6006:r"])
    def test_parse_relay_invalid(self, spec):
        with pytest.raises(ValueError):
            parse_relay(spec)

    def test_parse_args(self):
        args = parse_args(["--port", "7002", "--relay", "203.0.113.5:6006:r", "-l", "DEBUG"])
        assert args.port == 7002
        assert args.relay == "203.0.113.5:6006:r"
        assert args.log_level == "DEBUG"
        assert args.config is None

    def test_load_config_without_file(self):
        config = load_config(None, {})
        assert config.port == 6006
        assert config.topology.bootstrap is None

    def test_load_config_with_overrides(self, tmp_path):
        path = tmp_path / "node.json"
        path.write_text(json.dumps({
            "port": 7000,
            "peer_id": "from-file",
            "topology": {"relay": {"address": "203.0.113.5", "port": 6006, "peerId": "r"}},
        }))
        override_relay = parse_relay("198.51.100.1:6006:other")
        config = load_config(str(path), {"port": 7100, "relay": override_relay})

        assert config.port == 7100
        assert config.peer_id == "from-file"
        assert config.topology.bootstrap is override_relay

    def test_missing_config_file_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            load_config(str(tmp_path / "missing.json"), {})
