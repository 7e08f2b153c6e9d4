"""Configuration objects for an overlay node.

Values are passed explicitly into the transport, the topology service and
the peer directory. The CLI builds them from a JSON file plus overrides.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class BootstrapRelay:
    """The relay every node falls back to when no relay peer is connected."""

    address: str
    port: int
    peer_id: str
    websocket: bool = False

    @property
    def multiaddr(self) -> str:
        """Dialable address of the relay."""
        ws = "/ws" if self.websocket else ""
        return f"/ip4/{self.address}/tcp/{self.port}{ws}/p2p/{self.peer_id}"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BootstrapRelay:
        return cls(
            address=raw.get("address", raw.get("ADDRESS", "")),
            port=int(raw.get("port", raw.get("PORT", 0))),
            peer_id=raw.get("peerId", raw.get("peer_id", raw.get("PEER", ""))),
            websocket=bool(raw.get("websocket", False)),
        )


@dataclass
class ProtocolIds:
    """Identifiers of the request/response mini-protocols."""

    role: str = "/overlay/role/1.0.0"
    multiaddrs: str = "/overlay/multiaddrs/1.0.0"
    peer_list: str = "/overlay/peer-list/1.0.0"
    ping: str = "/overlay/ping/1.0.0"


@dataclass
class RoleTags:
    """Role strings exchanged over the ROLE protocol."""

    relay: str = "relay"
    node: str = "node"


@dataclass
class TopologyConfig:
    """Tuning knobs for topology reconciliation."""

    bootstrap: BootstrapRelay | None = None
    protocols: ProtocolIds = field(default_factory=ProtocolIds)
    roles: RoleTags = field(default_factory=RoleTags)
    local_roles: list[str] = field(default_factory=lambda: ["node"])

    # Reachability
    reachability_threshold_ms: float = 10_000.0

    # Reconciliation
    reconcile_interval: float = 10.0
    max_node_connections: int = 20
    max_relay_connections: int = 2  # advisory, see PeerDirectory._count_roles
    eviction_threshold: int = 10

    # Onboarding
    onboarding_attempts: int = 20
    onboarding_poll_interval: float = 0.5
    address_fetch_attempts: int = 30
    address_fetch_interval: float = 1.0

    # Transport deadlines (seconds)
    dial_timeout: float = 5.0
    hangup_timeout: float = 5.0
    request_timeout: float = 5.0
    probe_timeout: float = 10.0

    # Pending direct-address reconnection
    reconnect_max_attempts: int = 10
    reconnect_backoff_cap_ticks: int = 32

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TopologyConfig:
        """Build a config from the JSON layout used by ``overlay-node --config``."""
        config = cls()

        relay = raw.get("relay")
        if isinstance(relay, list):
            relay = relay[0] if relay else None
        if relay:
            config.bootstrap = BootstrapRelay.from_dict(relay)

        protocols = raw.get("protocols", {})
        config.protocols = ProtocolIds(
            role=protocols.get("role", protocols.get("ROLE", ProtocolIds.role)),
            multiaddrs=protocols.get(
                "multiaddrs", protocols.get("MULTIADDRES", ProtocolIds.multiaddrs)
            ),
            peer_list=protocols.get(
                "peer_list", protocols.get("PEER_LIST", ProtocolIds.peer_list)
            ),
            ping=protocols.get("ping", protocols.get("PING", ProtocolIds.ping)),
        )

        roles = raw.get("roles", {})
        config.roles = RoleTags(
            relay=roles.get("relay", roles.get("RELAY", RoleTags.relay)),
            node=roles.get("node", roles.get("NODE", RoleTags.node)),
        )

        if "local_roles" in raw:
            config.local_roles = list(raw["local_roles"])

        for name in (
            "reachability_threshold_ms",
            "reconcile_interval",
            "onboarding_poll_interval",
            "address_fetch_interval",
            "dial_timeout",
            "hangup_timeout",
            "request_timeout",
            "probe_timeout",
        ):
            if name in raw:
                setattr(config, name, float(raw[name]))

        for name in (
            "max_node_connections",
            "max_relay_connections",
            "eviction_threshold",
            "onboarding_attempts",
            "address_fetch_attempts",
            "reconnect_max_attempts",
            "reconnect_backoff_cap_ticks",
        ):
            if name in raw:
                setattr(config, name, int(raw[name]))

        return config


@dataclass
class NodeConfig:
    """Process-level settings: where to listen and who we are."""

    host: str = "0.0.0.0"
    port: int = 6006
    peer_id: str = ""  # Generated by the transport if empty
    advertise_host: str = ""
    topology: TopologyConfig = field(default_factory=TopologyConfig)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NodeConfig:
        return cls(
            host=raw.get("host", "0.0.0.0"),
            port=int(raw.get("port", 6006)),
            peer_id=raw.get("peer_id", ""),
            advertise_host=raw.get("advertise_host", ""),
            topology=TopologyConfig.from_dict(raw.get("topology", raw)),
        )
