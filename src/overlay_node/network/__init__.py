"""Networking layer — peer directory, gossip discovery and topology upkeep."""

from overlay_node.network.directory import PeerDirectory, PeerEvent, PeerEventKind
from overlay_node.network.http_transport import HttpTransport
from overlay_node.network.peer import AddressState, PeerRecord, PeerState
from overlay_node.network.topology import TopologyService
from overlay_node.network.transport import Transport, TransportError

__all__ = [
    "AddressState",
    "HttpTransport",
    "PeerDirectory",
    "PeerEvent",
    "PeerEventKind",
    "PeerRecord",
    "PeerState",
    "TopologyService",
    "Transport",
    "TransportError",
]
