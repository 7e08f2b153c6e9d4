"""Address shape helpers.

Addresses are multiaddr-style strings such as
``/ip4/203.0.113.5/tcp/6006/ws/p2p/<peer-id>``. Only the shape of an address
is inspected here; nothing is resolved or dialed.
"""

from __future__ import annotations

import ipaddress

# Components that carry a value (``/tcp/6006``); everything else is a flag.
VALUED_COMPONENTS = frozenset(
    {"ip4", "ip6", "dns", "dns4", "dns6", "dnsaddr", "tcp", "udp", "p2p", "ipfs", "certhash"}
)

WEBRTC_COMPONENTS = frozenset({"webrtc", "webrtc-direct"})
CIRCUIT_COMPONENT = "p2p-circuit"

# Loopback, RFC 1918, link-local and unique-local ranges.
_LOCAL_NETWORKS = (
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
)


def parse_components(address: str) -> list[tuple[str, str | None]]:
    """Split an address into ``(protocol, value)`` pairs.

    Flag components (``ws``, ``p2p-circuit``, ``webrtc``) get ``None``.
    A valued component missing its value is returned with ``None`` as well.
    """
    parts = [p for p in address.strip().split("/") if p]
    components: list[tuple[str, str | None]] = []
    i = 0
    while i < len(parts):
        name = parts[i]
        if name in VALUED_COMPONENTS:
            value = parts[i + 1] if i + 1 < len(parts) else None
            components.append((name, value))
            i += 2
        else:
            components.append((name, None))
            i += 1
    return components


def host_of(address: str) -> str | None:
    """First IP or DNS host in the address."""
    for name, value in parse_components(address):
        if name in ("ip4", "ip6", "dns", "dns4", "dns6", "dnsaddr"):
            return value
    return None


def peer_id_of(address: str) -> str | None:
    """Trailing ``/p2p/<id>`` of the address (the target, not the relay)."""
    peer_id = None
    for name, value in parse_components(address):
        if name in ("p2p", "ipfs"):
            peer_id = value
    return peer_id


def is_local(address: str) -> bool:
    """True for loopback, private and link-local IP addresses."""
    for name, value in parse_components(address):
        if name not in ("ip4", "ip6") or value is None:
            continue
        try:
            ip = ipaddress.ip_address(value)
        except ValueError:
            return False
        return any(ip in net for net in _LOCAL_NETWORKS if net.version == ip.version)
    return False


def is_circuit(address: str) -> bool:
    return any(name == CIRCUIT_COMPONENT for name, _ in parse_components(address))


def is_webrtc(address: str) -> bool:
    return any(name in WEBRTC_COMPONENTS for name, _ in parse_components(address))


def is_direct(address: str) -> bool:
    """Reachable without a relay: not local, not circuit, not WebRTC signaling."""
    if not address:
        return False
    return not (is_local(address) or is_circuit(address) or is_webrtc(address))


def relay_hop_address(relay_address: str, peer_id: str) -> str:
    """Circuit address reaching ``peer_id`` through the relay at ``relay_address``."""
    return f"{relay_address.rstrip('/')}/{CIRCUIT_COMPONENT}/webrtc/p2p/{peer_id}"
