"""Peer records — what we know about one remote peer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from overlay_node.network.address import is_direct
from overlay_node.network.transport import Connection


class AddressState(str, Enum):
    """Reachability classification of an advertised address."""

    UNKNOWN = "unknown"
    VERIFIED_DIRECT = "verified-direct"
    UNPROBEABLE = "unprobeable"  # relay, local or WebRTC shaped


class PeerState(str, Enum):
    """Lifecycle stage of a peer, derived from its record."""

    UNKNOWN = "unknown"
    ONBOARDING = "onboarding"
    ROLE_KNOWN = "role-known"
    STALLED = "role-unknown-stalled"
    CONNECTED_DIRECT = "connected-direct"
    CONNECTED_RELAY = "connected-relay"
    EVICTED = "evicted"


@dataclass(eq=False)
class PeerRecord:
    """Known state of a single remote peer.

    Owned by the PeerDirectory; other components get references but only
    the directory inserts or removes records.
    """

    identity: str
    connections: set[Connection] = field(default_factory=set)
    addresses: dict[str, AddressState] = field(default_factory=dict)
    protocols: set[str] = field(default_factory=set)
    roles: set[str] = field(default_factory=set)
    candidates: dict[str, str] = field(default_factory=dict)
    failure_streak: int = 0

    # ── Connections ──────────────────────────────────────────────

    def is_connected(self) -> bool:
        """At least one connection is open."""
        return any(conn.is_open for conn in self.connections)

    def open_connection(self) -> Connection | None:
        """Any open connection, preferring a direct one."""
        open_conns = [conn for conn in self.connections if conn.is_open]
        if not open_conns:
            return None
        for conn in open_conns:
            if is_direct(conn.remote_addr):
                return conn
        return open_conns[0]

    def open_connections(self) -> list[Connection]:
        return [conn for conn in self.connections if conn.is_open]

    def add_connection(self, connection: Connection) -> None:
        self.connections.add(connection)

    def remove_connection(self, connection: Connection) -> None:
        self.connections.discard(connection)

    def has_direct_connection_to(self, address: str) -> bool:
        return any(
            conn.is_open and conn.remote_addr == address for conn in self.connections
        )

    # ── Roles and protocols ─────────────────────────────────────

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def add_roles(self, roles: Iterable[str]) -> set[str]:
        """Merge roles. Returns the ones that were new."""
        new = {role for role in roles if role and role not in self.roles}
        self.roles.update(new)
        return new

    def supports(self, protocol_id: str) -> bool:
        return protocol_id in self.protocols

    def add_protocols(self, protocols: Iterable[str]) -> None:
        self.protocols.update(p for p in protocols if p)

    # ── Addresses ────────────────────────────────────────────────

    def learn_addresses(self, addresses: Iterable[str]) -> list[str]:
        """Record advertised addresses without touching known ones.

        Addresses that cannot be probed out-of-band are classified as
        UNPROBEABLE right away. Returns the newly learned addresses.
        """
        learned = []
        for address in addresses:
            if not address or address in self.addresses:
                continue
            self.addresses[address] = (
                AddressState.UNKNOWN if is_direct(address) else AddressState.UNPROBEABLE
            )
            learned.append(address)
        return learned

    def mark_verified(self, address: str) -> bool:
        """Promote an UNKNOWN address to VERIFIED_DIRECT.

        Returns True only on the transition; verified addresses stay verified
        and unprobeable ones are never promoted.
        """
        if self.addresses.get(address) is not AddressState.UNKNOWN:
            return False
        self.addresses[address] = AddressState.VERIFIED_DIRECT
        return True

    def unprobed_addresses(self) -> list[str]:
        return [a for a, state in self.addresses.items() if state is AddressState.UNKNOWN]

    def verified_direct_addresses(self) -> list[str]:
        return [
            a for a, state in self.addresses.items()
            if state is AddressState.VERIFIED_DIRECT
        ]
