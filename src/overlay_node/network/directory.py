"""Peer directory — who we know, who we keep, who we drop.

The directory owns one PeerRecord per remote identity and runs the periodic
reconciliation tick. Each tick, in order:

  1. Role census: count connected relays and nodes; dial the bootstrap relay
     when no relay is connected.
  2. Connection census: count open connections by address shape.
  3. Address optimization: a peer with a verified direct address that we are
     not using is hung up and queued for reconnection on that address.
  4. Reconnection retry: dial queued direct addresses (capped backoff).
  5. Eviction: peers that are both disconnected and role-less accumulate a
     failure streak and are dropped once it passes the threshold.
  6. Health maintenance: per connected peer, a background task fetches
     missing roles/addresses, runs gossip discovery and probes addresses.

Every external call is caught where it is made. A misbehaving peer costs a
log line, never the tick.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine

from overlay_node.config import TopologyConfig
from overlay_node.network.address import is_direct, is_webrtc, relay_hop_address
from overlay_node.network.discovery import GossipDiscovery, PeerListEntry
from overlay_node.network.peer import PeerRecord, PeerState
from overlay_node.network.probe import LivenessProbe
from overlay_node.network.scheduler import Scheduler
from overlay_node.network.transport import Connection, Transport

logger = logging.getLogger(__name__)

# Identities remembered as evicted, for peer_state() (LRU eviction)
MAX_EVICTED_HISTORY = 1_000


class PeerEventKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    ROLES_LEARNED = "roles_learned"
    ADDRESS_VERIFIED = "address_verified"


@dataclass(frozen=True)
class PeerEvent:
    kind: PeerEventKind
    identity: str
    detail: str = ""


PeerEventCallback = Callable[[PeerEvent], None]


@dataclass
class Census:
    """Counts taken during one reconciliation tick."""

    tick: int = 0
    relay_peers: int = 0
    node_peers: int = 0
    unknown_peers: int = 0
    direct_connections: int = 0
    relay_connections: int = 0


@dataclass
class PendingReconnect:
    """A verified direct address we want to be connected through."""

    address: str
    attempts: int = 0
    retry_at_tick: int = 0


class PeerDirectory:
    """Maps peer identities to PeerRecords and keeps the topology healthy.

    Structural changes (insert, delete, pending reconnections) go through
    this class under a single lock, so stale background tasks can never
    resurrect or duplicate a record.
    """

    def __init__(
        self,
        transport: Transport,
        config: TopologyConfig | None = None,
        *,
        probe: LivenessProbe | None = None,
        gossip: GossipDiscovery | None = None,
        scheduler: Scheduler | None = None,
        local_identity: str | None = None,
    ) -> None:
        self.config = config or TopologyConfig()
        self.transport = transport
        self.probe = probe or LivenessProbe(
            transport,
            threshold_ms=self.config.reachability_threshold_ms,
            timeout=self.config.probe_timeout,
        )
        self.gossip = gossip or GossipDiscovery(
            transport, self.config.protocols, timeout=self.config.request_timeout
        )
        self.scheduler = scheduler or Scheduler()
        self.local_identity = local_identity
        self.census = Census()

        self._records: dict[str, PeerRecord] = {}
        self._pending: dict[str, PendingReconnect] = {}
        self._onboarding: set[str] = set()
        self._evicted: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.RLock()
        self._subscribers: list[PeerEventCallback] = []
        self._node_dials_in_flight = 0
        self._tick = 0
        self._running = False
        self._loop_task: asyncio.Task | None = None

    # ── Lookup ───────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identity: object) -> bool:
        return identity in self._records

    def get(self, identity: str) -> PeerRecord | None:
        return self._records.get(identity)

    def records(self) -> list[PeerRecord]:
        """Snapshot of all records, safe to iterate while the map changes."""
        with self._lock:
            return list(self._records.values())

    def pending_reconnects(self) -> dict[str, str]:
        """Identity -> direct address for every queued reconnection."""
        with self._lock:
            return {identity: p.address for identity, p in self._pending.items()}

    def connected_peers(self) -> list[tuple[str, str]]:
        """``(identity, remote address)`` for every record with an open connection."""
        peers = []
        for record in self.records():
            conn = record.open_connection()
            if conn is not None:
                peers.append((record.identity, conn.remote_addr))
        return peers

    def is_node_peer(self, record: PeerRecord) -> bool:
        """Node role without the relay role; relay-and-node peers count as relays."""
        roles = self.config.roles
        return record.has_role(roles.node) and not record.has_role(roles.relay)

    def connected_node_count(self) -> int:
        return sum(1 for r in self.records() if r.is_connected() and self.is_node_peer(r))

    def peer_state(self, identity: str) -> PeerState:
        """Lifecycle stage of ``identity`` as seen from the directory."""
        record = self._records.get(identity)
        if record is None:
            if identity in self._pending:
                return PeerState.ROLE_KNOWN
            if identity in self._evicted:
                return PeerState.EVICTED
            return PeerState.UNKNOWN
        if identity in self._onboarding:
            return PeerState.ONBOARDING
        if not record.roles:
            return PeerState.STALLED
        conn = record.open_connection()
        if conn is None:
            return PeerState.ROLE_KNOWN
        if is_direct(conn.remote_addr):
            return PeerState.CONNECTED_DIRECT
        return PeerState.CONNECTED_RELAY

    # ── Observers ────────────────────────────────────────────────

    def subscribe(self, callback: PeerEventCallback) -> None:
        """Register a callback for PeerEvents."""
        self._subscribers.append(callback)

    def _emit(self, kind: PeerEventKind, identity: str, detail: str = "") -> None:
        event = PeerEvent(kind, identity, detail)
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Peer event subscriber failed for %s", kind.value)

    # ── Mutation ─────────────────────────────────────────────────

    def upsert(self, identity: str, connection: Connection | None = None) -> PeerRecord:
        """Insert a record or merge a connection into the existing one.

        A new record gets exactly one onboarding task.
        """
        if identity == self.local_identity:
            raise ValueError("refusing to track the local peer")

        with self._lock:
            record = self._records.get(identity)
            created = record is None
            if record is None:
                record = PeerRecord(identity=identity)
                self._records[identity] = record
                for other in self._records.values():
                    other.candidates.pop(identity, None)
                self._onboarding.add(identity)
                self._evicted.pop(identity, None)
            if connection is not None:
                record.add_connection(connection)

        if created:
            logger.info("Peer added: %s", identity[:12])
            self._emit(PeerEventKind.ADDED, identity)
            self.scheduler.spawn(
                self._guarded(self._onboard(record), f"onboarding {identity[:12]}"),
                name=f"onboard-{identity[:12]}",
            )
        return record

    def drop_connection(self, identity: str, connection: Connection) -> None:
        """Forget a closed connection. Unknown peers are ignored."""
        with self._lock:
            record = self._records.get(identity)
            if record is None:
                return
            record.remove_connection(connection)
        if not record.is_connected():
            logger.info("Peer disconnected: %s", identity[:12])

    def merge_protocols(self, identity: str, protocols: set[str] | frozenset[str]) -> PeerRecord:
        record = self.upsert(identity)
        record.add_protocols(protocols)
        return record

    def _is_current(self, record: PeerRecord) -> bool:
        """The record is still the one the directory holds for its identity."""
        with self._lock:
            return self._records.get(record.identity) is record

    # ── Loop control ─────────────────────────────────────────────

    def start(self, local_identity: str) -> None:
        """Begin periodic reconciliation on behalf of ``local_identity``."""
        self.local_identity = local_identity
        with self._lock:
            self._records.pop(local_identity, None)
        self._running = True
        self._loop_task = self.scheduler.spawn(self._reconcile_loop(), name="reconcile-loop")
        logger.info(
            "Peer directory started: local=%s interval=%.1fs",
            local_identity[:12],
            self.config.reconcile_interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
        await self.scheduler.shutdown()
        logger.info("Peer directory stopped")

    async def _reconcile_loop(self) -> None:
        # First tick runs right away, then once per interval.
        while self._running:
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Reconciliation tick failed")
            await self.scheduler.sleep(self.config.reconcile_interval)

    # ── Reconciliation ──────────────────────────────────────────

    async def reconcile(self) -> Census:
        """Run one reconciliation tick and return its census."""
        self._tick += 1
        census = Census(tick=self._tick)

        await self._count_roles(census)
        self._count_connections(census)
        await self._optimize_addresses()
        await self._retry_reconnections()
        self._evict_dead_peers()
        self._maintain_health()

        self.census = census
        return census

    async def connect(self, address: str) -> Connection | None:
        """Dial ``address``; failures are logged and reported as None."""
        try:
            return await self.transport.dial(address, timeout=self.config.dial_timeout)
        except Exception as e:
            logger.warning("Connect to %s failed: %s", address, e)
            return None

    async def disconnect(self, address: str) -> None:
        try:
            await self.transport.hang_up(address, timeout=self.config.hangup_timeout)
        except Exception as e:
            logger.warning("Disconnect from %s failed: %s", address, e)

    async def _count_roles(self, census: Census) -> None:
        roles = self.config.roles
        for record in self.records():
            if not record.is_connected():
                census.unknown_peers += 1
            elif record.has_role(roles.relay):
                census.relay_peers += 1
            elif self.is_node_peer(record):
                census.node_peers += 1
            else:
                census.unknown_peers += 1

        logger.info(
            "Census #%d: relays=%d nodes=%d unknown=%d",
            census.tick,
            census.relay_peers,
            census.node_peers,
            census.unknown_peers,
        )

        if census.relay_peers > self.config.max_relay_connections:
            logger.warning(
                "Connected to %d relays (advisory max %d)",
                census.relay_peers,
                self.config.max_relay_connections,
            )

        if census.relay_peers == 0 and self.config.bootstrap is not None:
            address = self.config.bootstrap.multiaddr
            logger.info("No relay connected, dialing bootstrap %s", address)
            await self.connect(address)

    def _count_connections(self, census: Census) -> None:
        for record in self.records():
            for conn in record.open_connections():
                if is_direct(conn.remote_addr):
                    census.direct_connections += 1
                else:
                    census.relay_connections += 1
        logger.info(
            "Connections: direct=%d relay=%d",
            census.direct_connections,
            census.relay_connections,
        )

    async def _optimize_addresses(self) -> None:
        for record in self.records():
            direct = record.verified_direct_addresses()
            if not direct:
                continue
            if any(record.has_direct_connection_to(a) for a in direct):
                continue

            target = direct[0]
            with self._lock:
                if self._records.get(record.identity) is not record:
                    continue
                self._pending[record.identity] = PendingReconnect(address=target)
                del self._records[record.identity]
                self._onboarding.discard(record.identity)

            to_close = record.open_connections()
            logger.info(
                "Promoting %s to direct address %s (closing %d connections)",
                record.identity[:12],
                target,
                len(to_close),
            )
            await asyncio.gather(*(self.disconnect(c.remote_addr) for c in to_close))
            self._emit(PeerEventKind.REMOVED, record.identity, "promoted")

    async def _retry_reconnections(self) -> None:
        with self._lock:
            due = [
                (identity, pending)
                for identity, pending in self._pending.items()
                if pending.retry_at_tick <= self._tick
            ]

        for identity, pending in due:
            conn = await self.connect(pending.address)
            if conn is not None and conn.is_open:
                with self._lock:
                    if self._pending.get(identity) is pending:
                        del self._pending[identity]
                logger.info("Reconnected to %s via %s", identity[:12], pending.address)
                continue

            pending.attempts += 1
            if pending.attempts >= self.config.reconnect_max_attempts:
                with self._lock:
                    if self._pending.get(identity) is pending:
                        del self._pending[identity]
                logger.warning(
                    "Giving up on direct reconnection to %s after %d attempts",
                    identity[:12],
                    pending.attempts,
                )
                continue

            backoff = min(2 ** (pending.attempts - 1), self.config.reconnect_backoff_cap_ticks)
            pending.retry_at_tick = self._tick + backoff
            logger.info(
                "Reconnect to %s via %s failed, retry in %d ticks",
                identity[:12],
                pending.address,
                backoff,
            )

    def _evict_dead_peers(self) -> None:
        evicted = []
        with self._lock:
            for identity, record in list(self._records.items()):
                if record.is_connected() or record.roles:
                    record.failure_streak = 0
                    continue
                record.failure_streak += 1
                if record.failure_streak > self.config.eviction_threshold:
                    del self._records[identity]
                    self._onboarding.discard(identity)
                    self._evicted[identity] = None
                    evicted.append(identity)
            while len(self._evicted) > MAX_EVICTED_HISTORY:
                self._evicted.popitem(last=False)

        for identity in evicted:
            logger.info("Evicted dead peer %s", identity[:12])
            self._emit(PeerEventKind.REMOVED, identity, "evicted")

    def _maintain_health(self) -> None:
        for record in self.records():
            if not record.is_connected():
                continue
            self.scheduler.spawn(
                self._guarded(self._maintain(record), f"health check {record.identity[:12]}"),
                name=f"health-{record.identity[:12]}",
            )

    async def _maintain(self, record: PeerRecord) -> None:
        if not record.roles:
            await self._learn_roles(record)
        if not record.roles or not self._is_current(record):
            return
        if not record.addresses:
            await self._learn_addresses(record, attempts=1)
        await self.discover_candidates(record)
        await self._verify_direct_addresses(record)

    # ── Per-record tasks ─────────────────────────────────────────

    async def _guarded(self, coro: Coroutine[Any, Any, Any], what: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background task failed: %s", what)

    async def _onboard(self, record: PeerRecord) -> None:
        try:
            attempts = 0
            while not record.is_connected() and attempts < self.config.onboarding_attempts:
                await self.scheduler.sleep(self.config.onboarding_poll_interval)
                attempts += 1

            if not self._is_current(record):
                return
            if not record.is_connected():
                logger.info(
                    "Onboarding of %s abandoned: no open connection after %d polls",
                    record.identity[:12],
                    attempts,
                )
                return

            await self._learn_roles(record)
            if not record.roles:
                logger.info("Onboarding of %s stalled: roles unknown", record.identity[:12])
                return
            await self._learn_addresses(record, attempts=self.config.address_fetch_attempts)
            await self.discover_candidates(record)
        finally:
            with self._lock:
                if self._records.get(record.identity) in (record, None):
                    self._onboarding.discard(record.identity)

    async def _learn_roles(self, record: PeerRecord) -> None:
        roles = await self.gossip.fetch_roles(record)
        if not roles or not self._is_current(record):
            return
        new = record.add_roles(roles)
        if new:
            logger.info("Peer %s roles: %s", record.identity[:12], sorted(record.roles))
            self._emit(PeerEventKind.ROLES_LEARNED, record.identity, ",".join(sorted(new)))

    async def _learn_addresses(self, record: PeerRecord, attempts: int) -> bool:
        """Fetch advertised addresses from a node-role peer.

        Retries every ``address_fetch_interval`` while the peer stays current,
        connected and role-bearing, up to ``attempts`` times.
        """
        if not record.has_role(self.config.roles.node):
            return False
        if not record.supports(self.config.protocols.multiaddrs):
            return False

        for attempt in range(attempts):
            addresses = await self.gossip.fetch_addresses(record)
            if addresses is not None:
                if not self._is_current(record):
                    return False
                learned = record.learn_addresses(addresses)
                logger.info(
                    "Peer %s advertised %d addresses (%d new)",
                    record.identity[:12],
                    len(addresses),
                    len(learned),
                )
                return True
            if attempt + 1 >= attempts:
                break
            logger.debug(
                "Waiting for addresses of %s (attempt %d/%d)",
                record.identity[:12],
                attempt + 1,
                attempts,
            )
            await self.scheduler.sleep(self.config.address_fetch_interval)
            if not (self._is_current(record) and record.is_connected() and record.roles):
                return False

        logger.info("Address fetch for %s abandoned after %d attempts", record.identity[:12], attempts)
        return False

    async def _verify_direct_addresses(self, record: PeerRecord) -> None:
        if not record.has_role(self.config.roles.node):
            return
        for address in record.unprobed_addresses():
            latency = await self.probe.measure(address)
            if not self.probe.within_threshold(latency):
                continue
            if not self._is_current(record):
                return
            if record.mark_verified(address):
                logger.info(
                    "Verified direct address %s for %s (%.1f ms)",
                    address,
                    record.identity[:12],
                    latency,
                )
                self._emit(PeerEventKind.ADDRESS_VERIFIED, record.identity, address)

    # ── Candidate discovery ─────────────────────────────────────

    async def discover_candidates(self, record: PeerRecord) -> None:
        """Ask ``record`` for its peers and dial the reachable newcomers."""
        entries = await self.gossip.fetch_peer_list(record)
        if not entries or not self._is_current(record):
            return

        attempts = []
        for entry in entries:
            if not self._is_candidate(entry.peer_id, record):
                continue
            address = self._candidate_address(record, entry)
            if address is None:
                continue
            record.candidates[entry.peer_id] = address
            attempts.append(
                self._guarded(
                    self._try_candidate(entry.peer_id, address),
                    f"candidate {entry.peer_id[:12]}",
                )
            )
        if attempts:
            logger.debug("Peer %s offered %d candidates", record.identity[:12], len(attempts))
            await asyncio.gather(*attempts)

    def _is_candidate(self, peer_id: str, owner: PeerRecord) -> bool:
        if not peer_id or peer_id == owner.identity or peer_id == self.local_identity:
            return False
        with self._lock:
            return peer_id not in self._records and peer_id not in self._pending

    def _candidate_address(self, owner: PeerRecord, entry: PeerListEntry) -> str | None:
        roles = self.config.roles
        if owner.has_role(roles.relay):
            conn = owner.open_connection()
            if conn is None:
                return None
            return relay_hop_address(conn.remote_addr, entry.peer_id)
        if owner.has_role(roles.node):
            if not entry.address or is_webrtc(entry.address):
                return None
            return entry.address
        return None

    async def _try_candidate(self, peer_id: str, address: str) -> None:
        latency = await self.probe.measure(address)
        if not self.probe.within_threshold(latency):
            return
        if not self._reserve_node_slot():
            logger.debug("Node quota reached, not connecting to %s", peer_id[:12])
            return
        try:
            with self._lock:
                if peer_id in self._records or peer_id in self._pending:
                    return
            logger.info("Connecting to candidate %s via %s", peer_id[:12], address)
            await self.connect(address)
        finally:
            self._release_node_slot()

    def _reserve_node_slot(self) -> bool:
        with self._lock:
            used = self.connected_node_count() + self._node_dials_in_flight
            if used >= self.config.max_node_connections:
                return False
            self._node_dials_in_flight += 1
            return True

    def _release_node_slot(self) -> None:
        with self._lock:
            self._node_dials_in_flight -= 1

    # ── Stats ────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        return {
            "known_peers": len(self._records),
            "pending_reconnects": len(self._pending),
            "tick": self.census.tick,
            "relay_peers": self.census.relay_peers,
            "node_peers": self.census.node_peers,
            "unknown_peers": self.census.unknown_peers,
            "direct_connections": self.census.direct_connections,
            "relay_connections": self.census.relay_connections,
        }
