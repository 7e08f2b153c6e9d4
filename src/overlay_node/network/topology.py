"""Topology service — wires the transport to the peer directory.

Transport events become directory mutations, the local node answers the
ROLE / MULTIADDRES / PEER_LIST / PING mini-protocols, and the directory's
reconciliation loop is started once the bootstrap relay has been dialed.
"""

from __future__ import annotations

import json
import logging

from overlay_node.config import TopologyConfig
from overlay_node.network.directory import PeerDirectory
from overlay_node.network.discovery import (
    PeerListEntry,
    encode_addresses,
    encode_peer_list,
    encode_roles,
)
from overlay_node.network.scheduler import Scheduler
from overlay_node.network.transport import (
    ConnectionClosed,
    ConnectionOpened,
    ProtocolsUpdated,
    Transport,
    TransportEvent,
)

logger = logging.getLogger(__name__)

PONG = "PONG"


class TopologyService:
    """Keeps the peer directory in sync with what the transport reports."""

    def __init__(
        self,
        transport: Transport,
        config: TopologyConfig | None = None,
        scheduler: Scheduler | None = None,
        directory: PeerDirectory | None = None,
    ) -> None:
        self.transport = transport
        self.config = config or TopologyConfig()
        self.scheduler = scheduler or Scheduler()
        self.directory = directory or PeerDirectory(
            transport, self.config, scheduler=self.scheduler
        )
        self.local_identity: str | None = None
        self._started = False

    async def start(self) -> None:
        """Subscribe to transport events, dial the bootstrap relay, start reconciling."""
        if self._started:
            return
        self._started = True
        self.local_identity = self.transport.local_identity()
        self.directory.local_identity = self.local_identity

        self._register_handlers()
        self.transport.subscribe(self._on_transport_event)

        bootstrap = self.config.bootstrap
        if bootstrap is not None:
            logger.info("Dialing bootstrap relay %s", bootstrap.multiaddr)
            conn = await self.directory.connect(bootstrap.multiaddr)
            if conn is None:
                logger.warning("Bootstrap relay unreachable, will retry on reconciliation")
        else:
            logger.warning("No bootstrap relay configured")

        self.directory.start(self.local_identity)
        logger.info("Topology service started: peer=%s", self.local_identity[:12])

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.directory.stop()
        logger.info("Topology service stopped")

    # ── Transport events ─────────────────────────────────────────

    def _on_transport_event(self, event: TransportEvent) -> None:
        try:
            if event.identity == self.local_identity:
                return
            if isinstance(event, ConnectionOpened):
                self.directory.upsert(event.identity, event.connection)
            elif isinstance(event, ConnectionClosed):
                self.directory.drop_connection(event.identity, event.connection)
            elif isinstance(event, ProtocolsUpdated):
                self.directory.merge_protocols(event.identity, event.protocols)
        except Exception:
            logger.exception(
                "Error handling %s for %s", type(event).__name__, event.identity[:12]
            )

    # ── Mini-protocol handlers ──────────────────────────────────

    def _register_handlers(self) -> None:
        protocols = self.config.protocols
        self.transport.register_protocol_handler(protocols.role, self._serve_roles)
        self.transport.register_protocol_handler(protocols.multiaddrs, self._serve_addresses)
        self.transport.register_protocol_handler(protocols.peer_list, self._serve_peer_list)
        self.transport.register_protocol_handler(protocols.ping, self._serve_ping)

    async def _serve_roles(self, remote_peer: str) -> bytes:
        logger.debug("ROLE request from %s", remote_peer[:12])
        return encode_roles(self.config.local_roles)

    async def _serve_addresses(self, remote_peer: str) -> bytes:
        logger.debug("MULTIADDRES request from %s", remote_peer[:12])
        return encode_addresses(self.transport.listen_addresses())

    async def _serve_peer_list(self, remote_peer: str) -> bytes:
        entries = [
            PeerListEntry(peer_id=identity, address=address)
            for identity, address in self.directory.connected_peers()
            if identity != remote_peer
        ]
        logger.debug("PEER_LIST request from %s: %d peers", remote_peer[:12], len(entries))
        return encode_peer_list(entries)

    async def _serve_ping(self, remote_peer: str) -> bytes:
        return json.dumps(PONG).encode()
