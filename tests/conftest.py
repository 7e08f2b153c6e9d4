"""Shared fakes for the topology tests: an in-memory transport and a scheduler
that never waits on the wall clock."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from overlay_node.network.address import peer_id_of
from overlay_node.network.scheduler import Scheduler
from overlay_node.network.transport import (
    ConnectionClosed,
    ConnectionOpened,
    TransportError,
)

LOCAL_ID = "local-peer"


@dataclass(eq=False)
class FakeConnection:
    remote_peer: str
    remote_addr: str
    status: str = "open"

    @property
    def is_open(self) -> bool:
        return self.status == "open"


@dataclass
class FakeTransport:
    """Records every call; answers from the ``responses`` / ``latencies`` tables.

    ``responses`` maps ``(peer_id, protocol_id)`` to bytes or an exception.
    ``latencies`` maps an address to milliseconds or an exception; unknown
    addresses fail to probe. Dials succeed unless the address is in
    ``failing_dials``.
    """

    identity: str = LOCAL_ID
    addresses: list[str] = field(
        default_factory=lambda: [f"/ip4/198.51.100.1/tcp/6006/p2p/{LOCAL_ID}"]
    )
    responses: dict = field(default_factory=dict)
    latencies: dict = field(default_factory=dict)
    failing_dials: set = field(default_factory=set)

    dials: list = field(default_factory=list)
    hang_ups: list = field(default_factory=list)
    requests: list = field(default_factory=list)
    probes: list = field(default_factory=list)
    handlers: dict = field(default_factory=dict)
    subscribers: list = field(default_factory=list)
    connections: list = field(default_factory=list)

    def local_identity(self) -> str:
        return self.identity

    def listen_addresses(self) -> list[str]:
        return list(self.addresses)

    def subscribe(self, callback) -> None:
        self.subscribers.append(callback)

    def register_protocol_handler(self, protocol_id, handler) -> None:
        self.handlers[protocol_id] = handler

    def emit(self, event) -> None:
        for callback in self.subscribers:
            callback(event)

    async def dial(self, address, timeout=5.0):
        self.dials.append(address)
        if address in self.failing_dials:
            raise TransportError(f"dial {address} refused")
        conn = FakeConnection(remote_peer=peer_id_of(address) or "?", remote_addr=address)
        self.connections.append(conn)
        self.emit(ConnectionOpened(conn.remote_peer, conn))
        return conn

    async def hang_up(self, target, timeout=5.0):
        self.hang_ups.append(target)
        for conn in self.connections:
            if conn.is_open and target in (conn.remote_addr, conn.remote_peer):
                conn.status = "closed"
                self.emit(ConnectionClosed(conn.remote_peer, conn))

    async def request(self, target, protocol_id, timeout=5.0):
        peer = target if isinstance(target, str) else target.remote_peer
        self.requests.append((peer, protocol_id))
        answer = self.responses.get((peer, protocol_id))
        if answer is None:
            raise TransportError(f"{peer} did not answer {protocol_id}")
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def probe_latency(self, address, timeout=10.0):
        self.probes.append(address)
        latency = self.latencies.get(address)
        if latency is None:
            raise TransportError(f"{address} unreachable")
        if isinstance(latency, Exception):
            raise latency
        return latency

    def requests_for(self, protocol_id: str) -> list[str]:
        return [peer for peer, proto in self.requests if proto == protocol_id]


class InstantScheduler(Scheduler):
    """Short sleeps return immediately; long ones park the task until cancelled.

    With the default ``park_after`` the reconciliation loop parks on its
    first sleep, so tests drive ticks by calling ``reconcile()`` directly.
    """

    def __init__(self, park_after: float = 5.0) -> None:
        super().__init__()
        self.park_after = park_after
        self.sleeps: list[float] = []
        self._parked: set[asyncio.Task] = set()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds < self.park_after:
            await asyncio.sleep(0)
            return
        task = asyncio.current_task()
        self._parked.add(task)
        try:
            await asyncio.Event().wait()
        finally:
            self._parked.discard(task)

    async def drain(self) -> None:
        while True:
            await asyncio.sleep(0)
            active = [t for t in self._tasks if t not in self._parked]
            if not active:
                return
            await asyncio.gather(*active, return_exceptions=True)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return InstantScheduler()
