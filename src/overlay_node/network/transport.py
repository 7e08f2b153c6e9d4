"""Transport interface — what the topology core needs from the network stack.

The core never dials sockets itself. Anything that provides these
primitives can drive it: the aiohttp-based HttpTransport in this package,
or a libp2p stack behind an adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Protocol, Union, runtime_checkable


class TransportError(Exception):
    """A transport operation failed (dial, hang-up, request or probe)."""


@runtime_checkable
class Connection(Protocol):
    """A live link to a remote peer."""

    remote_peer: str
    remote_addr: str

    @property
    def is_open(self) -> bool: ...


# ── Events ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConnectionOpened:
    identity: str
    connection: Connection


@dataclass(frozen=True)
class ConnectionClosed:
    identity: str
    connection: Connection


@dataclass(frozen=True)
class ProtocolsUpdated:
    identity: str
    protocols: frozenset[str] = field(default_factory=frozenset)


TransportEvent = Union[ConnectionOpened, ConnectionClosed, ProtocolsUpdated]
EventCallback = Callable[[TransportEvent], None]

# Async callable receiving the remote peer id and returning the response body.
ProtocolHandler = Callable[[str], Coroutine[Any, Any, bytes]]


class Transport(Protocol):
    """Primitives consumed by the peer directory and topology service."""

    def local_identity(self) -> str: ...

    def listen_addresses(self) -> list[str]: ...

    def subscribe(self, callback: EventCallback) -> None: ...

    def register_protocol_handler(
        self, protocol_id: str, handler: ProtocolHandler
    ) -> None: ...

    async def dial(self, address: str, timeout: float = 5.0) -> Connection: ...

    async def hang_up(self, target: str, timeout: float = 5.0) -> None: ...

    async def request(
        self,
        target: Connection | str,
        protocol_id: str,
        timeout: float = 5.0,
    ) -> bytes: ...

    async def probe_latency(self, address: str, timeout: float = 10.0) -> float: ...
