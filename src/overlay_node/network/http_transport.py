"""HTTP transport — aiohttp-based implementation of the Transport interface.

Each node runs a small HTTP server. A "connection" is a completed hello
handshake in which both sides learn each other's peer id, listen address
and supported mini-protocols. Mini-protocol requests are plain GETs whose
response body is the protocol payload.

Addresses keep the multiaddr shape used everywhere else
(``/ip4/1.2.3.4/tcp/6006/p2p/<id>``) and are mapped to ``http://host:port``.
Circuit and WebRTC addresses cannot be dialed over HTTP and fail with
TransportError. A libp2p-based transport can replace this one later.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field

from aiohttp import ClientError, ClientSession, ClientTimeout, web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from overlay_node.config import ProtocolIds
from overlay_node.network.address import (
    is_circuit,
    is_webrtc,
    parse_components,
    peer_id_of,
)
from overlay_node.network.transport import (
    ConnectionClosed,
    ConnectionOpened,
    EventCallback,
    ProtocolHandler,
    ProtocolsUpdated,
    TransportError,
    TransportEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=10)

HELLO_PATH = "/overlay/hello"
BYE_PATH = "/overlay/bye"
REQUEST_PATH = "/overlay/request"
PEER_HEADER = "X-Overlay-Peer"


class HelloMessage(BaseModel):
    """Handshake body, sent by the dialer and echoed back by the listener."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    peer_id: str = Field(alias="peerId", min_length=1)
    address: str = ""
    protocols: list[str] = Field(default_factory=list)


@dataclass(eq=False)
class HttpConnection:
    """One side of a completed hello handshake."""

    remote_peer: str
    remote_addr: str
    base_url: str
    status: str = "open"
    opened_at: float = field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def close(self) -> None:
        self.status = "closed"


def address_to_url(address: str) -> str:
    """Map a multiaddr-style address to the peer's HTTP base URL."""
    if is_circuit(address) or is_webrtc(address):
        raise TransportError(f"cannot dial relayed or WebRTC address over HTTP: {address}")
    host = port = None
    for name, value in parse_components(address):
        if name in ("ip4", "dns", "dns4", "dns6") and host is None:
            host = value
        elif name == "ip6" and host is None and value:
            host = f"[{value}]"
        elif name == "tcp" and port is None:
            port = value
    if not host or not port:
        raise TransportError(f"address has no host/tcp component: {address}")
    return f"http://{host}:{port}"


class HttpTransport:
    """HTTP-based transport for the overlay.

    Runs an aiohttp server for incoming handshakes and requests and uses an
    aiohttp client session for outgoing ones. Connection state changes are
    published to subscribers as transport events.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 6006,
        peer_id: str = "",
        advertise_host: str = "",
        ping_protocol: str = ProtocolIds.ping,
    ) -> None:
        self.host = host
        self.port = port
        self.advertise_host = advertise_host
        self.ping_protocol = ping_protocol
        self._peer_id = peer_id or secrets.token_hex(16)
        self._app = web.Application()
        self._runner: web.AppRunner | None = None
        self._session: ClientSession | None = None
        self._handlers: dict[str, ProtocolHandler] = {}
        self._subscribers: list[EventCallback] = []
        self._connections: list[HttpConnection] = []

        self._app.router.add_post(HELLO_PATH, self._handle_hello)
        self._app.router.add_post(BYE_PATH, self._handle_bye)
        self._app.router.add_get(REQUEST_PATH, self._handle_request)

    # ── Identity and registration ───────────────────────────────

    def local_identity(self) -> str:
        return self._peer_id

    def listen_addresses(self) -> list[str]:
        host = self.advertise_host or self.host
        if host in ("", "0.0.0.0"):
            host = "127.0.0.1"
        proto = "ip6" if ":" in host else "ip4"
        return [f"/{proto}/{host}/tcp/{self.port}/p2p/{self._peer_id}"]

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def register_protocol_handler(self, protocol_id: str, handler: ProtocolHandler) -> None:
        self._handlers[protocol_id] = handler

    def connections(self) -> list[HttpConnection]:
        return [c for c in self._connections if c.is_open]

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the HTTP server and client session."""
        self._session = ClientSession(timeout=DEFAULT_TIMEOUT)
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Transport listening on %s:%d as %s", self.host, self.port, self._peer_id[:12])

    async def stop(self) -> None:
        """Gracefully shut down transport."""
        for conn in list(self.connections()):
            conn.close()
            self._emit(ConnectionClosed(conn.remote_peer, conn))
        if self._session:
            await self._session.close()
        if self._runner:
            await self._runner.cleanup()
        logger.info("Transport stopped")

    # ── Outgoing ─────────────────────────────────────────────────

    async def dial(self, address: str, timeout: float = 5.0) -> HttpConnection:
        session = self._require_session()
        base_url = address_to_url(address)
        expected = peer_id_of(address)
        hello = self._hello()
        try:
            async with session.post(
                base_url + HELLO_PATH,
                json=hello.model_dump(by_alias=True),
                timeout=ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    raise TransportError(f"hello to {address} rejected: HTTP {resp.status}")
                body = await resp.read()
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"dial {address} failed: {e}") from e

        try:
            reply = HelloMessage.model_validate_json(body)
        except ValidationError as e:
            raise TransportError(f"malformed hello reply from {address}") from e
        if expected and reply.peer_id != expected:
            raise TransportError(
                f"peer id mismatch dialing {address}: got {reply.peer_id[:12]}"
            )

        conn = HttpConnection(remote_peer=reply.peer_id, remote_addr=address, base_url=base_url)
        self._open(conn, reply.protocols)
        return conn

    async def hang_up(self, target: str, timeout: float = 5.0) -> None:
        """Close every connection whose peer id or remote address is ``target``."""
        matching = [
            c for c in self.connections()
            if c.remote_peer == target or c.remote_addr == target
        ]
        if not matching:
            logger.debug("hang_up: no open connection for %s", target)
            return
        for conn in matching:
            conn.close()
            if self._session and conn.base_url:
                try:
                    async with self._session.post(
                        conn.base_url + BYE_PATH,
                        json={"peerId": self._peer_id},
                        timeout=ClientTimeout(total=timeout),
                    ):
                        pass
                except (ClientError, asyncio.TimeoutError):
                    logger.debug("Bye to %s not delivered", conn.remote_addr)
            self._emit(ConnectionClosed(conn.remote_peer, conn))

    async def request(
        self,
        target: HttpConnection | str,
        protocol_id: str,
        timeout: float = 5.0,
    ) -> bytes:
        session = self._require_session()
        if isinstance(target, str):
            base_url = address_to_url(target)
        else:
            if not target.is_open or not target.base_url:
                raise TransportError(f"connection to {target.remote_peer[:12]} is not usable")
            base_url = target.base_url
        try:
            async with session.get(
                base_url + REQUEST_PATH,
                params={"protocol": protocol_id},
                headers={PEER_HEADER: self._peer_id},
                timeout=ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    raise TransportError(f"{protocol_id} at {base_url}: HTTP {resp.status}")
                return await resp.read()
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"{protocol_id} at {base_url} failed: {e}") from e

    async def probe_latency(self, address: str, timeout: float = 10.0) -> float:
        """Round-trip time of a PING request, in milliseconds."""
        start = time.perf_counter()
        body = await self.request(address, self.ping_protocol, timeout=timeout)
        ms = (time.perf_counter() - start) * 1000.0
        try:
            answer = json.loads(body)
        except ValueError:
            answer = body.decode(errors="replace").strip()
        if answer != "PONG":
            raise TransportError(f"unexpected ping answer from {address}")
        return ms

    # ── Incoming ─────────────────────────────────────────────────

    async def _handle_hello(self, request: web.Request) -> web.Response:
        try:
            hello = HelloMessage.model_validate_json(await request.read())
        except ValidationError:
            return web.json_response({"status": "error", "detail": "invalid hello"}, status=400)

        try:
            base_url = address_to_url(hello.address) if hello.address else ""
        except TransportError:
            base_url = ""
        remote_addr = hello.address or f"/ip4/{request.remote or '0.0.0.0'}/tcp/0"
        conn = HttpConnection(remote_peer=hello.peer_id, remote_addr=remote_addr, base_url=base_url)
        self._open(conn, hello.protocols)
        return web.json_response(self._hello().model_dump(by_alias=True))

    async def _handle_bye(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
            peer_id = data["peerId"]
        except (KeyError, TypeError, json.JSONDecodeError):
            return web.json_response({"status": "error", "detail": "peerId required"}, status=400)
        for conn in [c for c in self.connections() if c.remote_peer == peer_id]:
            conn.close()
            self._emit(ConnectionClosed(peer_id, conn))
        return web.json_response({"status": "ok"})

    async def _handle_request(self, request: web.Request) -> web.Response:
        protocol_id = request.query.get("protocol", "")
        handler = self._handlers.get(protocol_id)
        if handler is None:
            return web.json_response(
                {"status": "error", "detail": f"unsupported protocol: {protocol_id}"},
                status=404,
            )
        remote = request.headers.get(PEER_HEADER, request.remote or "unknown")
        try:
            body = await handler(remote)
        except Exception:
            logger.exception("Handler for %s failed", protocol_id)
            return web.json_response({"status": "error"}, status=500)
        return web.Response(body=body, content_type="application/json")

    # ── Internals ────────────────────────────────────────────────

    def _hello(self) -> HelloMessage:
        return HelloMessage(
            peer_id=self._peer_id,
            address=self.listen_addresses()[0],
            protocols=sorted(self._handlers),
        )

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise TransportError("transport not started")
        return self._session

    def _open(self, conn: HttpConnection, protocols: list[str]) -> None:
        self._connections = [c for c in self._connections if c.is_open]
        self._connections.append(conn)
        logger.info("Connection open: %s via %s", conn.remote_peer[:12], conn.remote_addr)
        self._emit(ConnectionOpened(conn.remote_peer, conn))
        self._emit(ProtocolsUpdated(conn.remote_peer, frozenset(protocols)))

    def _emit(self, event: TransportEvent) -> None:
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Transport event subscriber failed")
