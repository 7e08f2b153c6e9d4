"""Gossip discovery — ask a connected peer about itself and its neighbours.

Three request/response mini-protocols, each a single JSON document written
by the remote side before it closes the stream:

  ROLE         -> ["node"]                              self-declared roles
  MULTIADDRES  -> ["/ip4/.../tcp/..."]                  advertised addresses
  PEER_LIST    -> [{"peerId": ..., "address": ...}]     currently connected peers

A missing protocol, a transport failure and a malformed payload all come
back as ``None``; callers treat every one of them as "nothing learned".
"""

from __future__ import annotations

import json
import logging
from typing import Iterable, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from overlay_node.config import ProtocolIds
from overlay_node.network.peer import PeerRecord
from overlay_node.network.transport import Transport

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 5.0

T = TypeVar("T")


class PeerListEntry(BaseModel):
    """One element of a PEER_LIST response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    peer_id: str = Field(alias="peerId", min_length=1)
    address: str = ""


_STRING_LIST = TypeAdapter(list[str])
_PEER_LIST = TypeAdapter(list[PeerListEntry])


def decode_payload(payload: bytes | None, adapter: TypeAdapter[T], what: str) -> T | None:
    """Validate a JSON payload, mapping anything malformed to None."""
    if not payload:
        return None
    try:
        return adapter.validate_json(payload)
    except ValidationError as e:
        logger.warning("Malformed %s payload (%d errors)", what, e.error_count())
        return None


def encode_roles(roles: Iterable[str]) -> bytes:
    return json.dumps(list(roles)).encode()


def encode_addresses(addresses: Iterable[str]) -> bytes:
    return json.dumps(list(addresses)).encode()


def encode_peer_list(entries: Iterable[PeerListEntry]) -> bytes:
    return _PEER_LIST.dump_json(list(entries), by_alias=True)


class GossipDiscovery:
    """Request helpers for the ROLE, MULTIADDRES and PEER_LIST protocols."""

    def __init__(
        self,
        transport: Transport,
        protocols: ProtocolIds | None = None,
        timeout: float = DISCOVERY_TIMEOUT,
    ) -> None:
        self.transport = transport
        self.protocols = protocols or ProtocolIds()
        self.timeout = timeout

    async def fetch_roles(self, record: PeerRecord) -> list[str] | None:
        payload = await self._ask(record, self.protocols.role)
        roles = decode_payload(payload, _STRING_LIST, "role list")
        if roles is None:
            return None
        return [r for r in roles if r]

    async def fetch_addresses(self, record: PeerRecord) -> list[str] | None:
        payload = await self._ask(record, self.protocols.multiaddrs)
        addresses = decode_payload(payload, _STRING_LIST, "address list")
        if addresses is None:
            return None
        return [a for a in addresses if a]

    async def fetch_peer_list(self, record: PeerRecord) -> list[PeerListEntry] | None:
        payload = await self._ask(record, self.protocols.peer_list)
        return decode_payload(payload, _PEER_LIST, "peer list")

    async def _ask(self, record: PeerRecord, protocol_id: str) -> bytes | None:
        """Open one request stream to the peer and return the raw response."""
        if not record.supports(protocol_id):
            logger.debug("%s does not advertise %s", record.identity[:12], protocol_id)
            return None
        connection = record.open_connection()
        if connection is None:
            logger.debug("No open connection to %s for %s", record.identity[:12], protocol_id)
            return None
        try:
            return await self.transport.request(connection, protocol_id, timeout=self.timeout)
        except Exception as e:
            logger.warning(
                "Request %s to %s failed: %s", protocol_id, record.identity[:12], e
            )
            return None
