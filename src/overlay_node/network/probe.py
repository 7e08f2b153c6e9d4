"""Liveness probing — round-trip latency to an address."""

from __future__ import annotations

import logging

from overlay_node.network.transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MS = 10_000.0
DEFAULT_PROBE_TIMEOUT = 10.0


class LivenessProbe:
    """Measures latency through the transport's ping primitive.

    Stateless: failures are logged and reported as ``None``, never raised.
    """

    def __init__(
        self,
        transport: Transport,
        threshold_ms: float = DEFAULT_THRESHOLD_MS,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self.transport = transport
        self.threshold_ms = threshold_ms
        self.timeout = timeout

    async def measure(self, address: str) -> float | None:
        """Latency to ``address`` in milliseconds, or None if the probe failed."""
        try:
            latency = await self.transport.probe_latency(address, timeout=self.timeout)
        except Exception as e:
            logger.warning("Probe to %s failed: %s", address, e)
            return None
        logger.debug("Probe to %s: %.1f ms", address, latency)
        return latency

    def within_threshold(self, latency: float | None) -> bool:
        return latency is not None and 0 <= latency < self.threshold_ms

    async def is_reachable(self, address: str) -> bool:
        return self.within_threshold(await self.measure(address))
