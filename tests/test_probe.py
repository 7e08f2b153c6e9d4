"""Tests for overlay_node.network.probe.LivenessProbe."""

from __future__ import annotations

import pytest

from overlay_node.network.probe import LivenessProbe

ADDR = "/ip4/198.51.100.7/tcp/6006/p2p/peerA"


@pytest.fixture
def probe(transport):
    return LivenessProbe(transport, threshold_ms=10_000, timeout=1.0)


class TestThreshold:
    def test_within(self, probe):
        assert probe.within_threshold(0.0)
        assert probe.within_threshold(9_999.9)

    def test_outside(self, probe):
        assert not probe.within_threshold(10_000.0)
        assert not probe.within_threshold(-1.0)
        assert not probe.within_threshold(None)


class TestMeasure:
    @pytest.mark.asyncio
    async def test_measure_returns_latency(self, probe, transport):
        transport.latencies[ADDR] = 42.0
        assert await probe.measure(ADDR) == 42.0
        assert transport.probes == [ADDR]

    @pytest.mark.asyncio
    async def test_failure_is_none(self, probe, transport):
        assert await probe.measure(ADDR) is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_none(self, probe, transport):
        transport.latencies[ADDR] = RuntimeError("boom")
        assert await probe.measure(ADDR) is None

    @pytest.mark.asyncio
    async def test_is_reachable(self, probe, transport):
        transport.latencies[ADDR] = 12_000.0
        assert not await probe.is_reachable(ADDR)
        transport.latencies[ADDR] = 15.0
        assert await probe.is_reachable(ADDR)
