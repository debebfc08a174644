"""
Tests unitaires HeartbeatDetector

Un noeud est en échec après retry_threshold + 1 échecs consécutifs;
un succès remet le compteur à zéro.
"""

import asyncio

import pytest

from pgkeeper.ha import HeartbeatDetector, NodeRegistryCache
from tests.fakes import FakeMembershipStore, FakeQueryExecutor, endpoint_for, make_node

PRIMARY = make_node(1, "node1", primary=True)


@pytest.fixture
def registry(logger) -> NodeRegistryCache:
    return NodeRegistryCache(FakeMembershipStore([PRIMARY, make_node(2, "node2")]), logger)


def _detector(executor, registry, logger, threshold: int = 3, timeout: float = 0.5) -> HeartbeatDetector:
    return HeartbeatDetector(executor, registry, threshold, timeout, logger)


class SlowExecutor(FakeQueryExecutor):
    async def fetch(self, endpoint, query, params=None):
        await asyncio.sleep(1.0)
        return [(1,)]


class TestConstruction:
    @pytest.mark.parametrize("threshold", [0, -1])
    def test_invalid_threshold(self, executor, registry, logger, threshold: int) -> None:
        with pytest.raises(ValueError):
            _detector(executor, registry, logger, threshold=threshold)

    def test_invalid_timeout(self, executor, registry, logger) -> None:
        with pytest.raises(ValueError):
            _detector(executor, registry, logger, timeout=0)

    def test_set_retry_threshold(self, executor, registry, logger) -> None:
        detector = _detector(executor, registry, logger)

        detector.set_retry_threshold(5)

        assert detector.retry_threshold == 5
        with pytest.raises(ValueError):
            detector.set_retry_threshold(0)


# ══════════════════════════════════════════════════════════════════════════════
# TESTS SONDE
# ══════════════════════════════════════════════════════════════════════════════


class TestProbe:
    @pytest.mark.asyncio
    async def test_reachable(self, executor, registry, logger) -> None:
        assert await _detector(executor, registry, logger).probe(PRIMARY) is True
        assert executor.calls == [("fetch", endpoint_for("node1"), "SELECT 1")]

    @pytest.mark.asyncio
    async def test_connection_refused(self, executor, registry, logger) -> None:
        executor.set_down("node1")

        assert await _detector(executor, registry, logger).probe(PRIMARY) is False

    @pytest.mark.asyncio
    async def test_unexpected_result(self, executor, registry, logger) -> None:
        executor.responses["SELECT 1"] = [(0,)]

        assert await _detector(executor, registry, logger).probe(PRIMARY) is False

    @pytest.mark.asyncio
    async def test_timeout(self, registry, logger) -> None:
        detector = _detector(SlowExecutor(), registry, logger, timeout=0.05)

        assert await detector.probe(PRIMARY) is False
        assert any(e.message == "Probe timeout" for e in logger.get_entries())


# ══════════════════════════════════════════════════════════════════════════════
# TESTS SEUIL
# ══════════════════════════════════════════════════════════════════════════════


class TestThreshold:
    """Seuil strict: count > retry_threshold."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("threshold", [1, 2, 3, 5])
    async def test_failed_after_threshold_plus_one(self, executor, registry, logger, threshold: int) -> None:
        await registry.refresh()
        detector = _detector(executor, registry, logger, threshold=threshold)
        executor.set_down("node1")

        for _ in range(threshold):
            await detector.check(PRIMARY)
            assert detector.is_failed(PRIMARY) is False

        await detector.check(PRIMARY)
        assert detector.failure_count(PRIMARY) == threshold + 1
        assert detector.is_failed(PRIMARY) is True

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, executor, registry, logger) -> None:
        await registry.refresh()
        detector = _detector(executor, registry, logger, threshold=3)
        executor.set_down("node1")
        for _ in range(3):
            await detector.check(PRIMARY)

        executor.set_down("node1", down=False)
        count = await detector.check(PRIMARY)

        assert count == 0
        assert detector.failure_count(PRIMARY) == 0

    @pytest.mark.asyncio
    async def test_intermittent_failures_never_cross(self, executor, registry, logger) -> None:
        await registry.refresh()
        detector = _detector(executor, registry, logger, threshold=2)

        for _ in range(5):
            executor.set_down("node1")
            await detector.check(PRIMARY)
            await detector.check(PRIMARY)
            executor.set_down("node1", down=False)
            await detector.check(PRIMARY)
            assert detector.is_failed(PRIMARY) is False

    @pytest.mark.asyncio
    async def test_raising_threshold_clears_failure(self, executor, registry, logger) -> None:
        await registry.refresh()
        detector = _detector(executor, registry, logger, threshold=1)
        executor.set_down("node1")
        await detector.check(PRIMARY)
        await detector.check(PRIMARY)
        assert detector.is_failed(PRIMARY)

        detector.set_retry_threshold(4)

        assert detector.is_failed(PRIMARY) is False
