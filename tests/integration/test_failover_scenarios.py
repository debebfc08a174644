"""
Tests d'intégration - Scénarios de failover

Plusieurs coordinateurs partagent le même registre (la table répliquée)
et le même exécuteur (la joignabilité réseau des noeuds).
"""

import asyncio
from pathlib import Path
from typing import List
from unittest.mock import MagicMock, patch

import pytest

from pgkeeper.ha import ClusterRole, LocalServer, NodeRegistryCache, NodeSet
from pgkeeper.ha.failover import DISABLE_SYNC_REPLICATION
from tests.fakes import FakeMembershipStore, FakeQueryExecutor, KeeperHarness, endpoint_for, make_logger, make_node

RETRY_THRESHOLD = 2


def _registry() -> FakeMembershipStore:
    return FakeMembershipStore([make_node(1, "P", primary=True), make_node(2, "S1"), make_node(3, "S2")])


async def _cycles(keeper: KeeperHarness, count: int) -> None:
    for _ in range(count):
        await keeper.machine.step()


# ══════════════════════════════════════════════════════════════════════════════
# SCÉNARIO PRIMAIRE
# ══════════════════════════════════════════════════════════════════════════════


class TestSynchronousQuorumScenario:
    """P avec S1 (priorité 1) et S2 (priorité 2), un standby synchrone requis."""

    @pytest.mark.asyncio
    async def test_demotion_only_when_both_standbys_lost(self) -> None:
        primary = KeeperHarness(
            "P",
            store=_registry(),
            topology="FIRST 1 (S1, S2)",
            connected_standbys=2,
            retry_threshold=RETRY_THRESHOLD,
        )
        await primary.machine.start(in_recovery=False)
        await primary.machine.step()
        assert primary.machine.role is ClusterRole.PRIMARY_MONITORING
        assert [n.name for n in primary.store.next_primaries()] == ["S1"]

        primary.executor.set_down("S1")
        await _cycles(primary, RETRY_THRESHOLD + 1)

        assert primary.machine.role is ClusterRole.PRIMARY_MONITORING
        assert DISABLE_SYNC_REPLICATION not in primary.executor.executed()

        primary.executor.set_down("S2")
        await _cycles(primary, RETRY_THRESHOLD + 1)

        assert primary.machine.role is ClusterRole.PRIMARY_DEGRADED
        assert primary.executor.executed().count(DISABLE_SYNC_REPLICATION) == 1
        assert "Synchronous quorum lost" in primary.messages()

    @pytest.mark.asyncio
    async def test_slow_probe_never_degrades(self) -> None:
        primary = KeeperHarness(
            "P",
            store=_registry(),
            topology="FIRST 1 (S1, S2)",
            connected_standbys=2,
            retry_threshold=RETRY_THRESHOLD,
        )
        await primary.machine.start(in_recovery=False)
        await primary.machine.step()

        for _ in range(5):
            primary.executor.set_down("S1")
            primary.executor.set_down("S2")
            await _cycles(primary, RETRY_THRESHOLD)
            primary.executor.set_down("S1", down=False)
            primary.executor.set_down("S2", down=False)
            await _cycles(primary, 1)

        assert primary.machine.role is ClusterRole.PRIMARY_MONITORING


# ══════════════════════════════════════════════════════════════════════════════
# SCÉNARIO STANDBY
# ══════════════════════════════════════════════════════════════════════════════


class TestPrimaryFailureScenario:
    """P tombe: le standby élu se promeut, l'autre suit le nouveau primaire."""

    @pytest.mark.asyncio
    async def test_elected_standby_takes_over(self) -> None:
        store = _registry()
        network = FakeQueryExecutor()
        primary = KeeperHarness("P", store=store, executor=network, topology="S1, S2", connected_standbys=2)
        s1, s2 = (
            KeeperHarness(
                name,
                store=store,
                executor=network,
                topology="S1, S2",
                in_recovery=True,
                retry_threshold=RETRY_THRESHOLD,
            )
            for name in ("S1", "S2")
        )

        await primary.machine.start(in_recovery=False)
        await primary.machine.step()
        for standby in (s1, s2):
            await standby.machine.start(in_recovery=True)

        network.set_down("P")
        for _ in range(RETRY_THRESHOLD):
            await s1.machine.step()
            await s2.machine.step()
            assert s1.machine.role is ClusterRole.STANDBY_MONITORING

        await s1.machine.step()
        await s2.machine.step()

        assert s1.machine.role is ClusterRole.PRIMARY_READY
        assert s2.machine.role is ClusterRole.STANDBY_MONITORING
        assert s1.server.promote_signals == 1
        assert s2.server.promote_signals == 0
        assert [n.name for n in store.primaries()] == ["S1"]
        assert [n.name for n in store.next_primaries()] == ["S2"]
        assert store.nodes[1].is_primary is False

        # S2 reçoit la notification de S1 et surveille désormais le nouveau primaire
        assert "S2" in [host for host, _ in s1.notifier.sent]
        await s2.machine.membership_changed()
        for _ in range(RETRY_THRESHOLD + 2):
            await s2.machine.step()

        assert s2.machine.role is ClusterRole.STANDBY_MONITORING
        assert s2.registry.current_primary().name == "S1"
        assert [n.name for n in store.primaries()] == ["S1"]

    @pytest.mark.asyncio
    async def test_new_primary_becomes_monitoring(self) -> None:
        store = _registry()
        s1 = KeeperHarness("S1", store=store, topology="S1, S2", in_recovery=True, retry_threshold=1)
        await s1.machine.start(in_recovery=True)
        s1.executor.set_down("P")
        await _cycles(s1, 2)
        assert s1.machine.role is ClusterRole.PRIMARY_READY

        s1.server.connected_standbys = 1
        store.nodes.pop(1)
        await s1.machine.step()

        assert s1.machine.role is ClusterRole.PRIMARY_MONITORING
        assert [n.name for n in store.next_primaries()] == ["S2"]


# ══════════════════════════════════════════════════════════════════════════════
# IDEMPOTENCE ET ATOMICITÉ
# ══════════════════════════════════════════════════════════════════════════════


class TestPromotionIdempotence:
    @pytest.mark.asyncio
    async def test_promote_twice(self, tmp_path: Path) -> None:
        (tmp_path / "postmaster.pid").write_text("4242\n", encoding="utf-8")
        store = _registry()
        network = FakeQueryExecutor()
        network.responses["SELECT pg_is_in_recovery()"] = [(True,)]

        def postmaster_promotes(sig) -> None:
            network.responses["SELECT pg_is_in_recovery()"] = [(False,)]

        server = LocalServer(str(tmp_path), network, endpoint_for("S1"), make_logger("S1"))
        server.POLL_INTERVAL = 0.01
        keeper = KeeperHarness("S1", store=store, executor=network, topology="S1, S2", server=server)
        process = MagicMock()
        process.send_signal.side_effect = postmaster_promotes
        await keeper.registry.refresh()
        failed = make_node(1, "P", primary=True)

        with patch("pgkeeper.ha.local_server.psutil.pid_exists", return_value=True), patch(
            "pgkeeper.ha.local_server.psutil.Process", return_value=process
        ):
            first = await keeper.failover.promote_self(failed, keeper.topology_source.topology)
            second = await keeper.failover.promote_self(failed, keeper.topology_source.topology)
            created_again = server.promote()

        assert first is True
        assert second is False
        assert created_again is False
        assert [p.name for p in tmp_path.iterdir()].count("promote") == 1
        assert [n.name for n in store.primaries()] == ["S1"]


class SlowStore(FakeMembershipStore):
    async def fetch_nodes(self):
        await asyncio.sleep(0.01)
        return await super().fetch_nodes()


class TestRefreshAtomicity:
    @pytest.mark.asyncio
    async def test_readers_never_see_mismatched_counters(self) -> None:
        store = SlowStore([make_node(1, "P", primary=True)])
        registry = NodeRegistryCache(store, make_logger("S1"))
        mismatches: List[int] = []
        done = asyncio.Event()

        async def reader() -> None:
            while not done.is_set():
                state = registry.state
                if len(state.counters) != len(state.snapshot):
                    mismatches.append(len(state.snapshot))
                await asyncio.sleep(0)

        async def writer() -> None:
            for i in range(2, 12):
                await store.add_node(f"S{i}", endpoint_for(f"S{i}"))
                await registry.refresh()
            done.set()

        await asyncio.gather(reader(), reader(), writer())

        assert mismatches == []
        assert len(registry.snapshot) == 11
        assert isinstance(registry.snapshot, NodeSet)
