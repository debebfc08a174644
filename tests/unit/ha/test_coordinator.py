"""
Tests unitaires Coordinator

Boucle coopérative: drapeaux consommés en tête d'itération (arrêt, reload,
membres), filtrage des émetteurs, codes de sortie, rechargement de configuration.
"""

import asyncio
import signal
from typing import Any, Dict, FrozenSet, Iterable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from pgkeeper.core import ConfigIntegrityError, IConfigLoader, KeeperConfig
from pgkeeper.ha import (
    ClusterRole,
    Coordinator,
    ExitCode,
    MalformedTopologyError,
    StoreUnavailable,
    build_coordinator,
    build_executor,
)
from pgkeeper.logging.interfaces import LogLevel
from pgkeeper.network import LOOPBACK_SOURCES, MEMBERSHIP_CHANGED, PeerNotification, TimeoutType, endpoint_host
from tests.fakes import FakeMembershipStore, KeeperHarness, endpoint_for, make_node


def _config(**overrides: Any) -> KeeperConfig:
    values: Dict[str, Any] = {
        "node_name": "B",
        "my_endpoint": endpoint_for("B"),
        "data_directory": "/var/lib/postgresql/data",
        "heartbeat_interval": 0.05,
        "probe_timeout": 0.02,
        "retry_threshold": 1,
        "notify_host": "127.0.0.1",
        "notify_port": 0,
    }
    values.update(overrides)
    return KeeperConfig(**values)


class StaticLoader(IConfigLoader):
    def __init__(self, config: Optional[KeeperConfig] = None, error: Optional[Exception] = None) -> None:
        self.config = config
        self.error = error

    async def load(self) -> Dict[str, Any]:
        return {}

    async def load_config(self) -> KeeperConfig:
        if self.error is not None:
            raise self.error
        return self.config


async def _literal_sources(endpoints: Iterable[str]) -> FrozenSet[str]:
    """Résolution sans DNS: l'hôte du conninfo tient lieu d'adresse."""
    hosts = {endpoint_host(e) for e in endpoints}
    return LOOPBACK_SOURCES | {h for h in hosts if h}


def _standby() -> KeeperHarness:
    store = FakeMembershipStore([make_node(1, "A", primary=True), make_node(2, "B"), make_node(3, "C")])
    return KeeperHarness("B", store=store, in_recovery=True)


def _coordinator(
    keeper: KeeperHarness, loader: Optional[IConfigLoader] = None, listen: bool = False, **overrides: Any
) -> Coordinator:
    return Coordinator(
        config=_config(**overrides),
        logger=keeper.logger,
        state_machine=keeper.machine,
        local_server=keeper.server,
        detector=keeper.detector,
        config_loader=loader,
        listen=listen,
        source_resolver=_literal_sources,
    )


# ══════════════════════════════════════════════════════════════════════════════
# TESTS CYCLE DE VIE
# ══════════════════════════════════════════════════════════════════════════════


class TestRun:
    @pytest.mark.asyncio
    async def test_max_cycles(self) -> None:
        keeper = _standby()

        code = await _coordinator(keeper).run(install_signals=False, max_cycles=3)

        assert code is ExitCode.TERMINATED
        assert keeper.machine.role is ClusterRole.STANDBY_MONITORING
        assert len([c for c in keeper.executor.calls if c[0] == "fetch"]) == 3

    @pytest.mark.asyncio
    async def test_shutdown(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        coordinator.request_shutdown()

        code = await coordinator.run(install_signals=False)

        assert code is ExitCode.TERMINATED
        assert "Coordinator terminated" in keeper.messages()

    @pytest.mark.asyncio
    async def test_shutdown_while_waiting(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper, heartbeat_interval=30.0)
        asyncio.get_running_loop().call_later(0.05, coordinator.request_shutdown)

        code = await asyncio.wait_for(coordinator.run(install_signals=False), timeout=2.0)

        assert code is ExitCode.TERMINATED

    @pytest.mark.asyncio
    async def test_malformed_topology_at_startup(self) -> None:
        keeper = _standby()
        keeper.topology_source.error = MalformedTopologyError("missing ')'")

        code = await _coordinator(keeper).run(install_signals=False, max_cycles=1)

        assert code is ExitCode.FATAL
        assert "Malformed replication topology at startup" in keeper.messages()

    @pytest.mark.asyncio
    async def test_local_server_unreachable_at_startup(self) -> None:
        keeper = _standby()
        keeper.server.reachable = False

        assert await _coordinator(keeper).run(install_signals=False, max_cycles=1) is ExitCode.FATAL

    @pytest.mark.asyncio
    async def test_fatal_action_exits(self) -> None:
        keeper = _standby()
        keeper.executor.set_down("A")
        keeper.server.promotion_completes = False

        code = await _coordinator(keeper).run(install_signals=False, max_cycles=10)

        assert code is ExitCode.FATAL
        assert "Fatal failover action error" in keeper.messages()

    @pytest.mark.asyncio
    async def test_store_unavailable_aborts_cycle_only(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        keeper.machine.step = AsyncMock(side_effect=StoreUnavailable("store offline"))

        code = await coordinator.run(install_signals=False, max_cycles=2)

        assert code is ExitCode.TERMINATED
        assert keeper.messages().count("Cycle aborted, membership store unavailable") == 2

    @pytest.mark.asyncio
    async def test_listener_lifecycle(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper, listen=True)

        code = await coordinator.run(install_signals=False, max_cycles=1)

        assert code is ExitCode.TERMINATED


# ══════════════════════════════════════════════════════════════════════════════
# TESTS DRAPEAUX
# ══════════════════════════════════════════════════════════════════════════════


class TestFlags:
    def test_handlers_only_set_flags(self) -> None:
        coordinator = _coordinator(_standby())

        coordinator.request_reload()
        coordinator.notify_membership_changed()

        assert coordinator.flags.reload is True
        assert coordinator.flags.membership is True
        assert coordinator.flags.shutdown is False

    @pytest.mark.asyncio
    async def test_notification_from_peer(self) -> None:
        coordinator = _coordinator(_standby())
        await coordinator.refresh_trusted_sources()

        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"), ("A", 5480))

        assert coordinator.flags.membership is True

    def test_own_notification_ignored(self) -> None:
        coordinator = _coordinator(_standby())

        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="b"), ("127.0.0.1", 5480))
        coordinator.handle_notification(PeerNotification(type="something_else", sender="A"), ("127.0.0.1", 5480))

        assert coordinator.flags.membership is False

    def test_malformed_notification_logged(self) -> None:
        keeper = _standby()

        _coordinator(keeper).handle_notification_error("invalid notification payload", ("10.0.0.9", 40000))

        assert "Malformed peer notification ignored" in keeper.messages()

    def test_signal_handlers(self) -> None:
        coordinator = _coordinator(_standby())
        loop = MagicMock()

        coordinator.install_signal_handlers(loop)

        handlers = {call.args[0]: call.args[1] for call in loop.add_signal_handler.call_args_list}
        assert handlers[signal.SIGTERM] == coordinator.request_shutdown
        assert handlers[signal.SIGINT] == coordinator.request_shutdown
        assert handlers[signal.SIGHUP] == coordinator.request_reload
        assert handlers[signal.SIGUSR1] == coordinator.notify_membership_changed

    @pytest.mark.asyncio
    async def test_shutdown_wins_over_other_flags(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        coordinator.request_reload()
        coordinator.notify_membership_changed()
        coordinator.request_shutdown()

        await coordinator.run(install_signals=False)

        assert keeper.topology_source.loads == 1
        assert "Reload requested" not in keeper.messages()

    @pytest.mark.asyncio
    async def test_reload_before_membership(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        coordinator.notify_membership_changed()
        coordinator.request_reload()

        await coordinator.run(install_signals=False, max_cycles=1)

        messages = keeper.messages()
        assert messages.index("Reload requested") < messages.index("Membership change notified, refreshing registry")
        assert coordinator.flags.any() is False

    @pytest.mark.asyncio
    async def test_notification_wakes_loop(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper, heartbeat_interval=30.0)
        asyncio.get_running_loop().call_later(
            0.05,
            coordinator.handle_notification,
            PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"),
            ("A", 5480),
        )

        code = await asyncio.wait_for(coordinator.run(install_signals=False, max_cycles=2), timeout=2.0)

        assert code is ExitCode.TERMINATED
        assert "Membership change notified, refreshing registry" in keeper.messages()


# ══════════════════════════════════════════════════════════════════════════════
# TESTS ÉMETTEURS DES NOTIFICATIONS
# ══════════════════════════════════════════════════════════════════════════════


class TestNotificationSources:
    """Seules les adresses des membres connus déclenchent un rafraîchissement."""

    @pytest.mark.asyncio
    async def test_member_addresses_trusted_after_start(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)

        await coordinator.run(install_signals=False, max_cycles=1)

        assert {"A", "B", "C", "127.0.0.1", "::1"} <= coordinator.trusted_sources

    @pytest.mark.parametrize("address", ["127.0.0.1", "::ffff:127.0.0.1", "::1"])
    def test_loopback_accepted(self, address: str) -> None:
        coordinator = _coordinator(_standby())

        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"), (address, 40000))

        assert coordinator.flags.membership is True

    def test_unknown_source_deferred(self) -> None:
        coordinator = _coordinator(_standby())

        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"), ("10.0.0.66", 40000))

        assert coordinator.flags.membership is False
        assert coordinator.flags.unverified_sources == {"10.0.0.66"}
        assert coordinator.flags.any() is True

    @pytest.mark.asyncio
    async def test_unknown_source_dropped(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"), ("10.0.0.66", 40000))

        code = await coordinator.run(install_signals=False, max_cycles=1)

        messages = keeper.messages()
        assert code is ExitCode.TERMINATED
        assert "Peer notification from unknown source ignored" in messages
        assert "Membership change notified, refreshing registry" not in messages
        assert coordinator.flags.any() is False

    @pytest.mark.asyncio
    async def test_newly_registered_node_accepted(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        await keeper.registry.refresh()
        await coordinator.refresh_trusted_sources()
        await keeper.store.add_node("D", endpoint_for("D"))

        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="D"), ("D", 5480))
        assert coordinator.flags.unverified_sources == {"D"}

        await coordinator.run(install_signals=False, max_cycles=1)

        messages = keeper.messages()
        assert "Membership change notified, refreshing registry" in messages
        assert "Peer notification from unknown source ignored" not in messages
        assert "D" in coordinator.trusted_sources

    @pytest.mark.asyncio
    async def test_verification_keeps_failure_counters(self) -> None:
        keeper = _standby()
        coordinator = _coordinator(keeper)
        await keeper.registry.refresh()
        primary = keeper.registry.current_primary()
        keeper.registry.retry_counters.increment(primary.sequence)
        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"), ("10.0.0.66", 40000))

        await coordinator._verify_sources()

        assert keeper.registry.retry_counters.get(primary.sequence) == 1

    @pytest.mark.asyncio
    async def test_registry_unavailable_during_verification(self) -> None:
        keeper = _standby()
        keeper.store.available = False
        coordinator = _coordinator(keeper)
        coordinator.handle_notification(PeerNotification(type=MEMBERSHIP_CHANGED, sender="A"), ("10.0.0.66", 40000))

        code = await coordinator.run(install_signals=False, max_cycles=1)

        messages = keeper.messages()
        assert code is ExitCode.TERMINATED
        assert "Peer notification sources not verified, registry unavailable" in messages
        assert "Membership change notified, refreshing registry" not in messages


# ══════════════════════════════════════════════════════════════════════════════
# TESTS RELOAD
# ══════════════════════════════════════════════════════════════════════════════


class TestReload:
    @pytest.mark.asyncio
    async def test_applies_runtime_settings(self) -> None:
        keeper = _standby()
        loader = StaticLoader(_config(retry_threshold=4, log_level="WARNING"))
        coordinator = _coordinator(keeper, loader=loader)
        coordinator.request_reload()

        await coordinator.run(install_signals=False, max_cycles=1)

        assert keeper.detector.retry_threshold == 4
        assert keeper.logger.config.min_level is LogLevel.WARN
        assert keeper.topology_source.loads == 2

    @pytest.mark.asyncio
    async def test_restart_fields_reported(self) -> None:
        keeper = _standby()
        loader = StaticLoader(_config(notify_port=6000, membership_table="other.node_info"))
        coordinator = _coordinator(keeper, loader=loader)
        coordinator.request_reload()

        await coordinator.run(install_signals=False, max_cycles=1)

        entry = next(e for e in keeper.logger.get_entries() if e.message == "Configuration changes require a restart")
        assert entry.extra["fields"] == ["notify_port", "membership_table"]

    @pytest.mark.asyncio
    async def test_invalid_configuration_kept(self) -> None:
        keeper = _standby()
        loader = StaticLoader(error=ConfigIntegrityError("Configuration invalide: keeper.retry_threshold"))
        coordinator = _coordinator(keeper, loader=loader)
        coordinator.request_reload()

        code = await coordinator.run(install_signals=False, max_cycles=1)

        assert code is ExitCode.TERMINATED
        assert keeper.detector.retry_threshold == 1
        assert "Configuration reload rejected, keeping current configuration" in keeper.messages()


# ══════════════════════════════════════════════════════════════════════════════
# TESTS ASSEMBLAGE
# ══════════════════════════════════════════════════════════════════════════════


class TestBuild:
    def test_executor_timeouts_follow_probe_timeout(self) -> None:
        executor = build_executor(_config(probe_timeout=2.0))

        assert executor.timeouts.get_timeout(TimeoutType.CONNECTION) == 2.0
        assert executor.timeouts.get_timeout(TimeoutType.REQUEST) == 5.0

    def test_build_coordinator(self, logger) -> None:
        coordinator = build_coordinator(_config(), logger)

        assert isinstance(coordinator, Coordinator)
        assert coordinator.state_machine.role is None
