"""
pgkeeper - HA: Coordinator

Boucle coopérative unique du coordinateur.

Réveil par minuterie (heartbeat_interval) ou par événement. Les handlers
de signaux et l'écoute UDP ne font que lever un drapeau et réveiller la
boucle; le travail est fait en tête d'itération, dans l'ordre:
arrêt, reload, changement de membres, puis une étape de l'automate.
Une notification n'est prise en compte que si son adresse source est
celle d'un membre connu.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..core.config_loader import ConfigIntegrityError
from ..core.interfaces import IConfigLoader, KeeperConfig
from ..logging.interfaces import LogLevel
from ..logging.structured_logger import StructuredLogger
from ..network.interfaces import TimeoutConfig
from ..network.notification import (
    LOOPBACK_SOURCES,
    MEMBERSHIP_CHANGED,
    NotificationListener,
    PeerNotification,
    PeerNotifier,
    normalize_source,
    resolve_sources,
)
from ..network.query_executor import PsycopgQueryExecutor
from ..network.timeout_manager import TimeoutManager
from .election import NextPrimaryElector
from .failover import FailoverExecutor
from .heartbeat import HeartbeatDetector
from .interfaces import ILocalServer, KeeperFatalError, MalformedTopologyError, StoreUnavailable
from .local_server import LocalServer
from .membership_store import PostgresMembershipStore
from .propagator import MembershipPropagator
from .quorum import QuorumEvaluator
from .registry import NodeRegistryCache
from .state_machine import RoleStateMachine
from .topology import PostgresTopologySource

# Paramètres qui ne prennent effet qu'au redémarrage
RESTART_REQUIRED_FIELDS = (
    "node_name",
    "my_endpoint",
    "partner_endpoint",
    "data_directory",
    "notify_port",
    "notify_host",
    "membership_table",
    "demote_attempts",
    "promote_timeout",
    "after_command",
    "probe_timeout",
)


SourceResolver = Callable[[Iterable[str]], Awaitable[FrozenSet[str]]]


class ExitCode(IntEnum):
    TERMINATED = 0
    FATAL = 1
    CONFIG_ERROR = 2


@dataclass
class SignalFlags:
    """Drapeaux levés hors boucle, consommés en tête d'itération."""

    shutdown: bool = False
    reload: bool = False
    membership: bool = False
    # Émetteurs hors des membres connus, à vérifier contre le registre relu
    unverified_sources: Set[str] = field(default_factory=set)

    def any(self) -> bool:
        return self.shutdown or self.reload or self.membership or bool(self.unverified_sources)


class Coordinator:
    """Boucle principale d'un coordinateur."""

    def __init__(
        self,
        config: KeeperConfig,
        logger: StructuredLogger,
        state_machine: RoleStateMachine,
        local_server: ILocalServer,
        detector: HeartbeatDetector,
        config_loader: Optional[IConfigLoader] = None,
        listen: bool = True,
        source_resolver: SourceResolver = resolve_sources,
    ) -> None:
        self._config = config
        self._logger = logger
        self._machine = state_machine
        self._server = local_server
        self._detector = detector
        self._config_loader = config_loader
        self._listener: Optional[NotificationListener] = (
            NotificationListener(self.handle_notification, self.handle_notification_error) if listen else None
        )
        self._interval = config.heartbeat_interval
        self._flags = SignalFlags()
        self._wake = asyncio.Event()
        self._resolve_sources = source_resolver
        self._trusted_sources: FrozenSet[str] = LOOPBACK_SOURCES
        self._trusted_from: Optional[FrozenSet[str]] = None

    @property
    def flags(self) -> SignalFlags:
        return self._flags

    @property
    def trusted_sources(self) -> FrozenSet[str]:
        return self._trusted_sources

    @property
    def state_machine(self) -> RoleStateMachine:
        return self._machine

    # ──────────────────────────────────────────────────────────────────────────
    # Drapeaux (contexte signal / datagramme)
    # ──────────────────────────────────────────────────────────────────────────

    def request_shutdown(self) -> None:
        self._flags.shutdown = True
        self._wake.set()

    def request_reload(self) -> None:
        self._flags.reload = True
        self._wake.set()

    def notify_membership_changed(self) -> None:
        self._flags.membership = True
        self._wake.set()

    def handle_notification(self, notification: PeerNotification, addr: Tuple[str, int]) -> None:
        if notification.type != MEMBERSHIP_CHANGED or notification.sender.lower() == self._config.node_name.lower():
            return

        source = normalize_source(addr[0])
        if source in self._trusted_sources:
            self.notify_membership_changed()
        else:
            self._flags.unverified_sources.add(source)
            self._wake.set()

    def handle_notification_error(self, reason: str, addr: Tuple[str, int]) -> None:
        self._logger.warn("Malformed peer notification ignored", reason=reason, sender=str(addr[0]))

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.add_signal_handler(signal.SIGTERM, self.request_shutdown)
        loop.add_signal_handler(signal.SIGINT, self.request_shutdown)
        loop.add_signal_handler(signal.SIGHUP, self.request_reload)
        loop.add_signal_handler(signal.SIGUSR1, self.notify_membership_changed)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP, signal.SIGUSR1):
            loop.remove_signal_handler(sig)

    # ──────────────────────────────────────────────────────────────────────────
    # Boucle
    # ──────────────────────────────────────────────────────────────────────────

    async def run(self, install_signals: bool = True, max_cycles: Optional[int] = None) -> ExitCode:
        """
        Démarre puis exécute la boucle jusqu'à l'arrêt.

        Args:
            install_signals: Installe les handlers SIGTERM/SIGINT/SIGHUP/SIGUSR1
            max_cycles: Nombre maximal d'itérations (illimité par défaut)

        Returns:
            Code de sortie du processus
        """
        self._logger.new_cycle()
        try:
            in_recovery = await self._server.is_in_recovery()
            await self._machine.start(in_recovery)
        except MalformedTopologyError as e:
            self._logger.critical("Malformed replication topology at startup", error=str(e))
            return ExitCode.FATAL
        except (StoreUnavailable, KeeperFatalError) as e:
            self._logger.critical("Coordinator startup failed", error=str(e))
            return ExitCode.FATAL

        await self.refresh_trusted_sources()

        if self._listener is not None:
            try:
                await self._listener.start(self._config.notify_host, self._config.notify_port)
            except OSError as e:
                self._logger.critical("Cannot listen for peer notifications", port=self._config.notify_port, error=str(e))
                return ExitCode.FATAL

        loop = asyncio.get_running_loop()
        if install_signals:
            self.install_signal_handlers(loop)

        cycles = 0
        try:
            while True:
                self._logger.new_cycle()
                if not await self._consume_flags():
                    self._logger.info("Coordinator terminated")
                    return ExitCode.TERMINATED

                try:
                    await self._machine.step()
                except StoreUnavailable as e:
                    self._logger.error("Cycle aborted, membership store unavailable", error=str(e))

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    return ExitCode.TERMINATED

                await self._wait()
        except KeeperFatalError as e:
            self._logger.critical("Fatal failover action error", error=str(e), error_type=type(e).__name__)
            return ExitCode.FATAL
        finally:
            if install_signals:
                self.remove_signal_handlers(loop)
            if self._listener is not None:
                self._listener.close()

    async def _consume_flags(self) -> bool:
        """
        Consomme les drapeaux dans l'ordre arrêt, reload, émetteurs, membres.

        Returns:
            False si l'arrêt est demandé
        """
        if self._flags.shutdown:
            return False

        if self._flags.reload:
            self._flags.reload = False
            await self._reload_config()

        if self._flags.unverified_sources:
            await self._verify_sources()

        if self._flags.membership:
            self._flags.membership = False
            self._logger.info("Membership change notified, refreshing registry")
            await self._machine.membership_changed()

        await self.refresh_trusted_sources()
        return True

    def _member_endpoints(self, endpoints: List[str]) -> FrozenSet[str]:
        return frozenset(endpoints + [self._config.my_endpoint])

    async def refresh_trusted_sources(self) -> None:
        """Résout les adresses des membres connus si leur liste a changé."""
        endpoints = self._member_endpoints(self._machine.known_endpoints())
        if endpoints == self._trusted_from:
            return

        self._trusted_sources = await self._resolve_sources(endpoints)
        self._trusted_from = endpoints
        self._logger.debug("Notification sources updated", sources=sorted(self._trusted_sources))

    async def _verify_sources(self) -> None:
        """
        Rejoue les notifications d'émetteurs inconnus du registre local.

        Un noeud ajouté depuis le dernier rafraîchissement figure déjà dans la
        table répliquée: sa notification est acceptée. Les autres sont ignorées
        sans toucher aux compteurs d'échecs.
        """
        sources = self._flags.unverified_sources
        self._flags.unverified_sources = set()
        try:
            endpoints = await self._machine.stored_endpoints()
        except StoreUnavailable as e:
            self._logger.warn(
                "Peer notification sources not verified, registry unavailable",
                sources=sorted(sources),
                error=str(e),
            )
            return

        trusted = await self._resolve_sources(self._member_endpoints(endpoints))
        for source in sorted(sources):
            if source in trusted:
                self._flags.membership = True
            else:
                self._logger.warn("Peer notification from unknown source ignored", source=source)

    async def _wait(self) -> None:
        self._wake.clear()
        if self._flags.any():
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass

    async def _reload_config(self) -> None:
        self._logger.info("Reload requested")

        if self._config_loader is not None:
            try:
                config = await self._config_loader.load_config()
            except ConfigIntegrityError as e:
                self._logger.error("Configuration reload rejected, keeping current configuration", error=str(e))
            else:
                self._apply_config(config)

        await self._machine.reconfigure()

    def _apply_config(self, config: KeeperConfig) -> None:
        ignored = [f for f in RESTART_REQUIRED_FIELDS if getattr(config, f) != getattr(self._config, f)]
        if ignored:
            self._logger.warn("Configuration changes require a restart", fields=ignored)

        self._logger.set_min_level(LogLevel.from_name(config.log_level))
        self._interval = config.heartbeat_interval
        self._detector.set_retry_threshold(config.retry_threshold)
        self._config = config


def build_executor(config: KeeperConfig) -> PsycopgQueryExecutor:
    """Exécuteur SQL dont les timeouts dérivent de probe_timeout."""
    connection_timeout = min(config.probe_timeout, TimeoutManager.MAX_CONNECTION_TIMEOUT)
    request_timeout = min(max(config.probe_timeout, 5.0), TimeoutManager.MAX_REQUEST_TIMEOUT)
    timeouts = TimeoutManager(TimeoutConfig(connection_timeout=connection_timeout, request_timeout=request_timeout))
    return PsycopgQueryExecutor(timeouts=timeouts, application_name=f"pgkeeper:{config.node_name}")


def build_coordinator(
    config: KeeperConfig,
    logger: StructuredLogger,
    config_loader: Optional[IConfigLoader] = None,
) -> Coordinator:
    """Assemble un coordinateur avec les implémentations PostgreSQL."""
    executor = build_executor(config)
    store = PostgresMembershipStore(executor, config.my_endpoint, config.membership_table)
    registry = NodeRegistryCache(store, logger)
    detector = HeartbeatDetector(executor, registry, config.retry_threshold, config.probe_timeout, logger)
    quorum = QuorumEvaluator(detector, logger)
    elector = NextPrimaryElector(store, logger)
    local_server = LocalServer(config.data_directory, executor, config.my_endpoint, logger)
    propagator = MembershipPropagator(PeerNotifier(config.notify_port), config.node_name, logger)
    failover = FailoverExecutor(
        node_name=config.node_name,
        local_endpoint=config.my_endpoint,
        executor=executor,
        local_server=local_server,
        registry=registry,
        elector=elector,
        propagator=propagator,
        logger=logger,
        demote_attempts=config.demote_attempts,
        promote_timeout=config.promote_timeout,
        after_command=config.after_command,
    )
    machine = RoleStateMachine(
        node_name=config.node_name,
        registry=registry,
        detector=detector,
        quorum=quorum,
        elector=elector,
        failover=failover,
        propagator=propagator,
        local_server=local_server,
        topology_source=PostgresTopologySource(executor, config.my_endpoint),
        logger=logger,
        partner_endpoint=config.partner_endpoint,
    )

    return Coordinator(
        config=config,
        logger=logger,
        state_machine=machine,
        local_server=local_server,
        detector=detector,
        config_loader=config_loader,
    )
