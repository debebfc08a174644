"""
pgkeeper - HA: Role State Machine

Automate des rôles du coordinateur, une itération par cycle de réveil.

Transitions:
    PRIMARY_READY       -> PRIMARY_MONITORING  standbys connectés + 1 == lignes du registre
    PRIMARY_MONITORING  -> PRIMARY_DEGRADED    quorum perdu, réplication passée en asynchrone
    PRIMARY_DEGRADED    -> PRIMARY_READY       reload trouvant une topologie synchrone
    STANDBY_MONITORING  -> PRIMARY_READY       primaire en échec et noeud local élu

La promotion est une simple transition: le même processus continue.
"""

from typing import Awaitable, Callable, Dict, List, Optional

from ..logging.interfaces import IStructuredLogger
from .election import NextPrimaryElector
from .failover import FailoverExecutor
from .heartbeat import HeartbeatDetector
from .interfaces import (
    ClusterRole,
    ILocalServer,
    ITopologySource,
    MalformedTopologyError,
    Node,
    ReplicationTopology,
    StoreUnavailable,
)
from .propagator import MembershipPropagator
from .quorum import QuorumEvaluator
from .registry import NodeRegistryCache

# Sequence réservée au partenaire configuré quand le registre est vide
PARTNER_SEQUENCE = 0
PARTNER_NAME = "partner"


class RoleStateMachine:
    """Pilotage des rôles primaire / standby."""

    def __init__(
        self,
        node_name: str,
        registry: NodeRegistryCache,
        detector: HeartbeatDetector,
        quorum: QuorumEvaluator,
        elector: NextPrimaryElector,
        failover: FailoverExecutor,
        propagator: MembershipPropagator,
        local_server: ILocalServer,
        topology_source: ITopologySource,
        logger: IStructuredLogger,
        partner_endpoint: Optional[str] = None,
    ) -> None:
        self._node_name = node_name
        self._registry = registry
        self._detector = detector
        self._quorum = quorum
        self._elector = elector
        self._failover = failover
        self._propagator = propagator
        self._server = local_server
        self._topology_source = topology_source
        self._logger = logger
        self._partner = (
            Node(sequence=PARTNER_SEQUENCE, name=PARTNER_NAME, endpoint=partner_endpoint) if partner_endpoint else None
        )
        self._role: Optional[ClusterRole] = None
        self._topology = ReplicationTopology()
        # Topologie à relire avant de surveiller (ALTER SYSTEM RESET non encore relu)
        self._topology_stale = False

        self._handlers: Dict[ClusterRole, Callable[[], Awaitable[None]]] = {
            ClusterRole.PRIMARY_READY: self._step_primary_ready,
            ClusterRole.PRIMARY_MONITORING: self._step_primary_monitoring,
            ClusterRole.PRIMARY_DEGRADED: self._step_primary_degraded,
            ClusterRole.STANDBY_MONITORING: self._step_standby_monitoring,
        }

    @property
    def role(self) -> Optional[ClusterRole]:
        return self._role

    @property
    def topology(self) -> ReplicationTopology:
        return self._topology

    # ──────────────────────────────────────────────────────────────────────────
    # Démarrage et transitions
    # ──────────────────────────────────────────────────────────────────────────

    async def start(self, in_recovery: bool) -> None:
        """
        Dérive la topologie, charge le registre et entre dans le rôle initial.

        Raises:
            MalformedTopologyError: Topologie invalide au démarrage (fatal)
            StoreUnavailable: Serveur local injoignable pour lire la topologie
        """
        self._topology = await self._topology_source.load()

        try:
            await self._registry.refresh()
        except StoreUnavailable:
            self._logger.warn("Starting with an empty registry")

        await self.enter(ClusterRole.STANDBY_MONITORING if in_recovery else ClusterRole.PRIMARY_READY)

    async def enter(self, role: ClusterRole) -> None:
        """
        Entre dans un rôle et exécute son action d'entrée.

        Raises:
            ConfigChangeFailed: Action d'entrée PRIMARY_READY impossible (fatal)
        """
        previous = self._role
        self._role = role
        self._logger.info(
            f"Role {role.status_label}",
            role=role.value,
            previous=previous.value if previous else None,
        )

        if role is ClusterRole.PRIMARY_READY:
            await self._failover.prepare_primary()
            self._topology_stale = True
            await self._reload_after_reset()
        elif role is ClusterRole.PRIMARY_MONITORING:
            await self.apply_election(reason="election")

    async def step(self) -> None:
        """Une itération du rôle courant."""
        if self._role is None:
            raise RuntimeError("state machine not started")
        await self._handlers[self._role]()

    # ──────────────────────────────────────────────────────────────────────────
    # Rôles
    # ──────────────────────────────────────────────────────────────────────────

    async def _reload_after_reset(self) -> bool:
        """
        Relit la topologie effective après ALTER SYSTEM RESET et reload.

        La valeur lue avant le reset peut être la désactivation persistée
        d'une dégradation précédente, ou celle d'un ancien standby.

        Returns:
            True si la topologie courante est à jour
        """
        topology = await self._load_topology()
        if topology is None:
            return False

        if topology != self._topology:
            self._logger.info(
                "Replication topology after reset",
                standby_names=list(topology.standby_names),
                required=topology.required_sync_count,
            )
        self._topology = topology
        self._topology_stale = False
        return True

    async def _load_topology(self) -> Optional[ReplicationTopology]:
        """Lit la topologie; None si illisible (la précédente reste en vigueur)."""
        try:
            return await self._topology_source.load()
        except MalformedTopologyError as e:
            self._logger.error("Malformed synchronous_standby_names, keeping previous topology", error=str(e))
        except StoreUnavailable as e:
            self._logger.warn("Topology unavailable, keeping previous topology", error=str(e))
        return None

    async def _step_primary_ready(self) -> None:
        if self._topology_stale and not await self._reload_after_reset():
            return

        try:
            snapshot = await self._registry.refresh()
            connected = await self._server.connected_standby_count()
        except StoreUnavailable as e:
            self._logger.debug("Primary readiness check skipped", error=str(e))
            return

        registered = len(snapshot)
        if registered == 0:
            ready = self._partner is not None and connected >= 1
        else:
            ready = connected + 1 == registered

        if ready:
            await self.enter(ClusterRole.PRIMARY_MONITORING)
        else:
            self._logger.debug("Waiting for standbys", connected=connected, registered=registered)

    async def _step_primary_monitoring(self) -> None:
        if not self._topology.is_synchronous:
            return

        standbys = self._monitored_sync_standbys()
        report = await self._quorum.assess(standbys, self._topology.required_sync_count)
        if report.satisfied:
            return

        await self._failover.demote_to_async()
        # synchronous_standby_names vaut désormais '' sur le serveur
        self._topology = ReplicationTopology()
        await self.enter(ClusterRole.PRIMARY_DEGRADED)

    async def _step_primary_degraded(self) -> None:
        return None

    async def _step_standby_monitoring(self) -> None:
        primary = self._registry.current_primary() or self._partner
        if primary is None:
            self._logger.debug("No primary to monitor")
            return

        count = await self._detector.check(primary)
        if not self._detector.is_failed(primary):
            return

        self._logger.warn(
            "Primary unreachable",
            primary=primary.name,
            failures=count,
            threshold=self._detector.retry_threshold,
        )
        if await self._failover.promote_self(primary, self._topology):
            await self.enter(ClusterRole.PRIMARY_READY)

    def _monitored_sync_standbys(self) -> List[Node]:
        """Standbys synchrones du registre; à défaut ceux de la topologie; à défaut le partenaire."""
        snapshot = self._registry.snapshot
        flagged = snapshot.sync_standbys()
        if flagged:
            return flagged

        listed = [n for n in snapshot.standbys() if self._topology.lists(n.name)]
        if listed:
            return listed

        if len(snapshot) == 0 and self._partner is not None:
            return [self._partner]
        return []

    # ──────────────────────────────────────────────────────────────────────────
    # Événements externes
    # ──────────────────────────────────────────────────────────────────────────

    async def apply_election(self, reason: str) -> None:
        """Recalcule l'élection, l'écrit dans le registre puis propage."""
        snapshot = self._registry.snapshot
        if len(snapshot) == 0:
            return

        result = self._elector.elect(self._topology, snapshot)
        try:
            await self._elector.apply(result)
            snapshot = await self._registry.refresh()
        except StoreUnavailable as e:
            self._logger.error("Election not recorded", error=str(e))
            return

        await self._propagator.propagate(snapshot, reason=reason)

    async def reconfigure(self) -> None:
        """
        Re-dérive la topologie après un reload et remet les compteurs à zéro.

        Une topologie invalide est journalisée; la précédente reste en vigueur.
        """
        previous = self._topology
        topology = await self._load_topology()
        self._registry.reset_counters()
        if topology is None:
            return
        self._topology = topology
        self._topology_stale = False

        if self._role is ClusterRole.PRIMARY_DEGRADED:
            if topology.is_synchronous:
                self._logger.info("Synchronous topology configured again, re-arming")
                await self.enter(ClusterRole.PRIMARY_READY)
            return

        if topology == previous:
            return

        self._logger.info(
            "Replication topology changed",
            standby_names=list(self._topology.standby_names),
            required=self._topology.required_sync_count,
        )

        if self._role is ClusterRole.PRIMARY_MONITORING:
            await self.apply_election(reason="topology_changed")

    def known_endpoints(self) -> List[str]:
        """Conninfos des membres connus: registre local puis partenaire."""
        endpoints = [node.endpoint for node in self._registry.snapshot]
        if self._partner is not None:
            endpoints.append(self._partner.endpoint)
        return endpoints

    async def stored_endpoints(self) -> List[str]:
        """
        Conninfos relus dans le registre, sans remise à zéro des compteurs.

        Raises:
            StoreUnavailable: Registre illisible
        """
        endpoints = await self._registry.fetch_endpoints()
        if self._partner is not None:
            endpoints.append(self._partner.endpoint)
        return endpoints

    async def membership_changed(self) -> None:
        """Rafraîchit le registre et la topologie après notification d'un pair."""
        try:
            await self._registry.refresh()
        except StoreUnavailable:
            self._registry.reset_counters()

        await self.reconfigure()
