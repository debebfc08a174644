"""
pgkeeper - HA: Failover Executor

Séquence les actions de dégradation et de promotion.

Les deux chemins sont ré-exécutables sans danger: la seule réponse à une
erreur fatale est le redémarrage du coordinateur, qui rejoue l'action à
partir de l'état externe courant.
"""

from typing import Optional

from ..logging.interfaces import IStructuredLogger
from ..network.interfaces import IQueryExecutor, IRetryHandler, RetryConfig
from ..network.retry_handler import RetryHandler
from .election import NextPrimaryElector
from .interfaces import (
    ConfigChangeFailed,
    ILocalServer,
    Node,
    ReplicationTopology,
    ServerControlError,
    StoreUnavailable,
)
from .propagator import MembershipPropagator
from .registry import NodeRegistryCache

DISABLE_SYNC_REPLICATION = "ALTER SYSTEM SET synchronous_standby_names TO ''"
RESET_SYNC_REPLICATION = "ALTER SYSTEM RESET synchronous_standby_names"


class FailoverExecutor:
    """Exécution des chemins demote / prepare / promote."""

    def __init__(
        self,
        node_name: str,
        local_endpoint: str,
        executor: IQueryExecutor,
        local_server: ILocalServer,
        registry: NodeRegistryCache,
        elector: NextPrimaryElector,
        propagator: MembershipPropagator,
        logger: IStructuredLogger,
        demote_attempts: int = 5,
        promote_timeout: float = 60.0,
        after_command: Optional[str] = None,
        retry_handler: Optional[IRetryHandler] = None,
    ) -> None:
        self._node_name = node_name
        self._local_endpoint = local_endpoint
        self._executor = executor
        self._server = local_server
        self._registry = registry
        self._elector = elector
        self._propagator = propagator
        self._logger = logger
        self._promote_timeout = promote_timeout
        self._after_command = after_command
        self._retry = retry_handler or RetryHandler(executor, logger)
        self._retry_config = RetryConfig(max_attempts=demote_attempts, initial_delay=1.0, max_delay=10.0)

    async def _alter_and_reload(self, statement: str) -> None:
        result = await self._retry.execute(self._local_endpoint, statement, config=self._retry_config)
        if not result.success:
            raise ConfigChangeFailed(
                f"'{statement}' failed after {result.attempts} attempts: {result.last_error}"
            ) from result.last_error

        try:
            self._server.reload()
        except ServerControlError as e:
            raise ConfigChangeFailed(f"configuration reload failed: {e}") from e

    async def demote_to_async(self) -> None:
        """
        Désactive la réplication synchrone sur le noeud local.

        Raises:
            ConfigChangeFailed: Changement ou reload impossible (fatal)
        """
        await self._alter_and_reload(DISABLE_SYNC_REPLICATION)
        self._logger.warn("Synchronous replication disabled, cluster is now asynchronous")

    async def prepare_primary(self) -> None:
        """
        Retire une éventuelle désactivation précédente de la réplication synchrone.

        Raises:
            ConfigChangeFailed: Changement ou reload impossible (fatal)
        """
        await self._alter_and_reload(RESET_SYNC_REPLICATION)
        self._logger.info("Synchronous replication settings restored")

    async def promote_self(self, failed_primary: Node, topology: ReplicationTopology) -> bool:
        """
        Promeut le noeud local si l'élection le désigne.

        Args:
            failed_primary: Primaire déclaré en échec
            topology: Topologie synchrone courante

        Returns:
            True si le noeud local est désormais primaire, False si un autre
            noeud est le candidat élu

        Raises:
            PromotionFailed: Toujours en recovery après promote_timeout
            ServerControlError: Postmaster non signalable
        """
        snapshot = self._registry.snapshot
        exclude = [failed_primary.name]

        if not self._elector.is_elected(self._node_name, snapshot, topology, exclude):
            elected = snapshot.next_primary() or self._elector.elect(topology, snapshot, exclude).next_primary
            self._logger.info(
                "Primary failure confirmed, another node is the elected candidate",
                failed_primary=failed_primary.name,
                elected=getattr(elected, "name", None),
            )
            return False

        self._logger.warn("Promoting local node", failed_primary=failed_primary.name)

        if await self._still_in_recovery():
            created = self._server.promote()
            self._logger.info("Promotion triggered", promote_file_created=created)
            await self._server.wait_until_promoted(self._promote_timeout)
        else:
            self._logger.info("Local server already out of recovery, promotion trigger skipped")

        self._logger.warn("Local node promoted to primary")

        if self._after_command:
            await self._run_after_command(self._after_command)

        await self._record_promotion(failed_primary, topology)
        return True

    async def _still_in_recovery(self) -> bool:
        try:
            return await self._server.is_in_recovery()
        except StoreUnavailable as e:
            self._logger.warn("Recovery status unknown, triggering promotion", error=str(e))
            return True

    async def _run_after_command(self, command: str) -> None:
        try:
            returncode = await self._server.run_after_command(command)
        except OSError as e:
            self._logger.error("Post-promotion command could not start", command=command, error=str(e))
            return

        if returncode != 0:
            self._logger.error("Post-promotion command failed", command=command, returncode=returncode)
        else:
            self._logger.info("Post-promotion command completed", command=command)

    async def _record_promotion(self, failed_primary: Node, topology: ReplicationTopology) -> None:
        snapshot = self._registry.snapshot
        me = snapshot.by_name(self._node_name)
        if me is None:
            self._logger.info("Local node not registered, membership store left unchanged")
            return

        result = self._elector.elect(topology, snapshot, exclude=[failed_primary.name, me.name])
        try:
            await self._elector.store.apply_promotion(
                me.sequence,
                result.next_primary.sequence if result.next_primary else None,
                [n.sequence for n in result.sync_standbys],
            )
        except StoreUnavailable as e:
            self._logger.error("Promotion not recorded in membership store", error=str(e))
            return

        self._logger.info(
            "Promotion recorded",
            new_primary=me.name,
            old_primary=failed_primary.name,
            next_primary=getattr(result.next_primary, "name", None),
        )

        try:
            refreshed = await self._registry.refresh()
        except StoreUnavailable:
            return
        await self._propagator.propagate(refreshed, reason="promotion")
