"""
pgkeeper - HA: Heartbeat Failure Detector

Sonde de joignabilité par pair (SELECT 1) avec comptage des échecs consécutifs.

Un noeud est déclaré en échec quand son compteur dépasse strictement
retry_threshold: il faut donc retry_threshold + 1 échecs consécutifs.
Aucune distinction n'est faite entre un noeud arrêté et une partition réseau.
"""

import asyncio

from ..logging.interfaces import IStructuredLogger
from ..network.interfaces import IQueryExecutor
from .interfaces import Node
from .registry import NodeRegistryCache

PROBE_QUERY = "SELECT 1"


class HeartbeatDetector:
    """Détecteur d'échec par heartbeat direct."""

    def __init__(
        self,
        executor: IQueryExecutor,
        registry: NodeRegistryCache,
        retry_threshold: int,
        probe_timeout: float,
        logger: IStructuredLogger,
    ) -> None:
        """
        Args:
            executor: Exécuteur SQL vers les pairs
            registry: Cache du registre (porte les compteurs)
            retry_threshold: Échecs tolérés avant déclaration d'échec
            probe_timeout: Borne d'une sonde, en secondes
            logger: Logger structuré
        """
        if retry_threshold < 1:
            raise ValueError("retry_threshold must be >= 1")
        if probe_timeout <= 0:
            raise ValueError("probe_timeout must be positive")

        self._executor = executor
        self._registry = registry
        self._retry_threshold = retry_threshold
        self._probe_timeout = probe_timeout
        self._logger = logger

    @property
    def retry_threshold(self) -> int:
        return self._retry_threshold

    def set_retry_threshold(self, retry_threshold: int) -> None:
        if retry_threshold < 1:
            raise ValueError("retry_threshold must be >= 1")
        self._retry_threshold = retry_threshold

    async def probe(self, node: Node) -> bool:
        """
        Sonde un noeud une fois.

        Ne lève jamais: toute erreur de connexion, d'exécution ou timeout donne False.
        """
        try:
            rows = await asyncio.wait_for(
                self._executor.fetch(node.endpoint, PROBE_QUERY),
                timeout=self._probe_timeout,
            )
        except asyncio.TimeoutError:
            self._logger.debug("Probe timeout", peer=node.name, timeout=self._probe_timeout)
            return False
        except Exception as e:
            self._logger.debug("Probe error", peer=node.name, error=str(e))
            return False

        return len(rows) == 1 and tuple(rows[0]) == (1,)

    def record_result(self, node: Node, success: bool) -> int:
        """
        Met à jour le compteur du noeud.

        Returns:
            Nouveau nombre d'échecs consécutifs
        """
        counters = self._registry.retry_counters
        if success:
            counters.reset(node.sequence)
            return 0
        return counters.increment(node.sequence)

    def failure_count(self, node: Node) -> int:
        return self._registry.retry_counters.get(node.sequence)

    def is_failed(self, node: Node) -> bool:
        return self.failure_count(node) > self._retry_threshold

    async def check(self, node: Node) -> int:
        """Sonde puis enregistre le résultat."""
        success = await self.probe(node)
        count = self.record_result(node, success)

        if not success:
            self._logger.debug(
                "Heartbeat failed",
                peer=node.name,
                attempt=count,
                threshold=self._retry_threshold,
            )
        return count
