"""
pgkeeper - HA: Quorum Evaluator

Décide, côté primaire, si l'exigence de réplication synchrone tient encore.

Le quorum n'est perdu que si les trois conditions sont réunies:
    registered >= required
    connected < required
    au moins un compteur a dépassé le seuil
Une sonde lente isolée ne déclenche donc jamais de dégradation.
"""

from typing import List

from ..logging.interfaces import IStructuredLogger
from .heartbeat import HeartbeatDetector
from .interfaces import Node, QuorumReport


class QuorumEvaluator:
    """Évaluation du quorum synchrone."""

    def __init__(self, detector: HeartbeatDetector, logger: IStructuredLogger) -> None:
        self._detector = detector
        self._logger = logger

    @staticmethod
    def evaluate(registered: int, connected: int, required: int, threshold_crossed: bool) -> bool:
        """
        Returns:
            True si le quorum est satisfait
        """
        lost = registered >= required and connected < required and threshold_crossed
        return not lost

    async def assess(self, sync_standbys: List[Node], required: int) -> QuorumReport:
        """
        Sonde chaque standby synchrone une fois et évalue le quorum.

        Args:
            sync_standbys: Standbys synchrones enregistrés
            required: Nombre de standbys synchrones requis
        """
        connected = 0
        failed: List[str] = []

        for node in sync_standbys:
            count = await self._detector.check(node)
            if count == 0:
                connected += 1
            if self._detector.is_failed(node):
                failed.append(node.name)

        registered = len(sync_standbys)
        threshold_crossed = len(failed) > 0
        satisfied = self.evaluate(registered, connected, required, threshold_crossed)

        if not satisfied:
            self._logger.warn(
                "Synchronous quorum lost",
                registered=registered,
                connected=connected,
                required=required,
                failed=failed,
            )

        return QuorumReport(
            registered=registered,
            connected=connected,
            required=required,
            threshold_crossed=threshold_crossed,
            satisfied=satisfied,
            failed_standbys=failed,
        )
