"""
pgkeeper - HA: Next-Primary Elector

Choix déterministe du prochain primaire parmi les standbys.

Algorithme:
    1. Candidats: lignes non primaires, hors exclusions, par sequence croissante
    2. Parcours de la liste de priorité: chaque candidat correspondant est
       standby synchrone, le premier trouvé est élu
    3. Sans correspondance: le candidat de plus petite sequence est élu
    4. Sans candidat: aucun élu
"""

from typing import Iterable, List, Optional, Set

from ..logging.interfaces import IStructuredLogger
from .interfaces import (
    ElectionResult,
    IMembershipStore,
    Node,
    NodeSet,
    ReplicationTopology,
)


class NextPrimaryElector:
    """Élection du prochain primaire et maintien des drapeaux is_next_primary / is_sync."""

    def __init__(self, store: IMembershipStore, logger: IStructuredLogger) -> None:
        self._store = store
        self._logger = logger

    @property
    def store(self) -> IMembershipStore:
        return self._store

    @staticmethod
    def elect(topology: ReplicationTopology, snapshot: NodeSet, exclude: Iterable[str] = ()) -> ElectionResult:
        """Élection pure, sans effet de bord."""
        excluded: Set[str] = {name.lower() for name in exclude}
        candidates = [n for n in snapshot.standbys() if n.name.lower() not in excluded]

        if not candidates:
            return ElectionResult(next_primary=None)

        elected: Optional[Node] = None
        sync: List[Node] = []
        for pattern in topology.standby_names:
            for node in candidates:
                if topology.matches(pattern, node.name) and node not in sync:
                    sync.append(node)
                    if elected is None:
                        elected = node

        if elected is not None:
            return ElectionResult(next_primary=elected, sync_standbys=sync, from_priority_list=True)

        return ElectionResult(next_primary=candidates[0], sync_standbys=[])

    async def apply(self, result: ElectionResult) -> None:
        """
        Écrit le résultat dans le registre, en une transaction.

        Raises:
            StoreUnavailable: Si l'écriture échoue
        """
        next_seq = result.next_primary.sequence if result.next_primary else None
        sync_seqs = [n.sequence for n in result.sync_standbys]

        await self._store.update_election(next_seq, sync_seqs)

        self._logger.info(
            "Next primary elected",
            next_primary=getattr(result.next_primary, "name", None),
            sync_standbys=[n.name for n in result.sync_standbys],
            from_priority_list=result.from_priority_list,
        )

    def is_elected(
        self,
        name: str,
        snapshot: NodeSet,
        topology: ReplicationTopology,
        exclude: Iterable[str] = (),
    ) -> bool:
        """
        Ce noeud est-il le candidat à la promotion ?

        Le drapeau is_next_primary du registre fait foi s'il est posé;
        sinon l'élection est recalculée localement. Registre vide: mode
        deux noeuds, le noeud local est implicitement élu.
        """
        if len(snapshot) == 0:
            return True

        flagged = snapshot.next_primary()
        excluded = {n.lower() for n in exclude}
        if flagged is not None and flagged.name.lower() not in excluded:
            return flagged.has_name(name)

        result = self.elect(topology, snapshot, exclude)
        return result.next_primary is not None and result.next_primary.has_name(name)
