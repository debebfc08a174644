"""
pgkeeper - HA: Node Registry Cache

Copie locale, en lecture seule, du registre des noeuds.

Le couple (snapshot, compteurs) est reconstruit entièrement à chaque
refresh puis substitué en une seule affectation: un lecteur ne voit
jamais un snapshot de N1 noeuds avec des compteurs dimensionnés pour N0.
"""

from typing import List, Optional

from ..logging.interfaces import IStructuredLogger
from .interfaces import (
    IMembershipStore,
    Node,
    NodeSet,
    RegistryState,
    RetryCounters,
    StoreUnavailable,
)


class NodeRegistryCache:
    """Cache du registre avec remplacement copy-on-refresh."""

    def __init__(self, store: IMembershipStore, logger: IStructuredLogger) -> None:
        self._store = store
        self._logger = logger
        empty = NodeSet()
        self._state = RegistryState(snapshot=empty, counters=RetryCounters.for_nodes(empty))

    @property
    def state(self) -> RegistryState:
        return self._state

    @property
    def snapshot(self) -> NodeSet:
        return self._state.snapshot

    @property
    def retry_counters(self) -> RetryCounters:
        return self._state.counters

    async def refresh(self) -> NodeSet:
        """
        Relit le registre et remplace l'état local.

        Les compteurs repartent à zéro, dimensionnés sur le nouveau snapshot.

        Raises:
            StoreUnavailable: Registre illisible; l'état précédent est conservé
        """
        try:
            nodes = await self._store.fetch_nodes()
        except StoreUnavailable as e:
            self._logger.warn(
                "Registry refresh failed, keeping previous snapshot",
                error=str(e),
                nodes=len(self._state.snapshot),
            )
            raise

        snapshot = NodeSet(nodes=tuple(nodes))
        self._state = RegistryState(snapshot=snapshot, counters=RetryCounters.for_nodes(snapshot))

        self._logger.debug(
            "Registry refreshed",
            nodes=len(snapshot),
            primary=getattr(snapshot.current_primary(), "name", None),
        )
        return snapshot

    async def fetch_endpoints(self) -> List[str]:
        """
        Lecture de contrôle du registre; snapshot et compteurs restent inchangés.

        Raises:
            StoreUnavailable: Registre illisible
        """
        return [node.endpoint for node in await self._store.fetch_nodes()]

    def current_primary(self) -> Optional[Node]:
        return self._state.snapshot.current_primary()

    def sync_standbys(self) -> List[Node]:
        return self._state.snapshot.sync_standbys()

    def reset_counters(self) -> None:
        """Remise à zéro inconditionnelle (reconfiguration, changement de membres)."""
        self._state = RegistryState(
            snapshot=self._state.snapshot,
            counters=RetryCounters.for_nodes(self._state.snapshot),
        )
