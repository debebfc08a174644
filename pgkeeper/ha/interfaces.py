"""
pgkeeper - HA Interfaces

Types et contrats du moteur de décision de failover: registre des noeuds,
topologie de réplication synchrone, compteurs d'échecs, rôles et
collaborateurs externes (registre durable, topologie, serveur local).

Un seul primaire, plusieurs standbys; la cohérence entre coordinateurs
est éventuelle (refresh + propagation), jamais verrouillée entre noeuds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


# ══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════


class KeeperError(Exception):
    """Racine des erreurs du coordinateur."""

    pass


class StoreUnavailable(KeeperError):
    """Registre des noeuds illisible ou non modifiable."""

    pass


class MalformedTopologyError(KeeperError):
    """synchronous_standby_names non analysable."""

    pass


class KeeperFatalError(KeeperError):
    """Action locale impossible: le superviseur doit redémarrer le coordinateur."""

    pass


class ConfigChangeFailed(KeeperFatalError):
    """Changement de configuration de réplication non appliqué."""

    pass


class PromotionFailed(KeeperFatalError):
    """Promotion déclenchée mais non aboutie."""

    pass


class ServerControlError(KeeperFatalError):
    """Postmaster introuvable ou signal non délivré."""

    pass


# ══════════════════════════════════════════════════════════════════════════════
# ROLES
# ══════════════════════════════════════════════════════════════════════════════


class ClusterRole(Enum):
    """Rôle local du coordinateur, propre à ce processus."""

    PRIMARY_READY = "primary:ready"
    PRIMARY_MONITORING = "primary:connected"
    PRIMARY_DEGRADED = "primary:async"
    STANDBY_MONITORING = "standby:connected"

    @property
    def is_primary(self) -> bool:
        return self is not ClusterRole.STANDBY_MONITORING

    @property
    def status_label(self) -> str:
        """Libellé de statut pour les logs, ex: (primary:ready)."""
        return f"({self.value})"


class SyncMethod(Enum):
    FIRST = "FIRST"
    ANY = "ANY"


# ══════════════════════════════════════════════════════════════════════════════
# DATA
# ══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Node:
    """Une ligne du registre des noeuds."""

    sequence: int
    name: str
    endpoint: str
    is_primary: bool = False
    is_next_primary: bool = False
    is_sync_standby: bool = False

    def has_name(self, name: str) -> bool:
        return self.name.lower() == name.lower()


@dataclass(frozen=True)
class NodeSet:
    """
    Photographie immuable du registre, triée par sequence.

    Toutes les requêtes sont pures; un refresh construit un nouveau NodeSet.
    """

    nodes: Tuple[Node, ...] = ()
    refreshed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(sorted(self.nodes, key=lambda n: n.sequence)))

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def current_primary(self) -> Optional[Node]:
        for node in self.nodes:
            if node.is_primary:
                return node
        return None

    def standbys(self) -> List[Node]:
        return [n for n in self.nodes if not n.is_primary]

    def sync_standbys(self) -> List[Node]:
        return [n for n in self.nodes if n.is_sync_standby and not n.is_primary]

    def next_primary(self) -> Optional[Node]:
        for node in self.nodes:
            if node.is_next_primary and not node.is_primary:
                return node
        return None

    def by_name(self, name: str) -> Optional[Node]:
        for node in self.nodes:
            if node.has_name(name):
                return node
        return None

    def by_sequence(self, sequence: int) -> Optional[Node]:
        for node in self.nodes:
            if node.sequence == sequence:
                return node
        return None

    def peers_of(self, name: str) -> List[Node]:
        return [n for n in self.nodes if not n.has_name(name)]


@dataclass(frozen=True)
class ReplicationTopology:
    """
    Topologie synchrone dérivée de synchronous_standby_names.

    standby_names est ordonné, priorité la plus haute en premier.
    """

    standby_names: Tuple[str, ...] = ()
    required_sync_count: int = 0
    method: SyncMethod = SyncMethod.FIRST
    raw: str = ""

    @property
    def is_synchronous(self) -> bool:
        return self.required_sync_count > 0 and len(self.standby_names) > 0

    def matches(self, pattern: str, name: str) -> bool:
        return pattern == "*" or pattern.lower() == name.lower()

    def lists(self, name: str) -> bool:
        """True si le nom figure dans la liste (ou si '*' y figure)."""
        return any(self.matches(pattern, name) for pattern in self.standby_names)


class RetryCounters:
    """
    Échecs consécutifs par sequence de noeud.

    Une sequence inconnue démarre à zéro (noeud partenaire hors registre).
    """

    def __init__(self, sequences: Sequence[int] = ()) -> None:
        self._counts: Dict[int, int] = {seq: 0 for seq in sequences}

    @classmethod
    def for_nodes(cls, snapshot: NodeSet) -> "RetryCounters":
        return cls([n.sequence for n in snapshot])

    def get(self, sequence: int) -> int:
        return self._counts.get(sequence, 0)

    def increment(self, sequence: int) -> int:
        self._counts[sequence] = self._counts.get(sequence, 0) + 1
        return self._counts[sequence]

    def reset(self, sequence: int) -> None:
        self._counts[sequence] = 0

    def reset_all(self) -> None:
        for sequence in self._counts:
            self._counts[sequence] = 0

    def as_dict(self) -> Dict[int, int]:
        return dict(self._counts)

    def __len__(self) -> int:
        return len(self._counts)


@dataclass(frozen=True)
class RegistryState:
    """Couple (snapshot, compteurs) remplacé d'un seul bloc."""

    snapshot: NodeSet
    counters: RetryCounters


@dataclass
class QuorumReport:
    """Résultat d'une évaluation du quorum synchrone."""

    registered: int
    connected: int
    required: int
    threshold_crossed: bool
    satisfied: bool
    failed_standbys: List[str] = field(default_factory=list)


@dataclass
class ElectionResult:
    """Résultat d'une élection de prochain primaire."""

    next_primary: Optional[Node]
    sync_standbys: List[Node] = field(default_factory=list)
    from_priority_list: bool = False


@dataclass
class PropagationReport:
    """Pairs notifiés et pairs ignorés lors d'une propagation."""

    notified: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════════
# COLLABORATEURS
# ══════════════════════════════════════════════════════════════════════════════


class IMembershipStore(ABC):
    """
    Registre durable des noeuds.

    Toute modification est une transaction unique.
    Toute erreur est levée en StoreUnavailable.
    """

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Crée schéma, table et index si absents."""
        pass

    @abstractmethod
    async def fetch_nodes(self) -> List[Node]:
        """Lit toutes les lignes, triées par sequence."""
        pass

    @abstractmethod
    async def add_node(self, name: str, endpoint: str, is_primary: bool = False) -> Node:
        """Admet un noeud."""
        pass

    @abstractmethod
    async def remove_node(self, name: str) -> bool:
        """Retire un noeud. Retourne False s'il était absent."""
        pass

    @abstractmethod
    async def update_election(self, next_primary: Optional[int], sync_standbys: Sequence[int]) -> None:
        """Efface puis repositionne is_next_primary et is_sync."""
        pass

    @abstractmethod
    async def apply_promotion(
        self, new_primary: int, next_primary: Optional[int], sync_standbys: Sequence[int]
    ) -> None:
        """Déplace is_primary vers new_primary et applique la nouvelle élection."""
        pass


class ITopologySource(ABC):
    """Source de la topologie de réplication synchrone locale."""

    @abstractmethod
    async def load(self) -> ReplicationTopology:
        """
        Raises:
            MalformedTopologyError: Si le paramètre n'est pas analysable
            StoreUnavailable: Si le serveur local est injoignable
        """
        pass


class ILocalServer(ABC):
    """Contrôle du serveur PostgreSQL local."""

    @abstractmethod
    def reload(self) -> None:
        """SIGHUP au postmaster. Raises: ServerControlError."""
        pass

    @abstractmethod
    def promote(self) -> bool:
        """
        Dépose le fichier de promotion puis signale le postmaster.

        Returns:
            True si le fichier vient d'être créé, False s'il existait déjà
        """
        pass

    @abstractmethod
    async def is_in_recovery(self) -> bool:
        pass

    @abstractmethod
    async def wait_until_promoted(self, timeout: float) -> None:
        """Raises: PromotionFailed si toujours en recovery après timeout."""
        pass

    @abstractmethod
    async def connected_standby_count(self) -> int:
        pass

    @abstractmethod
    async def run_after_command(self, command: str) -> int:
        """Exécute la commande post-promotion, retourne son code de sortie."""
        pass
