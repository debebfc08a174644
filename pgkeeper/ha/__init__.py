"""
pgkeeper - Haute Disponibilité

Moteur de décision de failover pour un cluster PostgreSQL mono-primaire:
- Cache du registre des noeuds (copy-on-refresh)
- Détection d'échec par heartbeat et compteurs consécutifs
- Évaluation du quorum synchrone
- Élection du prochain primaire
- Dégradation en asynchrone et promotion
- Propagation des changements de membres
- Automate des rôles et boucle du coordinateur
"""
from .interfaces import (
    # Enums
    ClusterRole,
    SyncMethod,
    # Data classes
    Node,
    NodeSet,
    ReplicationTopology,
    RetryCounters,
    RegistryState,
    QuorumReport,
    ElectionResult,
    PropagationReport,
    # Interfaces
    IMembershipStore,
    ITopologySource,
    ILocalServer,
    # Exceptions
    KeeperError,
    StoreUnavailable,
    MalformedTopologyError,
    KeeperFatalError,
    ConfigChangeFailed,
    PromotionFailed,
    ServerControlError,
)
from .registry import NodeRegistryCache
from .heartbeat import HeartbeatDetector
from .quorum import QuorumEvaluator
from .election import NextPrimaryElector
from .topology import parse_standby_names, PostgresTopologySource
from .membership_store import PostgresMembershipStore
from .local_server import LocalServer
from .propagator import MembershipPropagator
from .failover import FailoverExecutor
from .state_machine import RoleStateMachine
from .coordinator import Coordinator, ExitCode, SignalFlags, build_coordinator, build_executor

__all__ = [
    # Enums
    "ClusterRole",
    "SyncMethod",
    "ExitCode",
    # Data classes
    "Node",
    "NodeSet",
    "ReplicationTopology",
    "RetryCounters",
    "RegistryState",
    "QuorumReport",
    "ElectionResult",
    "PropagationReport",
    "SignalFlags",
    # Interfaces
    "IMembershipStore",
    "ITopologySource",
    "ILocalServer",
    # Implementations
    "NodeRegistryCache",
    "HeartbeatDetector",
    "QuorumEvaluator",
    "NextPrimaryElector",
    "PostgresTopologySource",
    "PostgresMembershipStore",
    "LocalServer",
    "MembershipPropagator",
    "FailoverExecutor",
    "RoleStateMachine",
    "Coordinator",
    # Helpers
    "parse_standby_names",
    "build_coordinator",
    "build_executor",
    # Exceptions
    "KeeperError",
    "StoreUnavailable",
    "MalformedTopologyError",
    "KeeperFatalError",
    "ConfigChangeFailed",
    "PromotionFailed",
    "ServerControlError",
]
