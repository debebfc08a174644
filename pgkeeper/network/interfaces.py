"""
pgkeeper - Network: interfaces

Contrats réseau du coordinateur:
- Timeouts de connexion et de requête, bornés
- Retry avec backoff exponentiel des commandes SQL locales
- Exécution SQL contre un noeud à partir de sa chaîne de connexion
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union

from psycopg import sql as pgsql

# Une requête est soit du texte brut, soit une requête composée psycopg
# (identifiants échappés via psycopg.sql.Identifier).
Query = Union[str, pgsql.Composable]
Params = Optional[Sequence[Any]]
Statement = Tuple[Query, Params]


class TimeoutType(Enum):
    """Types de timeout supportés."""

    CONNECTION = "connection"
    REQUEST = "request"


@dataclass
class TimeoutConfig:
    """
    Configuration des timeouts de l'exécuteur SQL.

    connection_timeout est transmis à libpq (connect_timeout), request_timeout
    borne la durée totale connexion + requête côté asyncio.
    """

    connection_timeout: float = 2.0
    request_timeout: float = 5.0


@dataclass
class RetryConfig:
    """Configuration des retries d'une commande SQL."""

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0


@dataclass
class RetryResult:
    """Résultat d'une opération avec retry."""

    success: bool
    attempts: int
    total_delay: float
    last_error: Optional[Exception]


class ITimeoutManager(ABC):
    """Interface gestion timeouts."""

    @abstractmethod
    def get_timeout(self, timeout_type: TimeoutType) -> float:
        """
        Retourne timeout configuré.

        Args:
            timeout_type: Type de timeout

        Returns:
            Valeur du timeout en secondes
        """
        pass


class IRetryHandler(ABC):
    """Interface retries de commandes SQL."""

    @abstractmethod
    async def execute(self, endpoint: str, statement: Query, config: Optional[RetryConfig] = None) -> RetryResult:
        """
        Exécute statement sur endpoint, rejoué avec backoff exponentiel.

        Returns:
            RetryResult avec succès/échec et détails
        """
        pass


class IQueryExecutor(ABC):
    """
    Exécution SQL contre un noeud du cluster.

    Toute erreur de connexion, d'exécution ou de timeout est levée sous
    forme de QueryError; aucune autre exception ne sort de ces méthodes.
    """

    @abstractmethod
    async def fetch(self, endpoint: str, query: Query, params: Params = None) -> List[Tuple[Any, ...]]:
        """
        Exécute une requête et retourne les lignes.

        Args:
            endpoint: Chaîne de connexion libpq du noeud
            query: Requête SQL
            params: Paramètres positionnels

        Returns:
            Liste des lignes (tuples)

        Raises:
            QueryError: Connexion, exécution ou timeout en échec
        """
        pass

    @abstractmethod
    async def execute(self, endpoint: str, query: Query, params: Params = None) -> None:
        """
        Exécute une commande sans résultat (autocommit).

        Raises:
            QueryError: Connexion, exécution ou timeout en échec
        """
        pass

    @abstractmethod
    async def transaction(self, endpoint: str, statements: Sequence[Statement]) -> None:
        """
        Exécute plusieurs commandes dans une seule transaction.

        Tout ou rien: en cas d'erreur la transaction est annulée.

        Raises:
            QueryError: Connexion, exécution ou timeout en échec
        """
        pass
