"""
pgkeeper - Network: Query Executor

Exécution SQL contre un noeud via psycopg 3 (AsyncConnection).

Chaque appel ouvre sa propre connexion: un coordinateur parle à peu de
noeuds, une fois par cycle, et une connexion persistante vers un noeud
en panne masquerait justement la panne qu'on cherche à détecter.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

import psycopg

from ..logging.sensitive_masker import SensitiveMasker
from .interfaces import IQueryExecutor, Params, Query, Statement, TimeoutType
from .timeout_manager import TimeoutManager

T = TypeVar("T")


class QueryError(Exception):
    """Échec de connexion, d'exécution ou timeout contre un noeud."""

    _masker = SensitiveMasker()

    def __init__(self, endpoint: str, reason: str) -> None:
        self.endpoint = self._masker.mask_conninfo(endpoint)
        self.reason = reason
        super().__init__(f"query against '{self.endpoint}' failed: {reason}")


class PsycopgQueryExecutor(IQueryExecutor):
    """
    Exécuteur SQL psycopg 3.

    Les connexions sont en autocommit: ALTER SYSTEM ne peut pas s'exécuter
    dans un bloc de transaction.
    """

    APPLICATION_NAME: str = "pgkeeper"

    def __init__(
        self,
        timeouts: Optional[TimeoutManager] = None,
        application_name: Optional[str] = None,
    ) -> None:
        """
        Args:
            timeouts: Gestionnaire de timeouts (défaut: TimeoutConfig())
            application_name: Nom visible dans pg_stat_activity
        """
        self._timeouts = timeouts or TimeoutManager()
        self._application_name = application_name or self.APPLICATION_NAME

    @property
    def timeouts(self) -> TimeoutManager:
        return self._timeouts

    async def _connect(self, endpoint: str) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            endpoint,
            autocommit=True,
            connect_timeout=self._timeouts.get_libpq_connect_timeout(),
            application_name=self._application_name,
        )

    async def _session(self, endpoint: str, work: Callable[[psycopg.AsyncConnection], Awaitable[T]]) -> T:
        conn = await self._connect(endpoint)
        async with conn:
            return await work(conn)

    async def _run(self, endpoint: str, work: Callable[[psycopg.AsyncConnection], Awaitable[T]]) -> T:
        """
        Exécute work sur une connexion neuve, borné par request_timeout.

        Raises:
            QueryError: Toute erreur psycopg, réseau ou timeout
        """
        timeout = self._timeouts.get_timeout(TimeoutType.REQUEST)
        try:
            return await asyncio.wait_for(self._session(endpoint, work), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise QueryError(endpoint, f"timeout after {timeout}s") from e
        except psycopg.Error as e:
            raise QueryError(endpoint, str(e).strip() or type(e).__name__) from e
        except OSError as e:
            raise QueryError(endpoint, str(e)) from e

    async def fetch(self, endpoint: str, query: Query, params: Params = None) -> List[Tuple[Any, ...]]:
        """Exécute une requête et retourne toutes les lignes."""

        async def work(conn: psycopg.AsyncConnection) -> List[Tuple[Any, ...]]:
            cur = await conn.execute(query, params)
            return await cur.fetchall()

        return await self._run(endpoint, work)

    async def execute(self, endpoint: str, query: Query, params: Params = None) -> None:
        """Exécute une commande en autocommit."""

        async def work(conn: psycopg.AsyncConnection) -> None:
            await conn.execute(query, params)

        await self._run(endpoint, work)

    async def transaction(self, endpoint: str, statements: Sequence[Statement]) -> None:
        """Exécute les commandes dans une transaction unique (tout ou rien)."""

        async def work(conn: psycopg.AsyncConnection) -> None:
            async with conn.transaction():
                for query, params in statements:
                    await conn.execute(query, params)

        await self._run(endpoint, work)
