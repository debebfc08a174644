"""
pgkeeper - HA: Membership Store

Registre durable des noeuds dans une table PostgreSQL (défaut: pgkeeper.node_info).

La table n'est modifiable que sur le primaire; les standbys la lisent
via la réplication. Deux index uniques partiels garantissent au plus un
primaire et au plus un prochain primaire.
"""

from typing import List, Optional, Sequence

from psycopg import sql

from ..network.interfaces import IQueryExecutor, Statement
from ..network.query_executor import QueryError
from .interfaces import IMembershipStore, Node, StoreUnavailable

_COLUMNS = sql.SQL("sequence, name, endpoint, is_primary, is_next_primary, is_sync")


class PostgresMembershipStore(IMembershipStore):
    """Implémentation SQL du registre des noeuds."""

    def __init__(self, executor: IQueryExecutor, endpoint: str, table: str = "pgkeeper.node_info") -> None:
        """
        Args:
            executor: Exécuteur SQL
            endpoint: Conninfo du serveur local
            table: Nom qualifié schema.table
        """
        self._executor = executor
        self._endpoint = endpoint
        parts = table.split(".")
        if len(parts) == 1:
            self._schema: Optional[str] = None
            self._table_name = parts[0]
        elif len(parts) == 2:
            self._schema, self._table_name = parts
        else:
            raise ValueError(f"invalid membership table name: {table}")

        self._table = sql.Identifier(*parts)

    @property
    def table(self) -> sql.Identifier:
        return self._table

    def _index(self, suffix: str) -> sql.Identifier:
        return sql.Identifier(f"{self._table_name}_{suffix}")

    async def _fetch(self, query: sql.Composable, params: Optional[Sequence] = None) -> List[tuple]:
        try:
            return await self._executor.fetch(self._endpoint, query, params)
        except QueryError as e:
            raise StoreUnavailable(str(e)) from e

    async def _transaction(self, statements: Sequence[Statement]) -> None:
        try:
            await self._executor.transaction(self._endpoint, statements)
        except QueryError as e:
            raise StoreUnavailable(str(e)) from e

    async def ensure_schema(self) -> None:
        statements: List[Statement] = []
        if self._schema:
            statements.append((sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(self._schema)), None))

        statements.append(
            (
                sql.SQL(
                    "CREATE TABLE IF NOT EXISTS {} ("
                    "sequence bigserial PRIMARY KEY, "
                    "name text NOT NULL UNIQUE, "
                    "endpoint text NOT NULL, "
                    "is_primary boolean NOT NULL DEFAULT false, "
                    "is_next_primary boolean NOT NULL DEFAULT false, "
                    "is_sync boolean NOT NULL DEFAULT false)"
                ).format(self._table),
                None,
            )
        )
        statements.append(
            (
                sql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} ((true)) WHERE is_primary").format(
                    self._index("one_primary"), self._table
                ),
                None,
            )
        )
        statements.append(
            (
                sql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} ((true)) WHERE is_next_primary").format(
                    self._index("one_next_primary"), self._table
                ),
                None,
            )
        )
        await self._transaction(statements)

    async def fetch_nodes(self) -> List[Node]:
        rows = await self._fetch(sql.SQL("SELECT {} FROM {} ORDER BY sequence").format(_COLUMNS, self._table))
        return [self._row_to_node(row) for row in rows]

    async def add_node(self, name: str, endpoint: str, is_primary: bool = False) -> Node:
        rows = await self._fetch(
            sql.SQL("INSERT INTO {} (name, endpoint, is_primary) VALUES (%s, %s, %s) RETURNING {}").format(
                self._table, _COLUMNS
            ),
            (name, endpoint, is_primary),
        )
        return self._row_to_node(rows[0])

    async def remove_node(self, name: str) -> bool:
        rows = await self._fetch(
            sql.SQL("DELETE FROM {} WHERE lower(name) = lower(%s) RETURNING sequence").format(self._table),
            (name,),
        )
        return len(rows) > 0

    def _election_statements(self, next_primary: Optional[int], sync_standbys: Sequence[int]) -> List[Statement]:
        statements: List[Statement] = [
            (
                sql.SQL("UPDATE {} SET is_next_primary = false, is_sync = false WHERE is_next_primary OR is_sync").format(
                    self._table
                ),
                None,
            ),
        ]
        if sync_standbys:
            statements.append(
                (
                    sql.SQL("UPDATE {} SET is_sync = true WHERE sequence = ANY(%s) AND NOT is_primary").format(
                        self._table
                    ),
                    (list(sync_standbys),),
                )
            )
        if next_primary is not None:
            statements.append(
                (
                    sql.SQL("UPDATE {} SET is_next_primary = true WHERE sequence = %s AND NOT is_primary").format(
                        self._table
                    ),
                    (next_primary,),
                )
            )
        return statements

    async def update_election(self, next_primary: Optional[int], sync_standbys: Sequence[int]) -> None:
        await self._transaction(self._election_statements(next_primary, sync_standbys))

    async def apply_promotion(
        self, new_primary: int, next_primary: Optional[int], sync_standbys: Sequence[int]
    ) -> None:
        # l'ancien primaire est effacé avant de poser le nouveau (index unique partiel)
        statements: List[Statement] = [
            (
                sql.SQL("UPDATE {} SET is_primary = false WHERE is_primary AND sequence <> %s").format(self._table),
                (new_primary,),
            ),
            (
                sql.SQL(
                    "UPDATE {} SET is_primary = true, is_next_primary = false, is_sync = false WHERE sequence = %s"
                ).format(self._table),
                (new_primary,),
            ),
        ]
        statements.extend(self._election_statements(next_primary, sync_standbys))
        await self._transaction(statements)

    @staticmethod
    def _row_to_node(row: tuple) -> Node:
        sequence, name, endpoint, is_primary, is_next_primary, is_sync = row
        return Node(
            sequence=int(sequence),
            name=name,
            endpoint=endpoint,
            is_primary=bool(is_primary),
            is_next_primary=bool(is_next_primary),
            is_sync_standby=bool(is_sync),
        )
