"""
pgkeeper - HA: Replication Topology

Analyse de synchronous_standby_names en ReplicationTopology.

Grammaire acceptée (celle de PostgreSQL):
    ''                          asynchrone
    name [, ...]                FIRST 1
    N (name [, ...])            FIRST N
    FIRST N (name [, ...])
    ANY N (name [, ...])
Les noms peuvent être entre guillemets doubles; '*' désigne tout standby.
"""

import re
from typing import List, Tuple

from ..network.interfaces import IQueryExecutor
from ..network.query_executor import QueryError
from .interfaces import (
    ITopologySource,
    MalformedTopologyError,
    ReplicationTopology,
    StoreUnavailable,
    SyncMethod,
)

_TOKEN = re.compile(r'\s*(?:(?P<quoted>"(?:[^"]|"")*")|(?P<punct>[(),])|(?P<word>[^\s,()"]+))')


def _tokenize(raw: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = raw.rstrip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise MalformedTopologyError(f"unexpected character at position {pos} in '{raw}'")
        if match.group("quoted"):
            tokens.append(("name", match.group("quoted")[1:-1].replace('""', '"')))
        elif match.group("punct"):
            tokens.append((match.group("punct"), match.group("punct")))
        else:
            tokens.append(("word", match.group("word")))
        pos = match.end()
    return tokens


def _parse_names(tokens: List[Tuple[str, str]], raw: str) -> Tuple[str, ...]:
    names: List[str] = []
    expect_name = True
    for kind, value in tokens:
        if expect_name:
            if kind not in ("name", "word"):
                raise MalformedTopologyError(f"standby name expected in '{raw}'")
            names.append(value)
        elif kind != ",":
            raise MalformedTopologyError(f"',' expected between standby names in '{raw}'")
        expect_name = not expect_name

    if expect_name:
        raise MalformedTopologyError(f"standby name list is empty or ends with ',' in '{raw}'")
    return tuple(names)


def _parse_count(value: str, raw: str) -> int:
    if not value.isdigit():
        raise MalformedTopologyError(f"number of synchronous standbys expected in '{raw}'")
    count = int(value)
    if count < 1:
        raise MalformedTopologyError(f"number of synchronous standbys must be greater than zero in '{raw}'")
    return count


def parse_standby_names(raw: str) -> ReplicationTopology:
    """
    Analyse une valeur de synchronous_standby_names.

    Raises:
        MalformedTopologyError: Si la valeur ne respecte pas la grammaire
    """
    raw = raw or ""
    tokens = _tokenize(raw)

    if not tokens:
        return ReplicationTopology(raw=raw)

    method = SyncMethod.FIRST
    head = tokens
    if tokens[0][0] == "word" and tokens[0][1].upper() in ("FIRST", "ANY") and len(tokens) > 2 and tokens[2][0] == "(":
        method = SyncMethod(tokens[0][1].upper())
        head = tokens[1:]

    if len(head) > 1 and head[0][0] == "word" and head[1][0] == "(":
        count = _parse_count(head[0][1], raw)
        if head[-1][0] != ")":
            raise MalformedTopologyError(f"missing ')' in '{raw}'")
        names = _parse_names(head[2:-1], raw)
        return ReplicationTopology(standby_names=names, required_sync_count=count, method=method, raw=raw)

    if method is not SyncMethod.FIRST or head is not tokens:
        raise MalformedTopologyError(f"'(' expected after {method.value} in '{raw}'")

    return ReplicationTopology(standby_names=_parse_names(tokens, raw), required_sync_count=1, raw=raw)


class PostgresTopologySource(ITopologySource):
    """Lit synchronous_standby_names sur le serveur local."""

    def __init__(self, executor: IQueryExecutor, endpoint: str) -> None:
        self._executor = executor
        self._endpoint = endpoint

    async def load(self) -> ReplicationTopology:
        try:
            rows = await self._executor.fetch(self._endpoint, "SHOW synchronous_standby_names")
        except QueryError as e:
            raise StoreUnavailable(f"cannot read synchronous_standby_names: {e}") from e

        raw = rows[0][0] if rows else ""
        return parse_standby_names(raw or "")
