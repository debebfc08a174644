"""
pgkeeper - CLI

Point d'entrée du coordinateur et commandes d'administration du registre.

    pgkeeper run                        boucle du coordinateur
    pgkeeper init-schema                crée la table du registre
    pgkeeper add-node NAME ENDPOINT     admet un noeud (sur le primaire)
    pgkeeper remove-node NAME           retire un noeud (sur le primaire)
    pgkeeper elect                      relance l'élection et propage
    pgkeeper status                     affiche le registre
    pgkeeper notify                     demande aux pairs de rafraîchir leur cache
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from .core.config_loader import ConfigIntegrityError, ConfigLoader
from .core.interfaces import KeeperConfig
from .ha.coordinator import ExitCode, build_coordinator, build_executor
from .ha.election import NextPrimaryElector
from .ha.interfaces import KeeperError, NodeSet
from .ha.local_server import LocalServer
from .ha.membership_store import PostgresMembershipStore
from .ha.propagator import MembershipPropagator
from .ha.topology import PostgresTopologySource
from .logging.interfaces import LogConfig, LogLevel
from .logging.structured_logger import StructuredLogger
from .network.notification import PeerNotifier

DEFAULT_CONFIG_PATH = "/etc/pgkeeper/keeper.yaml"


def build_logger(config: KeeperConfig) -> StructuredLogger:
    return StructuredLogger(
        name="pgkeeper",
        config=LogConfig(min_level=LogLevel.from_name(config.log_level), default_node=config.node_name),
    )


class AdminCommands:
    """Commandes d'administration exécutées contre le serveur local."""

    def __init__(self, config: KeeperConfig, logger: StructuredLogger) -> None:
        executor = build_executor(config)
        self._config = config
        self._logger = logger
        self._store = PostgresMembershipStore(executor, config.my_endpoint, config.membership_table)
        self._elector = NextPrimaryElector(self._store, logger)
        self._topology = PostgresTopologySource(executor, config.my_endpoint)
        self._server = LocalServer(config.data_directory, executor, config.my_endpoint, logger)
        self._propagator = MembershipPropagator(PeerNotifier(config.notify_port), config.node_name, logger)

    async def _snapshot(self) -> NodeSet:
        return NodeSet(nodes=tuple(await self._store.fetch_nodes()))

    async def _reelect_and_propagate(self, reason: str) -> None:
        topology = await self._topology.load()
        result = self._elector.elect(topology, await self._snapshot())
        await self._elector.apply(result)
        await self._propagator.propagate(await self._snapshot(), reason=reason)

    async def init_schema(self) -> None:
        await self._store.ensure_schema()
        self._logger.info("Membership table ready", table=self._config.membership_table)

    async def add_node(self, name: str, endpoint: str, primary: bool) -> None:
        node = await self._store.add_node(name, endpoint, is_primary=primary)
        self._logger.info("Node admitted", name=node.name, sequence=node.sequence, primary=node.is_primary)
        await self._reelect_and_propagate(reason="node_added")

    async def remove_node(self, name: str) -> bool:
        removed = await self._store.remove_node(name)
        if not removed:
            self._logger.warn("Node not registered", name=name)
            return False
        self._logger.info("Node removed", name=name)
        await self._reelect_and_propagate(reason="node_removed")
        return True

    async def elect(self) -> None:
        await self._reelect_and_propagate(reason="election")

    async def status(self) -> Dict[str, Any]:
        snapshot = await self._snapshot()
        topology = await self._topology.load()
        in_recovery = await self._server.is_in_recovery()
        nodes: List[Dict[str, Any]] = [
            {
                "sequence": n.sequence,
                "name": n.name,
                "primary": n.is_primary,
                "next_primary": n.is_next_primary,
                "sync": n.is_sync_standby,
            }
            for n in snapshot
        ]
        return {
            "node": self._config.node_name,
            "in_recovery": in_recovery,
            "synchronous_standby_names": topology.raw,
            "required_sync_count": topology.required_sync_count,
            "nodes": nodes,
        }

    async def notify(self) -> None:
        await self._propagator.propagate(await self._snapshot(), reason="manual")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgkeeper", description="Failover coordinator for PostgreSQL clusters")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="configuration file (YAML)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="run the coordinator loop")
    sub.add_parser("init-schema", help="create the membership table")

    add = sub.add_parser("add-node", help="register a node in the membership table")
    add.add_argument("name")
    add.add_argument("endpoint", help="libpq connection string of the node")
    add.add_argument("--primary", action="store_true", help="register the node as current primary")

    remove = sub.add_parser("remove-node", help="remove a node from the membership table")
    remove.add_argument("name")

    sub.add_parser("elect", help="re-run the next-primary election")
    sub.add_parser("status", help="print the membership table as JSON")
    sub.add_parser("notify", help="ask peers to refresh their registry")
    return parser


async def _run_admin(command: str, args: argparse.Namespace, admin: AdminCommands) -> int:
    if command == "init-schema":
        await admin.init_schema()
    elif command == "add-node":
        await admin.add_node(args.name, args.endpoint, args.primary)
    elif command == "remove-node":
        if not await admin.remove_node(args.name):
            return 1
    elif command == "elect":
        await admin.elect()
    elif command == "status":
        print(json.dumps(await admin.status(), indent=2))
    elif command == "notify":
        await admin.notify()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    loader = ConfigLoader(args.config)

    try:
        config = asyncio.run(loader.load_config())
    except ConfigIntegrityError as e:
        print(f"pgkeeper: {e}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    logger = build_logger(config)

    if args.command == "run":
        coordinator = build_coordinator(config, logger, config_loader=loader)
        return int(asyncio.run(coordinator.run()))

    try:
        return asyncio.run(_run_admin(args.command, args, AdminCommands(config, logger)))
    except KeeperError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return int(ExitCode.FATAL)


if __name__ == "__main__":
    sys.exit(main())
