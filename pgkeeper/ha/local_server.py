"""
pgkeeper - HA: Local Server Control

Contrôle du serveur PostgreSQL local: signaux au postmaster (psutil),
fichier de promotion, état de recovery, standbys connectés et commande
post-promotion.
"""

import asyncio
import signal
from pathlib import Path

import psutil

from ..logging.interfaces import IStructuredLogger
from ..network.interfaces import IQueryExecutor
from ..network.query_executor import QueryError
from .interfaces import ILocalServer, PromotionFailed, ServerControlError, StoreUnavailable

PROMOTE_FILE = "promote"
POSTMASTER_PID_FILE = "postmaster.pid"


class LocalServer(ILocalServer):
    """Serveur PostgreSQL du noeud courant."""

    # Intervalle de scrutation pendant l'attente de promotion
    POLL_INTERVAL: float = 1.0

    def __init__(
        self,
        data_directory: str,
        executor: IQueryExecutor,
        endpoint: str,
        logger: IStructuredLogger,
    ) -> None:
        """
        Args:
            data_directory: Répertoire PGDATA
            executor: Exécuteur SQL
            endpoint: Conninfo du serveur local
            logger: Logger structuré
        """
        self._data_dir = Path(data_directory)
        self._executor = executor
        self._endpoint = endpoint
        self._logger = logger

    @property
    def promote_file(self) -> Path:
        return self._data_dir / PROMOTE_FILE

    def postmaster_pid(self) -> int:
        """
        Lit le PID du postmaster (première ligne de postmaster.pid).

        Raises:
            ServerControlError: Fichier absent, illisible ou processus mort
        """
        pid_file = self._data_dir / POSTMASTER_PID_FILE
        try:
            first_line = pid_file.read_text(encoding="utf-8").splitlines()[0]
            pid = int(first_line.strip())
        except (OSError, IndexError, ValueError) as e:
            raise ServerControlError(f"cannot read postmaster pid from {pid_file}: {e}") from e

        if not psutil.pid_exists(pid):
            raise ServerControlError(f"postmaster pid {pid} is not running")
        return pid

    def _signal_postmaster(self, sig: signal.Signals) -> None:
        pid = self.postmaster_pid()
        try:
            psutil.Process(pid).send_signal(sig)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            raise ServerControlError(f"cannot send {sig.name} to postmaster {pid}: {e}") from e

        self._logger.debug("Signal sent to postmaster", signal=sig.name, pid=pid)

    def reload(self) -> None:
        self._signal_postmaster(signal.SIGHUP)

    def promote(self) -> bool:
        """
        Dépose le fichier de promotion puis envoie SIGUSR1.

        Idempotent: un fichier déjà présent n'est pas recréé.
        """
        try:
            with open(self.promote_file, "x", encoding="utf-8"):
                pass
            created = True
        except FileExistsError:
            created = False
        except OSError as e:
            raise ServerControlError(f"cannot create promote file {self.promote_file}: {e}") from e

        self._signal_postmaster(signal.SIGUSR1)
        return created

    async def is_in_recovery(self) -> bool:
        try:
            rows = await self._executor.fetch(self._endpoint, "SELECT pg_is_in_recovery()")
        except QueryError as e:
            raise StoreUnavailable(f"cannot read recovery status: {e}") from e
        return bool(rows[0][0])

    async def wait_until_promoted(self, timeout: float) -> None:
        """
        Attend la sortie de recovery.

        Raises:
            PromotionFailed: Toujours en recovery (ou injoignable) après timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                if not await self.is_in_recovery():
                    return
            except StoreUnavailable as e:
                self._logger.debug("Recovery status unavailable during promotion", error=str(e))

            if loop.time() >= deadline:
                raise PromotionFailed(f"server still in recovery after {timeout}s")
            await asyncio.sleep(self.POLL_INTERVAL)

    async def connected_standby_count(self) -> int:
        try:
            rows = await self._executor.fetch(
                self._endpoint,
                "SELECT count(*) FROM pg_stat_replication WHERE state = 'streaming'",
            )
        except QueryError as e:
            raise StoreUnavailable(f"cannot read pg_stat_replication: {e}") from e
        return int(rows[0][0])

    async def run_after_command(self, command: str) -> int:
        process = await asyncio.create_subprocess_shell(command)
        return await process.wait()
