"""
pgkeeper - Network: Retry Handler

Rejoue une commande SQL locale (ALTER SYSTEM) dont l'échec définitif est
fatal pour le coordinateur. Chaque tentative échouée est journalisée avec
l'endpoint masqué et son numéro; le délai entre deux tentatives croît
exponentiellement.
"""

import asyncio
from typing import Optional

from ..logging.interfaces import IStructuredLogger
from .interfaces import IQueryExecutor, IRetryHandler, Query, RetryConfig, RetryResult
from .query_executor import QueryError


class RetryHandler(IRetryHandler):
    """Exécution d'une commande SQL avec backoff exponentiel."""

    def __init__(
        self,
        executor: IQueryExecutor,
        logger: IStructuredLogger,
        default_config: Optional[RetryConfig] = None,
    ) -> None:
        self._executor = executor
        self._logger = logger
        self._default_config = default_config or RetryConfig()

    async def execute(self, endpoint: str, statement: Query, config: Optional[RetryConfig] = None) -> RetryResult:
        """
        Exécute statement sur endpoint jusqu'à max_attempts fois.

        Seule QueryError est rejouée: c'est l'unique erreur que l'exécuteur
        laisse sortir pour un problème de connexion, d'exécution ou de timeout.

        Returns:
            RetryResult (tentatives, délai cumulé, dernière erreur)
        """
        retry_config = config or self._default_config
        total_delay = 0.0
        last_error: Optional[QueryError] = None

        for attempt in range(1, retry_config.max_attempts + 1):
            try:
                await self._executor.execute(endpoint, statement)
            except QueryError as e:
                last_error = e
                self._logger.warn(
                    "Command attempt failed",
                    statement=str(statement),
                    endpoint=e.endpoint,
                    attempt=attempt,
                    max_attempts=retry_config.max_attempts,
                    error=e.reason,
                )
                if attempt == retry_config.max_attempts:
                    break
                delay = self.calculate_delay(attempt, retry_config)
                total_delay += delay
                await asyncio.sleep(delay)
                continue

            if attempt > 1:
                self._logger.info("Command succeeded after retry", statement=str(statement), attempts=attempt)
            return RetryResult(success=True, attempts=attempt, total_delay=total_delay, last_error=None)

        return RetryResult(
            success=False,
            attempts=retry_config.max_attempts,
            total_delay=total_delay,
            last_error=last_error,
        )

    def calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        """
        Délai avant la tentative suivante.

        Formula: min(initial * base ^ (attempt - 1), max_delay), attempt à partir de 1
        """
        delay = config.initial_delay * (config.exponential_base ** (attempt - 1))
        return min(delay, config.max_delay)
