"""
pgkeeper - Network: Timeout Manager

Gestion centralisée des timeouts de heartbeat et de requêtes.

Un heartbeat ne doit jamais bloquer la boucle plus longtemps que
request_timeout; la configuration impose request_timeout < heartbeat_interval.
"""

from typing import Optional

from .interfaces import ITimeoutManager, TimeoutConfig, TimeoutType


class InvalidTimeoutError(Exception):
    """Configuration timeout invalide."""

    pass


class TimeoutManager(ITimeoutManager):
    """Gestion centralisée des timeouts de l'exécuteur SQL."""

    MAX_CONNECTION_TIMEOUT: float = 10.0
    MAX_REQUEST_TIMEOUT: float = 30.0

    # libpq n'accepte que des secondes entières et traite 1 comme 2
    MIN_LIBPQ_CONNECT_TIMEOUT: int = 2

    def __init__(self, config: Optional[TimeoutConfig] = None) -> None:
        """
        Initialise le gestionnaire de timeouts.

        Args:
            config: Timeouts (défaut: TimeoutConfig())

        Raises:
            InvalidTimeoutError: Si la configuration est invalide
        """
        self._config = config or TimeoutConfig()
        self._validate_config(self._config)

    def _validate_config(self, config: TimeoutConfig) -> None:
        """
        Valide une configuration complète.

        Raises:
            InvalidTimeoutError: Si configuration invalide
        """
        if config.connection_timeout <= 0:
            raise InvalidTimeoutError("connection_timeout must be positive")

        if config.connection_timeout > self.MAX_CONNECTION_TIMEOUT:
            raise InvalidTimeoutError(
                f"connection_timeout ({config.connection_timeout}s) exceeds "
                f"maximum ({self.MAX_CONNECTION_TIMEOUT}s)"
            )

        if config.request_timeout <= 0:
            raise InvalidTimeoutError("request_timeout must be positive")

        if config.request_timeout > self.MAX_REQUEST_TIMEOUT:
            raise InvalidTimeoutError(
                f"request_timeout ({config.request_timeout}s) exceeds "
                f"maximum ({self.MAX_REQUEST_TIMEOUT}s)"
            )

        if config.connection_timeout > config.request_timeout:
            raise InvalidTimeoutError(
                f"connection_timeout ({config.connection_timeout}s) cannot exceed "
                f"request_timeout ({config.request_timeout}s)"
            )

    def get_timeout(self, timeout_type: TimeoutType) -> float:
        """
        Retourne le timeout configuré.

        Args:
            timeout_type: Type de timeout demandé

        Returns:
            Valeur du timeout en secondes
        """
        if timeout_type == TimeoutType.CONNECTION:
            return self._config.connection_timeout
        elif timeout_type == TimeoutType.REQUEST:
            return self._config.request_timeout
        else:
            raise ValueError(f"Unknown timeout type: {timeout_type}")

    def get_libpq_connect_timeout(self) -> int:
        """
        Retourne connect_timeout au format libpq (secondes entières).

        Returns:
            Timeout arrondi au supérieur, au moins MIN_LIBPQ_CONNECT_TIMEOUT
        """
        seconds = self.get_timeout(TimeoutType.CONNECTION)
        whole = int(seconds) if float(seconds).is_integer() else int(seconds) + 1
        return max(whole, self.MIN_LIBPQ_CONNECT_TIMEOUT)

