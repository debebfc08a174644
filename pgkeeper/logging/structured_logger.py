"""
pgkeeper - Logging: Structured Logger

Logger JSON structuré avec champs obligatoires.

Format d'une ligne:
    {"timestamp": "2024-12-04T14:30:00.123Z", "level": "WARN",
     "correlation_id": "...", "node": "node1", "message": "...", "extra": {...}}
"""

import sys
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, List, Optional

from .interfaces import (
    IStructuredLogger,
    ISensitiveMasker,
    LogConfig,
    LogEntry,
    LogLevel,
)
from .sensitive_masker import SensitiveMasker


class MissingRequiredFieldError(Exception):
    """Champ obligatoire manquant."""

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f"Required log field missing: {field_name}")


def _stderr_handler(line: str) -> None:
    sys.stderr.write(line + "\n")
    sys.stderr.flush()


class StructuredLogger(IStructuredLogger):
    """
    Logger JSON structuré.

    Les entrées sont écrites via output_handler (stderr par défaut) et les
    plus récentes sont conservées dans un buffer borné, consultable par
    get_entries() (tests, commande status).

    Example:
        logger = StructuredLogger("pgkeeper")
        logger.set_default_node("node1")
        logger.warn("primary unreachable", retry_count=4)
    """

    def __init__(
        self,
        name: str,
        config: Optional[LogConfig] = None,
        masker: Optional[ISensitiveMasker] = None,
        output_handler: Optional[Callable[[str], None]] = _stderr_handler,
    ) -> None:
        """
        Initialise le logger structuré.

        Args:
            name: Nom du logger (identifiant du composant)
            config: Configuration optionnelle
            masker: Masker pour données sensibles
            output_handler: Handler d'écriture, None pour ne rien écrire (tests)

        Raises:
            ValueError: Si name vide
        """
        if not name or not name.strip():
            raise ValueError("Logger name cannot be empty")

        self._name = name.strip()
        self._config = config or LogConfig()
        self._masker = masker or SensitiveMasker()
        self._output_handler = output_handler
        self._entries: Deque[LogEntry] = deque(maxlen=self._config.max_buffered_entries)
        self._default_node: Optional[str] = self._config.default_node
        self._default_correlation_id: Optional[str] = self._config.default_correlation_id

    @property
    def name(self) -> str:
        """Retourne le nom du logger."""
        return self._name

    @property
    def config(self) -> LogConfig:
        """Retourne la configuration."""
        return self._config

    def set_min_level(self, level: LogLevel) -> None:
        """Change le niveau minimum (rechargement de configuration)."""
        self._config.min_level = level

    def set_default_node(self, node: str) -> None:
        """Définit le nom de noeud par défaut."""
        self._default_node = node

    def new_cycle(self) -> str:
        """
        Démarre un nouveau cycle de réveil.

        Toutes les entrées jusqu'au prochain appel partagent le même
        correlation_id, ce qui permet de regrouper les logs d'une itération.

        Returns:
            Le correlation_id du cycle
        """
        cycle_id = self._generate_correlation_id()
        self._default_correlation_id = cycle_id
        return cycle_id

    def log(
        self,
        level: LogLevel,
        message: str,
        correlation_id: Optional[str] = None,
        node: Optional[str] = None,
        **extra: Any,
    ) -> Optional[LogEntry]:
        """
        Crée une entrée de log structurée.

        Processus:
            1. Vérifie niveau >= min_level
            2. Résout correlation_id et node
            3. Masque données sensibles (extra et message)
            4. Crée LogEntry, bufferise et écrit la ligne JSON

        Raises:
            MissingRequiredFieldError: Si node ou message manquant
        """
        if not self._should_log(level):
            return None

        resolved_correlation = correlation_id or self._default_correlation_id
        if not resolved_correlation:
            resolved_correlation = self._generate_correlation_id()

        resolved_node = node or self._default_node
        if not resolved_node:
            raise MissingRequiredFieldError("node")

        if not message:
            raise MissingRequiredFieldError("message")

        masked_extra = {}
        if extra and self._config.include_extra:
            masked_extra = self._masker.mask(dict(extra)) if self._config.mask_sensitive else dict(extra)

        if self._config.mask_sensitive:
            message = self._masker.mask_conninfo(message)

        entry = LogEntry(
            timestamp=self._generate_timestamp(),
            level=level,
            correlation_id=resolved_correlation,
            node=resolved_node,
            message=message,
            extra=masked_extra,
            logger_name=self._name,
        )

        self._entries.append(entry)

        if self._output_handler:
            self._output_handler(entry.to_json())

        return entry

    def _generate_timestamp(self) -> str:
        """
        Génère timestamp ISO 8601 UTC avec millisecondes.

        Format: 2024-12-04T14:30:00.123Z
        """
        now = datetime.now(timezone.utc)
        return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

    def _generate_correlation_id(self) -> str:
        return str(uuid.uuid4())

    def _should_log(self, level: LogLevel) -> bool:
        return LogLevel.get_priority(level) >= LogLevel.get_priority(self._config.min_level)

    def debug(self, message: str, **extra: Any) -> Optional[LogEntry]:
        """Log niveau DEBUG."""
        return self.log(LogLevel.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> Optional[LogEntry]:
        """Log niveau INFO."""
        return self.log(LogLevel.INFO, message, **extra)

    def warn(self, message: str, **extra: Any) -> Optional[LogEntry]:
        """Log niveau WARN."""
        return self.log(LogLevel.WARN, message, **extra)

    def error(self, message: str, **extra: Any) -> Optional[LogEntry]:
        """Log niveau ERROR."""
        return self.log(LogLevel.ERROR, message, **extra)

    def critical(self, message: str, **extra: Any) -> Optional[LogEntry]:
        """Log niveau CRITICAL."""
        return self.log(LogLevel.CRITICAL, message, **extra)

    def get_entries(self) -> List[LogEntry]:
        """Retourne les entrées conservées (les plus récentes)."""
        return list(self._entries)

    def get_entries_by_level(self, level: LogLevel) -> List[LogEntry]:
        """Filtre les entrées conservées par niveau."""
        return [e for e in self._entries if e.level == level]
