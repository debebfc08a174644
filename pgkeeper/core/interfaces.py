"""
pgkeeper - Core Interfaces
Contrats du module Core: configuration du coordinateur et sa validation.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


# ══════════════════════════════════════════════════════════════════════════════
# TYPES
# ══════════════════════════════════════════════════════════════════════════════


class ValidationSeverity(Enum):
    BLOCKING = "blocking"
    WARNING = "warning"
    INFO = "info"


class ValidationError(BaseModel):
    """Violation d'une règle de configuration."""

    rule_id: str
    message: str
    location: str
    value: Optional[str] = None
    severity: ValidationSeverity = ValidationSeverity.BLOCKING


class ValidationResult(BaseModel):
    """Résultat de validation d'une configuration."""

    valid: bool
    errors: list[ValidationError] = []
    warnings: list[ValidationError] = []
    checked_at: datetime


class KeeperConfig(BaseModel):
    """
    Configuration d'un coordinateur (section `keeper:` du fichier YAML).

    Les bornes croisées (probe_timeout < heartbeat_interval, etc.) sont
    vérifiées par ConfigValidator avant construction.
    """

    node_name: str
    my_endpoint: str
    data_directory: str
    partner_endpoint: Optional[str] = None
    heartbeat_interval: float = 5.0
    retry_threshold: int = 3
    probe_timeout: float = 2.0
    promote_timeout: float = 60.0
    after_command: Optional[str] = None
    notify_port: int = 5480
    notify_host: str = "0.0.0.0"
    membership_table: str = "pgkeeper.node_info"
    demote_attempts: int = 5
    log_level: str = "INFO"


# ══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ══════════════════════════════════════════════════════════════════════════════


class IConfigLoader(ABC):
    """Charge la configuration depuis un fichier YAML."""

    @abstractmethod
    async def load(self) -> dict[str, Any]:
        """
        Charge le fichier brut.

        Raises:
            ConfigIntegrityError: Si fichier absent, illisible ou structure invalide
        """
        pass

    @abstractmethod
    async def load_config(self) -> KeeperConfig:
        """
        Charge, valide et construit la configuration typée.

        Raises:
            ConfigIntegrityError: Si une règle bloquante est violée
        """
        pass


class IConfigValidator(ABC):
    """Valide la section keeper contre les règles de cohérence."""

    @abstractmethod
    def validate(self, config: dict[str, Any]) -> ValidationResult:
        """
        Valide une config contre TOUTES les règles.
        Retourne TOUTES les erreurs (pas fail-fast).
        """
        pass

    @abstractmethod
    def validate_rule(self, rule_id: str, config: dict[str, Any]) -> Optional[ValidationError]:
        """Valide UNE règle spécifique."""
        pass
