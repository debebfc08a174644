"""
pgkeeper - Core
Configuration du coordinateur: chargement YAML et règles de validation.
"""

from .interfaces import (
    ValidationSeverity,
    ValidationError,
    ValidationResult,
    KeeperConfig,
    IConfigLoader,
    IConfigValidator,
)
from .config_loader import ConfigLoader, ConfigIntegrityError
from .config_validator import ConfigValidator

__all__ = [
    "ValidationSeverity",
    "ValidationError",
    "ValidationResult",
    "KeeperConfig",
    "IConfigLoader",
    "IConfigValidator",
    "ConfigLoader",
    "ConfigValidator",
    "ConfigIntegrityError",
]
