"""
pgkeeper - Logging

Logging structuré du coordinateur:
- Une ligne JSON par entrée
- Champs obligatoires: timestamp, level, correlation_id, node, message
- Timestamp ISO 8601 UTC avec millisecondes
- Niveaux: DEBUG, INFO, WARN, ERROR, CRITICAL
- Mots de passe des conninfo jamais en clair
"""

from .interfaces import (
    # Enums
    LogLevel,
    # Dataclasses
    LogEntry,
    LogConfig,
    # Interfaces
    IStructuredLogger,
    ISensitiveMasker,
)
from .sensitive_masker import SensitiveMasker
from .structured_logger import (
    StructuredLogger,
    # Exceptions
    MissingRequiredFieldError,
)

__all__ = [
    # Enums
    "LogLevel",
    # Dataclasses
    "LogEntry",
    "LogConfig",
    # Interfaces
    "IStructuredLogger",
    "ISensitiveMasker",
    # Implementations
    "SensitiveMasker",
    "StructuredLogger",
    # Exceptions
    "MissingRequiredFieldError",
]
