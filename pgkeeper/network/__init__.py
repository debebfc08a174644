"""
pgkeeper - Network

Couche réseau du coordinateur:
- Timeouts connexion/requête bornés
- Retry avec backoff exponentiel
- Exécution SQL psycopg 3 (QueryError pour toute erreur)
- Notifications UDP entre coordinateurs
"""

from .interfaces import (
    # Enums
    TimeoutType,
    # Data classes
    TimeoutConfig,
    RetryConfig,
    RetryResult,
    # Interfaces
    ITimeoutManager,
    IRetryHandler,
    IQueryExecutor,
)
from .timeout_manager import TimeoutManager, InvalidTimeoutError
from .retry_handler import RetryHandler
from .query_executor import PsycopgQueryExecutor, QueryError
from .notification import (
    MEMBERSHIP_CHANGED,
    PeerNotification,
    PeerNotifier,
    NotificationListener,
    NotificationFormatError,
    endpoint_host,
    normalize_source,
    resolve_sources,
    LOOPBACK_SOURCES,
)

__all__ = [
    # Enums
    "TimeoutType",
    # Data classes
    "TimeoutConfig",
    "RetryConfig",
    "RetryResult",
    "PeerNotification",
    # Interfaces
    "ITimeoutManager",
    "IRetryHandler",
    "IQueryExecutor",
    # Implementations
    "TimeoutManager",
    "RetryHandler",
    "PsycopgQueryExecutor",
    "PeerNotifier",
    "NotificationListener",
    # Helpers
    "MEMBERSHIP_CHANGED",
    "endpoint_host",
    "normalize_source",
    "resolve_sources",
    "LOOPBACK_SOURCES",
    # Exceptions
    "InvalidTimeoutError",
    "QueryError",
    "NotificationFormatError",
]
