"""
pgkeeper - Pytest Configuration
Fixtures partagées par tous les tests.
"""

from pathlib import Path

import pytest

from pgkeeper.logging.interfaces import LogConfig, LogLevel
from pgkeeper.logging.structured_logger import StructuredLogger
from tests.fakes import FakeNotifier, FakeQueryExecutor


# ══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def fixtures_path() -> Path:
    """Chemin vers le dossier fixtures."""
    return Path(__file__).parent.parent / "fixtures"


@pytest.fixture
def logger() -> StructuredLogger:
    """Logger silencieux, entrées conservées en mémoire."""
    return StructuredLogger(
        name="test",
        config=LogConfig(min_level=LogLevel.DEBUG, default_node="node1"),
        output_handler=None,
    )


@pytest.fixture
def executor() -> FakeQueryExecutor:
    return FakeQueryExecutor()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
