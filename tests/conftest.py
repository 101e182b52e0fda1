"""
AskMatch Test Configuration and Fixtures
Shared pytest fixtures for all test modules.
"""
from typing import Any
from unittest.mock import MagicMock

import pytest


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def mock_db_session():
    """Mock SQLAlchemy session usable as a context manager."""
    session = MagicMock()
    session.__enter__ = MagicMock(return_value=session)
    session.__exit__ = MagicMock(return_value=False)
    return session


@pytest.fixture
def mock_db_engine():
    """Mock SQLAlchemy engine; patch `Session` in the module under test."""
    return MagicMock()


@pytest.fixture
def make_row():
    """Factory for mock database result rows with attribute access."""

    def _make_row(**data: Any):
        row = MagicMock()
        for key, value in data.items():
            setattr(row, key, value)
        return row

    return _make_row
