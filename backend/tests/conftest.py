# tests/conftest.py
"""Shared fixtures: a mocked AsyncSession and canned query results."""

import pytest
from types import SimpleNamespace
from uuid import uuid4
from unittest.mock import Mock, MagicMock, AsyncMock


def make_result(scalar=None, scalars=None, first=None, rows=None, rowcount=0):
    """Stand-in for a SQLAlchemy Result covering the accessors the services use."""
    result = Mock()
    result.scalar_one_or_none = Mock(return_value=scalar)
    result.scalar_one = Mock(return_value=scalar)
    result.scalar = Mock(return_value=scalar)
    result.scalars = Mock(return_value=Mock(all=Mock(return_value=list(scalars or []))))
    result.first = Mock(return_value=first)
    result.all = Mock(return_value=list(rows or []))
    result.rowcount = rowcount
    return result


@pytest.fixture
def result_factory():
    return make_result


@pytest.fixture
def mock_db():
    """Mock async session; execute returns an empty result unless overridden."""
    db = Mock()
    db.execute = AsyncMock(return_value=make_result())
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.close = AsyncMock()
    db.add = Mock()
    # `async with db.begin_nested():`
    db.begin_nested = MagicMock()
    return db


@pytest.fixture
def client_id():
    return uuid4()


@pytest.fixture
def lead_id():
    return uuid4()


@pytest.fixture
def make_lead():
    def _make(**overrides):
        values = {
            "id": uuid4(),
            "client_id": uuid4(),
            "first_name": "Jane",
            "last_name": "Doe",
            "full_name": "Jane Doe",
            "linkedin_url": "https://www.linkedin.com/in/jane-doe/",
            "linkedin_url_normalized": None,
            "linkedin_public_identifier": None,
            "linkedin_provider_id": None,
            "linkedin_chat_id": None,
            "traite": False,
            "responded": False,
            "message_sent": False,
        }
        values.update(overrides)
        return SimpleNamespace(**values)
    return _make


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests")
    config.addinivalue_line("markers", "integration: integration tests against a real database")
