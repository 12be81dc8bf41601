"""
Global pytest configuration and fixtures for the Arc integrations API test suite.
"""

import os
from typing import Generator
from unittest.mock import AsyncMock, MagicMock, Mock

# Set test environment variables before settings are loaded
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-32-chars")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "0123456789abcdef" * 4)
os.environ.setdefault("BID_PORTAL_SECRET", "test-bid-portal-secret")
os.environ.setdefault("QBO_CLIENT_ID", "test-qbo-client-id")
os.environ.setdefault("QBO_CLIENT_SECRET", "test-qbo-client-secret")
os.environ.setdefault("PASSWORD_BCRYPT_ROUNDS", "4")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.core.database import get_db  # noqa: E402
from src.main import app  # noqa: E402

# Import fixtures from fixture modules
from tests.fixtures.outbox_fixtures import *  # noqa: F403, F401, E402
from tests.fixtures.portal_fixtures import *  # noqa: F403, F401, E402
from tests.fixtures.qbo_fixtures import *  # noqa: F403, F401, E402

PRISMA_MODELS = (
    "outboxjob",
    "qboconnection",
    "qbosyncrecord",
    "qbowebhookevent",
    "invoice",
    "invoiceline",
    "payment",
    "event",
    "appuser",
    "usernotificationpref",
    "notification",
    "drawingsheetversion",
    "portalaccesstoken",
    "bidaccesstoken",
    "externalportalaccount",
    "externalportalsession",
    "externalportalaccountgrant",
)
MODEL_ACTIONS = (
    "find_first",
    "find_unique",
    "find_many",
    "create",
    "update",
    "update_many",
    "upsert",
    "count",
    "delete",
)


@pytest.fixture
def mock_prisma() -> Mock:
    """
    Mock Prisma client for unit tests that don't need real database.

    Every model action is an AsyncMock. ``tx()`` yields the same mock so
    transactional writes can be asserted like any other call.
    """
    mock_db = Mock()
    for model in PRISMA_MODELS:
        accessor = Mock()
        for action in MODEL_ACTIONS:
            setattr(accessor, action, AsyncMock())
        setattr(mock_db, model, accessor)

    mock_db.query_raw = AsyncMock(return_value=[])
    mock_db.execute_raw = AsyncMock(return_value=0)

    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=mock_db)
    transaction.__aexit__ = AsyncMock(return_value=False)
    mock_db.tx = Mock(return_value=transaction)
    return mock_db


@pytest.fixture
def client(mock_prisma: Mock) -> Generator[TestClient, None, None]:
    """FastAPI test client with the database dependency replaced by ``mock_prisma``."""
    app.dependency_overrides[get_db] = lambda: mock_prisma
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)


# Test data fixtures for consistent test scenarios
@pytest.fixture
def test_org_id() -> str:
    """Standard test organization ID."""
    return "42f929b1-8fdb-45b1-a7cf-34fae2314561"


@pytest.fixture
def test_user_id() -> str:
    return "7d1c2e4a-5b6f-4a8e-9c0d-1e2f3a4b5c6d"
