"""
Root test configuration and fixtures.

Provides:
- db_engine / session_factory: SQLite in-memory database with all tables
- clock: a controllable UTC clock shared by store, guard and services
- fake_graph: an httpx.MockTransport handler standing in for the Graph API
- graph_client: GraphAPIClient wired to fake_graph, retries without sleeping
"""

import os

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.orm import sessionmaker

# Set test environment before any graph_auth import reads it
os.environ.setdefault("ENV", "test")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-unit-tests")

from graph_auth.config.scope_policy import reset_scope_policy_loader
from graph_auth.database.session import create_engine_for_url, init_db
from graph_auth.integrations.graph.client import GraphAPIClient, RetryConfig
from graph_auth.platform.secrets import reset_secrets_manager
from graph_auth.services.credential_store import CredentialStore
from graph_auth.services.replay_guard import InMemoryReplayGuard, DatabaseReplayGuard
from graph_auth.tests.fakes import API_VERSION, APP_ID, APP_SECRET, FakeGraph, FrozenClock


# =============================================================================
# Environment
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_singletons():
    """Fresh scope policy and encryption key derivation for every test."""
    reset_scope_policy_loader()
    reset_secrets_manager()
    yield
    reset_scope_policy_loader()
    reset_secrets_manager()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Clock
# =============================================================================

@pytest.fixture
def clock():
    return FrozenClock()


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """SQLite in-memory engine with every table created."""
    engine = create_engine_for_url("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture
def store(session_factory, clock):
    return CredentialStore(session_factory, clock=clock)


@pytest.fixture(params=["memory", "database"])
def replay_guard(request, session_factory, clock):
    """Both replay guard backends."""
    if request.param == "memory":
        return InMemoryReplayGuard(clock=clock)
    return DatabaseReplayGuard(session_factory, clock=clock)


# =============================================================================
# Fake Graph API
# =============================================================================

@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def sleeps():
    """Delays the client would have slept between retries."""
    return []


@pytest_asyncio.fixture
async def graph_client(fake_graph, sleeps):
    async def no_sleep(delay: float) -> None:
        sleeps.append(delay)

    client = GraphAPIClient(
        app_id=APP_ID,
        app_secret=APP_SECRET,
        api_version=API_VERSION,
        retry_config=RetryConfig(max_retries=3, initial_delay=1.0, max_delay=30.0),
        transport=httpx.MockTransport(fake_graph),
        sleep=no_sleep,
    )
    yield client
    await client.close()
