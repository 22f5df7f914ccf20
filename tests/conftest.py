"""Shared pytest fixtures for resolution engine tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from config import get_settings
from models.resolution import ScopeKind
from services.arbiter import LlmArbiter
from services.embeddings import EmbeddingAvailable, EmbeddingUnavailable
from tests.mocks import (
    InMemoryCandidateStore,
    InMemoryEventStore,
    InMemoryFactStore,
    InMemoryMessageSearch,
    InMemoryRelationStore,
    MockEmbeddingService,
    MockLLMClient,
)
from utils.circuit_breaker import reset_all_circuit_breakers

# ============================================================================
# Global state
# ============================================================================


@pytest.fixture(autouse=True)
def _reset_global_state():
    """Fresh settings and circuit breakers for every test."""
    get_settings.cache_clear()
    reset_all_circuit_breakers()
    yield
    get_settings.cache_clear()
    reset_all_circuit_breakers()


# ============================================================================
# PostgreSQL / Redis
# ============================================================================


def _query_result(rows=None, scalar=0, rowcount=0) -> MagicMock:
    """Shape of a SQLAlchemy Result as the store adapters read it."""
    result = MagicMock()
    result.mappings.return_value.all.return_value = list(rows or [])
    result.scalar_one.return_value = scalar
    result.rowcount = rowcount
    return result


@pytest.fixture
def mock_postgres_result_factory():
    return _query_result


@pytest.fixture
def mock_postgres_session():
    """Session whose queries return no rows until a test sets execute()."""
    session = MagicMock()
    session.execute = AsyncMock(return_value=_query_result())
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


@pytest.fixture
def mock_redis():
    """Empty embedding cache: every get misses, setex succeeds."""
    client = AsyncMock()
    client.get.return_value = None
    client.setex.return_value = True
    client.ping.return_value = True
    return client


# ============================================================================
# LLM / Embedding Fixtures
# ============================================================================


@pytest.fixture
def mock_llm():
    """Scripted LLM client; set the reply or error per test."""
    return MockLLMClient()


@pytest.fixture
def arbiter(mock_llm):
    return LlmArbiter(mock_llm)


@pytest.fixture
def mock_arbiter():
    """Arbiter with every method stubbed; configure return values per test."""
    arbiter = MagicMock(spec=LlmArbiter)
    arbiter.decide_duplicate = AsyncMock()
    arbiter.decide_batch = AsyncMock(return_value=[])
    arbiter.synthesize_context = AsyncMock()
    return arbiter


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


@pytest.fixture
def embedding_available(mock_embedding_service):
    return EmbeddingAvailable(mock_embedding_service)


@pytest.fixture
def embedding_unavailable():
    return EmbeddingUnavailable("NVIDIA_EMBEDDING_API_KEY not configured")


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def task_store():
    return InMemoryCandidateStore(ScopeKind.TASK)


@pytest.fixture
def entity_store():
    return InMemoryCandidateStore(ScopeKind.ENTITY, semantic=False)


@pytest.fixture
def message_search():
    return InMemoryMessageSearch()


@pytest.fixture
def event_store():
    return InMemoryEventStore()


@pytest.fixture
def fact_store():
    return InMemoryFactStore()


@pytest.fixture
def relation_store():
    return InMemoryRelationStore()
