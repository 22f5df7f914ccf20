"""Mock implementations for testing."""

from .llm_mock import MockEmbeddingService, MockLLMClient
from .stores import (
    InMemoryCandidateStore,
    InMemoryEventStore,
    InMemoryFactStore,
    InMemoryMessageSearch,
    InMemoryRelationStore,
)

__all__ = [
    "MockLLMClient",
    "MockEmbeddingService",
    "InMemoryCandidateStore",
    "InMemoryEventStore",
    "InMemoryFactStore",
    "InMemoryMessageSearch",
    "InMemoryRelationStore",
]
