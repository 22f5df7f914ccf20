"""Storage ports and their PostgreSQL adapters."""

from services.stores.base import (
    BaseCandidateStore,
    BaseEventStore,
    BaseFactStore,
    BaseMessageSearch,
    BaseRelationStore,
    MergeCallback,
)

__all__ = [
    "BaseCandidateStore",
    "BaseEventStore",
    "BaseFactStore",
    "BaseMessageSearch",
    "BaseRelationStore",
    "MergeCallback",
]
