"""Storage ports consumed by the resolution services.

Every method is read-only except BaseEventStore.apply_enrichment and
BaseRelationStore.create_relation. Implementations must exclude
soft-deleted rows from every lookup.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from models.resolution import (
    MatchCandidate,
    MessageSnippet,
    OrganizationMatch,
    RelationPayload,
    RelationType,
    SearchScope,
    SimilarPair,
    StoredEvent,
    StoredFact,
)
from utils.normalization import normalize_name

# merge(keep_id, duplicate_id); used by the batch reconciliation job
MergeCallback = Callable[[str, str], Awaitable[None]]


class BaseCandidateStore(ABC):
    """Lookups behind the candidate retriever for one kind of record."""

    def normalize(self, name: str) -> str:
        """Comparison form of a name for this kind of record."""
        return normalize_name(name)

    @property
    def supports_semantic(self) -> bool:
        """Whether records carry embeddings that find_semantic can search."""
        return True

    @abstractmethod
    async def find_exact(
        self, normalized_name: str, scope: SearchScope
    ) -> Optional[MatchCandidate]:
        """Record whose normalized name equals normalized_name, or None."""
        ...

    @abstractmethod
    async def find_fuzzy(
        self, name: str, scope: SearchScope, limit: int
    ) -> list[MatchCandidate]:
        """Records whose name contains name as a substring (ILIKE)."""
        ...

    @abstractmethod
    async def find_semantic(
        self,
        vector: list[float],
        scope: SearchScope,
        limit: int,
        min_similarity: float,
    ) -> list[MatchCandidate]:
        """Nearest neighbours by cosine similarity, best first."""
        ...

    async def find_similar_pairs(
        self, min_similarity: float, limit: int
    ) -> list[SimilarPair]:
        """Stored record pairs that look like duplicates of each other."""
        return []


class BaseMessageSearch(ABC):
    """Message history lookups for context enrichment."""

    @abstractmethod
    async def search_messages(
        self,
        keywords: list[str],
        entity_id: Optional[str],
        since: datetime,
        limit: int,
    ) -> list[MessageSnippet]:
        ...

    async def load_reply_context(self, source_message_id: str) -> Optional[str]:
        """Content of the message the source message replied to."""
        return None

    async def load_topic_name(self, source_message_id: str) -> Optional[str]:
        """Forum topic the source message was posted in."""
        return None


class BaseEventStore(ABC):
    @abstractmethod
    async def find_candidate_events(
        self,
        entity_id: str,
        since: datetime,
        exclude_event_id: str,
        limit: int,
    ) -> list[StoredEvent]:
        """Other extracted events for the entity since the given time, newest first."""
        ...

    @abstractmethod
    async def apply_enrichment(
        self,
        event_id: str,
        linked_event_id: Optional[str],
        needs_context: bool,
        enrichment_data: dict[str, Any],
    ) -> None:
        ...


class BaseFactStore(ABC):
    @abstractmethod
    async def find_unlinked_facts(
        self,
        fact_type: str,
        relation_type: RelationType,
        since: Optional[datetime],
        limit: Optional[int],
    ) -> list[StoredFact]:
        """Current facts of fact_type whose entity has no valid relation_type relation.

        Oldest first.
        """
        ...

    @abstractmethod
    async def count_facts(self, fact_type: str) -> int:
        ...

    @abstractmethod
    async def count_unlinked_facts(
        self, fact_type: str, relation_type: RelationType
    ) -> int:
        ...


class BaseRelationStore(ABC):
    @abstractmethod
    async def search_organizations(
        self, query: str, limit: int
    ) -> list[OrganizationMatch]:
        ...

    @abstractmethod
    async def count_organizations(self) -> int:
        ...

    @abstractmethod
    async def relation_exists(
        self, entity_id_a: str, entity_id_b: str, relation_type: RelationType
    ) -> bool:
        ...

    @abstractmethod
    async def create_relation(self, payload: RelationPayload) -> str:
        """Persist the relation and return its ID."""
        ...
