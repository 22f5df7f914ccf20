"""Candidate retrieval: exact normalized-name lookup, then fuzzy + semantic search.

Stage 1 (exact) is authoritative and short-circuits everything else.
Stage 2 merges substring (ILIKE) hits, which rank as similarity 1.0, with
embedding nearest neighbours, deduplicates by ID and keeps the top K.

Semantic search is best effort. A missing provider, an open circuit
breaker, a rate limit or a timeout all degrade to deterministic results;
the retriever never raises to its caller.
"""

from dataclasses import dataclass, field
from typing import Optional

from config import get_settings
from models.errors import ErrorType
from models.resolution import MatchCandidate, SearchScope
from services.embeddings import (
    EmbeddingCapability,
    EmbeddingUnavailable,
    get_embedding_capability,
)
from services.stores.base import BaseCandidateStore
from utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetrievalResult:
    """Outcome of both retrieval stages for one candidate name."""

    normalized_name: str
    exact: Optional[MatchCandidate] = None
    candidates: list[MatchCandidate] = field(default_factory=list)
    degraded: bool = False
    degradation_reason: Optional[str] = None


def merge_candidates(
    fuzzy: list[MatchCandidate],
    semantic: list[MatchCandidate],
    top_k: int,
) -> list[MatchCandidate]:
    """Deduplicate by ID (fuzzy wins), sort by similarity descending, truncate.

    The sort is stable and fuzzy hits are inserted first, so on equal
    similarity an ILIKE hit stays ahead of an embedding hit.
    """
    merged: dict[str, MatchCandidate] = {}
    for candidate in [*fuzzy, *semantic]:
        if candidate.id not in merged:
            merged[candidate.id] = candidate
    ranked = sorted(merged.values(), key=lambda c: c.similarity, reverse=True)
    return ranked[:top_k]


class CandidateRetriever:
    """Finds existing records that may duplicate a new candidate.

    One retriever wraps one candidate store (tasks or entities). The
    embedding capability is resolved per construction, so no request data
    is shared between resolutions.
    """

    def __init__(
        self,
        store: BaseCandidateStore,
        embedding: EmbeddingCapability | None = None,
        top_k: int | None = None,
        min_similarity: float | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.embedding = embedding if embedding is not None else get_embedding_capability()
        self.top_k = top_k or settings.candidate_top_k
        self.min_similarity = (
            min_similarity
            if min_similarity is not None
            else settings.semantic_min_similarity
        )

    def normalize(self, name: str) -> str:
        return self.store.normalize(name)

    async def find_exact(
        self, normalized_name: str, scope: SearchScope
    ) -> Optional[MatchCandidate]:
        """Stage 1. Raises whatever the store raises."""
        if not normalized_name:
            return None
        return await self.store.find_exact(normalized_name, scope)

    async def find_candidates(
        self,
        normalized_name: str,
        scope: SearchScope,
        description: str | None = None,
    ) -> RetrievalResult:
        """Stage 2. Never raises; failed lookups are logged and treated as empty."""
        result = RetrievalResult(normalized_name=normalized_name)

        try:
            fuzzy = await self.store.find_fuzzy(normalized_name, scope, self.top_k)
        except Exception as e:
            logger.warning(
                f"Fuzzy lookup failed for '{normalized_name}': {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.FUZZY_LOOKUP_FAILED},
            )
            fuzzy = []
            result.degraded = True
            result.degradation_reason = f"fuzzy lookup failed: {e}"

        semantic, reason = await self._find_semantic(
            normalized_name, scope, description
        )
        if reason:
            result.degraded = True
            result.degradation_reason = reason

        result.candidates = merge_candidates(fuzzy, semantic, self.top_k)
        logger.debug(
            f"Retrieved {len(result.candidates)} candidate(s) for '{normalized_name}' "
            f"(fuzzy={len(fuzzy)}, semantic={len(semantic)})"
        )
        return result

    async def _find_semantic(
        self,
        normalized_name: str,
        scope: SearchScope,
        description: str | None,
    ) -> tuple[list[MatchCandidate], str | None]:
        """Returns (candidates, degradation reason or None)."""
        if not self.store.supports_semantic:
            return [], None

        if isinstance(self.embedding, EmbeddingUnavailable):
            reason = f"embedding unavailable: {self.embedding.reason}"
            logger.warning(
                f"Skipping semantic search for '{normalized_name}': {reason}",
                extra={"error_type": ErrorType.EMBEDDING_DEGRADED},
            )
            return [], reason

        service = self.embedding.service
        text = f"{normalized_name} - {description}" if description else normalized_name

        try:
            vector = await service.embed_text(text, input_type="query")
        except Exception as e:
            reason = f"embedding failed: {type(e).__name__}: {e}"
            logger.warning(
                f"Failed to embed '{normalized_name}', using deterministic candidates only: "
                f"{type(e).__name__}: {e}",
                extra={"error_type": ErrorType.EMBEDDING_DEGRADED},
            )
            return [], reason

        try:
            candidates = await self.store.find_semantic(
                vector, scope, self.top_k, self.min_similarity
            )
        except Exception as e:
            reason = f"semantic search failed: {type(e).__name__}: {e}"
            logger.warning(
                f"Semantic search failed for '{normalized_name}': {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.EMBEDDING_DEGRADED},
            )
            return [], reason

        return [c for c in candidates if c.similarity >= self.min_similarity], None

    async def retrieve(
        self,
        name: str,
        scope: SearchScope,
        description: str | None = None,
    ) -> RetrievalResult:
        """Run both stages in order, short-circuiting on an exact hit.

        An exact-lookup failure is logged and treated as a miss.
        """
        normalized = self.normalize(name)
        if not normalized:
            return RetrievalResult(normalized_name="")

        try:
            exact = await self.find_exact(normalized, scope)
        except Exception as e:
            logger.error(
                f"Exact lookup failed for '{normalized}': {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.DATABASE_ERROR},
            )
            exact = None

        if exact is not None:
            return RetrievalResult(normalized_name=normalized, exact=exact)

        return await self.find_candidates(normalized, scope, description)
