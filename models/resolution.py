"""Value objects flowing through candidate resolution.

Inputs (candidates) are immutable. Outputs serialize with camelCase aliases
so they can be written straight into the JSON columns other services read
(e.g. ``extracted_events.enrichment_data``).
"""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class DedupAction(str, Enum):
    """Terminal states of a dedup decision."""

    CREATE = "create"
    MERGE = "merge"
    PENDING_APPROVAL = "pending_approval"


class CandidateSource(str, Enum):
    """Which retrieval stage produced a MatchCandidate."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


class ScopeKind(str, Enum):
    TASK = "task"
    ENTITY = "entity"


class RelationType(str, Enum):
    EMPLOYMENT = "employment"
    REPORTING = "reporting"
    TEAM = "team"
    MARRIAGE = "marriage"
    PARENTHOOD = "parenthood"
    SIBLINGHOOD = "siblinghood"
    FRIENDSHIP = "friendship"
    ACQUAINTANCE = "acquaintance"
    MENTORSHIP = "mentorship"
    PARTNERSHIP = "partnership"
    CLIENT_VENDOR = "client_vendor"


class RelationSource(str, Enum):
    """Provenance of a stored relation."""

    MANUAL = "manual"
    EXTRACTED = "extracted"
    IMPORTED = "imported"
    INFERRED_FROM_FACT = "inferred-from-fact"


class ResolutionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


def clamp_unit(v: Any) -> float:
    """Coerce a model-reported confidence into [0, 1]; NaN and junk become 0."""
    try:
        value = float(v)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


# ============================================================================
# Candidates
# ============================================================================


class TaskCandidate(FrozenModel):
    name: str
    owner_entity_id: Optional[str] = None
    description: Optional[str] = None
    project_name: Optional[str] = None


class EntityCandidate(FrozenModel):
    name: str
    entity_type: str = Field(alias="type")
    context: Optional[str] = None


class CommitmentCandidate(FrozenModel):
    what: str
    entity_id: Optional[str] = None
    activity_context: Optional[str] = None


class AbstractEvent(FrozenModel):
    """An extracted event too vague to act on without history."""

    id: str
    event_type: str = "task"
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    source_quote: Optional[str] = None
    entity_id: Optional[str] = None
    source_message_id: Optional[str] = None
    created_at: Optional[datetime] = None


class SearchScope(FrozenModel):
    """Filters every candidate lookup is restricted to.

    Task lookups are scoped by owner, entity lookups by entity type.
    """

    kind: ScopeKind
    owner_entity_id: Optional[str] = None
    entity_type: Optional[str] = None

    @classmethod
    def for_task(cls, owner_entity_id: str) -> "SearchScope":
        return cls(kind=ScopeKind.TASK, owner_entity_id=owner_entity_id)

    @classmethod
    def for_entity(cls, entity_type: str) -> "SearchScope":
        return cls(kind=ScopeKind.ENTITY, entity_type=entity_type)


# ============================================================================
# Retrieval and arbitration
# ============================================================================


class MatchCandidate(FrozenModel):
    id: str
    name: str
    description: Optional[str] = None
    similarity: float = Field(ge=0.0, le=1.0)
    source: CandidateSource


class PairItem(FrozenModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None


class DedupPair(FrozenModel):
    """One new-vs-existing comparison handed to the arbiter."""

    new_item: PairItem
    existing_item: PairItem
    activity_context: Optional[str] = None


class ArbitrationResult(ResolutionModel):
    is_duplicate: bool = False
    confidence: float = 0.0
    merge_into_id: Optional[str] = None
    reason: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        return clamp_unit(v)

    @classmethod
    def not_duplicate(cls, reason: str) -> "ArbitrationResult":
        return cls(is_duplicate=False, confidence=0.0, reason=reason)


class Decision(FrozenModel):
    """Final dedup outcome; the caller performs the actual write."""

    action: DedupAction
    existing_id: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str

    @model_validator(mode="after")
    def check_existing_id(self) -> "Decision":
        if self.action == DedupAction.CREATE and self.existing_id is not None:
            raise ValueError("CREATE decisions must not reference an existing record")
        if self.action != DedupAction.CREATE and not self.existing_id:
            raise ValueError(f"{self.action.value} decisions require existing_id")
        return self

    @classmethod
    def create(cls, reason: str, confidence: float = 0.0) -> "Decision":
        return cls(action=DedupAction.CREATE, confidence=confidence, reason=reason)

    @classmethod
    def merge(cls, existing_id: str, confidence: float, reason: str) -> "Decision":
        return cls(
            action=DedupAction.MERGE,
            existing_id=existing_id,
            confidence=confidence,
            reason=reason,
        )

    @classmethod
    def pending_approval(
        cls, existing_id: str, confidence: float, reason: str
    ) -> "Decision":
        return cls(
            action=DedupAction.PENDING_APPROVAL,
            existing_id=existing_id,
            confidence=confidence,
            reason=reason,
        )


class SimilarPair(FrozenModel):
    """Two stored records whose embeddings are close enough to re-check."""

    first: PairItem
    second: PairItem
    similarity: float


class CleanupResult(ResolutionModel):
    pairs_checked: int = 0
    merged: int = 0
    failed: int = 0


# ============================================================================
# Context enrichment
# ============================================================================


class MessageSnippet(FrozenModel):
    id: str
    content: str
    timestamp: Optional[datetime] = None
    entity_id: Optional[str] = None


class StoredEvent(FrozenModel):
    id: str
    event_type: str
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    source_quote: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class SynthesisResult(ResolutionModel):
    context_found: bool = False
    linked_event_id: Optional[str] = None
    synthesis: str = ""
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        return clamp_unit(v)

    @classmethod
    def nothing_found(cls, reason: str) -> "SynthesisResult":
        return cls(context_found=False, synthesis=reason, confidence=0.0)


class EnrichmentData(ResolutionModel):
    keywords: list[str] = Field(default_factory=list)
    related_message_ids: list[str] = Field(default_factory=list)
    candidate_event_ids: list[str] = Field(default_factory=list)
    synthesis: Optional[str] = None
    enrichment_success: bool
    enrichment_failure_reason: Optional[str] = None
    enriched_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EnrichmentResult(ResolutionModel):
    success: bool
    linked_event_id: Optional[str] = None
    needs_context: bool
    enrichment_data: EnrichmentData


# ============================================================================
# Relation inference
# ============================================================================


class StoredFact(FrozenModel):
    id: str
    entity_id: str
    fact_type: str
    value: Optional[str] = None
    confidence: Optional[float] = None
    created_at: Optional[datetime] = None


class OrganizationMatch(FrozenModel):
    id: str
    name: str


class RelationMember(FrozenModel):
    entity_id: str
    role: str


class RelationPayload(FrozenModel):
    relation_type: RelationType
    members: list[RelationMember]
    source: RelationSource
    confidence: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class InferredRelation(FrozenModel):
    fact_id: str
    entity_id: str
    organization_id: str
    organization_name: str
    relation_type: RelationType
    confidence: float


class InferenceOptions(FrozenModel):
    since_date: Optional[datetime] = None
    dry_run: bool = False
    limit: Optional[int] = Field(default=None, ge=1)


class InferenceError(ResolutionModel):
    fact_id: str
    error: str


class InferenceResult(ResolutionModel):
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: list[InferenceError] = Field(default_factory=list)
    details: Optional[list[InferredRelation]] = None


class InferenceStats(ResolutionModel):
    total_facts: int
    unlinked_facts: int
    organizations: int
