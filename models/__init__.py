# Models
from models.resolution import (
    AbstractEvent,
    ArbitrationResult,
    CommitmentCandidate,
    Decision,
    DedupAction,
    EnrichmentResult,
    EntityCandidate,
    InferenceOptions,
    InferenceResult,
    MatchCandidate,
    TaskCandidate,
)

__all__ = [
    "AbstractEvent",
    "ArbitrationResult",
    "CommitmentCandidate",
    "Decision",
    "DedupAction",
    "EnrichmentResult",
    "EntityCandidate",
    "InferenceOptions",
    "InferenceResult",
    "MatchCandidate",
    "TaskCandidate",
]
