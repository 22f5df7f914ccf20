"""Exception hierarchy for the resolution engine.

Collaborators (arbiter, stores) raise these; the
resolution policies catch them at their boundary and degrade to a safe
default, so callers only ever see a well-formed Decision or EnrichmentResult.

Usage:
    from models.errors import ArbiterResponseError, ErrorType

    logger.warning(
        f"Arbiter failed: {e}",
        extra={"error_type": ErrorType.ARBITER_FAILURE},
    )
"""

from typing import Optional


class ResolutionError(Exception):
    """Base class for every engine-level failure."""


class ArbiterError(ResolutionError):
    """The LLM arbiter could not produce a judgment (provider error, timeout)."""


class ArbiterResponseError(ArbiterError):
    """The arbiter replied, but not with the JSON shape we asked for."""

    def __init__(self, context: str, raw_response: Optional[str] = None):
        self.context = context
        self.raw_response = raw_response
        preview = (raw_response or "")[:200]
        super().__init__(f"Malformed {context} response from arbiter: {preview!r}")


class StoreError(ResolutionError):
    """A storage adapter failed to read or write."""

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Store operation '{operation}' failed{detail}")


class ErrorType:
    """Failure kinds attached to log records via extra={"error_type": ...}."""

    EMBEDDING_DEGRADED = "EmbeddingDegraded"
    FUZZY_LOOKUP_FAILED = "FuzzyLookupFailed"
    ARBITER_FAILURE = "ArbiterFailure"
    ARBITER_MALFORMED = "ArbiterMalformedResponse"
    HALLUCINATED_ID = "HallucinatedId"
    PRECONDITION_VIOLATION = "PreconditionViolation"
    ENRICHMENT_FAILURE = "EnrichmentFailure"
    INFERENCE_FACT_FAILURE = "InferenceFactFailure"
    MERGE_FAILURE = "MergeFailure"
    CIRCUIT_BREAKER_OPEN = "CircuitBreakerOpen"
    DATABASE_ERROR = "DatabaseError"
