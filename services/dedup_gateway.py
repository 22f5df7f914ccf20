"""Deduplication gateway for extracted tasks, entities and commitments.

Every check walks the same confidence-tiered pipeline:

1. Normalize the name; empty after normalization => CREATE
2. Exact normalized-name match => MERGE (confidence 1.0, no LLM call)
3. No fuzzy/semantic candidates => CREATE
4. Arbiter judges the top candidate, and the result is routed by confidence:
   - not a duplicate, or confidence < approval threshold => CREATE
   - merge target outside the candidate set => CREATE (warning)
   - confidence >= auto-merge threshold => MERGE
   - otherwise => PENDING_APPROVAL (a human confirms)

The gateway returns a Decision and never writes; the caller performs the
create / merge / approval-queue write.

Concurrent checks of the same new name can both observe "no match" and both
return CREATE. No per-name lock is taken; the duplicates are reconciled by
services.dedup_batch_cleanup.
"""

from typing import Optional

from config import get_settings
from models.errors import ErrorType
from models.resolution import (
    ArbitrationResult,
    CommitmentCandidate,
    DedupPair,
    Decision,
    EntityCandidate,
    PairItem,
    SearchScope,
    TaskCandidate,
)
from services.arbiter import LlmArbiter, get_arbiter
from services.candidate_retriever import CandidateRetriever
from services.embeddings import get_embedding_capability
from utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class DeduplicationGateway:
    """Decides CREATE / MERGE / PENDING_APPROVAL for new candidates."""

    def __init__(
        self,
        task_retriever: CandidateRetriever,
        entity_retriever: CandidateRetriever,
        arbiter: LlmArbiter,
        auto_merge_threshold: float | None = None,
        approval_threshold: float | None = None,
    ):
        settings = get_settings()
        self.task_retriever = task_retriever
        self.entity_retriever = entity_retriever
        self.arbiter = arbiter
        self.auto_merge_threshold = (
            auto_merge_threshold
            if auto_merge_threshold is not None
            else settings.dedup_auto_merge_threshold
        )
        self.approval_threshold = (
            approval_threshold
            if approval_threshold is not None
            else settings.dedup_approval_threshold
        )
        if self.approval_threshold > self.auto_merge_threshold:
            raise ValueError(
                f"approval threshold {self.approval_threshold} exceeds "
                f"auto-merge threshold {self.auto_merge_threshold}"
            )

    # ------------------------------------------------------------------
    # Public checks
    # ------------------------------------------------------------------

    async def check_task(self, candidate: TaskCandidate) -> Decision:
        if not candidate.owner_entity_id:
            logger.warning(
                f"Task '{candidate.name}' has no owner, skipping dedup",
                extra={"error_type": ErrorType.PRECONDITION_VIOLATION},
            )
            return self._log_decision(
                "task", candidate.name, Decision.create("No ownerEntityId for task dedup")
            )

        with LogContext(owner_id=candidate.owner_entity_id):
            return await self._resolve(
                kind="task",
                retriever=self.task_retriever,
                name=candidate.name,
                scope=SearchScope.for_task(candidate.owner_entity_id),
                description=candidate.description,
                context=candidate.project_name,
            )

    async def check_entity(self, candidate: EntityCandidate) -> Decision:
        if not candidate.entity_type:
            logger.warning(
                f"Entity '{candidate.name}' has no type, skipping dedup",
                extra={"error_type": ErrorType.PRECONDITION_VIOLATION},
            )
            return self._log_decision(
                "entity", candidate.name, Decision.create("No type for entity dedup")
            )

        return await self._resolve(
            kind="entity",
            retriever=self.entity_retriever,
            name=candidate.name,
            scope=SearchScope.for_entity(candidate.entity_type),
            description=candidate.context,
            context=None,
        )

    async def check_commitment(self, candidate: CommitmentCandidate) -> Decision:
        """Commitments are tasks owned by the entity that made the promise."""
        if not candidate.entity_id:
            logger.warning(
                f"Commitment '{candidate.what}' has no entity, skipping dedup",
                extra={"error_type": ErrorType.PRECONDITION_VIOLATION},
            )
            return self._log_decision(
                "commitment",
                candidate.what,
                Decision.create("No entityId for commitment dedup"),
            )

        with LogContext(owner_id=candidate.entity_id):
            return await self._resolve(
                kind="commitment",
                retriever=self.task_retriever,
                name=candidate.what,
                scope=SearchScope.for_task(candidate.entity_id),
                description=None,
                context=candidate.activity_context,
            )

    async def check_tasks(self, candidates: list[TaskCandidate]) -> list[Decision]:
        """Check several tasks in order.

        A name repeated within the batch (same owner, same normalized form)
        reuses the first decision instead of running the pipeline again.
        """
        decisions = []
        seen: dict[tuple[Optional[str], str], Decision] = {}

        for candidate in candidates:
            key = (
                candidate.owner_entity_id,
                self.task_retriever.normalize(candidate.name),
            )
            if key in seen:
                decisions.append(seen[key])
                continue

            decision = await self.check_task(candidate)
            seen[key] = decision
            decisions.append(decision)

        return decisions

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _resolve(
        self,
        kind: str,
        retriever: CandidateRetriever,
        name: str,
        scope: SearchScope,
        description: Optional[str],
        context: Optional[str],
    ) -> Decision:
        normalized = retriever.normalize(name)
        if not normalized:
            return self._log_decision(
                kind, name, Decision.create("Empty name after normalization")
            )

        retrieval = await retriever.retrieve(name, scope, description)

        if retrieval.exact is not None:
            return self._log_decision(
                kind,
                name,
                Decision.merge(
                    retrieval.exact.id,
                    confidence=1.0,
                    reason=f'Exact name match: "{retrieval.exact.name}"',
                ),
            )

        if not retrieval.candidates:
            plural = "entities" if kind == "entity" else "tasks"
            return self._log_decision(
                kind, name, Decision.create(f"No similar {plural} found")
            )

        top = retrieval.candidates[0]
        pair = DedupPair(
            new_item=PairItem(name=name, description=description),
            existing_item=PairItem(id=top.id, name=top.name, description=top.description),
            activity_context=context,
        )

        try:
            arbitration = await self.arbiter.decide_duplicate(pair)
        except Exception as e:
            logger.error(
                f"Arbiter raised for {kind} '{name}': {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.ARBITER_FAILURE},
            )
            arbitration = ArbitrationResult.not_duplicate(f"LLM dedup failed: {e}")

        decision = self.route_by_confidence(arbitration, {top.id})
        return self._log_decision(kind, name, decision, similarity=top.similarity)

    def route_by_confidence(
        self, arbitration: ArbitrationResult, candidate_ids: set[str]
    ) -> Decision:
        """Map an arbiter verdict onto a terminal decision.

        The merge target must be one of candidate_ids, the records actually
        shown to the arbiter; anything else is treated as absent.
        """
        confidence = arbitration.confidence
        reason = arbitration.reason

        if not arbitration.is_duplicate:
            return Decision.create(f"LLM says not duplicate: {reason}", confidence)

        if confidence < self.approval_threshold:
            return Decision.create(
                f"Low confidence duplicate ({confidence:.2f}): {reason}", confidence
            )

        target = arbitration.merge_into_id
        if target not in candidate_ids:
            logger.warning(
                f"Arbiter returned merge target {target!r} outside the candidate set",
                extra={"error_type": ErrorType.HALLUCINATED_ID},
            )
            return Decision.create(
                f"Unverified merge target from LLM: {reason}", confidence
            )

        if confidence >= self.auto_merge_threshold:
            return Decision.merge(target, confidence, reason)
        return Decision.pending_approval(target, confidence, reason)

    def _log_decision(
        self,
        kind: str,
        name: str,
        decision: Decision,
        similarity: float | None = None,
    ) -> Decision:
        extra = {
            "kind": kind,
            "action": decision.action.value,
            "existing_id": decision.existing_id,
            "confidence": decision.confidence,
        }
        if similarity is not None:
            extra["similarity"] = similarity
        logger.info(f"Dedup {kind} '{name}': {decision.reason}", extra=extra)
        return decision


def get_dedup_gateway(session) -> DeduplicationGateway:
    """Create a gateway over Postgres-backed stores for one session."""
    from services.stores.postgres import PostgresEntityStore, PostgresTaskStore

    embedding = get_embedding_capability()
    return DeduplicationGateway(
        task_retriever=CandidateRetriever(PostgresTaskStore(session), embedding),
        entity_retriever=CandidateRetriever(PostgresEntityStore(session), embedding),
        arbiter=get_arbiter(),
    )
