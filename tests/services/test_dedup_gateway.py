"""Tests for the deduplication gateway.

Covers the confidence routing table, precondition short-circuits and the
end-to-end pipeline over in-memory stores.
"""

import httpx
import pytest
from openai import RateLimitError

from models.resolution import (
    CommitmentCandidate,
    DedupAction,
    EntityCandidate,
)
from services.candidate_retriever import CandidateRetriever
from services.dedup_gateway import DeduplicationGateway
from services.embeddings import EmbeddingAvailable
from tests.factories import ArbitrationFactory, TaskFactory
from tests.mocks import MockEmbeddingService

OWNER = "owner-111"


@pytest.fixture
def gateway(task_store, entity_store, embedding_available, mock_arbiter):
    return DeduplicationGateway(
        task_retriever=CandidateRetriever(task_store, embedding_available),
        entity_retriever=CandidateRetriever(entity_store, embedding_available),
        arbiter=mock_arbiter,
    )


# ============================================================================
# Confidence routing
# ============================================================================


class TestRouteByConfidence:
    @pytest.mark.parametrize(
        "confidence,expected",
        [
            (0.9, DedupAction.MERGE),
            (0.95, DedupAction.MERGE),
            (0.8999, DedupAction.PENDING_APPROVAL),
            (0.7, DedupAction.PENDING_APPROVAL),
            (0.6999, DedupAction.CREATE),
            (0.0, DedupAction.CREATE),
        ],
    )
    def test_threshold_boundaries(self, gateway, confidence, expected):
        verdict = ArbitrationFactory.duplicate("t-1", confidence)

        decision = gateway.route_by_confidence(verdict, {"t-1"})

        assert decision.action == expected
        assert decision.confidence == confidence

    def test_merge_carries_target(self, gateway):
        decision = gateway.route_by_confidence(
            ArbitrationFactory.duplicate("t-1", 0.95), {"t-1"}
        )
        assert decision.existing_id == "t-1"

    def test_low_confidence_reason(self, gateway):
        decision = gateway.route_by_confidence(
            ArbitrationFactory.duplicate("t-1", 0.5, reason="Maybe the same"), {"t-1"}
        )
        assert decision.existing_id is None
        assert decision.reason == "Low confidence duplicate (0.50): Maybe the same"

    def test_not_duplicate_keeps_confidence(self, gateway):
        decision = gateway.route_by_confidence(
            ArbitrationFactory.not_duplicate(confidence=0.92), {"t-1"}
        )
        assert decision.action == DedupAction.CREATE
        assert decision.confidence == 0.92
        assert decision.reason.startswith("LLM says not duplicate:")

    def test_hallucinated_target_rejected(self, gateway):
        decision = gateway.route_by_confidence(
            ArbitrationFactory.duplicate("made-up-id", 0.97), {"t-1"}
        )
        assert decision.action == DedupAction.CREATE
        assert decision.existing_id is None
        assert decision.reason.startswith("Unverified merge target from LLM")

    def test_missing_target_routes_to_create(self, gateway):
        decision = gateway.route_by_confidence(
            ArbitrationFactory.duplicate(None, 0.97), {"t-1"}
        )
        assert decision.action == DedupAction.CREATE

    def test_custom_thresholds(self, task_store, entity_store, embedding_available, mock_arbiter):
        gateway = DeduplicationGateway(
            CandidateRetriever(task_store, embedding_available),
            CandidateRetriever(entity_store, embedding_available),
            mock_arbiter,
            auto_merge_threshold=0.8,
            approval_threshold=0.6,
        )
        decision = gateway.route_by_confidence(
            ArbitrationFactory.duplicate("t-1", 0.85), {"t-1"}
        )
        assert decision.action == DedupAction.MERGE

    def test_inverted_thresholds_rejected(
        self, task_store, entity_store, embedding_available, mock_arbiter
    ):
        with pytest.raises(ValueError):
            DeduplicationGateway(
                CandidateRetriever(task_store, embedding_available),
                CandidateRetriever(entity_store, embedding_available),
                mock_arbiter,
                auto_merge_threshold=0.6,
                approval_threshold=0.8,
            )


# ============================================================================
# Task pipeline
# ============================================================================


class TestCheckTask:
    @pytest.mark.asyncio
    async def test_exact_match_merges_without_llm(self, gateway, task_store, mock_arbiter):
        """Scenario: the same task arrives again with different casing."""
        task_id = task_store.add("настроить ci/cd", owner_entity_id=OWNER)

        decision = await gateway.check_task(TaskFactory.candidate("Настроить CI/CD"))

        assert decision.action == DedupAction.MERGE
        assert decision.existing_id == task_id
        assert decision.confidence == 1.0
        assert decision.reason == 'Exact name match: "настроить ci/cd"'
        mock_arbiter.decide_duplicate.assert_not_called()

    @pytest.mark.asyncio
    async def test_semantic_match_needs_approval(self, gateway, task_store, mock_arbiter):
        """Scenario: a paraphrase found by embeddings, arbiter fairly sure."""
        task_store.set_semantic_results(
            [TaskFactory.match("Setup CI pipeline", match_id="t-42", similarity=0.85)]
        )
        mock_arbiter.decide_duplicate.return_value = ArbitrationFactory.duplicate(
            "t-42", 0.82, reason="Both are about CI setup"
        )

        decision = await gateway.check_task(TaskFactory.candidate("Configure CI/CD"))

        assert decision.action == DedupAction.PENDING_APPROVAL
        assert decision.existing_id == "t-42"
        assert decision.confidence == 0.82

        pair = mock_arbiter.decide_duplicate.call_args.args[0]
        assert pair.existing_item.id == "t-42"
        assert pair.new_item.name == "Configure CI/CD"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            {
                "pairIndex": 0,
                "isDuplicate": True,
                "confidence": float("nan"),
                "mergeIntoId": "t-42",
            },
            {"pairIndex": 0, "isDuplicate": True, "confidence": 0.97},
        ],
        ids=["nan-confidence", "no-merge-target"],
    )
    async def test_unusable_verdict_creates(
        self, task_store, entity_store, embedding_available, arbiter, mock_llm, reply
    ):
        task_store.set_semantic_results(
            [TaskFactory.match("Setup CI pipeline", match_id="t-42", similarity=0.85)]
        )
        mock_llm.set_default_json(ArbitrationFactory.decisions_json(reply))
        gateway = DeduplicationGateway(
            CandidateRetriever(task_store, embedding_available),
            CandidateRetriever(entity_store, embedding_available),
            arbiter,
        )

        decision = await gateway.check_task(TaskFactory.candidate("Configure CI/CD"))

        assert decision.action == DedupAction.CREATE
        assert decision.existing_id is None

    @pytest.mark.asyncio
    async def test_rate_limited_embeddings_create(self, task_store, entity_store, mock_arbiter):
        """Scenario: embeddings are throttled and nothing else matches."""
        embedding = MockEmbeddingService()
        request = httpx.Request("POST", "https://integrate.api.nvidia.com/v1/embeddings")
        embedding.set_error(
            RateLimitError(
                "Too Many Requests",
                response=httpx.Response(429, request=request),
                body=None,
            )
        )
        capability = EmbeddingAvailable(embedding)
        gateway = DeduplicationGateway(
            CandidateRetriever(task_store, capability),
            CandidateRetriever(entity_store, capability),
            mock_arbiter,
        )

        decision = await gateway.check_task(TaskFactory.candidate("Brand new task"))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "No similar tasks found"
        assert task_store.semantic_calls == []
        mock_arbiter.decide_duplicate.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_owner(self, gateway, task_store):
        decision = await gateway.check_task(TaskFactory.candidate("Deploy", owner_entity_id=None))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "No ownerEntityId for task dedup"
        assert task_store.exact_calls == []

    @pytest.mark.asyncio
    async def test_empty_after_normalization(self, gateway, task_store):
        decision = await gateway.check_task(TaskFactory.candidate('""'))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "Empty name after normalization"
        assert task_store.exact_calls == []

    @pytest.mark.asyncio
    async def test_no_candidates(self, gateway, mock_arbiter):
        decision = await gateway.check_task(TaskFactory.candidate("Write onboarding guide"))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "No similar tasks found"
        mock_arbiter.decide_duplicate.assert_not_called()

    @pytest.mark.asyncio
    async def test_arbiter_exception_creates(self, gateway, task_store, mock_arbiter):
        task_store.set_semantic_results([TaskFactory.match(match_id="t-1")])
        mock_arbiter.decide_duplicate.side_effect = RuntimeError("boom")

        decision = await gateway.check_task(TaskFactory.candidate("Deploy"))

        assert decision.action == DedupAction.CREATE
        assert "LLM dedup failed: boom" in decision.reason

    @pytest.mark.asyncio
    async def test_arbiter_only_sees_top_candidate(self, gateway, task_store, mock_arbiter):
        task_store.set_semantic_results(
            [
                TaskFactory.match(match_id="t-top", similarity=0.9),
                TaskFactory.match(match_id="t-second", similarity=0.8),
            ]
        )
        mock_arbiter.decide_duplicate.return_value = ArbitrationFactory.duplicate(
            "t-second", 0.95
        )

        decision = await gateway.check_task(TaskFactory.candidate("Deploy"))

        assert decision.action == DedupAction.CREATE
        assert decision.reason.startswith("Unverified merge target")

    @pytest.mark.asyncio
    async def test_project_name_passed_as_context(self, gateway, task_store, mock_arbiter):
        task_store.set_semantic_results([TaskFactory.match(match_id="t-1")])
        mock_arbiter.decide_duplicate.return_value = ArbitrationFactory.not_duplicate()

        await gateway.check_task(
            TaskFactory.candidate("Deploy", description="to prod", project_name="Apollo")
        )

        pair = mock_arbiter.decide_duplicate.call_args.args[0]
        assert pair.activity_context == "Apollo"
        assert pair.new_item.description == "to prod"


class TestCheckTasks:
    @pytest.mark.asyncio
    async def test_repeated_name_reuses_decision(self, gateway, task_store, mock_arbiter):
        task_store.set_semantic_results([TaskFactory.match(match_id="t-1")])
        mock_arbiter.decide_duplicate.return_value = ArbitrationFactory.duplicate("t-1", 0.95)

        decisions = await gateway.check_tasks(
            [
                TaskFactory.candidate("Deploy"),
                TaskFactory.candidate("deploy."),
                TaskFactory.candidate("Deploy", owner_entity_id="owner-222"),
            ]
        )

        assert [d.action for d in decisions] == [DedupAction.MERGE] * 3
        assert decisions[0] is decisions[1]
        assert mock_arbiter.decide_duplicate.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, gateway):
        assert await gateway.check_tasks([]) == []


# ============================================================================
# Entities and commitments
# ============================================================================


class TestCheckEntity:
    @pytest.mark.asyncio
    async def test_legal_form_variants_merge(self, gateway, entity_store):
        org_id = entity_store.add("Сбербанк", entity_type="organization")

        decision = await gateway.check_entity(
            EntityCandidate(name='ООО "Сбербанк"', type="organization")
        )

        assert decision.action == DedupAction.MERGE
        assert decision.existing_id == org_id

    @pytest.mark.asyncio
    async def test_scoped_by_type(self, gateway, entity_store):
        entity_store.add("Apollo", entity_type="project")

        decision = await gateway.check_entity(EntityCandidate(name="Apollo", type="organization"))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "No similar entities found"

    @pytest.mark.asyncio
    async def test_missing_type(self, gateway):
        decision = await gateway.check_entity(EntityCandidate(name="Apollo", type=""))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "No type for entity dedup"

    @pytest.mark.asyncio
    async def test_context_goes_to_arbiter(self, gateway, entity_store, mock_arbiter):
        entity_store.add("Acme Corporation", record_id="e-1", entity_type="organization")
        mock_arbiter.decide_duplicate.return_value = ArbitrationFactory.duplicate("e-1", 0.75)

        decision = await gateway.check_entity(
            EntityCandidate(name="Acme", type="organization", context="hosting vendor")
        )

        assert decision.action == DedupAction.PENDING_APPROVAL
        pair = mock_arbiter.decide_duplicate.call_args.args[0]
        assert pair.new_item.description == "hosting vendor"


class TestCheckCommitment:
    @pytest.mark.asyncio
    async def test_scoped_to_promising_entity(self, gateway, task_store):
        task_id = task_store.add("прислать договор", owner_entity_id="entity-9")

        decision = await gateway.check_commitment(
            CommitmentCandidate(what="Прислать договор", entity_id="entity-9")
        )

        assert decision.action == DedupAction.MERGE
        assert decision.existing_id == task_id

    @pytest.mark.asyncio
    async def test_missing_entity(self, gateway):
        decision = await gateway.check_commitment(CommitmentCandidate(what="Прислать договор"))

        assert decision.action == DedupAction.CREATE
        assert decision.reason == "No entityId for commitment dedup"

    @pytest.mark.asyncio
    async def test_activity_context_passed(self, gateway, task_store, mock_arbiter):
        task_store.set_semantic_results([TaskFactory.match(match_id="t-1")])
        mock_arbiter.decide_duplicate.return_value = ArbitrationFactory.not_duplicate()

        await gateway.check_commitment(
            CommitmentCandidate(
                what="Send the contract", entity_id="entity-9", activity_context="Q3 deal"
            )
        )

        pair = mock_arbiter.decide_duplicate.call_args.args[0]
        assert pair.activity_context == "Q3 deal"
