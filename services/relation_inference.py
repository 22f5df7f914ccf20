"""Infer relations that stored facts imply but nobody recorded.

A "company: Acme" fact on a person implies an employment relation between
that person and the Acme organization entity. The scan walks unlinked facts
oldest first, finds the organization by normalized name (falling back to the
first significant word), and creates the relation unless one already exists.

Each fact is handled independently; a failure is attributed to its fact ID
and the scan moves on.
"""

from dataclasses import dataclass

from config import get_settings
from models.errors import ErrorType
from models.resolution import (
    InferenceError,
    InferenceOptions,
    InferenceResult,
    InferenceStats,
    InferredRelation,
    OrganizationMatch,
    RelationMember,
    RelationPayload,
    RelationSource,
    RelationType,
    StoredFact,
)
from services.stores.base import BaseFactStore, BaseRelationStore
from utils.logging import LogContext, get_logger
from utils.normalization import first_significant_word, normalize_name, similarity

logger = get_logger(__name__)

# Shorter normalized values match too many organizations to be trusted
MIN_FACT_VALUE_LENGTH = 2


@dataclass(frozen=True)
class InferenceRule:
    """Which fact category implies which relation, and the member roles."""

    fact_type: str = "company"
    relation_type: RelationType = RelationType.EMPLOYMENT
    subject_role: str = "employee"
    object_role: str = "employer"


EMPLOYMENT_FROM_COMPANY = InferenceRule()


class RelationInferenceService:
    def __init__(
        self,
        fact_store: BaseFactStore,
        relation_store: BaseRelationStore,
        rule: InferenceRule = EMPLOYMENT_FROM_COMPANY,
    ):
        settings = get_settings()
        self.fact_store = fact_store
        self.relation_store = relation_store
        self.rule = rule
        self.similarity_threshold = settings.inference_similarity_threshold
        self.default_confidence = settings.inference_default_confidence
        self.search_limit = settings.inference_org_search_limit

    async def infer_relations(
        self, options: InferenceOptions | None = None
    ) -> InferenceResult:
        options = options or InferenceOptions()
        async with LogContext(run_id=LogContext.new_run_id()):
            return await self._scan(options)

    async def _scan(self, options: InferenceOptions) -> InferenceResult:
        result = InferenceResult(details=[] if options.dry_run else None)

        facts = await self.fact_store.find_unlinked_facts(
            self.rule.fact_type,
            self.rule.relation_type,
            options.since_date,
            options.limit,
        )
        logger.info(
            f"Found {len(facts)} '{self.rule.fact_type}' fact(s) without "
            f"{self.rule.relation_type.value} relation",
            extra={"dry_run": options.dry_run},
        )

        for fact in facts:
            result.processed += 1
            try:
                created = await self._process_fact(fact, options, result)
            except Exception as e:
                logger.error(
                    f"Failed to infer relation from fact {fact.id}: {type(e).__name__}: {e}",
                    extra={"error_type": ErrorType.INFERENCE_FACT_FAILURE, "fact_id": fact.id},
                )
                result.errors.append(InferenceError(fact_id=fact.id, error=str(e)))
                continue

            if created:
                result.created += 1
            else:
                result.skipped += 1

        logger.info(
            f"Relation inference complete: processed={result.processed} "
            f"created={result.created} skipped={result.skipped} errors={len(result.errors)}",
            extra={"dry_run": options.dry_run},
        )
        return result

    async def _process_fact(
        self, fact: StoredFact, options: InferenceOptions, result: InferenceResult
    ) -> bool:
        """Returns True when a relation was created (or would be, in a dry run)."""
        if not fact.value:
            return False

        organization = await self.find_organization(fact.value)
        if organization is None:
            logger.debug(f"No organization matches '{fact.value}' (fact {fact.id})")
            return False

        if await self.relation_store.relation_exists(
            fact.entity_id, organization.id, self.rule.relation_type
        ):
            return False

        confidence = (
            fact.confidence if fact.confidence is not None else self.default_confidence
        )

        if options.dry_run:
            result.details.append(
                InferredRelation(
                    fact_id=fact.id,
                    entity_id=fact.entity_id,
                    organization_id=organization.id,
                    organization_name=organization.name,
                    relation_type=self.rule.relation_type,
                    confidence=confidence,
                )
            )
            return True

        relation_id = await self.relation_store.create_relation(
            RelationPayload(
                relation_type=self.rule.relation_type,
                members=[
                    RelationMember(entity_id=fact.entity_id, role=self.rule.subject_role),
                    RelationMember(entity_id=organization.id, role=self.rule.object_role),
                ],
                source=RelationSource.INFERRED_FROM_FACT,
                confidence=confidence,
                metadata={
                    "inferredFrom": self.rule.fact_type,
                    "sourceFactId": fact.id,
                    "sourceFactValue": fact.value,
                },
            )
        )
        logger.info(
            f"Created {self.rule.relation_type.value} relation {relation_id}: "
            f"{fact.entity_id} -> {organization.name}",
            extra={"fact_id": fact.id, "relation_id": relation_id},
        )
        return True

    async def find_organization(self, value: str) -> OrganizationMatch | None:
        """Best organization for a fact value, or None.

        Searches by the full normalized value; only when that finds nothing,
        by its first significant word. The first result whose normalized name
        is similar enough wins.
        """
        normalized = normalize_name(value)
        if len(normalized) < MIN_FACT_VALUE_LENGTH:
            return None

        matches = await self.relation_store.search_organizations(
            normalized, self.search_limit
        )
        if not matches:
            first_word = first_significant_word(normalized)
            if first_word and first_word != normalized:
                matches = await self.relation_store.search_organizations(
                    first_word, self.search_limit
                )

        for match in matches:
            if similarity(normalized, normalize_name(match.name)) > self.similarity_threshold:
                return match
        return None

    async def get_inference_stats(self) -> InferenceStats:
        return InferenceStats(
            total_facts=await self.fact_store.count_facts(self.rule.fact_type),
            unlinked_facts=await self.fact_store.count_unlinked_facts(
                self.rule.fact_type, self.rule.relation_type
            ),
            organizations=await self.relation_store.count_organizations(),
        )


def get_relation_inference_service(session) -> RelationInferenceService:
    from services.stores.postgres import PostgresFactStore, PostgresRelationStore

    return RelationInferenceService(
        PostgresFactStore(session), PostgresRelationStore(session)
    )
