"""Context enrichment for abstract events.

An abstract event is one the extractor could not pin down, e.g. "I'll start
on it tomorrow" with no task named. Enrichment looks for what it refers to:

1. Keywords from the event's structured fields and source quote
2. In parallel: keyword search over recent message history, and other
   recent events extracted for the same entity
3. Nothing found => needs_context, without calling the LLM
4. Otherwise the arbiter synthesizes the context and may link the event to
   one of the candidate events

Enrichment is best effort. Any failure yields a successful result flagged
needs_context with the failure reason recorded, never an exception.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Optional

from config import get_settings
from models.errors import ErrorType
from models.resolution import (
    AbstractEvent,
    EnrichmentData,
    EnrichmentResult,
    MessageSnippet,
    StoredEvent,
    SynthesisResult,
)
from services.arbiter import LlmArbiter, get_arbiter
from services.stores.base import BaseEventStore, BaseMessageSearch
from utils.logging import get_logger
from utils.normalization import extract_keywords

logger = get_logger(__name__)

NO_CONTEXT_REASON = "No context found in history"


class ContextEnrichmentService:
    def __init__(
        self,
        message_search: BaseMessageSearch,
        event_store: BaseEventStore,
        arbiter: LlmArbiter,
    ):
        settings = get_settings()
        self.message_search = message_search
        self.event_store = event_store
        self.arbiter = arbiter
        self.window = timedelta(days=settings.enrichment_window_days)
        self.max_keywords = settings.enrichment_max_keywords
        self.min_keyword_length = settings.enrichment_min_keyword_length
        self.max_messages = settings.enrichment_max_messages
        self.max_candidate_events = settings.enrichment_max_candidate_events
        self.needs_context_threshold = settings.enrichment_needs_context_threshold

    def extract_keywords(self, event: AbstractEvent) -> list[str]:
        data = event.extracted_data
        texts = [data.get("what"), data.get("topic"), event.source_quote]
        return extract_keywords(
            (text for text in texts if isinstance(text, str)),
            max_keywords=self.max_keywords,
            min_length=self.min_keyword_length,
        )

    async def _find_candidate_events(
        self, event: AbstractEvent, since: datetime
    ) -> list[StoredEvent]:
        if not event.entity_id:
            return []
        return await self.event_store.find_candidate_events(
            event.entity_id, since, event.id, self.max_candidate_events
        )

    async def _load_source_context(
        self, event: AbstractEvent
    ) -> tuple[Optional[str], Optional[str]]:
        """Reply context and topic name of the source message, if available."""
        if not event.source_message_id:
            return None, None
        try:
            reply_context, topic_name = await asyncio.gather(
                self.message_search.load_reply_context(event.source_message_id),
                self.message_search.load_topic_name(event.source_message_id),
            )
        except Exception as e:
            logger.warning(
                f"Could not load source context for event {event.id}: {e}"
            )
            return None, None
        return reply_context, topic_name

    async def enrich_event(self, event: AbstractEvent) -> EnrichmentResult:
        keywords = self.extract_keywords(event)
        since = datetime.now(UTC) - self.window
        messages: list[MessageSnippet] = []
        candidates: list[StoredEvent] = []

        try:
            messages, candidates = await asyncio.gather(
                self.message_search.search_messages(
                    keywords, event.entity_id, since, self.max_messages
                ),
                self._find_candidate_events(event, since),
            )

            if not messages and not candidates:
                logger.info(
                    f"No context found for event {event.id}",
                    extra={"event_id": event.id, "keywords": keywords},
                )
                return EnrichmentResult(
                    success=True,
                    needs_context=True,
                    enrichment_data=EnrichmentData(
                        keywords=keywords,
                        enrichment_success=True,
                        enrichment_failure_reason=NO_CONTEXT_REASON,
                    ),
                )

            reply_context, topic_name = await self._load_source_context(event)
            synthesis = await self.arbiter.synthesize_context(
                event,
                messages,
                candidates,
                reply_context=reply_context,
                topic_name=topic_name,
            )
            synthesis = self._validate_link(event, synthesis, candidates)

        except Exception as e:
            logger.error(
                f"Enrichment failed for event {event.id}: {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.ENRICHMENT_FAILURE, "event_id": event.id},
            )
            return EnrichmentResult(
                success=True,
                needs_context=True,
                enrichment_data=EnrichmentData(
                    keywords=keywords,
                    related_message_ids=[m.id for m in messages],
                    candidate_event_ids=[c.id for c in candidates],
                    enrichment_success=False,
                    enrichment_failure_reason=str(e) or type(e).__name__,
                ),
            )

        needs_context = (
            not synthesis.context_found
            and synthesis.confidence < self.needs_context_threshold
        )
        logger.info(
            f"Enriched event {event.id}",
            extra={
                "event_id": event.id,
                "linked_event_id": synthesis.linked_event_id,
                "needs_context": needs_context,
                "confidence": synthesis.confidence,
            },
        )
        return EnrichmentResult(
            success=True,
            linked_event_id=synthesis.linked_event_id,
            needs_context=needs_context,
            enrichment_data=EnrichmentData(
                keywords=keywords,
                related_message_ids=[m.id for m in messages],
                candidate_event_ids=[c.id for c in candidates],
                synthesis=synthesis.synthesis or None,
                enrichment_success=True,
            ),
        )

    def _validate_link(
        self,
        event: AbstractEvent,
        synthesis: SynthesisResult,
        candidates: list[StoredEvent],
    ) -> SynthesisResult:
        """Drop a linked_event_id that was not among the candidates shown."""
        linked = synthesis.linked_event_id
        if linked is None or linked in {c.id for c in candidates}:
            return synthesis

        logger.warning(
            f"Arbiter linked event {event.id} to unknown event {linked!r}, discarding",
            extra={"error_type": ErrorType.HALLUCINATED_ID, "event_id": event.id},
        )
        return synthesis.model_copy(
            update={"linked_event_id": None, "context_found": False, "confidence": 0.0}
        )

    async def apply_enrichment_result(
        self, event_id: str, result: EnrichmentResult
    ) -> None:
        """Write a result onto the event; re-applying overwrites earlier data."""
        await self.event_store.apply_enrichment(
            event_id,
            result.linked_event_id,
            result.needs_context,
            result.enrichment_data.model_dump(mode="json", by_alias=True),
        )


def get_context_enrichment_service(session) -> ContextEnrichmentService:
    """Create an enrichment service over Postgres-backed stores for one session."""
    from services.stores.postgres import PostgresEventStore, PostgresMessageSearch

    return ContextEnrichmentService(
        message_search=PostgresMessageSearch(session),
        event_store=PostgresEventStore(session),
        arbiter=get_arbiter(),
    )
