"""LLM arbiter: duplicate judgments and abstract-event context synthesis.

The arbiter is a typed port over the LLM client. Duplicate judgments never
raise; an unavailable, slow or incoherent model yields "not duplicate"
with zero confidence so the policy falls back to CREATE. Context synthesis
raises ArbiterError instead and leaves the fallback to the enrichment
service, which records the failure reason on the event.
"""

import asyncio
import json
from typing import Optional

from pydantic import ValidationError

from config import get_settings
from models.errors import ArbiterError, ArbiterResponseError, ErrorType
from models.resolution import (
    AbstractEvent,
    ArbitrationResult,
    DedupPair,
    MessageSnippet,
    StoredEvent,
    SynthesisResult,
)
from services.llm import LLMClient, get_llm_client
from utils.json_extraction import extract_json_object
from utils.logging import get_logger

logger = get_logger(__name__)

DEDUP_SYSTEM_PROMPT = (
    "You deduplicate records in a personal knowledge base. "
    "Answer with JSON only."
)

SYNTHESIS_SYSTEM_PROMPT = (
    "You link vague statements from chat messages to the concrete tasks, "
    "meetings and promises they refer to. Answer with JSON only."
)


def _describe_item(label: str, name: str, description: str | None) -> str:
    line = f"{label}: \"{name}\""
    if description:
        line += f"\n  description: {description}"
    return line


def build_dedup_prompt(pairs: list[DedupPair]) -> str:
    blocks = []
    for index, pair in enumerate(pairs):
        block = [
            f"### Pair {index}",
            _describe_item("NEW", pair.new_item.name, pair.new_item.description),
            _describe_item(
                f"EXISTING (id={pair.existing_item.id})",
                pair.existing_item.name,
                pair.existing_item.description,
            ),
        ]
        if pair.activity_context:
            block.append(f"Context: {pair.activity_context}")
        blocks.append("\n".join(block))

    pairs_text = "\n\n".join(blocks)
    return f"""Decide for each pair whether NEW describes the same real-world thing as EXISTING.

Treat wording differences, abbreviations, transliteration and word order as the same thing.
Different deliverables, different people or different organizations are NOT duplicates.

{pairs_text}

Return a JSON object:
{{
  "decisions": [
    {{
      "pairIndex": 0,
      "isDuplicate": true | false,
      "confidence": 0.0-1.0,
      "mergeIntoId": "id of EXISTING when isDuplicate, otherwise null",
      "reason": "one short sentence"
    }}
  ]
}}

Return exactly one decision per pair. Return ONLY valid JSON."""


def build_synthesis_prompt(
    event: AbstractEvent,
    messages: list[MessageSnippet],
    candidate_events: list[StoredEvent],
    reply_context: Optional[str] = None,
    topic_name: Optional[str] = None,
    max_content_length: int = 1000,
) -> str:
    data = event.extracted_data
    description = data.get("what") or data.get("topic") or event.source_quote or "unknown"

    sections = [
        "## Vague event",
        f"type: {event.event_type}",
        f"what: {description}",
    ]
    if event.source_quote:
        sections.append(f"quote: \"{event.source_quote[:max_content_length]}\"")
    if topic_name:
        sections.append(f"chat topic: {topic_name}")
    if reply_context:
        sections += ["", "## Message it replied to", reply_context[:max_content_length]]

    if messages:
        sections += ["", "## Related messages"]
        for message in messages:
            stamp = message.timestamp.isoformat() if message.timestamp else "unknown time"
            sections.append(
                f"- [{message.id}] ({stamp}) {message.content[:max_content_length]}"
            )

    if candidate_events:
        sections += ["", "## Earlier events with the same person"]
        for candidate in candidate_events:
            sections.append(
                f"- [id={candidate.id}] {candidate.event_type}: "
                f"{json.dumps(candidate.extracted_data, ensure_ascii=False, default=str)}"
            )

    context_text = "\n".join(sections)
    return f"""{context_text}

What concrete thing does the vague event refer to? If it continues one of the
earlier events, link it by that event's id.

Return a JSON object:
{{
  "contextFound": true | false,
  "linkedEventId": "id from the earlier events list, or null",
  "synthesis": "one or two sentences describing the concrete context",
  "confidence": 0.0-1.0
}}

Return ONLY valid JSON."""


class LlmArbiter:
    """Probabilistic final judge behind the deterministic retrieval stages."""

    def __init__(self, llm: LLMClient | None = None):
        settings = get_settings()
        self.llm = llm
        self.temperature = settings.arbiter_temperature
        self.max_tokens = settings.arbiter_max_tokens
        self.decision_timeout = settings.arbiter_timeout_seconds
        self.synthesis_timeout = settings.synthesis_timeout_seconds
        self.max_content_length = settings.enrichment_max_content_length

    async def decide_duplicate(self, pair: DedupPair) -> ArbitrationResult:
        """Judge a single new-vs-existing pair."""
        results = await self.decide_batch([pair])
        return results[0]

    async def decide_batch(self, pairs: list[DedupPair]) -> list[ArbitrationResult]:
        """Judge several pairs in one LLM call; one result per pair, in order."""
        if not pairs:
            return []

        if self.llm is None:
            return [ArbitrationResult.not_duplicate("LLM dedup unavailable") for _ in pairs]

        prompt = build_dedup_prompt(pairs)
        try:
            response = await asyncio.wait_for(
                self.llm.generate(
                    prompt,
                    system_prompt=DEDUP_SYSTEM_PROMPT,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    operation="dedup",
                ),
                timeout=self.decision_timeout,
            )
            return self._parse_decisions(response, pairs)
        except asyncio.TimeoutError:
            logger.error(
                f"LLM dedup timed out after {self.decision_timeout}s for {len(pairs)} pair(s)",
                extra={"error_type": ErrorType.ARBITER_FAILURE},
            )
            reason = "LLM dedup failed: timed out"
        except ArbiterResponseError as e:
            logger.error(
                f"Failed to parse LLM dedup response: {e}",
                extra={"error_type": ErrorType.ARBITER_MALFORMED},
            )
            reason = "LLM dedup failed: malformed response"
        except Exception as e:
            logger.error(
                f"LLM dedup call failed: {type(e).__name__}: {e}",
                extra={"error_type": ErrorType.ARBITER_FAILURE},
            )
            reason = f"LLM dedup failed: {e}"

        return [ArbitrationResult.not_duplicate(reason) for _ in pairs]

    def _parse_decisions(
        self, response: str, pairs: list[DedupPair]
    ) -> list[ArbitrationResult]:
        data = extract_json_object(response, context="dedup_batch")
        if data is None or not isinstance(data.get("decisions"), list):
            raise ArbiterResponseError("dedup_batch", response)

        by_index: dict[int, dict] = {}
        for raw in data["decisions"]:
            if not isinstance(raw, dict):
                continue
            try:
                index = int(raw.get("pairIndex", raw.get("pair_index")))
            except (TypeError, ValueError):
                continue
            by_index.setdefault(index, raw)

        results = []
        for index in range(len(pairs)):
            raw = by_index.get(index)
            if raw is None:
                logger.warning(f"LLM dedup returned no decision for pair {index}")
                results.append(
                    ArbitrationResult.not_duplicate("No decision returned for this pair")
                )
                continue
            try:
                result = ArbitrationResult.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Invalid LLM dedup decision for pair {index}: {e}")
                results.append(
                    ArbitrationResult.not_duplicate("Invalid decision returned for this pair")
                )
                continue

            results.append(result)
        return results

    async def synthesize_context(
        self,
        event: AbstractEvent,
        messages: list[MessageSnippet],
        candidate_events: list[StoredEvent],
        reply_context: Optional[str] = None,
        topic_name: Optional[str] = None,
    ) -> SynthesisResult:
        """Ask the LLM what a vague event refers to.

        Raises:
            ArbiterError: On timeout, provider failure or a malformed reply
        """
        if self.llm is None:
            raise ArbiterError("LLM synthesis unavailable")

        prompt = build_synthesis_prompt(
            event,
            messages,
            candidate_events,
            reply_context=reply_context,
            topic_name=topic_name,
            max_content_length=self.max_content_length,
        )
        try:
            response = await asyncio.wait_for(
                self.llm.generate(
                    prompt,
                    system_prompt=SYNTHESIS_SYSTEM_PROMPT,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    operation="context_synthesis",
                ),
                timeout=self.synthesis_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ArbiterError(
                f"context synthesis timed out after {self.synthesis_timeout}s"
            ) from e
        except Exception as e:
            raise ArbiterError(f"context synthesis failed: {e}") from e

        data = extract_json_object(response, context="context_synthesis")
        if data is None:
            raise ArbiterResponseError("context_synthesis", response)
        try:
            return SynthesisResult.model_validate(data)
        except ValidationError as e:
            raise ArbiterResponseError("context_synthesis", response) from e


_arbiter: LlmArbiter | None = None


def get_arbiter() -> LlmArbiter:
    """Get the arbiter singleton (stateless apart from the shared LLM client)."""
    global _arbiter
    if _arbiter is None:
        _arbiter = LlmArbiter(get_llm_client())
    return _arbiter
