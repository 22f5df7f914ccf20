"""PostgreSQL (pgvector) implementations of the storage ports.

Raw SQL through SQLAlchemy text(); vectors are bound as pgvector literals
and cast with CAST(:embedding AS vector).
"""

import json
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from db.postgres import with_retry
from models.errors import StoreError
from models.resolution import (
    CandidateSource,
    MatchCandidate,
    MessageSnippet,
    OrganizationMatch,
    PairItem,
    RelationPayload,
    RelationType,
    SearchScope,
    SimilarPair,
    StoredEvent,
    StoredFact,
)
from services.stores.base import (
    BaseCandidateStore,
    BaseEventStore,
    BaseFactStore,
    BaseMessageSearch,
    BaseRelationStore,
)
from utils.logging import get_logger
from utils.normalization import QUOTE_CHARS, normalize_name, normalize_task_name
from utils.vectors import distance_to_similarity, format_embedding

logger = get_logger(__name__)

# Rows pulled for the in-Python exact comparison
EXACT_PREFILTER_LIMIT = 50

# SQL approximation of normalize_name(): lowercase, quotes to spaces, collapse whitespace
_SQL_COMPARABLE_NAME = (
    "regexp_replace(translate(lower({col}), :quote_chars, :quote_spaces), "
    "'\\s+', ' ', 'g')"
)
_QUOTE_PARAMS = {"quote_chars": QUOTE_CHARS, "quote_spaces": " " * len(QUOTE_CHARS)}


def _exact_prefilter_order(comparable: str, created_col: str) -> str:
    """Rows already equal to the normalized name first, then the shortest.

    Legal forms and budget suffixes only lengthen a name, so the shortest
    substring hits are the likeliest to normalize to the searched name.
    """
    return (
        f"CASE WHEN {comparable} = :normalized THEN 0 ELSE 1 END, "
        f"length({comparable}) ASC, {created_col} ASC"
    )


ENRICHABLE_EVENT_STATUSES = ("pending", "confirmed", "auto_processed")


def escape_like(value: str) -> str:
    """Escape LIKE metacharacters so user text matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresAdapter:
    """Shared execution helper: retries transient errors, wraps the rest in StoreError."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._settings = get_settings()

    async def _execute(self, sql: str, params: dict[str, Any], operation: str):
        try:
            return await with_retry(
                self.session.execute,
                text(sql),
                params,
                max_retries=self._settings.postgres_max_retries,
                base_delay=self._settings.postgres_retry_delay,
                operation_name=operation,
            )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(operation, e) from e

    async def _fetch_all(
        self, sql: str, params: dict[str, Any], operation: str
    ) -> Sequence[Any]:
        result = await self._execute(sql, params, operation)
        return result.mappings().all()

    async def _fetch_scalar(self, sql: str, params: dict[str, Any], operation: str):
        result = await self._execute(sql, params, operation)
        return result.scalar_one()


# ============================================================================
# Candidate stores
# ============================================================================


class PostgresTaskStore(PostgresAdapter, BaseCandidateStore):
    """Open tasks (activities of type 'task') owned by one entity."""

    _SCOPE_SQL = (
        "a.owner_entity_id = :owner_id "
        "AND a.activity_type = 'task' "
        "AND a.status <> 'cancelled' "
        "AND a.deleted_at IS NULL"
    )

    def normalize(self, name: str) -> str:
        return normalize_task_name(name)

    @staticmethod
    def _owner(scope: SearchScope) -> str:
        if not scope.owner_entity_id:
            raise StoreError("task lookup without owner scope")
        return scope.owner_entity_id

    async def find_exact(
        self, normalized_name: str, scope: SearchScope
    ) -> Optional[MatchCandidate]:
        comparable = _SQL_COMPARABLE_NAME.format(col="a.name")
        rows = await self._fetch_all(
            f"""
            SELECT a.id, a.name, a.description
            FROM activities a
            WHERE {self._SCOPE_SQL}
              AND {comparable} LIKE :pattern ESCAPE '\\'
            ORDER BY {_exact_prefilter_order(comparable, "a.created_at")}
            LIMIT :limit
            """,
            {
                "owner_id": self._owner(scope),
                "normalized": normalized_name,
                "pattern": f"%{escape_like(normalized_name)}%",
                "limit": EXACT_PREFILTER_LIMIT,
                **_QUOTE_PARAMS,
            },
            "task exact lookup",
        )
        for row in rows:
            if self.normalize(row["name"]) == normalized_name:
                return MatchCandidate(
                    id=str(row["id"]),
                    name=row["name"],
                    description=row["description"],
                    similarity=1.0,
                    source=CandidateSource.EXACT,
                )
        return None

    async def find_fuzzy(
        self, name: str, scope: SearchScope, limit: int
    ) -> list[MatchCandidate]:
        rows = await self._fetch_all(
            f"""
            SELECT a.id, a.name, a.description
            FROM activities a
            WHERE {self._SCOPE_SQL}
              AND lower(a.name) LIKE :pattern ESCAPE '\\'
              AND lower(a.name) <> :exact
            ORDER BY a.created_at DESC
            LIMIT :limit
            """,
            {
                "owner_id": self._owner(scope),
                "pattern": f"%{escape_like(name.lower())}%",
                "exact": name.lower(),
                "limit": limit,
            },
            "task fuzzy lookup",
        )
        return [
            MatchCandidate(
                id=str(row["id"]),
                name=row["name"],
                description=row["description"],
                similarity=1.0,
                source=CandidateSource.FUZZY,
            )
            for row in rows
        ]

    async def find_semantic(
        self,
        vector: list[float],
        scope: SearchScope,
        limit: int,
        min_similarity: float,
    ) -> list[MatchCandidate]:
        rows = await self._fetch_all(
            f"""
            SELECT a.id, a.name, a.description,
                   a.embedding <=> CAST(:embedding AS vector) AS distance
            FROM activities a
            WHERE {self._SCOPE_SQL}
              AND a.embedding IS NOT NULL
              AND 1 - (a.embedding <=> CAST(:embedding AS vector)) >= :min_similarity
            ORDER BY distance ASC
            LIMIT :limit
            """,
            {
                "owner_id": self._owner(scope),
                "embedding": format_embedding(vector),
                "min_similarity": min_similarity,
                "limit": limit,
            },
            "task semantic lookup",
        )
        return [
            MatchCandidate(
                id=str(row["id"]),
                name=row["name"],
                description=row["description"],
                similarity=distance_to_similarity(row["distance"]),
                source=CandidateSource.SEMANTIC,
            )
            for row in rows
        ]

    async def find_similar_pairs(
        self, min_similarity: float, limit: int
    ) -> list[SimilarPair]:
        rows = await self._fetch_all(
            """
            SELECT a.id AS id_a, a.name AS name_a, a.description AS description_a,
                   b.id AS id_b, b.name AS name_b, b.description AS description_b,
                   1 - (a.embedding <=> b.embedding) AS similarity
            FROM activities a
            JOIN activities b
              ON a.id < b.id
             AND a.owner_entity_id = b.owner_entity_id
             AND b.activity_type = a.activity_type
            WHERE a.embedding IS NOT NULL AND b.embedding IS NOT NULL
              AND a.deleted_at IS NULL AND b.deleted_at IS NULL
              AND a.status <> 'cancelled' AND b.status <> 'cancelled'
              AND 1 - (a.embedding <=> b.embedding) >= :min_similarity
            ORDER BY similarity DESC
            LIMIT :limit
            """,
            {"min_similarity": min_similarity, "limit": limit},
            "similar task pairs",
        )
        return [
            SimilarPair(
                first=PairItem(
                    id=str(row["id_a"]),
                    name=row["name_a"],
                    description=row["description_a"],
                ),
                second=PairItem(
                    id=str(row["id_b"]),
                    name=row["name_b"],
                    description=row["description_b"],
                ),
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]


class PostgresEntityStore(PostgresAdapter, BaseCandidateStore):
    """People and organizations. Entities carry no embeddings."""

    @property
    def supports_semantic(self) -> bool:
        return False

    def normalize(self, name: str) -> str:
        return normalize_name(name)

    @staticmethod
    def _entity_type(scope: SearchScope) -> str:
        if not scope.entity_type:
            raise StoreError("entity lookup without type scope")
        return scope.entity_type

    async def find_exact(
        self, normalized_name: str, scope: SearchScope
    ) -> Optional[MatchCandidate]:
        comparable = _SQL_COMPARABLE_NAME.format(col="e.name")
        rows = await self._fetch_all(
            f"""
            SELECT e.id, e.name, e.notes AS description
            FROM entities e
            WHERE e.type = :entity_type
              AND e.deleted_at IS NULL
              AND {comparable} LIKE :pattern ESCAPE '\\'
            ORDER BY {_exact_prefilter_order(comparable, "e.created_at")}
            LIMIT :limit
            """,
            {
                "entity_type": self._entity_type(scope),
                "normalized": normalized_name,
                "pattern": f"%{escape_like(normalized_name)}%",
                "limit": EXACT_PREFILTER_LIMIT,
                **_QUOTE_PARAMS,
            },
            "entity exact lookup",
        )
        for row in rows:
            if self.normalize(row["name"]) == normalized_name:
                return MatchCandidate(
                    id=str(row["id"]),
                    name=row["name"],
                    description=row["description"],
                    similarity=1.0,
                    source=CandidateSource.EXACT,
                )
        return None

    async def find_fuzzy(
        self, name: str, scope: SearchScope, limit: int
    ) -> list[MatchCandidate]:
        rows = await self._fetch_all(
            """
            SELECT e.id, e.name, e.notes AS description
            FROM entities e
            WHERE e.type = :entity_type
              AND e.deleted_at IS NULL
              AND lower(e.name) LIKE :pattern ESCAPE '\\'
              AND lower(e.name) <> :exact
            LIMIT :limit
            """,
            {
                "entity_type": self._entity_type(scope),
                "pattern": f"%{escape_like(name.lower())}%",
                "exact": name.lower(),
                "limit": limit,
            },
            "entity fuzzy lookup",
        )
        return [
            MatchCandidate(
                id=str(row["id"]),
                name=row["name"],
                description=row["description"],
                similarity=1.0,
                source=CandidateSource.FUZZY,
            )
            for row in rows
        ]

    async def find_semantic(
        self,
        vector: list[float],
        scope: SearchScope,
        limit: int,
        min_similarity: float,
    ) -> list[MatchCandidate]:
        return []


# ============================================================================
# Context enrichment
# ============================================================================


class PostgresMessageSearch(PostgresAdapter, BaseMessageSearch):
    """Full-text search over message history ('simple' dictionary, OR of keywords)."""

    async def search_messages(
        self,
        keywords: list[str],
        entity_id: Optional[str],
        since: datetime,
        limit: int,
    ) -> list[MessageSnippet]:
        if not keywords:
            return []

        entity_filter = "AND m.sender_entity_id = :entity_id" if entity_id else ""
        rows = await self._fetch_all(
            f"""
            SELECT m.id, m.content, m.timestamp, m.sender_entity_id,
                   ts_rank(to_tsvector('simple', m.content), q.query) AS rank
            FROM messages m,
                 to_tsquery('simple', :query) AS q(query)
            WHERE m.content IS NOT NULL
              AND m.timestamp >= :since
              AND to_tsvector('simple', m.content) @@ q.query
              {entity_filter}
            ORDER BY rank DESC, m.timestamp DESC
            LIMIT :limit
            """,
            {
                # keywords come out of tokenize(): word characters only
                "query": " | ".join(keywords),
                "since": since,
                "entity_id": entity_id,
                "limit": limit,
            },
            "message keyword search",
        )
        max_len = self._settings.enrichment_max_content_length
        return [
            MessageSnippet(
                id=str(row["id"]),
                content=row["content"][:max_len],
                timestamp=row["timestamp"],
                entity_id=str(row["sender_entity_id"]) if row["sender_entity_id"] else None,
            )
            for row in rows
        ]

    async def load_reply_context(self, source_message_id: str) -> Optional[str]:
        rows = await self._fetch_all(
            """
            SELECT parent.content
            FROM messages m
            JOIN messages parent ON parent.id = m.reply_to_message_id
            WHERE m.id = :message_id
            """,
            {"message_id": source_message_id},
            "reply context lookup",
        )
        if not rows or not rows[0]["content"]:
            return None
        return rows[0]["content"]

    async def load_topic_name(self, source_message_id: str) -> Optional[str]:
        rows = await self._fetch_all(
            "SELECT m.topic_name FROM messages m WHERE m.id = :message_id",
            {"message_id": source_message_id},
            "topic name lookup",
        )
        if not rows:
            return None
        return rows[0]["topic_name"]


class PostgresEventStore(PostgresAdapter, BaseEventStore):
    async def find_candidate_events(
        self,
        entity_id: str,
        since: datetime,
        exclude_event_id: str,
        limit: int,
    ) -> list[StoredEvent]:
        rows = await self._fetch_all(
            """
            SELECT ev.id, ev.event_type, ev.extracted_data, ev.source_quote,
                   ev.status, ev.created_at
            FROM extracted_events ev
            WHERE ev.entity_id = :entity_id
              AND ev.created_at >= :since
              AND ev.status = ANY(:statuses)
              AND ev.id <> :exclude_id
            ORDER BY ev.created_at DESC
            LIMIT :limit
            """,
            {
                "entity_id": entity_id,
                "since": since,
                "statuses": list(ENRICHABLE_EVENT_STATUSES),
                "exclude_id": exclude_event_id,
                "limit": limit,
            },
            "candidate event lookup",
        )
        return [
            StoredEvent(
                id=str(row["id"]),
                event_type=row["event_type"],
                extracted_data=row["extracted_data"] or {},
                source_quote=row["source_quote"],
                status=row["status"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def apply_enrichment(
        self,
        event_id: str,
        linked_event_id: Optional[str],
        needs_context: bool,
        enrichment_data: dict[str, Any],
    ) -> None:
        await self._execute(
            """
            UPDATE extracted_events
            SET linked_event_id = :linked_event_id,
                needs_context = :needs_context,
                enrichment_data = CAST(:enrichment_data AS jsonb),
                updated_at = NOW()
            WHERE id = :event_id
            """,
            {
                "event_id": event_id,
                "linked_event_id": linked_event_id,
                "needs_context": needs_context,
                "enrichment_data": json.dumps(enrichment_data, default=str),
            },
            "apply enrichment",
        )


# ============================================================================
# Relation inference
# ============================================================================


class PostgresFactStore(PostgresAdapter, BaseFactStore):
    _UNLINKED_SQL = """
        f.fact_type = :fact_type
        AND f.valid_until IS NULL
        AND f.deleted_at IS NULL
        AND NOT EXISTS (
            SELECT 1 FROM entity_relation_members m
            JOIN entity_relations r ON r.id = m.relation_id
            WHERE m.entity_id = f.entity_id
              AND r.relation_type = :relation_type
              AND m.valid_until IS NULL
        )
    """

    async def find_unlinked_facts(
        self,
        fact_type: str,
        relation_type: RelationType,
        since: Optional[datetime],
        limit: Optional[int],
    ) -> list[StoredFact]:
        since_filter = "AND f.created_at >= :since" if since else ""
        limit_clause = "LIMIT :limit" if limit else ""
        rows = await self._fetch_all(
            f"""
            SELECT f.id, f.entity_id, f.fact_type, f.value, f.confidence, f.created_at
            FROM entity_facts f
            WHERE {self._UNLINKED_SQL}
              {since_filter}
            ORDER BY f.created_at ASC
            {limit_clause}
            """,
            {
                "fact_type": fact_type,
                "relation_type": relation_type.value,
                "since": since,
                "limit": limit,
            },
            "unlinked fact scan",
        )
        return [
            StoredFact(
                id=str(row["id"]),
                entity_id=str(row["entity_id"]),
                fact_type=row["fact_type"],
                value=row["value"],
                confidence=float(row["confidence"]) if row["confidence"] is not None else None,
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def count_facts(self, fact_type: str) -> int:
        return int(
            await self._fetch_scalar(
                """
                SELECT COUNT(*) FROM entity_facts f
                WHERE f.fact_type = :fact_type
                  AND f.valid_until IS NULL
                  AND f.deleted_at IS NULL
                """,
                {"fact_type": fact_type},
                "fact count",
            )
        )

    async def count_unlinked_facts(
        self, fact_type: str, relation_type: RelationType
    ) -> int:
        return int(
            await self._fetch_scalar(
                f"SELECT COUNT(*) FROM entity_facts f WHERE {self._UNLINKED_SQL}",
                {"fact_type": fact_type, "relation_type": relation_type.value},
                "unlinked fact count",
            )
        )


class PostgresRelationStore(PostgresAdapter, BaseRelationStore):
    async def search_organizations(
        self, query: str, limit: int
    ) -> list[OrganizationMatch]:
        rows = await self._fetch_all(
            """
            SELECT e.id, e.name
            FROM entities e
            WHERE e.type = 'organization'
              AND e.deleted_at IS NULL
              AND e.name ILIKE :pattern ESCAPE '\\'
            ORDER BY length(e.name) ASC
            LIMIT :limit
            """,
            {"pattern": f"%{escape_like(query)}%", "limit": limit},
            "organization search",
        )
        return [OrganizationMatch(id=str(row["id"]), name=row["name"]) for row in rows]

    async def count_organizations(self) -> int:
        return int(
            await self._fetch_scalar(
                "SELECT COUNT(*) FROM entities e "
                "WHERE e.type = 'organization' AND e.deleted_at IS NULL",
                {},
                "organization count",
            )
        )

    async def relation_exists(
        self, entity_id_a: str, entity_id_b: str, relation_type: RelationType
    ) -> bool:
        rows = await self._fetch_all(
            """
            SELECT 1
            FROM entity_relations r
            JOIN entity_relation_members ma
              ON ma.relation_id = r.id AND ma.entity_id = :a AND ma.valid_until IS NULL
            JOIN entity_relation_members mb
              ON mb.relation_id = r.id AND mb.entity_id = :b AND mb.valid_until IS NULL
            WHERE r.relation_type = :relation_type
            LIMIT 1
            """,
            {"a": entity_id_a, "b": entity_id_b, "relation_type": relation_type.value},
            "relation existence check",
        )
        return bool(rows)

    async def create_relation(self, payload: RelationPayload) -> str:
        relation_id = str(uuid4())
        await self._execute(
            """
            INSERT INTO entity_relations
                (id, relation_type, metadata, source, confidence, created_at, updated_at)
            VALUES
                (:id, :relation_type, CAST(:metadata AS jsonb), :source, :confidence,
                 NOW(), NOW())
            """,
            {
                "id": relation_id,
                "relation_type": payload.relation_type.value,
                "metadata": json.dumps(payload.metadata, default=str),
                "source": payload.source.value,
                "confidence": payload.confidence,
            },
            "relation insert",
        )
        for member in payload.members:
            await self._execute(
                """
                INSERT INTO entity_relation_members (relation_id, entity_id, role)
                VALUES (:relation_id, :entity_id, :role)
                """,
                {
                    "relation_id": relation_id,
                    "entity_id": member.entity_id,
                    "role": member.role,
                },
                "relation member insert",
            )
        return relation_id
