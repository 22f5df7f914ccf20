"""Query embeddings for semantic candidate retrieval.

Semantic search is optional. Resolution code never calls a provider
directly: it asks ``get_embedding_capability()`` once per run and receives
either ``EmbeddingAvailable`` (wrapping the service) or
``EmbeddingUnavailable`` (with a reason), and branches on the variant.

The service itself:
- SEC-007: keys reach the provider through SecretStr.get_secret_value()
- ML-P1-2: vectors cached in Redis for 30 days (silently off without Redis)
- SD-006: a shared circuit breaker fails fast while NIM is down
- a hard ``EMBEDDING_TIMEOUT_SECONDS`` bound per call
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import Union

import redis.asyncio as redis
from openai import APIConnectionError, APIStatusError, APITimeoutError

from config import get_settings
from services.llm_providers import BaseEmbeddingProvider, get_embedding_provider
from utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_circuit_breaker
from utils.logging import get_logger

logger = get_logger(__name__)

# Failures that say "the API is down"; bad input (ValueError) does not count
BREAKER_TRIPPING_EXCEPTIONS = (
    APIConnectionError,
    APITimeoutError,
    APIStatusError,
    ConnectionError,
    TimeoutError,
    OSError,
)


class EmbeddingCache:
    """Redis cache of vectors keyed by ``emb:<model>:<input_type>:<md5(text)>``.

    Connects lazily on first use. Without ``REDIS_URL``, or if the first
    ping fails, the cache stays disabled for the process lifetime. Read and
    write errors are logged and treated as misses.
    """

    def __init__(self, model_name: str, client: redis.Redis | None = None):
        settings = get_settings()
        self.model_short = model_name.rsplit("/", 1)[-1]
        self.url = settings.redis_url
        self.ttl = settings.embedding_cache_ttl
        self.min_text_length = settings.embedding_cache_min_text_length
        self._client = client
        self._connected = client is not None

    def key(self, text: str, input_type: str) -> str:
        digest = hashlib.md5(text.encode("utf-8")).hexdigest()
        return f"emb:{self.model_short}:{input_type}:{digest}"

    def accepts(self, text: str) -> bool:
        return len(text) >= self.min_text_length

    async def _connection(self) -> redis.Redis | None:
        if self._connected:
            return self._client
        self._connected = True
        if not self.url:
            return None
        try:
            self._client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
            await self._client.ping()
        except Exception as e:
            logger.warning(f"Redis unavailable, embedding cache disabled: {e}")
            self._client = None
        return self._client

    async def get(self, text: str, input_type: str) -> list[float] | None:
        client = await self._connection()
        if client is None:
            return None
        try:
            cached = await client.get(self.key(text, input_type))
        except Exception as e:
            logger.warning(f"Embedding cache read failed: {e}")
            return None
        return json.loads(cached) if cached else None

    async def put(self, text: str, input_type: str, vector: list[float]) -> None:
        client = await self._connection()
        if client is None:
            return
        try:
            await client.setex(self.key(text, input_type), self.ttl, json.dumps(vector))
        except Exception as e:
            logger.warning(f"Embedding cache write failed: {e}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()


class EmbeddingService:
    def __init__(
        self,
        provider: BaseEmbeddingProvider,
        redis_client: redis.Redis | None = None,
    ):
        settings = get_settings()
        self.provider = provider
        self.cache = EmbeddingCache(provider.model_name, client=redis_client)
        self._timeout = settings.embedding_timeout_seconds
        self._breaker = get_circuit_breaker(
            name="nvidia_embedding",
            failure_threshold=settings.embedding_breaker_failure_threshold,
            recovery_timeout=settings.embedding_breaker_recovery_timeout,
            success_threshold=2,
            exceptions=BREAKER_TRIPPING_EXCEPTIONS,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    async def embed_text(self, text: str, input_type: str = "query") -> list[float]:
        """Embed one text.

        Raises:
            CircuitBreakerOpen: While the embedding API is considered down
            asyncio.TimeoutError: If the provider exceeds the timeout
            ValueError: If the provider returned no vector
            Exception: Any provider error (RateLimitError included)
        """
        use_cache = self.cache.accepts(text)
        if use_cache:
            cached = await self.cache.get(text, input_type)
            if cached is not None:
                return cached

        try:
            async with self._breaker:
                vectors = await asyncio.wait_for(
                    self.provider.embed([text], input_type=input_type),
                    timeout=self._timeout,
                )
        except CircuitBreakerOpen:
            logger.debug("Embedding call short-circuited", extra=self._breaker.snapshot())
            raise

        if not vectors or not vectors[0]:
            raise ValueError(f"{self.provider.model_name} returned an empty vector")
        vector = vectors[0]

        if use_cache:
            await self.cache.put(text, input_type, vector)
        return vector

    async def close(self):
        await self.cache.close()


@dataclass(frozen=True)
class EmbeddingAvailable:
    service: EmbeddingService


@dataclass(frozen=True)
class EmbeddingUnavailable:
    reason: str


EmbeddingCapability = Union[EmbeddingAvailable, EmbeddingUnavailable]


_embedding_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService | None:
    global _embedding_service
    if _embedding_service is None:
        provider = get_embedding_provider()
        if provider is None:
            return None
        _embedding_service = EmbeddingService(provider)
    return _embedding_service


def get_embedding_capability() -> EmbeddingCapability:
    """Resolve the embedding capability for one resolution run."""
    service = get_embedding_service()
    if service is None:
        return EmbeddingUnavailable("no embedding provider configured")
    return EmbeddingAvailable(service)
