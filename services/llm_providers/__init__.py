"""Provider factories for the arbiter LLM and the embedding capability."""

from config import get_settings
from services.llm_providers.base import BaseEmbeddingProvider, BaseLLMProvider, Completion


def get_llm_provider(model: str | None = None) -> BaseLLMProvider:
    from services.llm_providers.nvidia import NvidiaLLMProvider

    return NvidiaLLMProvider(model=model)


def get_embedding_provider() -> BaseEmbeddingProvider | None:
    """Return the embedding provider, or None when no NVIDIA key is set.

    None is what makes the embedding capability resolve to unavailable, so
    candidate retrieval runs on exact and fuzzy matches only.
    """
    if not get_settings().get_nvidia_embedding_api_key():
        return None

    from services.llm_providers.nvidia import NvidiaEmbeddingProvider

    return NvidiaEmbeddingProvider()


__all__ = [
    "BaseLLMProvider",
    "BaseEmbeddingProvider",
    "Completion",
    "get_llm_provider",
    "get_embedding_provider",
]
