"""NVIDIA NIM providers (OpenAI-compatible endpoint)."""

from openai import AsyncOpenAI

from config import get_settings
from services.llm_providers.base import BaseEmbeddingProvider, BaseLLMProvider, Completion
from utils.logging import get_logger

logger = get_logger(__name__)


def _usage_dict(usage) -> dict:
    if usage is None:
        return {}
    return {
        "prompt_tokens": usage.prompt_tokens or 0,
        "completion_tokens": usage.completion_tokens or 0,
        "total_tokens": usage.total_tokens or 0,
    }


class NvidiaLLMProvider(BaseLLMProvider):
    """Nemotron chat completions used by the arbiter."""

    def __init__(self, model: str | None = None):
        settings = get_settings()
        self._model = model or settings.nvidia_model
        self.client = AsyncOpenAI(
            base_url=settings.nvidia_base_url,
            api_key=settings.get_nvidia_api_key(),
        )

    @property
    def model_name(self) -> str:
        return self._model

    async def generate(
        self,
        messages: list[dict],
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> Completion:
        response = await self.client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=temperature,
            top_p=0.95,
            max_tokens=max_tokens,
        )

        if not response.choices:
            return Completion(text="", model=self._model, usage=_usage_dict(response.usage))

        choice = response.choices[0]
        return Completion(
            text=choice.message.content or "",
            model=self._model,
            finish_reason=choice.finish_reason,
            usage=_usage_dict(response.usage),
        )


class NvidiaEmbeddingProvider(BaseEmbeddingProvider):
    """NV-EmbedQA embeddings for task titles and descriptions."""

    def __init__(self):
        settings = get_settings()
        self._model = settings.nvidia_embedding_model
        self._dimensions = settings.nvidia_embedding_dimensions
        self.client = AsyncOpenAI(
            base_url=settings.nvidia_base_url,
            api_key=settings.get_nvidia_embedding_api_key(),
        )

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(
        self,
        texts: list[str],
        input_type: str = "passage",
    ) -> list[list[float]]:
        if not texts:
            return []

        # NIM truncates over-long task descriptions instead of rejecting them
        response = await self.client.embeddings.create(
            input=texts,
            model=self._model,
            encoding_format="float",
            extra_body={"input_type": input_type, "truncate": "END"},
        )
        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        if len(vectors) != len(texts):
            raise ValueError(
                f"{self._model} returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors
