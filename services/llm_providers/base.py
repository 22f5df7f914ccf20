"""Provider ports for chat completions and embeddings."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class Completion:
    """One chat completion as returned by a provider."""

    text: str
    model: str
    finish_reason: str | None = None
    usage: dict = field(default_factory=dict)

    @property
    def truncated(self) -> bool:
        # "length" means max_tokens cut the answer, so arbiter JSON is incomplete
        return self.finish_reason == "length"


class BaseLLMProvider(ABC):
    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> Completion:
        """Run one chat completion over role/content messages."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str: ...


class BaseEmbeddingProvider(ABC):
    @abstractmethod
    async def embed(
        self,
        texts: list[str],
        input_type: str = "passage",
    ) -> list[list[float]]:
        """Embed texts, one vector per input in the same order.

        input_type is "query" for the candidate being resolved and "passage"
        for stored rows.
        """
        ...

    @property
    @abstractmethod
    def model_name(self) -> str: ...

    @property
    @abstractmethod
    def dimensions(self) -> int: ...
