"""Chat-completion client shared by the dedup arbiter and context synthesis.

Transient NIM failures (connection drops, timeouts, 429 and 5xx) are retried
with exponential backoff. An overloaded primary model falls back once to
``LLM_FALLBACK_MODEL``. Every call is tagged with an ``operation`` label so
token usage and truncation can be told apart per arbiter prompt.
"""

import asyncio
import random
import re

from openai import APIConnectionError, APIStatusError, APITimeoutError

from config import get_settings
from models.errors import ErrorType
from services.llm_providers import BaseLLMProvider, Completion, get_llm_provider
from utils.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
OVERLOAD_STATUS_CODES = {503, 529}
MAX_BACKOFF_SECONDS = 8.0

_THINK_BLOCK_RE = re.compile(r"<(think|thinking)\b[^>]*>.*?</\1>\s*", re.DOTALL | re.IGNORECASE)
# Unclosed reasoning block: everything to the true end of the string
_THINK_OPEN_RE = re.compile(r"<(think|thinking)\b[^>]*>.*\Z", re.DOTALL | re.IGNORECASE)


def strip_thinking_tags(text: str) -> str:
    """Drop Nemotron/DeepSeek ``<think>`` reasoning so only the answer is parsed."""
    if not text:
        return text
    text = _THINK_BLOCK_RE.sub("", text)
    text = _THINK_OPEN_RE.sub("", text)
    return text.strip()


def is_retryable_llm_error(error: Exception) -> bool:
    if isinstance(error, (TimeoutError, ConnectionError, APIConnectionError, APITimeoutError)):
        return True
    if isinstance(error, APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    return False


def is_overload_error(error: Exception) -> bool:
    """True when the primary model itself is saturated or unavailable."""
    if not isinstance(error, APIStatusError):
        return False
    if error.status_code in OVERLOAD_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(word in message for word in ("overloaded", "capacity", "model unavailable"))


def calculate_backoff(attempt: int, base_delay: float) -> float:
    """Exponential delay for a 0-indexed attempt, capped, plus up to 1s jitter."""
    return min(base_delay * (2**attempt), MAX_BACKOFF_SECONDS) + random.uniform(0, 1)


class LLMClient:
    def __init__(self, provider: BaseLLMProvider | None = None):
        self.settings = get_settings()
        self.provider = provider or get_llm_provider()
        self.model = self.provider.model_name
        self.fallback_model = self.settings.llm_fallback_model
        self.fallback_enabled = self.settings.llm_fallback_enabled
        self._fallback_provider: BaseLLMProvider | None = None

    def _get_fallback_provider(self) -> BaseLLMProvider | None:
        if not self.fallback_enabled or not self.fallback_model:
            return None
        if self.fallback_model == self.model:
            return None
        if self._fallback_provider is None:
            self._fallback_provider = get_llm_provider(model=self.fallback_model)
        return self._fallback_provider

    def _record_completion(self, completion: Completion, operation: str) -> None:
        usage = completion.usage or {}
        logger.info(
            f"LLM {operation} completed with {completion.model}",
            extra={
                "operation": operation,
                "token_usage": {
                    "model": completion.model,
                    "prompt_tokens": usage.get("prompt_tokens", 0),
                    "completion_tokens": usage.get("completion_tokens", 0),
                    "total_tokens": usage.get("total_tokens", 0),
                },
            },
        )
        if completion.truncated:
            logger.warning(
                f"LLM {operation} response hit max_tokens; JSON may be incomplete",
                extra={"operation": operation, "error_type": ErrorType.ARBITER_MALFORMED},
            )

    async def _call_with_retry(
        self,
        provider: BaseLLMProvider,
        messages: list[dict],
        temperature: float,
        max_tokens: int,
        max_retries: int,
        operation: str,
    ) -> str:
        model = provider.model_name
        attempt = 0
        while True:
            try:
                completion = await provider.generate(
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except Exception as e:
                if not is_retryable_llm_error(e) or attempt >= max_retries:
                    logger.error(
                        f"LLM {operation} with {model} failed after {attempt + 1} attempt(s): "
                        f"{type(e).__name__}: {e}",
                        extra={"operation": operation, "error_type": ErrorType.ARBITER_FAILURE},
                    )
                    raise
                delay = calculate_backoff(attempt, self.settings.llm_retry_base_delay)
                logger.warning(
                    f"LLM {operation} attempt {attempt + 1}/{max_retries + 1} with {model} "
                    f"failed ({type(e).__name__}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            self._record_completion(completion, operation)
            return strip_thinking_tags(completion.text)

    async def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.1,
        max_tokens: int = 2048,
        max_retries: int | None = None,
        operation: str = "generate",
    ) -> str:
        """Run one prompt and return the answer text without reasoning tags.

        Args:
            prompt: User message
            system_prompt: Optional system message
            temperature: Sampling temperature
            max_tokens: Completion budget
            max_retries: Retries for transient errors (default: LLM_MAX_RETRIES)
            operation: Label for logs, e.g. "dedup" or "context_synthesis"
        """
        if max_retries is None:
            max_retries = self.settings.llm_max_retries

        messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        messages.append({"role": "user", "content": prompt})

        try:
            return await self._call_with_retry(
                self.provider, messages, temperature, max_tokens, max_retries, operation
            )
        except Exception as primary_error:
            if not is_overload_error(primary_error):
                raise
            fallback = self._get_fallback_provider()
            if fallback is None:
                raise

            logger.warning(
                f"{self.model} overloaded during {operation}, retrying on {self.fallback_model}",
                extra={"operation": operation, "fallback_model": self.fallback_model},
            )
            return await self._call_with_retry(
                fallback, messages, temperature, max_tokens, max_retries, operation
            )


_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
