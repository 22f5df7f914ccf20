"""Shared utilities for the resolution engine."""

from utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    get_circuit_breaker,
)
from utils.json_extraction import extract_json_from_response, extract_json_object
from utils.normalization import (
    extract_keywords,
    normalize_name,
    normalize_task_name,
    similarity,
)

__all__ = [
    # JSON extraction
    "extract_json_from_response",
    "extract_json_object",
    # Name normalization
    "normalize_name",
    "normalize_task_name",
    "similarity",
    "extract_keywords",
    # Circuit breaker (SD-006)
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    "get_circuit_breaker",
]
