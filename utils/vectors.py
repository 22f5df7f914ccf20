"""pgvector helpers for the Postgres store adapters."""

from typing import Sequence


def distance_to_similarity(distance: float | None) -> float:
    """Convert a pgvector cosine distance (<=>) into a similarity in [0, 1]."""
    if distance is None:
        return 0.0
    return max(0.0, min(1.0, 1.0 - float(distance)))


def format_embedding(vector: Sequence[float]) -> str:
    """Render a vector as a pgvector literal, e.g. '[0.1,0.2]'."""
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"
