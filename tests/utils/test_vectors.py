"""Tests for vector helpers."""

import pytest

from utils.vectors import distance_to_similarity, format_embedding


class TestDistanceToSimilarity:
    @pytest.mark.parametrize(
        "distance,expected",
        [(0.0, 1.0), (0.15, 0.85), (1.0, 0.0), (1.7, 0.0), (None, 0.0)],
    )
    def test_conversion(self, distance, expected):
        assert distance_to_similarity(distance) == pytest.approx(expected)


class TestFormatEmbedding:
    def test_pgvector_literal(self):
        assert format_embedding([0.1, 2, -0.5]) == "[0.1,2.0,-0.5]"

    def test_empty(self):
        assert format_embedding([]) == "[]"
