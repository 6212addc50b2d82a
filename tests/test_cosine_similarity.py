"""Tests for memgate.utils.math."""

import pytest
from memgate.utils.math import clamp_unit, cosine_similarity


def test_identical_vectors():
    assert cosine_similarity([1, 0, 0], [1, 0, 0]) == pytest.approx(1.0)


def test_orthogonal_vectors():
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)


def test_opposite_vectors():
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)


def test_empty_vectors():
    assert cosine_similarity([], []) == 0.0


def test_none_vectors():
    assert cosine_similarity(None, [1.0]) == 0.0


def test_mismatched_lengths():
    assert cosine_similarity([1, 2], [1, 2, 3]) == 0.0


def test_zero_vector():
    assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0


@pytest.mark.parametrize(
    "raw, expected",
    [(-0.4, 0.0), (0.0, 0.0), (0.42, 0.42), (1.0, 1.0), (1.3, 1.0), (float("nan"), 0.0)],
)
def test_clamp_unit(raw, expected):
    assert clamp_unit(raw) == pytest.approx(expected)
