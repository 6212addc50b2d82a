"""Shared math utilities for memgate.

Single source for cosine similarity; the comparator and tests import from here.
"""

import math as _math
from typing import List, Optional


def cosine_similarity(a: Optional[List[float]], b: Optional[List[float]]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = _math.sqrt(sum(x * x for x in a))
    nb = _math.sqrt(sum(x * x for x in b))
    return dot / (na * nb) if na and nb else 0.0


def clamp_unit(value: float) -> float:
    """Clamp *value* into [0, 1]; NaN maps to 0."""
    value = float(value)
    if value != value:
        return 0.0
    return min(1.0, max(0.0, value))
